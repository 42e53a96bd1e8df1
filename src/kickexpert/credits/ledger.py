"""Credit ledger: reward transactions and wallet balance updates.

Exactly-once semantics come from the database, not from read-then-write:

- a reward transaction is unique on (session_id, type); a conflicting insert
  returns no row, which means the reward was already recorded;
- winnings are added with ``winnings_credits = winnings_credits + :amount``
  so concurrent payouts cannot lose updates.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from kickexpert.db.dialect import upsert_insert
from kickexpert.db.models import Transaction, UserCredits
from kickexpert.utils.datetime_helpers import utcnow

logger = logging.getLogger(__name__)

REWARD = "reward"
COMPETITION_ENTRY = "competition_entry"


async def record_reward(
    db: AsyncSession,
    *,
    user_id: str,
    session_id: str,
    amount: int,
    description: str,
    source: str,
    meta: dict[str, Any] | None = None,
) -> str | None:
    """Insert the reward transaction for a session.

    Returns the new transaction id, or None when this session was already
    rewarded. Does not commit.
    """
    stmt = upsert_insert(db, Transaction).values(
        user_id=user_id,
        type=REWARD,
        amount=amount,
        status="completed",
        session_id=session_id,
        description=description,
        source=source,
        meta=meta or {},
        created_at=utcnow(),
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=["session_id", "type"]).returning(Transaction.id)
    result = await db.execute(stmt)
    tx_id = result.scalar_one_or_none()
    if tx_id is None:
        logger.info("Reward for session %s already recorded, skipping", session_id)
    return tx_id


async def credit_winnings(
    db: AsyncSession,
    user_id: str,
    amount: int,
    now: datetime | None = None,
) -> None:
    """Atomically add ``amount`` to the user's winnings, creating the wallet if needed. Does not commit."""
    now = now or utcnow()
    stmt = upsert_insert(db, UserCredits).values(
        user_id=user_id,
        purchased_credits=0,
        winnings_credits=amount,
        referral_credits=0,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id"],
        set_={
            "winnings_credits": UserCredits.winnings_credits + stmt.excluded.winnings_credits,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    await db.execute(stmt)
