"""Competition status transitions and result reads."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kickexpert.competition.errors import CompetitionNotFoundError, CompetitionStateError
from kickexpert.db.models import Competition, CompetitionResult
from kickexpert.utils.datetime_helpers import utcnow

logger = logging.getLogger(__name__)

STARTABLE_STATUSES = frozenset({"scheduled", "upcoming"})
LIVE_STATUSES = frozenset({"active", "running"})


async def get_competition(db: AsyncSession, competition_id: str) -> Competition:
    """Get a competition by ID."""
    competition = await db.get(Competition, competition_id, populate_existing=True)
    if competition is None:
        raise CompetitionNotFoundError(competition_id)
    return competition


async def start_competition(
    db: AsyncSession,
    competition_id: str,
    now: datetime | None = None,
) -> Competition:
    """Open a scheduled competition for play.

    Starting an already live competition is a no-op. Finalizing or completed
    competitions cannot be restarted.
    """
    competition = await get_competition(db, competition_id)
    if competition.status in LIVE_STATUSES:
        return competition
    if competition.status not in STARTABLE_STATUSES:
        raise CompetitionStateError(competition_id, competition.status, "start")

    competition.status = "running"
    if competition.start_time is None:
        competition.start_time = now or utcnow()
    await db.commit()
    logger.info("Competition %s started", competition_id)
    return competition


async def get_competition_results(db: AsyncSession, competition_id: str) -> list[CompetitionResult]:
    """Final standings ordered by rank."""
    await get_competition(db, competition_id)
    result = await db.execute(
        select(CompetitionResult)
        .where(CompetitionResult.competition_id == competition_id)
        .order_by(CompetitionResult.rank)
    )
    return list(result.scalars().all())
