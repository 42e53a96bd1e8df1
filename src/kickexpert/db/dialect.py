"""Conflict-aware INSERT for the running database dialect.

PostgreSQL and SQLite both support ``INSERT ... ON CONFLICT``; SQLAlchemy
exposes it through dialect-specific ``insert`` constructs.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def upsert_insert(db: AsyncSession, model: Any) -> Any:  # noqa: ANN401
    """Return an ``insert(model)`` supporting ``on_conflict_do_*`` for ``db``'s dialect."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    msg = f"Unsupported database dialect for upserts: {dialect}"
    raise RuntimeError(msg)
