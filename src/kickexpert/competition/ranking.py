"""Deterministic competition ranking.

Sessions are ranked by correct answers DESC, then by finish time ASC (the
earlier finisher wins a tie), then by session id as a last resort so two
runs over the same rows always produce the same order. Ranks are positions:
equal scores never share a rank.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from kickexpert.utils.datetime_helpers import ensure_utc

_FAR_FUTURE = datetime(9999, 12, 31, 23, 59, 59, tzinfo=timezone.utc)


@dataclass(frozen=True)
class RankedEntry:
    """A completed session with its final position."""

    rank: int
    session_id: str
    user_id: str
    correct_answers: int
    end_time: datetime | None


def _field(session: Any, name: str) -> Any:  # noqa: ANN401
    if isinstance(session, dict):
        return session.get(name)
    return getattr(session, name, None)


def rank_sessions(sessions: list[Any]) -> list[RankedEntry]:
    """Rank completed sessions.

    Accepts ORM rows or dicts exposing ``id``, ``user_id``,
    ``correct_answers`` and ``end_time``. Missing scores count as 0.
    """
    if not sessions:
        return []

    def sort_key(s: Any) -> tuple[int, datetime, str]:  # noqa: ANN401
        end_time = ensure_utc(_field(s, "end_time")) or _FAR_FUTURE
        return (-(_field(s, "correct_answers") or 0), end_time, str(_field(s, "id")))

    ordered = sorted(sessions, key=sort_key)
    return [
        RankedEntry(
            rank=idx + 1,
            session_id=str(_field(s, "id")),
            user_id=str(_field(s, "user_id")),
            correct_answers=_field(s, "correct_answers") or 0,
            end_time=ensure_utc(_field(s, "end_time")),
        )
        for idx, s in enumerate(ordered)
    ]
