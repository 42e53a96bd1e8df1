"""Typed outcomes of a finalization run.

Every participant gets a ``ParticipantResult`` whether or not its writes
succeeded, so partial failures are visible to the caller and can be retried
by running finalization again.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

# Finalization outcomes
FINALIZED = "finalized"
ALREADY_FINALIZED = "already_finalized"
NOT_ENDED = "not_ended"
IN_PROGRESS = "in_progress"
PARTIAL = "partial"
FAILED = "failed"


@dataclass
class ParticipantResult:
    user_id: str
    session_id: str
    rank: int
    score: int
    prize_amount: int
    xp_awarded: int
    trophy_awarded: bool
    rewarded: bool = False
    newly_recorded: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["ok"] = self.ok
        return data


@dataclass
class FinalizationReport:
    competition_id: str
    outcome: str
    message: str
    results: list[ParticipantResult] = field(default_factory=list)
    total_players: int | None = None
    prize_pool: int | None = None
    ends_at: datetime | None = None
    result_count: int | None = None
    competition_name: str | None = None

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)

    @property
    def credits_distributed(self) -> int:
        return sum(r.prize_amount for r in self.results if r.rewarded)


@dataclass
class CompetitionSummary:
    """One line of a sweep report."""

    competition_id: str
    competition_name: str | None
    outcome: str
    participants: int = 0
    credits_distributed: int = 0
    failed: int = 0
    error: str | None = None


@dataclass
class SweepReport:
    summaries: list[CompetitionSummary] = field(default_factory=list)

    @property
    def finalized(self) -> int:
        return sum(1 for s in self.summaries if s.outcome == FINALIZED)
