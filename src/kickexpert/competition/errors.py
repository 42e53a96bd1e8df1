"""Competition domain errors."""

from __future__ import annotations


class CompetitionError(Exception):
    """Base class for competition failures reported to the caller."""


class CompetitionNotFoundError(CompetitionError):
    def __init__(self, competition_id: str) -> None:
        super().__init__(f"Competition {competition_id} not found")
        self.competition_id = competition_id


class CompetitionStateError(CompetitionError):
    """The requested transition is not allowed from the current status."""

    def __init__(self, competition_id: str, status: str, action: str) -> None:
        super().__init__(f"Cannot {action} competition {competition_id} in '{status}' state")
        self.competition_id = competition_id
        self.status = status
