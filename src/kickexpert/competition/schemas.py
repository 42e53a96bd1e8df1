"""Pydantic request/response models for competition endpoints.

Field names are camelCase on the wire to match the web client.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Requests ──


class CompetitionIdRequest(CamelModel):
    competition_id: str | None = None


# ── Finalization ──


class ParticipantResultResponse(CamelModel):
    user_id: str
    session_id: str
    rank: int
    score: int
    prize_amount: int
    xp_awarded: int
    trophy_awarded: bool
    rewarded: bool
    ok: bool
    error: str | None = None


class FinalizeResponse(CamelModel):
    success: bool = True
    message: str
    outcome: str
    competition_id: str
    results: list[ParticipantResultResponse] | None = None
    total_players: int | None = None
    prize_pool: int | None = None
    failed: int | None = None
    ends_at: datetime | None = None
    result_count: int | None = None


class CompetitionSummaryResponse(CamelModel):
    competition_id: str
    competition_name: str | None = None
    outcome: str
    participants: int
    credits_distributed: int
    failed: int
    error: str | None = None


class SweepResponse(CamelModel):
    success: bool = True
    message: str
    finalized: int
    results: list[CompetitionSummaryResponse]


class ManualFinalizeResponse(CamelModel):
    success: bool = True
    message: str
    result: FinalizeResponse | SweepResponse


# ── Lifecycle ──


class StartCompetitionResponse(CamelModel):
    success: bool = True
    competition_id: str
    status: str
    start_time: datetime | None = None


class CompetitionResultEntry(CamelModel):
    user_id: str
    rank: int
    score: int
    xp_awarded: int
    trophy_awarded: bool
    prize_amount: int


class CompetitionResultsResponse(CamelModel):
    competition_id: str
    name: str
    status: str
    total: int
    results: list[CompetitionResultEntry]
