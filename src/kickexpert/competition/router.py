"""Competition API endpoints.

Finalization (3), lifecycle (1), results (1).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from kickexpert.competition.errors import CompetitionNotFoundError, CompetitionStateError
from kickexpert.competition.finalizer import finalize_competition, finalize_due_competitions
from kickexpert.competition.lifecycle import get_competition, get_competition_results, start_competition
from kickexpert.competition.reports import FinalizationReport, SweepReport
from kickexpert.competition.schemas import (
    CompetitionIdRequest,
    CompetitionResultEntry,
    CompetitionResultsResponse,
    CompetitionSummaryResponse,
    FinalizeResponse,
    ManualFinalizeResponse,
    ParticipantResultResponse,
    StartCompetitionResponse,
    SweepResponse,
)
from kickexpert.dependencies import get_db, get_redis_dep, get_result_notifier, require_cron_secret
from kickexpert.notifications.notifier import ResultNotifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Competition"])


# ── Helpers ──


def _require_id(body: CompetitionIdRequest | None) -> str:
    if body is None or not body.competition_id:
        raise HTTPException(status_code=400, detail="Competition ID is required")
    return body.competition_id


def _finalize_response(report: FinalizationReport) -> FinalizeResponse:
    ran = report.total_players is not None
    return FinalizeResponse(
        message=report.message,
        outcome=report.outcome,
        competition_id=report.competition_id,
        results=[ParticipantResultResponse(**r.to_dict()) for r in report.results] if ran else None,
        total_players=report.total_players,
        prize_pool=report.prize_pool,
        failed=report.failed if ran else None,
        ends_at=report.ends_at,
        result_count=report.result_count,
    )


def _sweep_response(sweep: SweepReport) -> SweepResponse:
    if not sweep.summaries:
        message = "No competitions to finalize"
    else:
        message = f"Finalized {sweep.finalized} of {len(sweep.summaries)} competition(s)"
    return SweepResponse(
        message=message,
        finalized=sweep.finalized,
        results=[
            CompetitionSummaryResponse(
                competition_id=s.competition_id,
                competition_name=s.competition_name,
                outcome=s.outcome,
                participants=s.participants,
                credits_distributed=s.credits_distributed,
                failed=s.failed,
                error=s.error,
            )
            for s in sweep.summaries
        ],
    )


async def _finalize_one(
    db: AsyncSession,
    competition_id: str,
    notifier: ResultNotifier,
    redis: object,
) -> FinalizeResponse:
    try:
        report = await finalize_competition(db, competition_id, notifier=notifier, redis=redis)
    except CompetitionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Error finalizing competition %s", competition_id)
        raise HTTPException(status_code=500, detail=str(exc) or "Failed to finalize competition") from exc
    return _finalize_response(report)


# ── Finalization ──


@router.post("/finalize-competition", response_model=FinalizeResponse, response_model_exclude_none=True)
async def finalize_competition_endpoint(
    body: CompetitionIdRequest | None = Body(default=None),  # noqa: B008
    db: AsyncSession = Depends(get_db),  # noqa: B008
    redis: object = Depends(get_redis_dep),  # noqa: B008
    notifier: ResultNotifier = Depends(get_result_notifier),  # noqa: B008
) -> FinalizeResponse:
    """Finalize a single competition once it has ended."""
    competition_id = _require_id(body)
    return await _finalize_one(db, competition_id, notifier, redis)


@router.api_route(
    "/cron/finalize-competitions",
    methods=["GET", "POST"],
    response_model=SweepResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(require_cron_secret)],
)
async def cron_finalize_competitions(
    db: AsyncSession = Depends(get_db),  # noqa: B008
    redis: object = Depends(get_redis_dep),  # noqa: B008
    notifier: ResultNotifier = Depends(get_result_notifier),  # noqa: B008
) -> SweepResponse:
    """Scheduler entry point: finalize every competition past its end time."""
    try:
        sweep = await finalize_due_competitions(db, notifier=notifier, redis=redis)
    except Exception as exc:
        logger.exception("Cron finalization sweep failed")
        raise HTTPException(status_code=500, detail=str(exc) or "Finalization sweep failed") from exc
    return _sweep_response(sweep)


@router.post(
    "/manual-finalize-competition",
    response_model=ManualFinalizeResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(require_cron_secret)],
)
async def manual_finalize_competition(
    body: CompetitionIdRequest | None = Body(default=None),  # noqa: B008
    db: AsyncSession = Depends(get_db),  # noqa: B008
    redis: object = Depends(get_redis_dep),  # noqa: B008
    notifier: ResultNotifier = Depends(get_result_notifier),  # noqa: B008
) -> ManualFinalizeResponse:
    """Operator trigger: one competition when an ID is given, otherwise a full sweep."""
    if body is not None and body.competition_id:
        logger.info("Manual finalization requested for competition %s", body.competition_id)
        result = await _finalize_one(db, body.competition_id, notifier, redis)
        return ManualFinalizeResponse(message="Manual finalization completed", result=result)

    logger.info("Manual finalization sweep requested")
    try:
        sweep = await finalize_due_competitions(db, notifier=notifier, redis=redis)
    except Exception as exc:
        logger.exception("Manual finalization sweep failed")
        raise HTTPException(status_code=500, detail=str(exc) or "Finalization sweep failed") from exc
    return ManualFinalizeResponse(message="Manual finalization completed", result=_sweep_response(sweep))


# ── Lifecycle ──


@router.post("/start-competition", response_model=StartCompetitionResponse)
async def start_competition_endpoint(
    body: CompetitionIdRequest | None = Body(default=None),  # noqa: B008
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> StartCompetitionResponse:
    """Open a scheduled competition for play."""
    competition_id = _require_id(body)
    try:
        competition = await start_competition(db, competition_id)
    except CompetitionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except CompetitionStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return StartCompetitionResponse(
        competition_id=competition.id,
        status=competition.status,
        start_time=competition.start_time,
    )


# ── Results ──


@router.get("/competitions/{competition_id}/results", response_model=CompetitionResultsResponse)
async def competition_results(
    competition_id: str,
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> CompetitionResultsResponse:
    """Final standings of a competition, best rank first."""
    try:
        competition = await get_competition(db, competition_id)
        rows = await get_competition_results(db, competition_id)
    except CompetitionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return CompetitionResultsResponse(
        competition_id=competition.id,
        name=competition.name,
        status=competition.status,
        total=len(rows),
        results=[
            CompetitionResultEntry(
                user_id=row.user_id,
                rank=row.rank,
                score=row.score,
                xp_awarded=row.xp_awarded,
                trophy_awarded=row.trophy_awarded,
                prize_amount=row.prize_amount,
            )
            for row in rows
        ],
    )
