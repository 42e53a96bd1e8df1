"""Competition finalization: rank, pay, award and close.

Safe to run any number of times, sequentially or concurrently, for the same
competition (cron sweep and manual trigger may overlap):

1. A conditional ``UPDATE ... SET status='finalizing'`` claims the
   competition; only one run can hold the claim. Claims older than
   ``finalize_lock_timeout_seconds`` are considered abandoned and reclaimed.
2. Every participant write is idempotent on its natural key (result, trophy
   and history rows on (competition_id, user_id); the reward transaction on
   (session_id, type)) and each participant is committed on its own.
3. A run with failed participants keeps the competition in ``finalizing``
   with the claim released, so the next call resumes it and only performs
   the missing writes.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta

from sqlalchemy import ColumnElement, and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kickexpert.competition.errors import CompetitionNotFoundError
from kickexpert.competition.prize_pool import (
    PrizePoolConfig,
    calculate_prize_pool,
    expected_payout,
    ordinal,
    prize_for_rank,
    prize_pool_total,
    resolve_credit_cost,
    trophy_title,
    xp_for_rank,
)
from kickexpert.competition.ranking import RankedEntry, rank_sessions
from kickexpert.competition.reports import (
    ALREADY_FINALIZED,
    FAILED,
    FINALIZED,
    IN_PROGRESS,
    NOT_ENDED,
    PARTIAL,
    CompetitionSummary,
    FinalizationReport,
    ParticipantResult,
    SweepReport,
)
from kickexpert.config import get_settings
from kickexpert.credits.ledger import credit_winnings, record_reward
from kickexpert.db.dialect import upsert_insert
from kickexpert.db.models import (
    Competition,
    CompetitionHistory,
    CompetitionResult,
    CompetitionSession,
    CompetitionTrophy,
    Profile,
)
from kickexpert.notifications.notifier import ResultNotifier
from kickexpert.utils.datetime_helpers import ensure_utc, utcnow

logger = logging.getLogger(__name__)

# Statuses a competition may be finalized from
CLAIMABLE_STATUSES = ("scheduled", "upcoming", "active", "running")
# Statuses the periodic sweep looks at
SWEEP_STATUSES = ("active", "running")
FINALIZING = "finalizing"
COMPLETED = "completed"

REWARD_SOURCE = "league_competition_finalized"


def effective_end_time(competition: Competition) -> datetime | None:
    """``end_time``, else ``start_time + duration_minutes``, else None."""
    if competition.end_time is not None:
        return ensure_utc(competition.end_time)
    if competition.start_time is not None and competition.duration_minutes:
        return ensure_utc(competition.start_time) + timedelta(minutes=competition.duration_minutes)
    return None


def _claim_is_stale(now: datetime, lock_timeout: int) -> ColumnElement[bool]:
    stale_before = now - timedelta(seconds=lock_timeout)
    return and_(
        Competition.status == FINALIZING,
        or_(
            Competition.finalizing_started_at.is_(None),
            Competition.finalizing_started_at < stale_before,
        ),
    )


# ---------------------------------------------------------------------------
# Direct mode
# ---------------------------------------------------------------------------


async def finalize_competition(
    db: AsyncSession,
    competition_id: str,
    *,
    notifier: ResultNotifier | None = None,
    redis: object = None,
    now: datetime | None = None,
    lock_timeout: int | None = None,
) -> FinalizationReport:
    """Finalize one competition.

    Raises CompetitionNotFoundError if it does not exist. Every other early
    exit (not ended, already finalized, another run in progress) is reported
    as a successful no-op.
    """
    now = now or utcnow()
    lock_timeout = lock_timeout if lock_timeout is not None else get_settings().finalize_lock_timeout_seconds

    competition = await db.get(Competition, competition_id, populate_existing=True)
    if competition is None:
        raise CompetitionNotFoundError(competition_id)

    ends_at = effective_end_time(competition)
    if ends_at is not None and now < ends_at:
        logger.info("Competition %s has not ended yet (ends %s), skipping", competition_id, ends_at.isoformat())
        return FinalizationReport(
            competition_id=competition_id,
            competition_name=competition.name,
            outcome=NOT_ENDED,
            message="Competition not ended yet",
            ends_at=ends_at,
        )

    result_count = await count_results(db, competition_id)

    if competition.status == COMPLETED:
        return _already_finalized(competition, result_count)

    if result_count and competition.status != FINALIZING:
        # Results without a claim were written by an earlier completed run,
        # unless another run claimed the competition after it was loaded
        closed = await _mark_completed(db, competition_id, now, only_from=CLAIMABLE_STATUSES)
        await db.commit()
        if not closed:
            return await _claim_lost(db, competition)
        logger.info("Competition %s already has %d results, marked completed", competition_id, result_count)
        return _already_finalized(competition, result_count)

    if not await _claim(db, competition_id, now, lock_timeout):
        await db.commit()
        return await _claim_lost(db, competition)
    await db.commit()

    try:
        report = await _run_finalization(db, competition, now)
    except Exception:
        await db.rollback()
        await _release_claim(db, competition_id)
        raise

    await db.refresh(competition)
    await _publish_finalized(redis, competition, report)
    if notifier is not None:
        await _dispatch_notifications(db, notifier, competition, report)
    return report


def _already_finalized(competition: Competition, result_count: int) -> FinalizationReport:
    return FinalizationReport(
        competition_id=competition.id,
        competition_name=competition.name,
        outcome=ALREADY_FINALIZED,
        message="Already finalized",
        result_count=result_count,
    )


async def _claim_lost(db: AsyncSession, competition: Competition) -> FinalizationReport:
    """Report for a caller that lost the race to another run."""
    await db.refresh(competition)
    if competition.status == COMPLETED:
        return _already_finalized(competition, await count_results(db, competition.id))
    logger.info("Competition %s is being finalized by another run", competition.id)
    return FinalizationReport(
        competition_id=competition.id,
        competition_name=competition.name,
        outcome=IN_PROGRESS,
        message="Finalization already in progress",
    )


async def count_results(db: AsyncSession, competition_id: str) -> int:
    result = await db.execute(
        select(func.count(CompetitionResult.id)).where(CompetitionResult.competition_id == competition_id)
    )
    return result.scalar_one() or 0


async def _claim(db: AsyncSession, competition_id: str, now: datetime, lock_timeout: int) -> bool:
    """Move the competition into ``finalizing``. True if this run won the claim."""
    stmt = (
        update(Competition)
        .where(
            Competition.id == competition_id,
            or_(
                Competition.status.in_(CLAIMABLE_STATUSES),
                _claim_is_stale(now, lock_timeout),
            ),
        )
        .values(status=FINALIZING, finalizing_started_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def _release_claim(db: AsyncSession, competition_id: str) -> None:
    """Leave the competition in ``finalizing`` but let the next run pick it up immediately."""
    try:
        await db.execute(
            update(Competition)
            .where(Competition.id == competition_id, Competition.status == FINALIZING)
            .values(finalizing_started_at=None)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("Failed to release finalization claim for competition %s", competition_id)


async def _mark_completed(
    db: AsyncSession,
    competition_id: str,
    now: datetime,
    *,
    only_from: tuple[str, ...] = (FINALIZING,),
) -> bool:
    """Close the competition if it is still in one of ``only_from``. True if this call closed it."""
    result = await db.execute(
        update(Competition)
        .where(Competition.id == competition_id, Competition.status.in_(only_from))
        .values(status=COMPLETED, completed_at=now, finalizing_started_at=None)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _run_finalization(db: AsyncSession, competition: Competition, now: datetime) -> FinalizationReport:
    # Plain values: a participant rollback expires ORM instances in this session
    competition_id = competition.id
    competition_name = competition.name or ""
    question_count = competition.question_count or get_settings().default_question_count
    credit_cost = resolve_credit_cost(competition_name, competition.credit_cost)

    sessions_result = await db.execute(
        select(CompetitionSession).where(
            CompetitionSession.competition_id == competition_id,
            CompetitionSession.end_time.is_not(None),
        )
    )
    sessions = list(sessions_result.scalars().all())

    if not sessions:
        await _mark_completed(db, competition_id, now)
        await db.commit()
        logger.info("Competition %s has no completed sessions, marked completed", competition_id)
        return FinalizationReport(
            competition_id=competition_id,
            competition_name=competition_name,
            outcome=FINALIZED,
            message="No completed sessions",
            total_players=0,
            prize_pool=0,
        )

    ranked = rank_sessions(sessions)
    player_count = len(ranked)
    config = calculate_prize_pool(player_count, credit_cost)
    total_revenue = player_count * credit_cost

    logger.info(
        "Finalizing competition %s: %d players, cost %d, revenue %d, pool %.0f%%, %d winners, payout %d",
        competition_id, player_count, credit_cost, total_revenue,
        config.percentage * 100, config.winner_count,
        expected_payout(config, player_count, total_revenue),
    )

    results = [
        await _finalize_participant(
            db,
            competition_id=competition_id,
            competition_name=competition_name,
            question_count=question_count,
            entry=entry,
            config=config,
            total_revenue=total_revenue,
            now=now,
        )
        for entry in ranked
    ]

    report = FinalizationReport(
        competition_id=competition_id,
        competition_name=competition_name,
        outcome=FINALIZED,
        message="Competition finalized",
        results=results,
        total_players=player_count,
        prize_pool=prize_pool_total(config, total_revenue),
    )

    if report.failed:
        await _release_claim(db, competition_id)
        report.outcome = PARTIAL
        report.message = (
            f"Competition partially finalized: {report.failed} participant(s) failed, run again to retry"
        )
        logger.warning(
            "Competition %s partially finalized, %d of %d participants failed",
            competition_id, report.failed, player_count,
        )
        return report

    await _mark_completed(db, competition_id, now)
    await db.commit()
    logger.info(
        "Competition %s finalized: %d players, %d credits distributed",
        competition_id, player_count, report.credits_distributed,
    )
    return report


# ---------------------------------------------------------------------------
# Per-participant writes
# ---------------------------------------------------------------------------


async def _finalize_participant(
    db: AsyncSession,
    *,
    competition_id: str,
    competition_name: str,
    question_count: int,
    entry: RankedEntry,
    config: PrizePoolConfig,
    total_revenue: int,
    now: datetime,
) -> ParticipantResult:
    """Write one participant's standing, reward, trophy and history as a single commit."""
    is_winner = entry.rank <= config.winner_count
    outcome = ParticipantResult(
        user_id=entry.user_id,
        session_id=entry.session_id,
        rank=entry.rank,
        score=entry.correct_answers,
        prize_amount=prize_for_rank(config, entry.rank, total_revenue),
        xp_awarded=xp_for_rank(entry.rank, entry.correct_answers, competition_name, config.winner_count),
        trophy_awarded=is_winner,
    )

    try:
        await _upsert_result(db, competition_id, outcome, now)

        if outcome.prize_amount > 0:
            tx_id = await record_reward(
                db,
                user_id=entry.user_id,
                session_id=entry.session_id,
                amount=outcome.prize_amount,
                description=(
                    f"Competition Reward ({competition_name}) - Rank: {ordinal(entry.rank)} "
                    f"- Score: {entry.correct_answers}"
                ),
                source=REWARD_SOURCE,
                meta={
                    "rank": entry.rank,
                    "score": entry.correct_answers,
                    "prize_amount": outcome.prize_amount,
                    "competition_id": competition_id,
                    "competition_name": competition_name,
                    "finalized_at": now.isoformat(),
                },
            )
            if tx_id is not None:
                await credit_winnings(db, entry.user_id, outcome.prize_amount, now)
                outcome.rewarded = True

        if is_winner:
            await _upsert_trophy(db, competition_id, outcome, now)

        outcome.newly_recorded = await _record_history(
            db, competition_id, competition_name, question_count, outcome, now,
        )
        await db.commit()
    except Exception as exc:
        await db.rollback()
        outcome.rewarded = False
        outcome.newly_recorded = False
        outcome.error = str(exc) or exc.__class__.__name__
        logger.exception(
            "Failed to finalize user %s (rank %d) in competition %s",
            entry.user_id, entry.rank, competition_id,
        )

    return outcome


async def _upsert_result(db: AsyncSession, competition_id: str, outcome: ParticipantResult, now: datetime) -> None:
    stmt = upsert_insert(db, CompetitionResult).values(
        competition_id=competition_id,
        user_id=outcome.user_id,
        score=outcome.score,
        rank=outcome.rank,
        xp_awarded=outcome.xp_awarded,
        trophy_awarded=outcome.trophy_awarded,
        prize_amount=outcome.prize_amount,
        created_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["competition_id", "user_id"],
        set_={
            "score": stmt.excluded.score,
            "rank": stmt.excluded.rank,
            "xp_awarded": stmt.excluded.xp_awarded,
            "trophy_awarded": stmt.excluded.trophy_awarded,
            "prize_amount": stmt.excluded.prize_amount,
        },
    )
    await db.execute(stmt)


async def _upsert_trophy(db: AsyncSession, competition_id: str, outcome: ParticipantResult, now: datetime) -> None:
    stmt = upsert_insert(db, CompetitionTrophy).values(
        competition_id=competition_id,
        user_id=outcome.user_id,
        trophy_title=trophy_title(outcome.rank),
        rank=outcome.rank,
        earned_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["competition_id", "user_id"],
        set_={
            "trophy_title": stmt.excluded.trophy_title,
            "rank": stmt.excluded.rank,
        },
    )
    await db.execute(stmt)


async def _record_history(
    db: AsyncSession,
    competition_id: str,
    competition_name: str,
    question_count: int,
    outcome: ParticipantResult,
    now: datetime,
) -> bool:
    """Insert the history row once; on first insert bump the profile aggregates."""
    stmt = upsert_insert(db, CompetitionHistory).values(
        competition_id=competition_id,
        user_id=outcome.user_id,
        competition_name=competition_name,
        final_rank=outcome.rank,
        final_score=outcome.score,
        total_questions=question_count,
        xp_earned=outcome.xp_awarded,
        credits_earned=outcome.prize_amount,
        meta={
            "finalized_at": now.isoformat(),
            "prize_won": outcome.prize_amount > 0,
            "trophy_earned": outcome.trophy_awarded,
        },
        created_at=now,
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=["competition_id", "user_id"]).returning(CompetitionHistory.id)
    inserted = (await db.execute(stmt)).scalar_one_or_none()
    if inserted is None:
        return False

    await db.execute(
        update(Profile)
        .where(Profile.user_id == outcome.user_id)
        .values(
            total_games=Profile.total_games + 1,
            total_wins=Profile.total_wins + (1 if outcome.trophy_awarded else 0),
            xp=Profile.xp + outcome.xp_awarded,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return True


# ---------------------------------------------------------------------------
# Side effects (best-effort)
# ---------------------------------------------------------------------------


async def _dispatch_notifications(
    db: AsyncSession,
    notifier: ResultNotifier,
    competition: Competition,
    report: FinalizationReport,
) -> None:
    """Notify every participant recorded by this run. Failures are logged only."""
    competition_id = competition.id
    total_players = report.total_players or 0
    for result in report.results:
        if not result.ok or not result.newly_recorded:
            continue
        try:
            await notifier.notify(db, competition, result, total_players)
        except Exception:
            logger.warning(
                "Failed to send result notification to user %s for competition %s",
                result.user_id, competition_id, exc_info=True,
            )
            # A failed query aborts the transaction; the next participant needs a clean one
            await db.rollback()
            await db.refresh(competition)


async def _publish_finalized(redis: object, competition: Competition, report: FinalizationReport) -> None:
    if redis is None or report.outcome != FINALIZED:
        return
    winner = report.results[0].user_id if report.results else None
    try:
        await redis.publish(  # type: ignore[attr-defined]
            "pubsub:competition_finalized",
            json.dumps({
                "competition_id": competition.id,
                "competition_name": competition.name,
                "total_players": report.total_players,
                "winner_user_id": winner,
            }),
        )
    except Exception:
        logger.warning("Failed to publish competition_finalized event", exc_info=True)


# ---------------------------------------------------------------------------
# Sweep mode
# ---------------------------------------------------------------------------


def _may_have_ended(now: datetime) -> ColumnElement[bool]:
    """SQL prefilter for competitions that can have ended by ``now``.

    Exact for ``end_time``. Duration-derived ends are narrowed to competitions
    that have started; the exact check runs on the loaded rows.
    """
    return or_(
        Competition.end_time <= now,
        and_(
            Competition.end_time.is_(None),
            Competition.start_time <= now,
            Competition.duration_minutes > 0,
        ),
    )


async def find_due_competitions(
    db: AsyncSession,
    now: datetime,
    lock_timeout: int,
) -> list[tuple[str, str | None]]:
    """(id, name) of every competition that has ended and still needs finalizing."""
    result = await db.execute(
        select(Competition).where(
            or_(
                Competition.status.in_(SWEEP_STATUSES),
                _claim_is_stale(now, lock_timeout),
            ),
            _may_have_ended(now),
        )
    )
    due = []
    for competition in result.scalars().all():
        ends_at = effective_end_time(competition)
        if ends_at is not None and ends_at <= now:
            due.append((ends_at, competition.id, competition.name))
    due.sort(key=lambda item: (item[0], item[1]))
    return [(cid, name) for _, cid, name in due]


async def finalize_due_competitions(
    db: AsyncSession,
    *,
    notifier: ResultNotifier | None = None,
    redis: object = None,
    now: datetime | None = None,
    lock_timeout: int | None = None,
) -> SweepReport:
    """Finalize every competition whose end time has passed.

    Competitions are independent: a failure in one is logged and recorded in
    the report, and the sweep moves on to the next.
    """
    now = now or utcnow()
    lock_timeout = lock_timeout if lock_timeout is not None else get_settings().finalize_lock_timeout_seconds

    due = await find_due_competitions(db, now, lock_timeout)
    if not due:
        logger.info("No competitions to finalize")
        return SweepReport()

    logger.info("Found %d competition(s) to finalize", len(due))
    sweep = SweepReport()
    for competition_id, name in due:
        try:
            report = await finalize_competition(
                db,
                competition_id,
                notifier=notifier,
                redis=redis,
                now=now,
                lock_timeout=lock_timeout,
            )
        except Exception as exc:
            await db.rollback()
            logger.exception("Failed to finalize competition %s", competition_id)
            sweep.summaries.append(CompetitionSummary(
                competition_id=competition_id,
                competition_name=name,
                outcome=FAILED,
                error=str(exc) or exc.__class__.__name__,
            ))
            continue

        sweep.summaries.append(CompetitionSummary(
            competition_id=competition_id,
            competition_name=name,
            outcome=report.outcome,
            participants=report.total_players or report.result_count or 0,
            credits_distributed=report.credits_distributed,
            failed=report.failed,
        ))

    logger.info("Sweep complete: finalized %d of %d competition(s)", sweep.finalized, len(due))
    return sweep
