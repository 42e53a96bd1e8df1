"""Integration tests for competition finalization.

Covers: rank -> results -> rewards -> trophies -> history -> completion,
idempotency, claim handling, partial failure recovery and the sweep.
"""

from __future__ import annotations

import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import NOW, RecordingNotifier
from kickexpert.competition import finalizer
from kickexpert.competition.errors import CompetitionNotFoundError
from kickexpert.competition.finalizer import finalize_competition, finalize_due_competitions
from kickexpert.competition.reports import (
    ALREADY_FINALIZED,
    FAILED,
    FINALIZED,
    IN_PROGRESS,
    NOT_ENDED,
    PARTIAL,
)
from kickexpert.database import get_session
from kickexpert.db.models import (
    Competition,
    CompetitionHistory,
    CompetitionResult,
    CompetitionTrophy,
    Profile,
    Transaction,
    UserCredits,
)
from kickexpert.utils.datetime_helpers import ensure_utc

PODIUM_SCORES = [15, 14, 13] + [5] * 37


async def _competition(db: AsyncSession, competition_id: str) -> Competition:
    return await db.get(Competition, competition_id, populate_existing=True)


async def _count(db: AsyncSession, model, **filters) -> int:
    stmt = select(func.count()).select_from(model)
    for key, value in filters.items():
        stmt = stmt.where(getattr(model, key) == value)
    return (await db.execute(stmt)).scalar_one()


async def _winnings(db: AsyncSession, user_id: str) -> int | None:
    row = (
        await db.execute(
            select(UserCredits)
            .where(UserCredits.user_id == user_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    return row.winnings_credits if row else None


async def _profile(db: AsyncSession, user_id: str) -> Profile:
    return await db.get(Profile, user_id, populate_existing=True)


@pytest.mark.asyncio
class TestFinalizeCompetition:
    async def test_full_finalization(self, db_session, make_competition, add_sessions):
        """40 players at 10 credits: 400 revenue, 40% pool, podium paid 80/48/32."""
        competition = await make_competition()
        cid = competition.id
        await add_sessions(competition, PODIUM_SCORES)
        notifier = RecordingNotifier()

        report = await finalize_competition(db_session, cid, notifier=notifier, now=NOW)

        assert report.outcome == FINALIZED
        assert report.total_players == 40
        assert report.prize_pool == 160
        assert report.failed == 0
        assert report.credits_distributed == 80 + 48 + 32
        assert [r.rank for r in report.results] == list(range(1, 41))
        assert [r.prize_amount for r in report.results[:4]] == [80, 48, 32, 0]

        comp = await _competition(db_session, cid)
        assert comp.status == "completed"
        assert ensure_utc(comp.completed_at) == NOW
        assert comp.finalizing_started_at is None

        assert await _count(db_session, CompetitionResult, competition_id=cid) == 40
        assert await _count(db_session, CompetitionHistory, competition_id=cid) == 40
        assert await _count(db_session, CompetitionTrophy, competition_id=cid) == 3

        champion = (
            await db_session.execute(
                select(CompetitionResult).where(
                    CompetitionResult.competition_id == cid, CompetitionResult.user_id == "user-01"
                )
            )
        ).scalar_one()
        assert champion.rank == 1
        assert champion.score == 15
        assert champion.prize_amount == 80
        assert champion.xp_awarded == 75
        assert champion.trophy_awarded is True

        trophy = (
            await db_session.execute(select(CompetitionTrophy).where(CompetitionTrophy.user_id == "user-01"))
        ).scalar_one()
        assert trophy.trophy_title == "Champion"

        reward = (
            await db_session.execute(select(Transaction).where(Transaction.user_id == "user-01"))
        ).scalar_one()
        assert reward.type == "reward"
        assert reward.amount == 80
        assert reward.status == "completed"
        assert reward.source == "league_competition_finalized"
        assert reward.description == "Competition Reward (Pro League Friday) - Rank: 1st - Score: 15"
        assert reward.meta["rank"] == 1
        assert reward.meta["competition_id"] == cid

        assert await _winnings(db_session, "user-01") == 80
        assert await _winnings(db_session, "user-02") == 48
        assert await _winnings(db_session, "user-03") == 32
        assert await _winnings(db_session, "user-04") is None
        assert await _count(db_session, Transaction) == 3

        winner = await _profile(db_session, "user-01")
        assert (winner.total_games, winner.total_wins, winner.xp) == (1, 1, 75)
        also_ran = await _profile(db_session, "user-10")
        assert (also_ran.total_games, also_ran.total_wins, also_ran.xp) == (1, 0, 20)

        assert len(notifier.calls) == 40
        assert all(total == 40 for _, _, total in notifier.calls)

    async def test_tied_scores_ranked_by_finish_time(self, db_session, make_competition, add_sessions):
        competition = await make_competition()
        cid = competition.id
        # user-01 finishes first, so wins the tie on 9
        await add_sessions(competition, [9, 9, 4])

        report = await finalize_competition(db_session, cid, now=NOW)

        assert [(r.user_id, r.rank) for r in report.results] == [("user-01", 1), ("user-02", 2), ("user-03", 3)]

    async def test_second_run_is_a_no_op(self, db_session, make_competition, add_sessions):
        competition = await make_competition()
        cid = competition.id
        await add_sessions(competition, PODIUM_SCORES)
        await finalize_competition(db_session, cid, now=NOW)

        notifier = RecordingNotifier()
        report = await finalize_competition(db_session, cid, notifier=notifier, now=NOW + timedelta(minutes=5))

        assert report.outcome == ALREADY_FINALIZED
        assert report.message == "Already finalized"
        assert report.result_count == 40
        assert notifier.calls == []
        assert await _count(db_session, Transaction) == 3
        assert await _winnings(db_session, "user-01") == 80
        assert (await _profile(db_session, "user-01")).total_games == 1

    async def test_results_without_completion_marks_completed(self, db_session, make_competition):
        competition = await make_competition()
        cid = competition.id
        db_session.add(CompetitionResult(competition_id=cid, user_id="user-01", score=3, rank=1))
        await db_session.commit()

        report = await finalize_competition(db_session, cid, now=NOW)

        assert report.outcome == ALREADY_FINALIZED
        assert report.result_count == 1
        assert (await _competition(db_session, cid)).status == "completed"

    async def test_no_completed_sessions(self, db_session, make_competition, add_sessions):
        competition = await make_competition()
        cid = competition.id
        await add_sessions(competition, [10, 8], finished=False)

        report = await finalize_competition(db_session, cid, now=NOW)

        assert report.outcome == FINALIZED
        assert report.message == "No completed sessions"
        assert report.total_players == 0
        assert report.prize_pool == 0
        assert report.results == []
        assert (await _competition(db_session, cid)).status == "completed"
        assert await _count(db_session, CompetitionResult) == 0

    async def test_not_ended(self, db_session, make_competition, add_sessions):
        competition = await make_competition(end_time=NOW + timedelta(hours=1))
        cid = competition.id
        await add_sessions(competition, [10])

        report = await finalize_competition(db_session, cid, now=NOW)

        assert report.outcome == NOT_ENDED
        assert report.message == "Competition not ended yet"
        assert report.ends_at == NOW + timedelta(hours=1)
        assert (await _competition(db_session, cid)).status == "running"
        assert await _count(db_session, CompetitionResult) == 0

    async def test_end_time_derived_from_duration(self, db_session, make_competition, add_sessions):
        running = await make_competition(end_time=None, start_time=NOW - timedelta(minutes=30), duration_minutes=60)
        done = await make_competition(end_time=None, start_time=NOW - timedelta(minutes=30), duration_minutes=20)
        running_id, done_id = running.id, done.id

        not_ended = await finalize_competition(db_session, running_id, now=NOW)
        ended = await finalize_competition(db_session, done_id, now=NOW)

        assert not_ended.outcome == NOT_ENDED
        assert not_ended.ends_at == NOW + timedelta(minutes=30)
        assert ended.outcome == FINALIZED

    async def test_unknown_end_time_counts_as_ended(self, db_session, make_competition):
        competition = await make_competition(end_time=None, start_time=None)
        report = await finalize_competition(db_session, competition.id, now=NOW)
        assert report.outcome == FINALIZED

    async def test_missing_competition(self, db_session):
        with pytest.raises(CompetitionNotFoundError, match="not found"):
            await finalize_competition(db_session, "does-not-exist", now=NOW)

    async def test_default_credit_cost_from_name(self, db_session, make_competition, add_sessions):
        competition = await make_competition(name="Elite Masters", credit_cost=None)
        cid = competition.id
        await add_sessions(competition, [10, 9, 8, 7, 6])

        report = await finalize_competition(db_session, cid, now=NOW)

        # 5 players at 20 credits = 100 revenue
        assert report.prize_pool == 40
        assert [r.prize_amount for r in report.results] == [20, 12, 8, 0, 0]
        assert report.results[3].xp_awarded == 30


@pytest.mark.asyncio
class TestFinalizationClaim:
    async def test_active_claim_reports_in_progress(self, db_session, make_competition, add_sessions):
        competition = await make_competition(status="finalizing", finalizing_started_at=NOW - timedelta(minutes=1))
        cid = competition.id
        await add_sessions(competition, [10, 9])

        report = await finalize_competition(db_session, cid, now=NOW)

        assert report.outcome == IN_PROGRESS
        assert report.message == "Finalization already in progress"
        assert await _count(db_session, CompetitionResult) == 0

    async def test_claim_taken_after_load_is_not_closed(self, db_session, make_competition, add_sessions, monkeypatch):
        """Another run claims and writes its first result between our load and our result count."""
        competition = await make_competition()
        cid = competition.id
        await add_sessions(competition, [10, 9])
        original = finalizer.count_results

        async def count_after_concurrent_claim(db, competition_id):
            async for other in get_session():
                await other.execute(
                    update(Competition)
                    .where(Competition.id == competition_id)
                    .values(status="finalizing", finalizing_started_at=NOW)
                )
                other.add(CompetitionResult(competition_id=competition_id, user_id="user-01", score=10, rank=1))
                await other.commit()
                break
            monkeypatch.setattr(finalizer, "count_results", original)
            return await original(db, competition_id)

        monkeypatch.setattr(finalizer, "count_results", count_after_concurrent_claim)

        report = await finalize_competition(db_session, cid, now=NOW)

        assert report.outcome == IN_PROGRESS
        comp = await _competition(db_session, cid)
        assert comp.status == "finalizing"
        assert comp.completed_at is None

    async def test_stale_claim_is_taken_over(self, db_session, make_competition, add_sessions):
        competition = await make_competition(status="finalizing", finalizing_started_at=NOW - timedelta(minutes=30))
        cid = competition.id
        await add_sessions(competition, [10, 9])

        report = await finalize_competition(db_session, cid, now=NOW, lock_timeout=600)

        assert report.outcome == FINALIZED
        assert (await _competition(db_session, cid)).status == "completed"

    async def test_completed_competition_is_never_reclaimed(self, db_session, make_competition, add_sessions):
        competition = await make_competition(status="completed")
        cid = competition.id
        await add_sessions(competition, [10])

        report = await finalize_competition(db_session, cid, now=NOW)

        assert report.outcome == ALREADY_FINALIZED
        assert await _count(db_session, CompetitionResult) == 0

    async def test_crash_releases_claim(self, db_session, make_competition, add_sessions, monkeypatch):
        competition = await make_competition()
        cid = competition.id
        await add_sessions(competition, [10, 9])
        monkeypatch.setattr(finalizer, "rank_sessions", MagicMock(side_effect=RuntimeError("boom")))

        with pytest.raises(RuntimeError, match="boom"):
            await finalize_competition(db_session, cid, now=NOW)

        comp = await _competition(db_session, cid)
        assert comp.status == "finalizing"
        assert comp.finalizing_started_at is None


@pytest.mark.asyncio
class TestPartialFailure:
    async def test_failed_participant_is_retried(self, db_session, make_competition, add_sessions, monkeypatch):
        competition = await make_competition()
        cid = competition.id
        await add_sessions(competition, [12, 11, 10, 3])

        original = finalizer.credit_winnings

        async def flaky_credit(db, user_id, amount, now=None):
            if user_id == "user-02":
                raise RuntimeError("wallet update failed")
            return await original(db, user_id, amount, now)

        monkeypatch.setattr(finalizer, "credit_winnings", flaky_credit)
        notifier = RecordingNotifier()

        first = await finalize_competition(db_session, cid, notifier=notifier, now=NOW)

        assert first.outcome == PARTIAL
        assert first.failed == 1
        failed = first.results[1]
        assert failed.user_id == "user-02"
        assert failed.ok is False
        assert failed.error == "wallet update failed"
        assert failed.rewarded is False
        assert "run again" in first.message

        comp = await _competition(db_session, cid)
        assert comp.status == "finalizing"
        assert comp.finalizing_started_at is None
        # The failing participant's writes were rolled back together
        assert await _count(db_session, CompetitionResult, user_id="user-02") == 0
        assert await _count(db_session, Transaction, user_id="user-02") == 0
        assert await _winnings(db_session, "user-02") is None
        assert sorted(notifier.notified_users) == ["user-01", "user-03", "user-04"]

        monkeypatch.setattr(finalizer, "credit_winnings", original)
        notifier.calls.clear()

        second = await finalize_competition(db_session, cid, notifier=notifier, now=NOW + timedelta(minutes=1))

        assert second.outcome == FINALIZED
        assert second.failed == 0
        assert (await _competition(db_session, cid)).status == "completed"
        # 4 players at 10 credits: 40 revenue -> 8 / 5 / 4
        assert await _winnings(db_session, "user-01") == 8
        assert await _winnings(db_session, "user-02") == 5
        assert await _winnings(db_session, "user-03") == 4
        assert await _count(db_session, Transaction) == 3
        assert await _count(db_session, CompetitionHistory, competition_id=cid) == 4
        assert (await _profile(db_session, "user-01")).total_games == 1
        assert notifier.notified_users == ["user-02"]
        assert second.credits_distributed == 5

    async def test_notifier_failure_is_not_fatal(self, db_session, make_competition, add_sessions):
        competition = await make_competition()
        cid = competition.id
        await add_sessions(competition, [9, 8, 7])
        notifier = RecordingNotifier(fail_for={"user-01"})

        report = await finalize_competition(db_session, cid, notifier=notifier, now=NOW)

        assert report.outcome == FINALIZED
        assert report.failed == 0
        assert notifier.notified_users == ["user-02", "user-03"]
        assert (await _competition(db_session, cid)).status == "completed"

    async def test_notifier_database_error_does_not_poison_later_notifications(
        self, db_session, make_competition, add_sessions,
    ):
        competition = await make_competition()
        cid = competition.id
        await add_sessions(competition, [9, 8, 7])

        class DuplicateHistoryNotifier(RecordingNotifier):
            async def notify(self, db, competition, result, total_players):
                if result.user_id == "user-01":
                    db.add(CompetitionHistory(
                        competition_id=competition.id, user_id=result.user_id, final_rank=result.rank,
                    ))
                    await db.flush()
                await db.execute(select(Profile).where(Profile.user_id == result.user_id))
                return await super().notify(db, competition, result, total_players)

        notifier = DuplicateHistoryNotifier()

        report = await finalize_competition(db_session, cid, notifier=notifier, now=NOW)

        assert report.outcome == FINALIZED
        assert notifier.notified_users == ["user-02", "user-03"]
        assert await _count(db_session, CompetitionHistory, competition_id=cid) == 3


@pytest.mark.asyncio
class TestFinalizedEvent:
    async def test_publishes_finalized_event(self, db_session, make_competition, add_sessions):
        competition = await make_competition()
        cid = competition.id
        await add_sessions(competition, [4, 9])
        redis = MagicMock()
        redis.publish = AsyncMock()

        await finalize_competition(db_session, cid, redis=redis, now=NOW)

        channel, payload = redis.publish.call_args.args
        assert channel == "pubsub:competition_finalized"
        data = json.loads(payload)
        assert data["competition_id"] == cid
        assert data["total_players"] == 2
        assert data["winner_user_id"] == "user-02"

    async def test_publish_failure_is_ignored(self, db_session, make_competition, add_sessions):
        competition = await make_competition()
        cid = competition.id
        await add_sessions(competition, [4])
        redis = MagicMock()
        redis.publish = AsyncMock(side_effect=ConnectionError("redis down"))

        report = await finalize_competition(db_session, cid, redis=redis, now=NOW)

        assert report.outcome == FINALIZED


@pytest.mark.asyncio
class TestSweep:
    async def test_finalizes_only_due_competitions(self, db_session, make_competition, add_sessions):
        first = await make_competition(
            name="Starter Sprint", credit_cost=None, end_time=NOW - timedelta(hours=2), status="active",
        )
        second = await make_competition(end_time=NOW - timedelta(hours=1))
        future = await make_competition(end_time=NOW + timedelta(hours=1))
        await make_competition(status="completed")
        scheduled = await make_competition(status="scheduled")
        first_id, second_id, future_id, scheduled_id = first.id, second.id, future.id, scheduled.id
        await add_sessions(first, [3, 2, 1])

        sweep = await finalize_due_competitions(db_session, notifier=RecordingNotifier(), now=NOW)

        assert sweep.finalized == 2
        assert [s.competition_id for s in sweep.summaries] == [first_id, second_id]
        assert sweep.summaries[0].participants == 3
        # 3 players at the Starter price of 5: 15 revenue -> 3 / 2 / 2
        assert sweep.summaries[0].credits_distributed == 3 + 2 + 2
        assert sweep.summaries[1].participants == 0
        assert (await _competition(db_session, future_id)).status == "running"
        assert (await _competition(db_session, scheduled_id)).status == "scheduled"

    async def test_nothing_due(self, db_session, make_competition):
        await make_competition(end_time=NOW + timedelta(hours=1))
        sweep = await finalize_due_competitions(db_session, now=NOW)
        assert sweep.summaries == []
        assert sweep.finalized == 0

    async def test_duration_derived_end_times(self, db_session, make_competition):
        elapsed = await make_competition(end_time=None, start_time=NOW - timedelta(hours=2), duration_minutes=60)
        await make_competition(end_time=None, start_time=NOW - timedelta(minutes=10), duration_minutes=60)
        await make_competition(end_time=None, start_time=NOW + timedelta(hours=1), duration_minutes=60)
        await make_competition(end_time=None, start_time=NOW - timedelta(hours=2), duration_minutes=None)

        due = await finalizer.find_due_competitions(db_session, NOW, lock_timeout=600)

        assert due == [(elapsed.id, elapsed.name)]

    async def test_one_failure_does_not_stop_the_sweep(self, db_session, make_competition, add_sessions, monkeypatch):
        broken = await make_competition(name="Broken Cup", end_time=NOW - timedelta(hours=2))
        healthy = await make_competition(end_time=NOW - timedelta(hours=1))
        broken_id, healthy_id = broken.id, healthy.id
        await add_sessions(broken, [5])

        original = finalizer._run_finalization

        async def run(db, competition, now):
            if competition.id == broken_id:
                raise RuntimeError("database hiccup")
            return await original(db, competition, now)

        monkeypatch.setattr(finalizer, "_run_finalization", run)

        sweep = await finalize_due_competitions(db_session, now=NOW)

        assert [s.outcome for s in sweep.summaries] == [FAILED, FINALIZED]
        assert sweep.summaries[0].error == "database hiccup"
        assert sweep.summaries[0].competition_name == "Broken Cup"
        assert (await _competition(db_session, healthy_id)).status == "completed"

        # The released claim is picked up by the next sweep
        monkeypatch.setattr(finalizer, "_run_finalization", original)
        retry = await finalize_due_competitions(db_session, now=NOW + timedelta(minutes=1))
        assert [(s.competition_id, s.outcome) for s in retry.summaries] == [(broken_id, FINALIZED)]
