"""Shared test fixtures.

Each test gets its own SQLite database file (``sqlite+aiosqlite``) with the
schema created from the ORM metadata. Redis is not initialized, so the
rate limiter and pub/sub publishing are skipped unless a test patches them in.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta, timezone

os.environ["KX_CRON_SECRET"] = "test-cron-secret"
os.environ["KX_LOG_FORMAT"] = "console"
os.environ["KX_SITE_URL"] = "https://kickexpert.test"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from kickexpert.competition.reports import ParticipantResult
from kickexpert.config import get_settings
from kickexpert.database import close_db, get_engine, get_session, init_db
from kickexpert.db.base import Base
from kickexpert.db.models import Competition, CompetitionSession, Profile
from kickexpert.dependencies import get_result_notifier
from kickexpert.email.service import reset_email_service

get_settings.cache_clear()

CRON_SECRET = "test-cron-secret"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class RecordingNotifier:
    """ResultNotifier that records every call instead of sending e-mail."""

    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.calls: list[tuple[str, ParticipantResult, int]] = []
        self.fail_for = fail_for or set()

    async def notify(self, db, competition, result, total_players) -> bool:
        if result.user_id in self.fail_for:
            raise RuntimeError(f"mail relay down for {result.user_id}")
        self.calls.append((competition.id, result, total_players))
        return True

    @property
    def notified_users(self) -> list[str]:
        return [result.user_id for _, result, _ in self.calls]


@pytest_asyncio.fixture
async def db_engine(tmp_path) -> AsyncGenerator[None, None]:
    """Fresh SQLite database for one test."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'kickexpert_test.db'}")
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await close_db()
    reset_email_service()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Get a direct database session for setup and assertions."""
    async for session in get_session():
        yield session
        break


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def client(db_engine, notifier: RecordingNotifier) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client bound to the per-test database."""
    from kickexpert.main import create_app

    app = create_app()
    app.dependency_overrides[get_result_notifier] = lambda: notifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def cron_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {CRON_SECRET}"}


@pytest.fixture
def make_competition(db_session: AsyncSession) -> Callable[..., Awaitable[Competition]]:
    """Factory: insert a competition (ended one hour before ``NOW`` by default)."""

    async def _make(**overrides: object) -> Competition:
        fields: dict[str, object] = {
            "name": "Pro League Friday",
            "start_time": NOW - timedelta(hours=2),
            "end_time": NOW - timedelta(hours=1),
            "status": "running",
            "credit_cost": 10,
            "question_count": 15,
        }
        fields.update(overrides)
        competition = Competition(**fields)
        db_session.add(competition)
        await db_session.commit()
        return competition

    return _make


@pytest.fixture
def add_sessions(db_session: AsyncSession) -> Callable[..., Awaitable[list[CompetitionSession]]]:
    """Factory: one completed session (and profile) per score.

    Users are named ``user-01``, ``user-02``... in list order; each finished
    one minute after the previous one.
    """

    async def _add(
        competition: Competition,
        scores: list[int | None],
        *,
        with_profiles: bool = True,
        finished: bool = True,
    ) -> list[CompetitionSession]:
        sessions = []
        for idx, score in enumerate(scores, start=1):
            user_id = f"user-{idx:02d}"
            session = CompetitionSession(
                id=f"session-{competition.id[:8]}-{idx:02d}",
                competition_id=competition.id,
                user_id=user_id,
                correct_answers=score,
                start_time=NOW - timedelta(hours=2),
                end_time=NOW - timedelta(hours=1, minutes=30) + timedelta(minutes=idx) if finished else None,
            )
            sessions.append(session)
            db_session.add(session)
            if with_profiles and await db_session.get(Profile, user_id) is None:
                db_session.add(Profile(
                    user_id=user_id,
                    username=f"player{idx}",
                    full_name=f"Player {idx}",
                    email=f"player{idx}@example.com",
                ))
        await db_session.commit()
        return sessions

    return _add
