"""Shared FastAPI dependencies."""

import secrets
from collections.abc import AsyncGenerator

from fastapi import Header, HTTPException, status

from kickexpert.config import get_settings
from kickexpert.database import get_session as _get_session
from kickexpert.email.service import get_email_service
from kickexpert.notifications.notifier import EmailResultNotifier, ResultNotifier
from kickexpert.redis_client import get_optional_redis

get_db = _get_session


async def get_redis_dep() -> AsyncGenerator[object, None]:
    """Yield the Redis client, or None when Redis is not configured."""
    yield get_optional_redis()


def get_result_notifier() -> ResultNotifier:
    """Notifier used for participant result e-mails."""
    return EmailResultNotifier(email_service=get_email_service(get_optional_redis()))


async def require_cron_secret(authorization: str | None = Header(default=None)) -> None:
    """Gate scheduler endpoints behind ``Authorization: Bearer <cron_secret>``.

    Open when no secret is configured (local development).
    """
    secret = get_settings().cron_secret
    if not secret:
        return
    expected = f"Bearer {secret}"
    if authorization is None or not secrets.compare_digest(authorization.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
