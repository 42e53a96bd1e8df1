"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from kickexpert.competition.router import router as competition_router
from kickexpert.config import get_settings
from kickexpert.database import close_db, init_db
from kickexpert.email.service import reset_email_service
from kickexpert.health.router import router as health_router
from kickexpert.middleware import setup_middleware
from kickexpert.redis_client import close_redis, init_redis


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)

    yield

    reset_email_service()
    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="KickExpert API",
        description="Backend API for KickExpert football trivia competitions",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(competition_router)

    return app


app = create_app()
