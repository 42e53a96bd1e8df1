"""Result notifications sent to participants after finalization.

Delivery is best-effort: the finalizer logs and ignores any failure here.
"""

from __future__ import annotations

from typing import Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kickexpert.competition.reports import ParticipantResult
from kickexpert.config import get_settings
from kickexpert.db.models import Competition, Profile
from kickexpert.email.service import EmailService, get_email_service

logger = structlog.get_logger()


class ResultNotifier(Protocol):
    async def notify(
        self,
        db: AsyncSession,
        competition: Competition,
        result: ParticipantResult,
        total_players: int,
    ) -> bool:
        """Deliver one participant's final standing. Returns True if sent."""
        ...


class EmailResultNotifier:
    """Sends the ``competition_results`` email to the participant's profile address."""

    def __init__(self, email_service: EmailService | None = None, site_url: str | None = None) -> None:
        self._email_service = email_service
        self.site_url = (site_url or get_settings().site_url).rstrip("/")

    @property
    def email_service(self) -> EmailService:
        if self._email_service is None:
            self._email_service = get_email_service()
        return self._email_service

    async def notify(
        self,
        db: AsyncSession,
        competition: Competition,
        result: ParticipantResult,
        total_players: int,
    ) -> bool:
        profile = (
            await db.execute(select(Profile).where(Profile.user_id == result.user_id))
        ).scalar_one_or_none()
        if profile is None or not profile.email:
            logger.info("result_email_skipped", user_id=result.user_id, reason="no_email")
            return False

        total_questions = competition.question_count or get_settings().default_question_count
        return await self.email_service.send_template(
            profile.email,
            "competition_results",
            {
                "name": profile.full_name or profile.username,
                "competition_name": competition.name,
                "rank": result.rank,
                "total_players": total_players,
                "score": result.score,
                "total_questions": total_questions,
                "xp_awarded": result.xp_awarded,
                "prize_amount": result.prize_amount,
                "trophy_awarded": result.trophy_awarded,
                "results_url": f"{self.site_url}/competition-results/{result.session_id}",
            },
            to_name=profile.full_name or profile.username,
        )
