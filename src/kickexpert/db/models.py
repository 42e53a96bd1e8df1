"""ORM models for the competition, ledger and profile tables.

Identifiers are UUID strings issued by the auth provider (users) or by the
admin tooling (competitions, sessions). Credits are whole integers.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kickexpert.db.base import Base, JSONType


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Competitions
# ---------------------------------------------------------------------------


class Competition(Base):
    """A scheduled, timed multiplayer quiz with an entry fee and prize pool."""

    __tablename__ = "competitions"
    __table_args__ = (Index("idx_competitions_status", "status"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(128), nullable=False, server_default="")
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, server_default="scheduled")
    credit_cost: Mapped[int | None] = mapped_column(Integer, nullable=True)
    question_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    finalizing_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())

    sessions: Mapped[list[CompetitionSession]] = relationship("CompetitionSession", back_populates="competition")
    results: Mapped[list[CompetitionResult]] = relationship("CompetitionResult", back_populates="competition")


class CompetitionSession(Base):
    """One user's attempt at a competition. Complete once end_time is set."""

    __tablename__ = "competition_sessions"
    __table_args__ = (
        Index("idx_competition_sessions_competition", "competition_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    competition_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    correct_answers: Mapped[int | None] = mapped_column(Integer, nullable=True, server_default="0")
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    competition: Mapped[Competition] = relationship("Competition", back_populates="sessions")


class CompetitionResult(Base):
    """Final standing of a user in a competition."""

    __tablename__ = "competition_results"
    __table_args__ = (
        UniqueConstraint("competition_id", "user_id", name="competition_results_comp_user_key"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    competition_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    xp_awarded: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    trophy_awarded: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=false())
    prize_amount: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())

    competition: Mapped[Competition] = relationship("Competition", back_populates="results")


class CompetitionTrophy(Base):
    """Trophy awarded to a top-N finisher."""

    __tablename__ = "competition_trophies"
    __table_args__ = (
        UniqueConstraint("competition_id", "user_id", name="competition_trophies_comp_user_key"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    competition_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    trophy_title: Mapped[str] = mapped_column(String(64), nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    earned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CompetitionHistory(Base):
    """Per-user participation record. Its insert drives the profile aggregates."""

    __tablename__ = "competition_history"
    __table_args__ = (
        UniqueConstraint("competition_id", "user_id", name="competition_history_comp_user_key"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    competition_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    competition_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    final_rank: Mapped[int] = mapped_column(Integer, nullable=False)
    final_score: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    total_questions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    xp_earned: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    credits_earned: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ---------------------------------------------------------------------------
# Credit ledger
# ---------------------------------------------------------------------------


class Transaction(Base):
    """Append-only credit movement. At most one row per (session_id, type)."""

    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("session_id", "type", name="transactions_session_type_key"),
        Index("idx_transactions_user", "user_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, server_default="completed")
    session_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str | None] = mapped_column(String(64), nullable=True)
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UserCredits(Base):
    """Wallet balance split by credit origin."""

    __tablename__ = "user_credits"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    purchased_credits: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    winnings_credits: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    referral_credits: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


class Profile(Base):
    """Public player profile with lifetime aggregates."""

    __tablename__ = "profiles"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    full_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    total_games: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    total_wins: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    xp: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
