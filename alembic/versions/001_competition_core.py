"""Competition core: competitions, sessions, results, trophies, history,
credit ledger and profiles.

The unique keys on competition_results, competition_trophies and
competition_history (competition_id, user_id) and on transactions
(session_id, type) make every finalization write idempotent.

Revision ID: 001_competition_core
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_competition_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Competitions ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS competitions (
            id VARCHAR(36) PRIMARY KEY,
            name VARCHAR(128) NOT NULL DEFAULT '',
            start_time TIMESTAMPTZ,
            end_time TIMESTAMPTZ,
            duration_minutes INTEGER,
            status VARCHAR(16) NOT NULL DEFAULT 'scheduled',
            credit_cost INTEGER,
            question_count INTEGER,
            finalizing_started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_competitions_status
        ON competitions(status)
    """)

    # --- Competition Sessions ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS competition_sessions (
            id VARCHAR(36) PRIMARY KEY,
            competition_id VARCHAR(36) NOT NULL REFERENCES competitions(id) ON DELETE CASCADE,
            user_id VARCHAR(36) NOT NULL,
            correct_answers INTEGER DEFAULT 0,
            start_time TIMESTAMPTZ,
            end_time TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_competition_sessions_competition
        ON competition_sessions(competition_id)
    """)

    # --- Competition Results ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS competition_results (
            id VARCHAR(36) PRIMARY KEY,
            competition_id VARCHAR(36) NOT NULL REFERENCES competitions(id) ON DELETE CASCADE,
            user_id VARCHAR(36) NOT NULL,
            score INTEGER NOT NULL DEFAULT 0,
            rank INTEGER NOT NULL,
            xp_awarded INTEGER NOT NULL DEFAULT 0,
            trophy_awarded BOOLEAN NOT NULL DEFAULT FALSE,
            prize_amount INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT competition_results_comp_user_key UNIQUE (competition_id, user_id)
        )
    """)

    # --- Competition Trophies ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS competition_trophies (
            id VARCHAR(36) PRIMARY KEY,
            competition_id VARCHAR(36) NOT NULL REFERENCES competitions(id) ON DELETE CASCADE,
            user_id VARCHAR(36) NOT NULL,
            trophy_title VARCHAR(64) NOT NULL,
            rank INTEGER NOT NULL,
            earned_at TIMESTAMPTZ,
            CONSTRAINT competition_trophies_comp_user_key UNIQUE (competition_id, user_id)
        )
    """)

    # --- Competition History ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS competition_history (
            id VARCHAR(36) PRIMARY KEY,
            competition_id VARCHAR(36) NOT NULL REFERENCES competitions(id) ON DELETE CASCADE,
            user_id VARCHAR(36) NOT NULL,
            competition_name VARCHAR(128),
            final_rank INTEGER NOT NULL,
            final_score INTEGER NOT NULL DEFAULT 0,
            total_questions INTEGER,
            xp_earned INTEGER NOT NULL DEFAULT 0,
            credits_earned INTEGER NOT NULL DEFAULT 0,
            metadata JSONB,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT competition_history_comp_user_key UNIQUE (competition_id, user_id)
        )
    """)

    # --- Transactions ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS transactions (
            id VARCHAR(36) PRIMARY KEY,
            user_id VARCHAR(36) NOT NULL,
            type VARCHAR(32) NOT NULL,
            amount INTEGER NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'completed',
            session_id VARCHAR(36),
            description TEXT,
            source VARCHAR(64),
            metadata JSONB,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT transactions_session_type_key UNIQUE (session_id, type)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_transactions_user
        ON transactions(user_id)
    """)

    # --- User Credits ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_credits (
            user_id VARCHAR(36) PRIMARY KEY,
            purchased_credits INTEGER NOT NULL DEFAULT 0,
            winnings_credits INTEGER NOT NULL DEFAULT 0,
            referral_credits INTEGER NOT NULL DEFAULT 0,
            updated_at TIMESTAMPTZ
        )
    """)

    # --- Profiles ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS profiles (
            user_id VARCHAR(36) PRIMARY KEY,
            username VARCHAR(64),
            full_name VARCHAR(128),
            email VARCHAR(320),
            total_games INTEGER NOT NULL DEFAULT 0,
            total_wins INTEGER NOT NULL DEFAULT 0,
            xp INTEGER NOT NULL DEFAULT 0,
            updated_at TIMESTAMPTZ
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS profiles CASCADE")
    op.execute("DROP TABLE IF EXISTS user_credits CASCADE")
    op.execute("DROP TABLE IF EXISTS transactions CASCADE")
    op.execute("DROP TABLE IF EXISTS competition_history CASCADE")
    op.execute("DROP TABLE IF EXISTS competition_trophies CASCADE")
    op.execute("DROP TABLE IF EXISTS competition_results CASCADE")
    op.execute("DROP TABLE IF EXISTS competition_sessions CASCADE")
    op.execute("DROP TABLE IF EXISTS competitions CASCADE")
