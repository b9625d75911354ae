"""Initial PostgreSQL schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _identity_columns() -> list[sa.Column]:
    return [
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("project_id", sa.String(length=100), nullable=False),
        sa.Column("signal_type_id", sa.String(length=100), nullable=False),
    ]


def _oracle_columns() -> list[sa.Column]:
    return [
        sa.Column("request_id", sa.String(length=200), nullable=True),
        sa.Column("model", sa.String(length=100), nullable=True),
        sa.Column("prompt_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "completion_tokens", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("logs", sa.Text(), nullable=True),
        sa.Column("test_requesting_user", sa.String(length=100), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
    ]


def upgrade() -> None:
    """Create initial schema for the engagement score engine."""

    # 1. queue_items table
    op.create_table(
        "queue_items",
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column("unique_key", sa.String(length=400), nullable=False),
        sa.Column("parent_unique_key", sa.String(length=400), nullable=True),
        sa.Column("kind", sa.String(length=20), nullable=False),
        *_identity_columns(),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("test_requesting_user", sa.String(length=100), nullable=True),
        sa.Column(
            "testing_context", postgresql.JSONB(astext_type=sa.Text()), nullable=True
        ),
        sa.Column(
            "status", sa.String(length=20), nullable=False, server_default="pending"
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("unique_key"),
    )
    op.create_index("idx_queue_items_status", "queue_items", ["status"])
    op.create_index(
        "idx_queue_items_identity",
        "queue_items",
        ["user_id", "project_id", "signal_type_id", "kind", "status"],
    )

    # 2. raw_scores table
    op.create_table(
        "raw_scores",
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        *_identity_columns(),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("raw_value", sa.Integer(), nullable=False),
        sa.Column("max_value", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("explanation", sa.Text(), nullable=True),
        *_oracle_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_raw_scores_identity_day",
        "raw_scores",
        ["user_id", "project_id", "signal_type_id", "day"],
    )

    # 3. smart_scores table
    op.create_table(
        "smart_scores",
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        *_identity_columns(),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("value", sa.Integer(), nullable=True),
        sa.Column("max_value", sa.Integer(), nullable=False),
        sa.Column("previous_days", sa.Integer(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("explanation", sa.Text(), nullable=True),
        sa.Column(
            "top_band_days", postgresql.JSONB(astext_type=sa.Text()), nullable=True
        ),
        *_oracle_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("request_id"),
    )
    op.create_index(
        "idx_smart_scores_identity_day",
        "smart_scores",
        ["user_id", "project_id", "signal_type_id", "day"],
    )

    # 4. score_sentinels table (in-flight markers)
    op.create_table(
        "score_sentinels",
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        *_identity_columns(),
        sa.Column("tag", sa.String(length=50), nullable=False),
        sa.Column("test_requesting_user", sa.String(length=100), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    # 5. user_project_score_history table
    op.create_table(
        "user_project_score_history",
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("project_id", sa.String(length=100), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("total_score", sa.Integer(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("user_id", "project_id", "day"),
    )

    # 6. project_signals table
    op.create_table(
        "project_signals",
        sa.Column("project_id", sa.String(length=100), nullable=False),
        sa.Column("signal_type_id", sa.String(length=100), nullable=False),
        sa.Column("signal_type_name", sa.String(length=100), nullable=False),
        sa.Column("max_value", sa.Integer(), nullable=False),
        sa.Column("previous_days", sa.Integer(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default="true"),
        sa.PrimaryKeyConstraint("project_id", "signal_type_id"),
    )

    # 7. daily_activity table
    op.create_table(
        "daily_activity",
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        *_identity_columns(),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_daily_activity_identity_day",
        "daily_activity",
        ["user_id", "project_id", "signal_type_id", "day"],
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index("idx_daily_activity_identity_day", table_name="daily_activity")
    op.drop_table("daily_activity")
    op.drop_table("project_signals")
    op.drop_table("user_project_score_history")
    op.drop_table("score_sentinels")
    op.drop_index("idx_smart_scores_identity_day", table_name="smart_scores")
    op.drop_table("smart_scores")
    op.drop_index("idx_raw_scores_identity_day", table_name="raw_scores")
    op.drop_table("raw_scores")
    op.drop_index("idx_queue_items_identity", table_name="queue_items")
    op.drop_index("idx_queue_items_status", table_name="queue_items")
    op.drop_table("queue_items")
