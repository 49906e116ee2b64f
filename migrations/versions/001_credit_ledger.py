"""Create the credit ledger tables.

Revision ID: 001_credit_ledger
Revises: 000_enable_extensions
Create Date: 2026-10-19

usage_events is append-only. A credit_adjustment row references the
estimated row it corrects; the unique constraint on adjusts_event_id allows
at most one adjustment per estimated event.

credit_balances keeps credits_remaining materialized so the per-call
deduction is a single conditional UPDATE.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001_credit_ledger"
down_revision: str | None = "000_enable_extensions"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# Shared column types
_PG_UUID = sa.dialects.postgresql.UUID(as_uuid=True)
_UUID_DEFAULT = sa.text("gen_random_uuid()")


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )


def upgrade() -> None:
    """Create usage_events and credit_balances."""
    # 1. usage_events
    op.create_table(
        "usage_events",
        sa.Column("id", _PG_UUID, server_default=_UUID_DEFAULT, primary_key=True),
        sa.Column("user_id", _PG_UUID, nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("chat_id", sa.String(255), nullable=True),
        sa.Column("message_id", sa.String(255), nullable=True),
        sa.Column("input_tokens", sa.Integer, nullable=False),
        sa.Column("output_tokens", sa.Integer, nullable=False),
        sa.Column("total_tokens", sa.Integer, nullable=False),
        sa.Column("input_cost_cents", sa.Integer, nullable=False),
        sa.Column("output_cost_cents", sa.Integer, nullable=False),
        sa.Column("total_cost_cents", sa.Integer, nullable=False),
        sa.Column("credits_deducted", sa.Integer, nullable=False),
        sa.Column("model", sa.String(100), nullable=False),
        sa.Column(
            "status", sa.String(20), server_default="completed", nullable=False
        ),
        sa.Column(
            "adjusts_event_id",
            _PG_UUID,
            sa.ForeignKey("usage_events.id", ondelete="CASCADE"),
            nullable=True,
        ),
        _timestamp("created_at"),
        sa.UniqueConstraint(
            "adjusts_event_id", name="uq_usage_events_adjusts_event_id"
        ),
        sa.CheckConstraint(
            "status IN ('completed', 'estimated')",
            name="ck_usage_events_status_valid",
        ),
    )
    op.create_index(
        "ix_usage_events_user_created",
        "usage_events",
        ["user_id", sa.text("created_at DESC")],
    )
    op.create_index(
        "ix_usage_events_estimated_created",
        "usage_events",
        ["created_at"],
        postgresql_where=sa.text("status = 'estimated'"),
    )

    # 2. credit_balances
    op.create_table(
        "credit_balances",
        sa.Column("user_id", _PG_UUID, primary_key=True),
        sa.Column("plan", sa.String(30), nullable=False),
        sa.Column("credits_total", sa.Integer, nullable=False),
        sa.Column("credits_used", sa.Integer, server_default="0", nullable=False),
        sa.Column("credits_remaining", sa.Integer, nullable=False),
        sa.Column(
            "rollover_credits", sa.Integer, server_default="0", nullable=False
        ),
        sa.Column(
            "billing_interval", sa.String(10), server_default="month", nullable=False
        ),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        # CHECK constraints for ledger integrity
        sa.CheckConstraint(
            "credits_remaining = credits_total - credits_used",
            name="ck_credit_balances_remaining_consistent",
        ),
        sa.CheckConstraint(
            "credits_remaining >= 0", name="ck_credit_balances_remaining_nonneg"
        ),
        sa.CheckConstraint(
            "billing_interval IN ('month', 'year')",
            name="ck_credit_balances_interval_valid",
        ),
    )
    op.create_index(
        "ix_credit_balances_period_end", "credit_balances", ["period_end"]
    )


def downgrade() -> None:
    """Drop the credit ledger tables."""
    op.drop_index("ix_credit_balances_period_end", table_name="credit_balances")
    op.drop_table("credit_balances")
    op.drop_index("ix_usage_events_estimated_created", table_name="usage_events")
    op.drop_index("ix_usage_events_user_created", table_name="usage_events")
    op.drop_table("usage_events")
