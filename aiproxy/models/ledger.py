"""Credit ledger ORM models.

UsageEvent rows are never deleted: one per chargeable call, plus at most
one credit_adjustment row per estimated event, linked by
``adjusts_event_id``. The unique constraint on that column is what makes
reconciliation idempotent at the storage layer. An estimated event is
updated in place only to settle it: its ``message_id`` once the stream
ends, then ``status="completed"`` once reconciliation has run.

CreditBalance holds one row per user. ``credits_remaining`` is stored
rather than computed so the decrement can be a single conditional UPDATE;
the check constraints keep it equal to ``credits_total - credits_used`` and
never negative.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from aiproxy.models.base import Base, CreatedAtMixin, TimestampMixin

_DEFAULT_UUID = text("gen_random_uuid()")

EVENT_STATUS_COMPLETED = "completed"
EVENT_STATUS_ESTIMATED = "estimated"


class UsageEvent(Base, CreatedAtMixin):
    """One metered call (or one reconciliation adjustment).

    Attributes:
        id: UUID primary key.
        user_id: Account that was charged.
        event_type: "generation" for calls, "credit_adjustment" for reconciliation.
        chat_id: Caller-side conversation key (project id when none given).
        message_id: Backend generation id, used to fetch the usage report.
        input_tokens: Prompt tokens (signed delta for adjustments).
        output_tokens: Completion tokens (signed delta for adjustments).
        total_tokens: input_tokens + output_tokens.
        input_cost_cents: Rounded-up input cost.
        output_cost_cents: Rounded-up output cost.
        total_cost_cents: input_cost_cents + output_cost_cents.
        credits_deducted: Credits charged (signed for adjustments).
        model: Model that served the call.
        status: "completed" or "estimated".
        adjusts_event_id: Original event an adjustment corrects.
        created_at: Insertion time.
    """

    __tablename__ = "usage_events"
    __table_args__ = (
        UniqueConstraint("adjusts_event_id", name="uq_usage_events_adjusts_event_id"),
        CheckConstraint(
            "status IN ('completed', 'estimated')",
            name="ck_usage_events_status_valid",
        ),
        Index("ix_usage_events_user_created", "user_id", text("created_at DESC")),
        Index(
            "ix_usage_events_estimated_created",
            "created_at",
            postgresql_where=text("status = 'estimated'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    chat_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    input_cost_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    output_cost_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    total_cost_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    credits_deducted: Mapped[int] = mapped_column(Integer, nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=EVENT_STATUS_COMPLETED,
    )
    adjusts_event_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("usage_events.id", ondelete="CASCADE"),
        nullable=True,
    )

class CreditBalance(Base, TimestampMixin):
    """Prepaid credit balance for the current billing period.

    Attributes:
        user_id: Account owner (primary key, one balance per user).
        plan: Plan name keyed into the configured plan allowances.
        credits_total: Allowance for the period, including rollover and purchases.
        credits_used: Credits consumed this period.
        credits_remaining: credits_total - credits_used.
        rollover_credits: Credits carried over from the previous period.
        billing_interval: "month" or "year".
        period_start: Start of the current period.
        period_end: End of the current period.
    """

    __tablename__ = "credit_balances"
    __table_args__ = (
        CheckConstraint(
            "credits_remaining = credits_total - credits_used",
            name="ck_credit_balances_remaining_consistent",
        ),
        CheckConstraint(
            "credits_remaining >= 0",
            name="ck_credit_balances_remaining_nonneg",
        ),
        CheckConstraint(
            "billing_interval IN ('month', 'year')",
            name="ck_credit_balances_interval_valid",
        ),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
    )
    plan: Mapped[str] = mapped_column(String(30), nullable=False)
    credits_total: Mapped[int] = mapped_column(Integer, nullable=False)
    credits_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credits_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    rollover_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    billing_interval: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default="month",
    )
    period_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    period_end: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
