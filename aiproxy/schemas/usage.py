"""Usage and credit response schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict

# =============================================================================
# Endpoint response schemas
# =============================================================================


class BalanceResponse(BaseModel):
    """Response for GET /api/v1/usage/balance.

    Attributes:
        plan: Subscription plan.
        credits_total: Allowance for the current period (including rollover).
        credits_used: Credits consumed this period.
        credits_remaining: Credits left.
        rollover_credits: Credits carried into this period.
        low_credit_warning: True when below the warning threshold.
        period_start: Start of the current period.
        period_end: When the next reset happens.
    """

    model_config = ConfigDict(extra="forbid")

    plan: str
    credits_total: int
    credits_used: int
    credits_remaining: int
    rollover_credits: int
    low_credit_warning: bool
    period_start: datetime
    period_end: datetime


class UsageEventResponse(BaseModel):
    """Single usage event in GET /api/v1/usage/events.

    Adjustment events carry signed token and credit deltas and reference
    the estimated event they correct.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    event_type: str
    status: str
    model: str
    chat_id: str | None
    message_id: str | None
    input_tokens: int
    output_tokens: int
    total_tokens: int
    total_cost_cents: int
    credits_deducted: int
    adjusts_event_id: str | None
    created_at: datetime
