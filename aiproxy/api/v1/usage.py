"""Usage API router.

Balance and usage history for the signed-in user. Both endpoints require
authentication.
"""

from typing import Annotated

from fastapi import APIRouter, Depends

from aiproxy.api.deps import CurrentUserId, Ledger
from aiproxy.core.config import settings
from aiproxy.core.pagination import PaginationParams, pagination_params
from aiproxy.core.responses import DataResponse, ListResponse
from aiproxy.schemas.usage import BalanceResponse, UsageEventResponse

router = APIRouter()

Pagination = Annotated[PaginationParams, Depends(pagination_params)]


# =============================================================================
# GET /balance
# =============================================================================


@router.get("/balance")
async def get_balance(
    user_id: CurrentUserId,
    ledger: Ledger,
) -> DataResponse[BalanceResponse]:
    """Return the user's credit balance, provisioning it on first use."""
    balance = await ledger.ensure_balance(user_id)
    return DataResponse(
        data=BalanceResponse(
            plan=balance.plan,
            credits_total=balance.credits_total,
            credits_used=balance.credits_used,
            credits_remaining=balance.credits_remaining,
            rollover_credits=balance.rollover_credits,
            low_credit_warning=balance.credits_remaining < settings.low_credit_threshold,
            period_start=balance.period_start,
            period_end=balance.period_end,
        )
    )


# =============================================================================
# GET /events
# =============================================================================


@router.get("/events")
async def list_usage_events(
    user_id: CurrentUserId,
    ledger: Ledger,
    pagination: Pagination,
) -> ListResponse[UsageEventResponse]:
    """Return paginated usage events, newest first.

    Accepts optional ``event_type`` and ``since`` filters.
    """
    events, total = await ledger.history(user_id, **pagination.filters())
    return ListResponse(
        data=[
            UsageEventResponse(
                id=str(event.id),
                event_type=event.event_type,
                status=event.status,
                model=event.model,
                chat_id=event.chat_id,
                message_id=event.message_id,
                input_tokens=event.input_tokens,
                output_tokens=event.output_tokens,
                total_tokens=event.total_tokens,
                total_cost_cents=event.total_cost_cents,
                credits_deducted=event.credits_deducted,
                adjusts_event_id=str(event.adjusts_event_id) if event.adjusts_event_id else None,
                created_at=event.created_at,
            )
            for event in events
        ],
        meta=pagination.meta(total),
    )
