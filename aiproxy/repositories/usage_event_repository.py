"""Repository for usage event operations.

Provides database access for the usage_events table. Rows are never
deleted and a correction is a new row pointing at the original. The only
in-place writes settle an estimate: its message id once the stream ends,
and its status once reconciliation has run.
"""

import uuid
from datetime import datetime

from sqlalchemy import exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from aiproxy.models.ledger import EVENT_STATUS_ESTIMATED, UsageEvent


class UsageEventRepository:
    """Stateless repository for UsageEvent rows.

    All methods are static, with no instance state. Pass an AsyncSession
    for every call so the caller controls transaction boundaries.
    """

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        event_type: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        input_cost_cents: int,
        output_cost_cents: int,
        credits_deducted: int,
        status: str,
        chat_id: str | None = None,
        message_id: str | None = None,
        adjusts_event_id: uuid.UUID | None = None,
    ) -> UsageEvent:
        """Insert a usage event.

        Totals are derived here so callers cannot record inconsistent sums.

        Args:
            db: Async database session.
            user_id: Account that was charged.
            event_type: "generation" or "credit_adjustment".
            model: Model that served the call.
            input_tokens: Prompt tokens (signed for adjustments).
            output_tokens: Completion tokens (signed for adjustments).
            input_cost_cents: Input cost.
            output_cost_cents: Output cost.
            credits_deducted: Credits charged (signed for adjustments).
            status: "completed" or "estimated".
            chat_id: Conversation key.
            message_id: Backend generation id.
            adjusts_event_id: Original event for adjustments.

        Returns:
            Created UsageEvent with database-generated fields.
        """
        event = UsageEvent(
            user_id=user_id,
            event_type=event_type,
            chat_id=chat_id,
            message_id=message_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            input_cost_cents=input_cost_cents,
            output_cost_cents=output_cost_cents,
            total_cost_cents=input_cost_cents + output_cost_cents,
            credits_deducted=credits_deducted,
            model=model,
            status=status,
            adjusts_event_id=adjusts_event_id,
        )
        db.add(event)
        await db.flush()
        await db.refresh(event)
        return event

    @staticmethod
    async def get_by_id(db: AsyncSession, event_id: uuid.UUID) -> UsageEvent | None:
        """Fetch a usage event by primary key.

        Args:
            db: Async database session.
            event_id: Event UUID.

        Returns:
            UsageEvent if found, None otherwise.
        """
        stmt = select(UsageEvent).where(UsageEvent.id == event_id)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_adjustment_for(
        db: AsyncSession,
        event_id: uuid.UUID,
    ) -> UsageEvent | None:
        """Find the adjustment already posted for an event, if any.

        Args:
            db: Async database session.
            event_id: The original (estimated) event.

        Returns:
            The adjustment UsageEvent, or None if none was posted yet.
        """
        stmt = select(UsageEvent).where(UsageEvent.adjusts_event_id == event_id)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def list_by_user(
        db: AsyncSession,
        user_id: uuid.UUID,
        *,
        offset: int = 0,
        limit: int = 50,
        event_type: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> tuple[list[UsageEvent], int]:
        """List usage events for a user with pagination.

        Args:
            db: Async database session.
            user_id: User to query events for.
            offset: Number of records to skip.
            limit: Maximum records to return.
            event_type: Optional filter.
            since: Optional inclusive lower bound on created_at.
            until: Optional exclusive upper bound on created_at.

        Returns:
            Tuple of (events list, total count).
        """
        conditions = [UsageEvent.user_id == user_id]
        if event_type is not None:
            conditions.append(UsageEvent.event_type == event_type)
        if since is not None:
            conditions.append(UsageEvent.created_at >= since)
        if until is not None:
            conditions.append(UsageEvent.created_at < until)

        count_stmt = select(func.count()).select_from(UsageEvent).where(*conditions)
        total_result = await db.execute(count_stmt)
        total = total_result.scalar_one()

        data_stmt = (
            select(UsageEvent)
            .where(*conditions)
            .order_by(UsageEvent.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await db.execute(data_stmt)
        events = list(result.scalars().all())

        return events, total

    @staticmethod
    async def set_message_id(
        db: AsyncSession,
        event_id: uuid.UUID,
        message_id: str,
    ) -> None:
        """Record the backend generation id on an event that has none yet."""
        stmt = (
            update(UsageEvent)
            .where(UsageEvent.id == event_id, UsageEvent.message_id.is_(None))
            .values(message_id=message_id)
        )
        await db.execute(stmt)

    @staticmethod
    async def list_unsettled_estimates(
        db: AsyncSession,
        *,
        created_after: datetime,
        created_before: datetime,
        limit: int = 100,
    ) -> list[UsageEvent]:
        """Estimated events that know their message id but were never settled.

        Args:
            db: Async database session.
            created_after: Oldest creation time worth retrying.
            created_before: Newest creation time (younger jobs are still in flight).
            limit: Maximum rows to return, oldest first.

        Returns:
            Events with status "estimated", a message id and no adjustment.
        """
        adjustment = aliased(UsageEvent)
        already_adjusted = exists().where(adjustment.adjusts_event_id == UsageEvent.id)
        stmt = (
            select(UsageEvent)
            .where(
                UsageEvent.status == EVENT_STATUS_ESTIMATED,
                UsageEvent.message_id.is_not(None),
                UsageEvent.created_at >= created_after,
                UsageEvent.created_at < created_before,
                ~already_adjusted,
            )
            .order_by(UsageEvent.created_at)
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())
