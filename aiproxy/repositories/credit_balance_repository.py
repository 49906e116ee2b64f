"""Repository for credit balance operations.

Provides database access for the credit_balances table. Every mutation of
``credits_remaining`` is a single UPDATE statement so the check and the
write can never be split across round-trips.
"""

import uuid
from datetime import datetime
from typing import Any, cast

from sqlalchemy import select, text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession

from aiproxy.models.ledger import CreditBalance


class CreditBalanceRepository:
    """Stateless repository for CreditBalance rows.

    All methods are static, with no instance state. Pass an AsyncSession
    for every call so the caller controls transaction boundaries.
    """

    @staticmethod
    async def get(db: AsyncSession, user_id: uuid.UUID) -> CreditBalance | None:
        """Read a user's balance row.

        Args:
            db: Async database session.
            user_id: Account owner.

        Returns:
            CreditBalance if one exists, None otherwise.
        """
        stmt = select(CreditBalance).where(CreditBalance.user_id == user_id)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def create_if_missing(
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        plan: str,
        credits_total: int,
        period_start: datetime,
        period_end: datetime,
        billing_interval: str = "month",
    ) -> None:
        """Insert a balance row unless the user already has one.

        Uses ON CONFLICT DO NOTHING so two first requests from the same
        user cannot both provision a balance.

        Args:
            db: Async database session.
            user_id: Account owner.
            plan: Plan name.
            credits_total: Allowance for the first period.
            period_start: Start of the first period.
            period_end: End of the first period.
            billing_interval: "month" or "year".
        """
        stmt = (
            insert(CreditBalance)
            .values(
                user_id=user_id,
                plan=plan,
                credits_total=credits_total,
                credits_used=0,
                credits_remaining=credits_total,
                rollover_credits=0,
                billing_interval=billing_interval,
                period_start=period_start,
                period_end=period_end,
            )
            .on_conflict_do_nothing(index_elements=[CreditBalance.user_id])
        )
        await db.execute(stmt)

    @staticmethod
    async def atomic_deduct(
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        amount: int,
    ) -> bool:
        """Atomically deduct credits.

        Uses WHERE credits_remaining >= amount to prevent overdraft.

        Args:
            db: Async database session.
            user_id: User to charge.
            amount: Credits to deduct (positive value).

        Returns:
            True if the deduction succeeded, False if the balance was too low
            (or the user has no balance row).

        Raises:
            ValueError: If amount is not positive.
        """
        if amount <= 0:
            raise ValueError("atomic_deduct amount must be positive")
        result = cast(
            CursorResult[Any],
            await db.execute(
                text(
                    "UPDATE credit_balances "
                    "SET credits_used = credits_used + :amount, "
                    "credits_remaining = credits_remaining - :amount, "
                    "updated_at = now() "
                    "WHERE user_id = :user_id AND credits_remaining >= :amount"
                ),
                {"amount": amount, "user_id": user_id},
            ),
        )
        rows_updated: int = result.rowcount
        return rows_updated > 0

    @staticmethod
    async def atomic_add(
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        amount: int,
        rollover: bool = False,
    ) -> int:
        """Atomically add credits to the current period.

        Args:
            db: Async database session.
            user_id: User to credit.
            amount: Credits to add (positive value).
            rollover: Also count the amount in rollover_credits.

        Returns:
            credits_remaining after the addition.

        Raises:
            ValueError: If amount is not positive.
        """
        if amount <= 0:
            raise ValueError("atomic_add amount must be positive")
        result = await db.execute(
            text(
                "UPDATE credit_balances "
                "SET credits_total = credits_total + :amount, "
                "credits_remaining = credits_remaining + :amount, "
                "rollover_credits = rollover_credits + :rollover, "
                "updated_at = now() "
                "WHERE user_id = :user_id RETURNING credits_remaining"
            ),
            {"amount": amount, "rollover": amount if rollover else 0, "user_id": user_id},
        )
        remaining: int = result.scalar_one()
        return remaining

    @staticmethod
    async def list_due_for_reset(
        db: AsyncSession,
        now: datetime,
        *,
        limit: int = 500,
    ) -> list[CreditBalance]:
        """List balances whose period has ended.

        Args:
            db: Async database session.
            now: Reference time.
            limit: Maximum rows to return per batch.

        Returns:
            Balances with period_end <= now, oldest first.
        """
        stmt = (
            select(CreditBalance)
            .where(CreditBalance.period_end <= now)
            .order_by(CreditBalance.period_end)
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def start_period(
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        credits_total: int,
        rollover_credits: int,
        period_start: datetime,
        period_end: datetime,
    ) -> None:
        """Replace the balance with a fresh period.

        Args:
            db: Async database session.
            user_id: Account owner.
            credits_total: New allowance including rollover.
            rollover_credits: Part of credits_total carried over.
            period_start: Start of the new period.
            period_end: End of the new period.
        """
        await db.execute(
            text(
                "UPDATE credit_balances "
                "SET credits_total = :credits_total, credits_used = 0, "
                "credits_remaining = :credits_total, "
                "rollover_credits = :rollover_credits, "
                "period_start = :period_start, period_end = :period_end, "
                "updated_at = now() "
                "WHERE user_id = :user_id"
            ),
            {
                "user_id": user_id,
                "credits_total": credits_total,
                "rollover_credits": rollover_credits,
                "period_start": period_start,
                "period_end": period_end,
            },
        )
