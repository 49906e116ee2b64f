"""Usage ledger: credit pricing, charging and reconciliation.

Every chargeable call becomes one UsageEvent and one credit deduction.
Costs are whole cents, rounded up per direction, and credits are whole
units of CENTS_PER_CREDIT cents, rounded up, with a per-event minimum:

    input_cost_cents  = ceil(input_tokens  * PRICE_IN  / 1_000_000)
    output_cost_cents = ceil(output_tokens * PRICE_OUT / 1_000_000)
    credits           = max(ceil(total_cost_cents / CENTS_PER_CREDIT), MIN_CREDITS)

Streaming calls are charged a fixed estimate before the first byte goes
out, then reconciled against the authoritative usage report:

    Requested -> EstimateCharged -> ReportPending -> Reconciled | ReconciliationSkipped

Reconciliation posts a ``credit_adjustment`` event that references the
estimated event. At most one adjustment exists per estimated event: the
ledger checks before posting, and a unique constraint catches the race
between two concurrent attempts. Adjustments only ever deduct; a negative
delta is recorded but never refunded.

WHY INSERT AND DEDUCT IN ONE TRANSACTION:
The deduction is a conditional UPDATE (remaining >= amount). If it fails
the event insert is rolled back too, so no event exists for credits that
were never taken.
"""

import calendar
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from aiproxy.core.config import Settings, settings
from aiproxy.core.errors import InsufficientCreditsError
from aiproxy.models.ledger import (
    EVENT_STATUS_COMPLETED,
    EVENT_STATUS_ESTIMATED,
    CreditBalance,
    UsageEvent,
)
from aiproxy.providers.base import TokenUsage
from aiproxy.repositories.credit_balance_repository import CreditBalanceRepository
from aiproxy.repositories.usage_event_repository import UsageEventRepository

logger = logging.getLogger(__name__)

EVENT_TYPE_GENERATION = "generation"
EVENT_TYPE_ADJUSTMENT = "credit_adjustment"

CREDIT_REASON_PURCHASE = "purchase"
CREDIT_REASON_ROLLOVER = "rollover"
CREDIT_REASON_BONUS = "bonus"
_CREDIT_REASONS = frozenset(
    {CREDIT_REASON_PURCHASE, CREDIT_REASON_ROLLOVER, CREDIT_REASON_BONUS}
)

_TOKENS_PER_PRICE_UNIT = 1_000_000


@dataclass(frozen=True)
class PricingRates:
    """Fixed pricing constants.

    Attributes:
        price_in_cents_per_million: Input price per million tokens.
        price_out_cents_per_million: Output price per million tokens.
        cents_per_credit: Cents in one credit.
        min_credits_per_event: Floor for chargeable events.
    """

    price_in_cents_per_million: int = 150
    price_out_cents_per_million: int = 750
    cents_per_credit: int = 20
    min_credits_per_event: int = 1

    @classmethod
    def from_settings(cls, app_settings: Settings | None = None) -> "PricingRates":
        source = app_settings or settings
        return cls(
            price_in_cents_per_million=source.price_in_cents_per_million,
            price_out_cents_per_million=source.price_out_cents_per_million,
            cents_per_credit=source.cents_per_credit,
            min_credits_per_event=source.min_credits_per_event,
        )


@dataclass(frozen=True)
class ChargeBreakdown:
    """Cost of one call in cents and credits."""

    input_cost_cents: int
    output_cost_cents: int
    credits: int

    @property
    def total_cost_cents(self) -> int:
        return self.input_cost_cents + self.output_cost_cents


class ReconciliationOutcome(Enum):
    """Result of one reconciliation attempt."""

    RECONCILED = "reconciled"
    SKIPPED = "skipped"
    ALREADY_APPLIED = "already_applied"
    ORIGINAL_MISSING = "original_missing"
    REPORT_UNAVAILABLE = "report_unavailable"


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def compute_charge(
    input_tokens: int,
    output_tokens: int,
    rates: PricingRates,
    *,
    chargeable: bool = True,
) -> ChargeBreakdown:
    """Price a call.

    Integer arithmetic throughout, so there is no float rounding at the
    ceiling boundaries.

    Args:
        input_tokens: Prompt tokens.
        output_tokens: Completion tokens.
        rates: Pricing constants.
        chargeable: Apply the per-event credit minimum.

    Returns:
        ChargeBreakdown in cents and credits.
    """
    input_cost = _ceil_div(input_tokens * rates.price_in_cents_per_million, _TOKENS_PER_PRICE_UNIT)
    output_cost = _ceil_div(
        output_tokens * rates.price_out_cents_per_million, _TOKENS_PER_PRICE_UNIT
    )
    credits = _ceil_div(input_cost + output_cost, rates.cents_per_credit)
    if chargeable:
        credits = max(credits, rates.min_credits_per_event)
    return ChargeBreakdown(
        input_cost_cents=input_cost,
        output_cost_cents=output_cost,
        credits=credits,
    )


def add_interval(start: datetime, interval: str) -> datetime:
    """Advance a datetime by one billing interval.

    Month ends clamp (Jan 31 + 1 month = Feb 28/29).

    Args:
        start: Period start.
        interval: "month" or "year".

    Returns:
        Period end.
    """
    months = 12 if interval == "year" else 1
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


class UsageLedger:
    """Charges, reconciles and provisions prepaid credits.

    Args:
        db: Async database session. The ledger commits its own writes so a
            charge is durable before the response it pays for is sent.
        rates: Pricing constants (defaults to settings).
        app_settings: Settings for plans, estimates and thresholds.
    """

    def __init__(
        self,
        db: AsyncSession,
        rates: PricingRates | None = None,
        app_settings: Settings | None = None,
    ) -> None:
        self._db = db
        self._settings = app_settings or settings
        self._rates = rates or PricingRates.from_settings(self._settings)

    @property
    def rates(self) -> PricingRates:
        return self._rates

    # -------------------------------------------------------------------------
    # Balance
    # -------------------------------------------------------------------------

    async def ensure_balance(self, user_id: uuid.UUID) -> CreditBalance:
        """Return the user's balance, provisioning the default plan on first use.

        Args:
            user_id: Account owner.

        Returns:
            The user's CreditBalance.
        """
        balance = await CreditBalanceRepository.get(self._db, user_id)
        if balance is not None:
            return balance

        now = datetime.now(UTC)
        plan = self._settings.default_plan
        await CreditBalanceRepository.create_if_missing(
            self._db,
            user_id=user_id,
            plan=plan,
            credits_total=self._settings.plan_credits[plan],
            period_start=now,
            period_end=add_interval(now, "month"),
        )
        await self._db.flush()
        logger.info("Provisioned %s plan balance for user %s", plan, user_id)
        balance = await CreditBalanceRepository.get(self._db, user_id)
        if balance is None:
            raise RuntimeError(f"Balance for user {user_id} missing after provisioning")
        return balance

    async def check_balance(self, user_id: uuid.UUID) -> CreditBalance:
        """Pre-flight check before any backend call.

        Args:
            user_id: Account owner.

        Returns:
            The user's CreditBalance.

        Raises:
            InsufficientCreditsError: No credits remain.
        """
        balance = await self.ensure_balance(user_id)
        if balance.credits_remaining <= 0:
            raise InsufficientCreditsError(credits_remaining=0)
        return balance

    async def get_remaining(self, user_id: uuid.UUID) -> int:
        """Current credits_remaining (0 when the user has no balance row)."""
        balance = await CreditBalanceRepository.get(self._db, user_id)
        return balance.credits_remaining if balance is not None else 0

    # -------------------------------------------------------------------------
    # Charging
    # -------------------------------------------------------------------------

    async def charge_usage(
        self,
        user_id: uuid.UUID,
        event_type: str,
        input_tokens: int,
        output_tokens: int,
        model: str,
        *,
        chat_id: str | None = None,
        message_id: str | None = None,
        status: str = EVENT_STATUS_COMPLETED,
    ) -> UsageEvent:
        """Record a usage event and deduct its credits.

        Args:
            user_id: Account to charge.
            event_type: Event type (adjustments are not subject to the minimum).
            input_tokens: Prompt tokens.
            output_tokens: Completion tokens.
            model: Model that served the call.
            chat_id: Conversation key.
            message_id: Backend generation id.
            status: "completed" or "estimated".

        Returns:
            The persisted UsageEvent.

        Raises:
            InsufficientCreditsError: The conditional decrement matched no row.
        """
        breakdown = compute_charge(
            input_tokens,
            output_tokens,
            self._rates,
            chargeable=event_type != EVENT_TYPE_ADJUSTMENT,
        )
        event = await UsageEventRepository.create(
            self._db,
            user_id=user_id,
            event_type=event_type,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            input_cost_cents=breakdown.input_cost_cents,
            output_cost_cents=breakdown.output_cost_cents,
            credits_deducted=breakdown.credits,
            status=status,
            chat_id=chat_id,
            message_id=message_id,
        )

        if breakdown.credits > 0:
            deducted = await CreditBalanceRepository.atomic_deduct(
                self._db, user_id=user_id, amount=breakdown.credits
            )
            if not deducted:
                await self._db.rollback()
                remaining = await self.get_remaining(user_id)
                logger.warning(
                    "Insufficient credits for user %s (needed %d, remaining %d)",
                    user_id,
                    breakdown.credits,
                    remaining,
                )
                raise InsufficientCreditsError(
                    credits_remaining=remaining,
                    credits_required=breakdown.credits,
                )

        await self._db.commit()
        logger.info(
            "Charged user %s %d credits (%s, %s, %d+%d tokens)",
            user_id,
            breakdown.credits,
            event_type,
            model,
            input_tokens,
            output_tokens,
        )
        return event

    async def charge_stream_estimate(
        self,
        user_id: uuid.UUID,
        model: str,
        *,
        chat_id: str | None = None,
    ) -> UsageEvent:
        """Charge the fixed streaming estimate.

        Args:
            user_id: Account to charge.
            model: Model serving the stream.
            chat_id: Conversation key.

        Returns:
            The persisted estimated UsageEvent.

        Raises:
            InsufficientCreditsError: The estimate cannot be covered.
        """
        return await self.charge_usage(
            user_id,
            EVENT_TYPE_GENERATION,
            self._settings.stream_estimate_input_tokens,
            self._settings.stream_estimate_output_tokens,
            model,
            chat_id=chat_id,
            status=EVENT_STATUS_ESTIMATED,
        )

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    async def reconcile(
        self,
        original_event_id: uuid.UUID,
        actual: TokenUsage,
        *,
        message_id: str | None = None,
    ) -> ReconciliationOutcome:
        """Correct an estimated charge with the actual usage.

        Safe to call more than once for the same event. An applied adjustment
        or a delta within the noise floor settles the original, flipping its
        status to "completed" so recovery sweeps skip it.

        Args:
            original_event_id: The estimated UsageEvent.
            actual: Token usage from the authoritative report.
            message_id: Backend generation id, recorded on the adjustment.

        Returns:
            What happened (see ReconciliationOutcome).
        """
        original = await UsageEventRepository.get_by_id(self._db, original_event_id)
        if original is None:
            logger.warning("Cannot reconcile unknown usage event %s", original_event_id)
            return ReconciliationOutcome.ORIGINAL_MISSING

        existing = await UsageEventRepository.get_adjustment_for(self._db, original.id)
        if existing is not None:
            logger.info("Usage event %s already reconciled by %s", original.id, existing.id)
            return ReconciliationOutcome.ALREADY_APPLIED

        delta_tokens = actual.total_tokens - original.total_tokens
        if abs(delta_tokens) <= self._settings.reconciliation_noise_floor_tokens:
            logger.info(
                "Usage event %s within noise floor (delta %d tokens), no adjustment",
                original.id,
                delta_tokens,
            )
            original.status = EVENT_STATUS_COMPLETED
            await self._db.commit()
            return ReconciliationOutcome.SKIPPED

        actual_charge = compute_charge(actual.input_tokens, actual.output_tokens, self._rates)
        estimate_charge = compute_charge(
            original.input_tokens, original.output_tokens, self._rates
        )
        credit_delta = actual_charge.credits - estimate_charge.credits

        # Negative deltas are recorded but never refunded. A positive delta the
        # balance cannot cover is recorded with nothing deducted.
        credits_deducted = credit_delta
        if credit_delta > 0:
            deducted = await CreditBalanceRepository.atomic_deduct(
                self._db, user_id=original.user_id, amount=credit_delta
            )
            if not deducted:
                credits_deducted = 0
                logger.warning(
                    "Adjustment of %d credits for event %s exceeds the remaining balance "
                    "of user %s; recorded without deduction",
                    credit_delta,
                    original.id,
                    original.user_id,
                )

        try:
            adjustment = await UsageEventRepository.create(
                self._db,
                user_id=original.user_id,
                event_type=EVENT_TYPE_ADJUSTMENT,
                model=original.model,
                input_tokens=actual.input_tokens - original.input_tokens,
                output_tokens=actual.output_tokens - original.output_tokens,
                input_cost_cents=actual_charge.input_cost_cents
                - estimate_charge.input_cost_cents,
                output_cost_cents=actual_charge.output_cost_cents
                - estimate_charge.output_cost_cents,
                credits_deducted=credits_deducted,
                status=EVENT_STATUS_COMPLETED,
                chat_id=original.chat_id,
                message_id=message_id or original.message_id,
                adjusts_event_id=original.id,
            )
        except IntegrityError:
            await self._db.rollback()
            logger.info("Concurrent reconciliation already posted for event %s", original.id)
            return ReconciliationOutcome.ALREADY_APPLIED

        original.status = EVENT_STATUS_COMPLETED
        await self._db.commit()
        logger.info(
            "Reconciled usage event %s: delta %d tokens, %d credits (adjustment %s)",
            original.id,
            delta_tokens,
            credit_delta,
            adjustment.id,
        )
        return ReconciliationOutcome.RECONCILED

    async def record_stream_message_id(self, event_id: uuid.UUID, message_id: str) -> None:
        """Attach the backend generation id to an estimated event.

        Written as soon as the stream completes, so a job lost to a restart
        can still be found and replayed.
        """
        await UsageEventRepository.set_message_id(self._db, event_id, message_id)
        await self._db.commit()

    async def unsettled_estimates(
        self,
        *,
        created_after: datetime,
        created_before: datetime,
        limit: int = 100,
    ) -> list[UsageEvent]:
        """Estimated events still waiting for reconciliation."""
        return await UsageEventRepository.list_unsettled_estimates(
            self._db,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
        )

    # -------------------------------------------------------------------------
    # Purchases, resets and history
    # -------------------------------------------------------------------------

    async def add_credits(self, user_id: uuid.UUID, amount: int, reason: str) -> int:
        """Add credits to the current period (purchase, rollover or bonus).

        Args:
            user_id: Account owner.
            amount: Credits to add (positive).
            reason: "purchase", "rollover" or "bonus". Rollover credits are
                also counted in ``rollover_credits``.

        Returns:
            credits_remaining after the addition.

        Raises:
            ValueError: Unknown reason.
        """
        if reason not in _CREDIT_REASONS:
            raise ValueError(f"Unknown credit reason: {reason}")
        await self.ensure_balance(user_id)
        remaining = await CreditBalanceRepository.atomic_add(
            self._db,
            user_id=user_id,
            amount=amount,
            rollover=reason == CREDIT_REASON_ROLLOVER,
        )
        await self._db.commit()
        logger.info("Added %d credits to user %s (%s)", amount, user_id, reason)
        return remaining

    async def reset_period(self, balance: CreditBalance, now: datetime) -> None:
        """Start a new billing period for one balance.

        Plans listed in ``rollover_plans`` carry unused credits forward.

        Args:
            balance: The balance whose period ended.
            now: Reference time; the new period starts here.
        """
        allowance = self._settings.plan_credits.get(balance.plan, 0)
        rollover = (
            balance.credits_remaining if balance.plan in self._settings.rollover_plans else 0
        )
        await CreditBalanceRepository.start_period(
            self._db,
            user_id=balance.user_id,
            credits_total=allowance + rollover,
            rollover_credits=rollover,
            period_start=now,
            period_end=add_interval(now, balance.billing_interval),
        )
        logger.info(
            "Reset %s balance for user %s: %d credits (%d rolled over)",
            balance.plan,
            balance.user_id,
            allowance + rollover,
            rollover,
        )

    async def reset_expired_periods(self, now: datetime | None = None) -> int:
        """Reset every balance whose period has ended.

        Args:
            now: Reference time (defaults to the current UTC time).

        Returns:
            Number of balances reset.
        """
        now = now or datetime.now(UTC)
        reset_count = 0
        while True:
            due = await CreditBalanceRepository.list_due_for_reset(self._db, now)
            if not due:
                break
            for balance in due:
                await self.reset_period(balance, now)
                reset_count += 1
            await self._db.commit()
        return reset_count

    async def history(
        self,
        user_id: uuid.UUID,
        *,
        page: int = 1,
        per_page: int = 50,
        event_type: str | None = None,
        since: datetime | None = None,
    ) -> tuple[list[UsageEvent], int]:
        """Paginated usage events, newest first."""
        return await UsageEventRepository.list_by_user(
            self._db,
            user_id,
            offset=(page - 1) * per_page,
            limit=per_page,
            event_type=event_type,
            since=since,
        )

