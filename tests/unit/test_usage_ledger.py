"""Tests for UsageLedger: pricing, charging and reconciliation.

Covers:
- Integer pricing with per-direction rounding and the per-event minimum
- Charge pipeline: one event insert plus one conditional decrement
- Reconciliation: noise floor, signed adjustments, idempotency
- Billing period arithmetic and resets
"""

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import IntegrityError

from aiproxy.core.config import Settings
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
from aiproxy.services.usage_ledger import (
    EVENT_TYPE_ADJUSTMENT,
    EVENT_TYPE_GENERATION,
    PricingRates,
    ReconciliationOutcome,
    UsageLedger,
    add_interval,
    compute_charge,
)

# =============================================================================
# Constants
# =============================================================================

_USER_ID = uuid.uuid4()
_RATES = PricingRates()
_MODEL = "openai/gpt-5"


# =============================================================================
# Helpers
# =============================================================================


def _added_objects(mock_db: AsyncMock) -> list:
    """Extract objects added to the mocked DB session."""
    return [c[0][0] for c in mock_db.add.call_args_list]


def _executed_sql(mock_db: AsyncMock) -> list[str]:
    """SQL text of every statement executed on the mocked session."""
    return [str(c[0][0]) for c in mock_db.execute.call_args_list]


def _estimated_event(
    input_tokens: int = 500,
    output_tokens: int = 2000,
) -> UsageEvent:
    return UsageEvent(
        id=uuid.uuid4(),
        user_id=_USER_ID,
        event_type=EVENT_TYPE_GENERATION,
        chat_id="chat-1",
        message_id=None,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        input_cost_cents=1,
        output_cost_cents=2,
        total_cost_cents=3,
        credits_deducted=1,
        model=_MODEL,
        status=EVENT_STATUS_ESTIMATED,
    )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def mock_db() -> AsyncMock:
    """Mocked AsyncSession for unit tests."""
    db = AsyncMock()
    db.add = MagicMock()  # add() is synchronous in SQLAlchemy
    mock_result = MagicMock()
    mock_result.rowcount = 1  # Default: successful deduction
    db.execute.return_value = mock_result
    return db


@pytest.fixture
def ledger(mock_db: AsyncMock) -> UsageLedger:
    return UsageLedger(mock_db, app_settings=Settings())


# =============================================================================
# Pricing
# =============================================================================


class TestComputeCharge:
    """Tests for compute_charge()."""

    def test_one_million_input_tokens(self):
        charge = compute_charge(1_000_000, 0, _RATES)

        assert charge.input_cost_cents == 150
        assert charge.output_cost_cents == 0
        assert charge.credits == 8  # ceil(150 / 20)

    def test_each_direction_rounds_up_separately(self):
        charge = compute_charge(1, 1, _RATES)

        assert charge.input_cost_cents == 1
        assert charge.output_cost_cents == 1
        assert charge.total_cost_cents == 2

    def test_default_stream_estimate_costs_one_credit(self):
        charge = compute_charge(500, 2000, _RATES)

        assert (charge.input_cost_cents, charge.output_cost_cents) == (1, 2)
        assert charge.credits == 1

    def test_zero_usage_still_costs_the_minimum(self):
        assert compute_charge(0, 0, _RATES).credits == 1

    def test_minimum_not_applied_to_non_chargeable(self):
        assert compute_charge(0, 0, _RATES, chargeable=False).credits == 0

    def test_credit_boundary_is_exact(self):
        """200_000 output tokens cost exactly 150 cents; 1 more token costs 151."""
        assert compute_charge(0, 200_000, _RATES).output_cost_cents == 150
        assert compute_charge(0, 200_001, _RATES).output_cost_cents == 151

    def test_rates_from_settings(self):
        rates = PricingRates.from_settings(Settings(cents_per_credit=10))

        assert rates.cents_per_credit == 10
        assert compute_charge(1_000_000, 0, rates).credits == 15


# =============================================================================
# Billing periods
# =============================================================================


class TestAddInterval:
    """Tests for add_interval()."""

    def test_month(self):
        start = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)
        assert add_interval(start, "month") == datetime(2026, 4, 15, 12, 0, tzinfo=UTC)

    def test_month_end_clamps(self):
        start = datetime(2026, 1, 31, tzinfo=UTC)
        assert add_interval(start, "month") == datetime(2026, 2, 28, tzinfo=UTC)

    def test_december_rolls_year(self):
        start = datetime(2026, 12, 10, tzinfo=UTC)
        assert add_interval(start, "month") == datetime(2027, 1, 10, tzinfo=UTC)

    def test_year_from_leap_day(self):
        start = datetime(2028, 2, 29, tzinfo=UTC)
        assert add_interval(start, "year") == datetime(2029, 2, 28, tzinfo=UTC)


# =============================================================================
# Charging
# =============================================================================


class TestChargeUsage:
    """Tests for UsageLedger.charge_usage()."""

    @pytest.mark.asyncio
    async def test_records_event_and_deducts(self, ledger: UsageLedger, mock_db: AsyncMock):
        event = await ledger.charge_usage(
            _USER_ID, EVENT_TYPE_GENERATION, 1_000_000, 0, _MODEL, chat_id="c"
        )

        added = _added_objects(mock_db)
        assert added == [event]
        assert event.credits_deducted == 8
        assert event.total_tokens == 1_000_000
        assert event.total_cost_cents == 150
        assert event.chat_id == "c"
        assert any("credits_remaining >= :amount" in sql for sql in _executed_sql(mock_db))
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_deduction_rolls_back_and_raises(
        self, ledger: UsageLedger, mock_db: AsyncMock
    ):
        mock_db.execute.return_value.rowcount = 0

        with (
            patch.object(
                CreditBalanceRepository, "get", new_callable=AsyncMock, return_value=None
            ),
            pytest.raises(InsufficientCreditsError) as exc_info,
        ):
            await ledger.charge_usage(_USER_ID, EVENT_TYPE_GENERATION, 1_000_000, 0, _MODEL)

        assert exc_info.value.status_code == 402
        assert exc_info.value.details == [{"credits_remaining": 0, "credits_required": 8}]
        mock_db.rollback.assert_awaited_once()
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_zero_credit_adjustment_skips_decrement(
        self, ledger: UsageLedger, mock_db: AsyncMock
    ):
        await ledger.charge_usage(_USER_ID, EVENT_TYPE_ADJUSTMENT, 0, 0, _MODEL)

        assert not any("UPDATE credit_balances" in sql for sql in _executed_sql(mock_db))
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stream_estimate_uses_configured_tokens(self, mock_db: AsyncMock):
        ledger = UsageLedger(
            mock_db,
            app_settings=Settings(
                stream_estimate_input_tokens=1_000_000,
                stream_estimate_output_tokens=0,
            ),
        )

        event = await ledger.charge_stream_estimate(_USER_ID, _MODEL, chat_id="chat")

        assert event.status == EVENT_STATUS_ESTIMATED
        assert event.input_tokens == 1_000_000
        assert event.credits_deducted == 8


# =============================================================================
# Balance
# =============================================================================


class TestBalance:
    """Tests for ensure_balance() and check_balance()."""

    @pytest.mark.asyncio
    async def test_existing_balance_returned(self, ledger: UsageLedger):
        balance = CreditBalance(user_id=_USER_ID, plan="pro", credits_remaining=5)
        with patch.object(
            CreditBalanceRepository, "get", new_callable=AsyncMock, return_value=balance
        ) as get:
            assert await ledger.check_balance(_USER_ID) is balance
        get.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_first_use_provisions_default_plan(self, ledger: UsageLedger):
        balance = CreditBalance(user_id=_USER_ID, plan="free", credits_remaining=15)
        with (
            patch.object(
                CreditBalanceRepository,
                "get",
                new_callable=AsyncMock,
                side_effect=[None, balance],
            ),
            patch.object(
                CreditBalanceRepository, "create_if_missing", new_callable=AsyncMock
            ) as create,
        ):
            assert await ledger.ensure_balance(_USER_ID) is balance

        kwargs = create.await_args.kwargs
        assert kwargs["plan"] == "free"
        assert kwargs["credits_total"] == 15
        assert kwargs["period_end"] == add_interval(kwargs["period_start"], "month")

    @pytest.mark.asyncio
    async def test_empty_balance_rejected(self, ledger: UsageLedger):
        balance = CreditBalance(user_id=_USER_ID, plan="free", credits_remaining=0)
        with (
            patch.object(
                CreditBalanceRepository, "get", new_callable=AsyncMock, return_value=balance
            ),
            pytest.raises(InsufficientCreditsError),
        ):
            await ledger.check_balance(_USER_ID)


# =============================================================================
# Reconciliation
# =============================================================================


class TestReconcile:
    """Tests for UsageLedger.reconcile()."""

    @pytest.fixture
    def original(self) -> UsageEvent:
        return _estimated_event()

    @pytest.fixture
    def lookups(self, original: UsageEvent):
        with (
            patch.object(
                UsageEventRepository, "get_by_id", new_callable=AsyncMock, return_value=original
            ) as get_by_id,
            patch.object(
                UsageEventRepository,
                "get_adjustment_for",
                new_callable=AsyncMock,
                return_value=None,
            ) as get_adjustment,
        ):
            yield get_by_id, get_adjustment

    @pytest.mark.asyncio
    async def test_within_noise_floor_is_skipped(
        self, ledger: UsageLedger, mock_db: AsyncMock, original: UsageEvent, lookups
    ):
        outcome = await ledger.reconcile(original.id, TokenUsage(520, 2030))

        assert outcome is ReconciliationOutcome.SKIPPED
        mock_db.add.assert_not_called()
        assert original.status == EVENT_STATUS_COMPLETED
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_noise_floor_boundary_is_skipped(
        self, ledger: UsageLedger, mock_db: AsyncMock, original: UsageEvent, lookups
    ):
        outcome = await ledger.reconcile(original.id, TokenUsage(600, 2000))

        assert outcome is ReconciliationOutcome.SKIPPED

    @pytest.mark.asyncio
    async def test_adjustment_posted_past_noise_floor(
        self, ledger: UsageLedger, mock_db: AsyncMock, original: UsageEvent, lookups
    ):
        outcome = await ledger.reconcile(
            original.id, TokenUsage(1_000_000, 100_000), message_id="gen-1"
        )

        assert outcome is ReconciliationOutcome.RECONCILED
        (adjustment,) = _added_objects(mock_db)
        assert adjustment.event_type == EVENT_TYPE_ADJUSTMENT
        assert adjustment.adjusts_event_id == original.id
        assert adjustment.input_tokens == 999_500
        assert adjustment.output_tokens == 98_000
        # actual: 150 + 75 cents = 12 credits; estimate: 1 credit
        assert adjustment.credits_deducted == 11
        assert adjustment.message_id == "gen-1"
        assert adjustment.chat_id == "chat-1"
        deduct_params = [
            c[0][1] for c in mock_db.execute.call_args_list if len(c[0]) > 1
        ]
        assert {"amount": 11, "user_id": _USER_ID} in deduct_params
        mock_db.commit.assert_awaited_once()
        assert original.status == EVENT_STATUS_COMPLETED

    @pytest.mark.asyncio
    async def test_small_token_delta_with_no_credit_change(
        self, ledger: UsageLedger, mock_db: AsyncMock, original: UsageEvent, lookups
    ):
        outcome = await ledger.reconcile(original.id, TokenUsage(1_100, 2_000))

        assert outcome is ReconciliationOutcome.RECONCILED
        (adjustment,) = _added_objects(mock_db)
        assert adjustment.input_tokens == 600
        assert adjustment.credits_deducted == 0
        assert not any("UPDATE credit_balances" in sql for sql in _executed_sql(mock_db))

    @pytest.mark.asyncio
    async def test_overestimate_is_recorded_without_refund(
        self, ledger: UsageLedger, mock_db: AsyncMock, lookups
    ):
        original = _estimated_event(input_tokens=1_000_000, output_tokens=0)
        lookups[0].return_value = original

        outcome = await ledger.reconcile(original.id, TokenUsage(0, 0))

        assert outcome is ReconciliationOutcome.RECONCILED
        (adjustment,) = _added_objects(mock_db)
        assert adjustment.credits_deducted == -7
        assert not any("UPDATE credit_balances" in sql for sql in _executed_sql(mock_db))

    @pytest.mark.asyncio
    async def test_uncovered_adjustment_still_recorded(
        self, ledger: UsageLedger, mock_db: AsyncMock, original: UsageEvent, lookups
    ):
        mock_db.execute.return_value.rowcount = 0

        outcome = await ledger.reconcile(original.id, TokenUsage(1_000_000, 100_000))

        assert outcome is ReconciliationOutcome.RECONCILED
        assert len(_added_objects(mock_db)) == 1
        adjustment = _added_objects(mock_db)[0]
        assert adjustment.credits_deducted == 0
        assert adjustment.total_cost_cents > 0
        mock_db.rollback.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_second_call_is_a_no_op(
        self, ledger: UsageLedger, mock_db: AsyncMock, original: UsageEvent, lookups
    ):
        lookups[1].return_value = _estimated_event()

        outcome = await ledger.reconcile(original.id, TokenUsage(1_000_000, 100_000))

        assert outcome is ReconciliationOutcome.ALREADY_APPLIED
        mock_db.add.assert_not_called()
        mock_db.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_caught_by_constraint(
        self, ledger: UsageLedger, mock_db: AsyncMock, original: UsageEvent, lookups
    ):
        mock_db.flush.side_effect = IntegrityError("INSERT", {}, Exception("duplicate"))

        outcome = await ledger.reconcile(original.id, TokenUsage(1_000_000, 100_000))

        assert outcome is ReconciliationOutcome.ALREADY_APPLIED
        mock_db.rollback.assert_awaited_once()
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_event(self, ledger: UsageLedger, lookups):
        lookups[0].return_value = None

        outcome = await ledger.reconcile(uuid.uuid4(), TokenUsage(1, 1))

        assert outcome is ReconciliationOutcome.ORIGINAL_MISSING


# =============================================================================
# Period resets and purchases
# =============================================================================


class TestResetPeriod:
    """Tests for reset_period() and reset_expired_periods()."""

    @pytest.mark.asyncio
    async def test_rollover_plan_carries_remaining(self, ledger: UsageLedger):
        balance = CreditBalance(
            user_id=_USER_ID, plan="pro", credits_remaining=30, billing_interval="month"
        )
        now = datetime(2026, 5, 1, tzinfo=UTC)
        with patch.object(
            CreditBalanceRepository, "start_period", new_callable=AsyncMock
        ) as start_period:
            await ledger.reset_period(balance, now)

        kwargs = start_period.await_args.kwargs
        assert kwargs["credits_total"] == 130
        assert kwargs["rollover_credits"] == 30
        assert kwargs["period_end"] == datetime(2026, 6, 1, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_free_plan_does_not_roll_over(self, ledger: UsageLedger):
        balance = CreditBalance(
            user_id=_USER_ID, plan="free", credits_remaining=4, billing_interval="year"
        )
        now = datetime(2026, 5, 1, tzinfo=UTC)
        with patch.object(
            CreditBalanceRepository, "start_period", new_callable=AsyncMock
        ) as start_period:
            await ledger.reset_period(balance, now)

        kwargs = start_period.await_args.kwargs
        assert kwargs["credits_total"] == 15
        assert kwargs["rollover_credits"] == 0
        assert kwargs["period_end"] == datetime(2027, 5, 1, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_expired_periods_processed_in_batches(
        self, ledger: UsageLedger, mock_db: AsyncMock
    ):
        batch = [
            CreditBalance(
                user_id=uuid.uuid4(), plan="free", credits_remaining=0, billing_interval="month"
            )
            for _ in range(2)
        ]
        with (
            patch.object(
                CreditBalanceRepository,
                "list_due_for_reset",
                new_callable=AsyncMock,
                side_effect=[batch, []],
            ),
            patch.object(CreditBalanceRepository, "start_period", new_callable=AsyncMock),
        ):
            count = await ledger.reset_expired_periods(datetime(2026, 5, 1, tzinfo=UTC))

        assert count == 2
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_add_credits_returns_new_remaining(self, ledger: UsageLedger):
        balance = CreditBalance(user_id=_USER_ID, plan="free", credits_remaining=3)
        with (
            patch.object(
                CreditBalanceRepository, "get", new_callable=AsyncMock, return_value=balance
            ),
            patch.object(
                CreditBalanceRepository, "atomic_add", new_callable=AsyncMock, return_value=53
            ) as atomic_add,
        ):
            remaining = await ledger.add_credits(_USER_ID, 50, "purchase")

        assert remaining == 53
        assert atomic_add.await_args.kwargs["rollover"] is False

    @pytest.mark.asyncio
    async def test_rollover_credits_are_counted(self, ledger: UsageLedger):
        balance = CreditBalance(user_id=_USER_ID, plan="pro", credits_remaining=3)
        with (
            patch.object(
                CreditBalanceRepository, "get", new_callable=AsyncMock, return_value=balance
            ),
            patch.object(
                CreditBalanceRepository, "atomic_add", new_callable=AsyncMock, return_value=23
            ) as atomic_add,
        ):
            await ledger.add_credits(_USER_ID, 20, "rollover")

        assert atomic_add.await_args.kwargs == {
            "user_id": _USER_ID,
            "amount": 20,
            "rollover": True,
        }

    @pytest.mark.asyncio
    async def test_unknown_reason_rejected(self, ledger: UsageLedger, mock_db: AsyncMock):
        with pytest.raises(ValueError, match="gift"):
            await ledger.add_credits(_USER_ID, 5, "gift")

        mock_db.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_atomic_add_bumps_rollover_column(self, mock_db: AsyncMock):
        mock_db.execute.return_value.scalar_one.return_value = 40

        remaining = await CreditBalanceRepository.atomic_add(
            mock_db, user_id=_USER_ID, amount=15, rollover=True
        )

        assert remaining == 40
        sql, params = mock_db.execute.call_args[0]
        assert "rollover_credits = rollover_credits + :rollover" in str(sql)
        assert params == {"amount": 15, "rollover": 15, "user_id": _USER_ID}


# =============================================================================
# Settling estimates
# =============================================================================


class TestSettlement:
    """Message id recording and the unsettled-estimate lookup."""

    @pytest.mark.asyncio
    async def test_message_id_recorded_and_committed(
        self, ledger: UsageLedger, mock_db: AsyncMock
    ):
        event_id = uuid.uuid4()

        await ledger.record_stream_message_id(event_id, "gen-9")

        (statement,) = [c[0][0] for c in mock_db.execute.call_args_list]
        compiled = statement.compile()
        assert str(statement).startswith("UPDATE usage_events")
        assert "message_id IS NULL" in str(statement)
        assert compiled.params["message_id"] == "gen-9"
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unsettled_estimates_query(self, ledger: UsageLedger, mock_db: AsyncMock):
        stale = _estimated_event()
        mock_db.execute.return_value.scalars.return_value.all.return_value = [stale]
        now = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

        events = await ledger.unsettled_estimates(
            created_after=now.replace(hour=11), created_before=now, limit=10
        )

        assert events == [stale]
        sql = _executed_sql(mock_db)[0]
        assert "usage_events.status =" in sql
        assert "usage_events.message_id IS NOT NULL" in sql
        assert "NOT (EXISTS (SELECT" in sql.replace("\n", " ")
        assert "ORDER BY usage_events.created_at" in sql
