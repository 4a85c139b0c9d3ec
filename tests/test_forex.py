"""
Ledgerline - Forex Adjustment Tests

Realized gain/loss on settlement of foreign currency items.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from ledgerline.models.accounting import EntrySide, TransactionType
from ledgerline.services.forex_service import ForexAdjustmentCalculator, ForexExposure
from ledgerline.utils.error_handling import ValidationException


@pytest.fixture
def calculator(db_session):
    return ForexAdjustmentCalculator(db_session)


@pytest.fixture
def rates():
    """Calculator for pure arithmetic; never touches the session."""
    return ForexAdjustmentCalculator(None)


class TestCalculation:
    """Amount and sign of the adjustment."""

    def test_receivable_gain_when_rate_rises(self, rates):
        """1,000 USD booked at 82.50 and received at 83.10 is a 600 gain."""
        result = rates.calculate(
            Decimal("1000"), Decimal("82.50"), Decimal("83.10"), ForexExposure.RECEIVABLE
        )

        assert result.amount == Decimal("600.00")
        assert result.is_gain

    def test_receivable_loss_when_rate_falls(self, rates):
        """Receiving fewer rupees than booked is a loss."""
        result = rates.calculate(
            Decimal("1000"), Decimal("82.50"), Decimal("82.00"), ForexExposure.RECEIVABLE
        )

        assert result.amount == Decimal("-500.00")
        assert not result.is_gain

    def test_payable_loss_when_rate_rises(self, rates):
        """Paying a foreign bill after the rupee weakens costs more."""
        result = rates.calculate(
            Decimal("1000"), Decimal("82.50"), Decimal("83.10"), ForexExposure.PAYABLE
        )

        assert result.amount == Decimal("-600.00")

    def test_rounded_once_half_up(self, rates):
        """A half paisa result rounds up, not to even."""
        result = rates.calculate(
            Decimal("1"), Decimal("1.000"), Decimal("1.005"), ForexExposure.RECEIVABLE
        )

        assert result.amount == Decimal("0.01")

    def test_equal_rates_give_zero(self, rates):
        """No rate movement, no adjustment."""
        result = rates.calculate(
            Decimal("250"), Decimal("83.00"), Decimal("83.00"), ForexExposure.PAYABLE
        )

        assert result.is_zero

    def test_non_positive_inputs_are_rejected(self, rates):
        """Rates and amounts must be positive."""
        with pytest.raises(ValidationException):
            rates.calculate(Decimal("0"), Decimal("82.50"), Decimal("83.10"), ForexExposure.RECEIVABLE)
        with pytest.raises(ValidationException):
            rates.calculate(Decimal("10"), Decimal("-1"), Decimal("83.10"), ForexExposure.RECEIVABLE)


class TestPosting:
    """Adjustments post as FOREX_ADJUSTMENT transactions."""

    @pytest.mark.asyncio
    async def test_gain_posts_to_gain_account(self, calculator, accounts, periods):
        """Dr settlement account, Cr realized forex gain."""
        source_id = uuid4()

        transaction = await calculator.post_adjustment(
            source_transaction_id=source_id,
            foreign_amount=Decimal("1000"),
            booking_rate=Decimal("82.50"),
            settlement_rate=Decimal("83.10"),
            settlement_account_id=accounts["1100"],
            settlement_date=date(2026, 2, 10),
            foreign_currency="usd",
        )

        assert transaction.transaction_type == TransactionType.FOREX_ADJUSTMENT
        assert transaction.entry_number.startswith("FX-2026-02-")
        assert transaction.currency == "USD"
        assert transaction.idempotency_key == f"forex:{source_id}:2026-02-10"
        assert [(l.account_id, l.side, l.amount) for l in transaction.lines] == [
            (accounts["1100"], EntrySide.DEBIT, Decimal("600.00")),
            (accounts["7100"], EntrySide.CREDIT, Decimal("600.00")),
        ]

    @pytest.mark.asyncio
    async def test_payable_loss_derived_from_account(self, calculator, accounts, periods):
        """A liability settlement account is treated as a payable without being told."""
        transaction = await calculator.post_adjustment(
            source_transaction_id=uuid4(),
            foreign_amount=Decimal("200"),
            booking_rate=Decimal("90.00"),
            settlement_rate=Decimal("91.25"),
            settlement_account_id=accounts["2100"],
            settlement_date=date(2026, 3, 3),
            foreign_currency="EUR",
        )

        assert [(l.account_id, l.side, l.amount) for l in transaction.lines] == [
            (accounts["8100"], EntrySide.DEBIT, Decimal("250.00")),
            (accounts["2100"], EntrySide.CREDIT, Decimal("250.00")),
        ]

    @pytest.mark.asyncio
    async def test_zero_adjustment_posts_nothing(self, calculator, accounts, periods):
        """Equal rates return None."""
        transaction = await calculator.post_adjustment(
            source_transaction_id=uuid4(),
            foreign_amount=Decimal("500"),
            booking_rate=Decimal("83.00"),
            settlement_rate=Decimal("83.00"),
            settlement_account_id=accounts["1100"],
            settlement_date=date(2026, 1, 20),
            foreign_currency="USD",
        )

        assert transaction is None

    @pytest.mark.asyncio
    async def test_retry_returns_same_adjustment(self, calculator, accounts, periods):
        """The default key makes a repeated settlement idempotent."""
        kwargs = dict(
            source_transaction_id=uuid4(),
            foreign_amount=Decimal("1000"),
            booking_rate=Decimal("82.50"),
            settlement_rate=Decimal("82.00"),
            settlement_account_id=accounts["1100"],
            settlement_date=date(2026, 1, 25),
            foreign_currency="USD",
        )

        first = await calculator.post_adjustment(**kwargs)
        second = await calculator.post_adjustment(**kwargs)

        assert second.id == first.id

    @pytest.mark.asyncio
    async def test_non_monetary_account_is_rejected(self, calculator, accounts, periods):
        """Exposure cannot be derived from an income account."""
        with pytest.raises(ValidationException):
            await calculator.post_adjustment(
                source_transaction_id=uuid4(),
                foreign_amount=Decimal("10"),
                booking_rate=Decimal("1"),
                settlement_rate=Decimal("2"),
                settlement_account_id=accounts["4000"],
                settlement_date=date(2026, 1, 25),
                foreign_currency="USD",
            )
