"""
Ledgerline - GL Posting Engine Tests

Tests for the single write path into the ledger:
- Atomic posting and entry numbering
- Idempotent replays and duplicate detection
- Balance invariant and validation failures leaving nothing behind
- Period gating, including a period closed mid-posting
- Reversals
- Commit failures surfacing as retryable StoreCommitError
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from ledgerline.models.accounting import (
    EntrySide,
    FiscalPeriod,
    FiscalPeriodStatus,
    LedgerLine,
    Transaction,
    TransactionType,
)
from ledgerline.schemas.accounting import DraftTransaction, LedgerLineDraft
from ledgerline.services.fiscal_period_service import FiscalPeriodManager
from ledgerline.services.gl_posting_service import GLPostingEngine, draft_fingerprint
from ledgerline.services.ledger_balances import LedgerBalanceService
from ledgerline.utils.error_handling import (
    DuplicateSubmissionError,
    FiscalPeriodNotFoundError,
    LedgerValidationError,
    PeriodLockedError,
    StoreCommitError,
)


def sale_draft(accounts, key="INV-1001", amount="500.00", on=date(2026, 1, 15)) -> DraftTransaction:
    return DraftTransaction(
        idempotency_key=key,
        transaction_type=TransactionType.CUSTOMER_INVOICE,
        transaction_date=on,
        description="Customer invoice",
        lines=[
            LedgerLineDraft.debit(accounts["1100"], Decimal(amount)),
            LedgerLineDraft.credit(accounts["4000"], Decimal(amount)),
        ],
        reference=key,
    )


async def count_rows(session_maker, model) -> int:
    async with session_maker() as session:
        result = await session.execute(select(func.count()).select_from(model))
        return result.scalar_one()


async def set_period_status(session_maker, period_id, status: FiscalPeriodStatus) -> None:
    async with session_maker() as session:
        await session.execute(
            update(FiscalPeriod).where(FiscalPeriod.id == period_id).values(status=status)
        )
        await session.commit()


class TestPosting:
    """Tests for posting balanced drafts."""

    @pytest.mark.asyncio
    async def test_posts_transaction_with_lines(self, db_session, accounts, periods):
        """A balanced draft is stored with its lines and a period-scoped entry number."""
        engine = GLPostingEngine(db_session)

        transaction = await engine.post(sale_draft(accounts))

        assert transaction.entry_number == "CI-2026-01-00001"
        assert transaction.fiscal_period_id == periods["2026-01"]
        assert transaction.total_debit == Decimal("500.00")
        assert transaction.total_credit == Decimal("500.00")
        assert [line.side for line in transaction.lines] == [EntrySide.DEBIT, EntrySide.CREDIT]
        assert [line.line_number for line in transaction.lines] == [1, 2]

    @pytest.mark.asyncio
    async def test_entry_numbers_are_sequential_per_period(self, db_session, accounts, periods):
        """Each period numbers its postings independently."""
        engine = GLPostingEngine(db_session)

        first = await engine.post(sale_draft(accounts, key="A"))
        second = await engine.post(sale_draft(accounts, key="B"))
        march = await engine.post(sale_draft(accounts, key="C", on=date(2026, 3, 2)))

        assert first.entry_number == "CI-2026-01-00001"
        assert second.entry_number == "CI-2026-01-00002"
        assert march.entry_number == "CI-2026-03-00001"

    @pytest.mark.asyncio
    async def test_balance_invariant_holds_across_postings(self, db_session, session_maker, accounts, periods):
        """Total debits equal total credits over every posted line."""
        engine = GLPostingEngine(db_session)
        for index, amount in enumerate(["100.00", "2500.50", "0.01", "99999.99"]):
            await engine.post(sale_draft(accounts, key=f"BAL-{index}", amount=amount))

        async with session_maker() as session:
            difference = await LedgerBalanceService(session).trial_balance_difference()
            transactions = (await session.execute(select(Transaction))).scalars().all()

        assert difference == Decimal("0.00")
        for transaction in transactions:
            assert abs(transaction.total_debit - transaction.total_credit) <= Decimal("0.01")

    @pytest.mark.asyncio
    async def test_account_balances_follow_normal_side(self, db_session, accounts, periods):
        """Receivables show a debit balance, revenue a credit balance, both positive."""
        engine = GLPostingEngine(db_session)
        await engine.post(sale_draft(accounts, amount="750.00"))

        balances = {
            b.account_code: b
            for b in await LedgerBalanceService(db_session).account_balances()
        }

        assert balances["1100"].balance == Decimal("750.00")
        assert balances["4000"].balance == Decimal("750.00")


class TestValidationFailures:
    """Invalid drafts leave the ledger untouched."""

    @pytest.mark.asyncio
    async def test_unbalanced_draft_persists_nothing(self, db_session, session_maker, accounts, periods):
        """Debits 10,000 against credits 9,999.50 are rejected and nothing is written."""
        draft = DraftTransaction(
            idempotency_key="JE-UNBALANCED",
            transaction_type=TransactionType.JOURNAL_ENTRY,
            transaction_date=date(2026, 1, 20),
            description="Unbalanced entry",
            lines=[
                LedgerLineDraft.debit(accounts["5000"], Decimal("10000.00")),
                LedgerLineDraft.credit(accounts["1000"], Decimal("9999.50")),
            ],
        )

        with pytest.raises(LedgerValidationError) as exc_info:
            await GLPostingEngine(db_session).post(draft)

        assert exc_info.value.details["imbalance"] == "0.50"
        assert await count_rows(session_maker, Transaction) == 0
        assert await count_rows(session_maker, LedgerLine) == 0

        period = await FiscalPeriodManager(db_session).get_period(periods["2026-01"], refresh=True)
        assert period.posting_sequence == 0

    @pytest.mark.asyncio
    async def test_inactive_account_is_rejected(self, db_session, accounts, periods):
        """Retired accounts cannot be posted to."""
        draft = sale_draft(accounts).model_copy(update={
            "lines": [
                LedgerLineDraft.debit(accounts["9999"], Decimal("10.00")),
                LedgerLineDraft.credit(accounts["4000"], Decimal("10.00")),
            ]
        })

        with pytest.raises(LedgerValidationError) as exc_info:
            await GLPostingEngine(db_session).post(draft)

        assert exc_info.value.rule == "ACCOUNT_ACTIVE"

    @pytest.mark.asyncio
    async def test_date_outside_any_period(self, db_session, accounts, periods):
        """A date no period covers raises FiscalPeriodNotFoundError."""
        with pytest.raises(FiscalPeriodNotFoundError):
            await GLPostingEngine(db_session).post(sale_draft(accounts, on=date(2027, 6, 1)))


class TestIdempotency:
    """Same key, same content: same transaction."""

    @pytest.mark.asyncio
    async def test_replay_returns_original(self, db_session, session_maker, accounts, periods):
        """A retried submission returns the original and writes one set of lines."""
        engine = GLPostingEngine(db_session)

        first = await engine.post(sale_draft(accounts))
        second = await engine.post(sale_draft(accounts))

        assert second.id == first.id
        assert await count_rows(session_maker, Transaction) == 1
        assert await count_rows(session_maker, LedgerLine) == 2

    @pytest.mark.asyncio
    async def test_replay_ignores_amount_formatting(self, db_session, accounts, periods):
        """500 and 500.00 describe the same posting."""
        engine = GLPostingEngine(db_session)

        first = await engine.post(sale_draft(accounts, amount="500.00"))
        second = await engine.post(sale_draft(accounts, amount="500"))

        assert second.id == first.id

    @pytest.mark.asyncio
    async def test_key_reuse_with_different_content_is_rejected(self, db_session, accounts, periods):
        """Reusing a key for a different transaction is a duplicate submission."""
        engine = GLPostingEngine(db_session)
        first = await engine.post(sale_draft(accounts, amount="500.00"))

        with pytest.raises(DuplicateSubmissionError) as exc_info:
            await engine.post(sale_draft(accounts, amount="600.00"))

        assert exc_info.value.details["prior_id"] == str(first.id)
        assert exc_info.value.status_code == 409

    def test_fingerprint_changes_with_lines(self):
        """Different amounts produce different hashes; formatting does not."""
        ids = {"1100": uuid4(), "4000": uuid4()}
        assert draft_fingerprint(sale_draft(ids, amount="1.00")) != draft_fingerprint(sale_draft(ids, amount="2.00"))
        assert draft_fingerprint(sale_draft(ids, amount="1")) == draft_fingerprint(sale_draft(ids, amount="1.00"))


class TestPeriodGating:
    """Postings land only in OPEN periods."""

    @pytest.mark.asyncio
    async def test_closed_period_rejects_posting(self, db_session, session_maker, accounts, periods):
        """A draft dated in a CLOSED period raises PeriodLockedError."""
        await set_period_status(session_maker, periods["2026-01"], FiscalPeriodStatus.CLOSED)

        with pytest.raises(PeriodLockedError) as exc_info:
            await GLPostingEngine(db_session).post(sale_draft(accounts))

        assert exc_info.value.details == {
            "period": "2026-01",
            "status": "closed",
            "operation": "posting",
            "violated_rule": "PERIOD_OPEN",
        }
        assert exc_info.value.status_code == 423

    @pytest.mark.asyncio
    async def test_period_closed_during_posting(self, db_session, session_maker, accounts, periods):
        """A close that lands after assert_open still stops the posting at commit."""
        manager = FiscalPeriodManager(db_session)
        original_assert_open = manager.assert_open

        async def assert_open_then_close(period, operation="posting"):
            checked = await original_assert_open(period, operation)
            await set_period_status(session_maker, periods["2026-01"], FiscalPeriodStatus.CLOSED)
            return checked

        manager.assert_open = assert_open_then_close
        engine = GLPostingEngine(db_session, periods=manager)

        with pytest.raises(PeriodLockedError):
            await engine.post(sale_draft(accounts))

        assert await count_rows(session_maker, Transaction) == 0


class TestReversal:
    """Amendments are reversing journal entries."""

    @pytest.mark.asyncio
    async def test_reversal_swaps_sides(self, db_session, accounts, periods):
        """The reversal mirrors the original with debits and credits swapped."""
        engine = GLPostingEngine(db_session)
        original = await engine.post(sale_draft(accounts, amount="1200.00"))

        reversal = await engine.reverse(
            original.id,
            reversal_date=date(2026, 2, 3),
            reason="Invoice raised in error",
            idempotency_key="REV-INV-1001",
        )

        assert reversal.transaction_type == TransactionType.JOURNAL_ENTRY
        assert reversal.entry_number == "JE-2026-02-00001"
        assert reversal.reverses_transaction_id == original.id
        assert [(l.account_id, l.side) for l in reversal.lines] == [
            (accounts["1100"], EntrySide.CREDIT),
            (accounts["4000"], EntrySide.DEBIT),
        ]
        assert await LedgerBalanceService(db_session).trial_balance_difference() == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_reversal_replay_and_second_reversal(self, db_session, accounts, periods):
        """Replaying a reversal returns it; a second, different reversal is refused."""
        engine = GLPostingEngine(db_session)
        original = await engine.post(sale_draft(accounts))
        kwargs = dict(reversal_date=date(2026, 1, 31), reason="Duplicate", idempotency_key="REV-1")

        first = await engine.reverse(original.id, **kwargs)
        replay = await engine.reverse(original.id, **kwargs)

        assert replay.id == first.id
        with pytest.raises(DuplicateSubmissionError):
            await engine.reverse(
                original.id,
                reversal_date=date(2026, 1, 31),
                reason="Again",
                idempotency_key="REV-2",
            )

    @pytest.mark.asyncio
    async def test_locked_period_refuses_reversal(self, db_session, session_maker, accounts, periods):
        """Transactions in a LOCKED period cannot be reversed at all."""
        engine = GLPostingEngine(db_session)
        original = await engine.post(sale_draft(accounts))
        original_id = original.id
        await set_period_status(session_maker, periods["2026-01"], FiscalPeriodStatus.LOCKED)

        with pytest.raises(PeriodLockedError) as exc_info:
            await engine.reverse(
                original_id,
                reversal_date=date(2026, 2, 10),
                reason="Late correction",
                idempotency_key="REV-LOCKED",
            )

        assert exc_info.value.details["operation"] == "reversal"


class TestCommitFailures:
    """Store failures roll back and can be retried."""

    @pytest.mark.asyncio
    async def test_flush_failure_raises_store_commit_error(
        self, db_session, session_maker, accounts, periods, monkeypatch
    ):
        """A failing write rolls everything back and is retryable with the same key."""
        real_flush = db_session.flush

        async def failing_flush(*args, **kwargs):
            raise OperationalError("INSERT INTO transactions", {}, Exception("disk I/O error"))

        monkeypatch.setattr(db_session, "flush", failing_flush)
        with pytest.raises(StoreCommitError) as exc_info:
            await GLPostingEngine(db_session).post(sale_draft(accounts))

        assert exc_info.value.details["retryable"] is True
        assert exc_info.value.status_code == 503
        assert await count_rows(session_maker, Transaction) == 0

        monkeypatch.setattr(db_session, "flush", real_flush)
        transaction = await GLPostingEngine(db_session).post(sale_draft(accounts))
        assert transaction.entry_number == "CI-2026-01-00001"
