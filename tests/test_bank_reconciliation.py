"""
Ledgerline - Bank Reconciliation Tests

Tests for matching bank statement lines to posted transactions:
- Scoring (amount, date proximity, reference similarity)
- One-to-one, one-to-many and many-to-one passes
- Partial matches and unreconciled differences
- Chunked commits under failure, reruns and unmatching
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from ledgerline.models.accounting import Transaction, TransactionType
from ledgerline.models.bank_reconciliation import (
    BankMatchStatus,
    BankTransaction,
    ReconciliationMatch,
    ReconciliationMatchTransaction,
    ReconciliationMatchType,
)
from ledgerline.schemas.accounting import DraftTransaction, LedgerLineDraft
from ledgerline.schemas.bank_reconciliation import BankTransactionCreate
from ledgerline.services.bank_reconciliation_service import (
    BankReconciliationMatcher,
    ReconciliationConfig,
    normalize_reference,
)
from ledgerline.services.gl_posting_service import GLPostingEngine
from ledgerline.utils.error_handling import InvalidDateRangeException, NotFoundException, StoreCommitError


def receipt_draft(accounts, key, amount, on, reference=None, debit_code="1200", credit_code="1100"):
    return DraftTransaction(
        idempotency_key=key,
        transaction_type=TransactionType.PAYMENT,
        transaction_date=on,
        description=f"Receipt {key}",
        lines=[
            LedgerLineDraft.debit(accounts[debit_code], Decimal(amount)),
            LedgerLineDraft.credit(accounts[credit_code], Decimal(amount)),
        ],
        reference=reference,
    )


def statement_row(external_id, amount, on, reference=None, bank_account_code="1200"):
    return BankTransactionCreate(
        external_id=external_id,
        transaction_date=on,
        amount=Decimal(amount),
        reference=reference,
        bank_account_code=bank_account_code,
    )


@pytest.fixture
def matcher(db_session):
    return BankReconciliationMatcher(db_session, config=ReconciliationConfig())


@pytest.fixture
def poster(db_session):
    return GLPostingEngine(db_session)


async def count_rows(session_maker, model) -> int:
    async with session_maker() as session:
        result = await session.execute(select(func.count()).select_from(model))
        return result.scalar_one()


async def bank_statuses(session_maker):
    async with session_maker() as session:
        result = await session.execute(select(BankTransaction.external_id, BankTransaction.match_status))
        return dict(result.all())


class TestScoring:
    """Weighted score out of 100."""

    def _line(self, amount, on, reference):
        return BankTransaction(external_id="S-1", transaction_date=on, amount=Decimal(amount), reference=reference)

    def _txn(self, amount, on, reference):
        return Transaction(
            entry_number="PY-2026-01-00001",
            transaction_date=on,
            total_debit=Decimal(amount),
            total_credit=Decimal(amount),
            reference=reference,
        )

    def test_perfect_match_scores_100(self):
        """Exact amount, same day and the same reference."""
        matcher = BankReconciliationMatcher(None, config=ReconciliationConfig())

        score = matcher.score(
            self._line("2500.00", date(2026, 1, 20), "INV-1001"),
            self._txn("2500.00", date(2026, 1, 20), "inv 1001"),
        )

        assert score.total == Decimal("100.00")

    def test_partial_components(self):
        """Amount inside tolerance, two days apart, reference contained."""
        matcher = BankReconciliationMatcher(None, config=ReconciliationConfig())

        score = matcher.score(
            self._line("1000.00", date(2026, 1, 20), "NEFT RECEIPT INV1001"),
            self._txn("995.00", date(2026, 1, 18), "INV1001"),
        )

        assert score.breakdown() == {
            "amount": "40.00",
            "date": "20.00",
            "reference": "12.00",
            "total": "72.00",
        }

    def test_window_edge_keeps_half_the_date_weight(self):
        """Three days apart still scores 15 of 30, so an exact amount clears the minimum."""
        matcher = BankReconciliationMatcher(None, config=ReconciliationConfig())

        score = matcher.score(
            self._line("700.00", date(2026, 1, 8), None),
            self._txn("700.00", date(2026, 1, 5), None),
        )

        assert score.date == Decimal("15.0")
        assert score.total == Decimal("65.00")

    def test_one_minor_unit_counts_as_exact(self):
        """A 0.01 difference earns the full amount weight."""
        matcher = BankReconciliationMatcher(None, config=ReconciliationConfig())

        score = matcher.score(
            self._line("100.00", date(2026, 1, 8), None),
            self._txn("99.99", date(2026, 1, 8), None),
        )

        assert score.amount == Decimal("50")

    def test_opposite_signs_score_no_amount(self):
        """A withdrawal never scores against an inflow of the same size."""
        matcher = BankReconciliationMatcher(None, config=ReconciliationConfig())
        line = self._line("-500.00", date(2026, 1, 8), "R-5")
        txn = self._txn("500.00", date(2026, 1, 8), "R-5")

        assert matcher.score(line, txn).amount == Decimal("0")
        assert matcher.score(line, txn, ledger_amount=Decimal("-500.00")).amount == Decimal("50")

    def test_outside_window_and_tolerance_scores_nothing(self):
        """Far-off dates and amounts contribute zero."""
        matcher = BankReconciliationMatcher(None, config=ReconciliationConfig())

        score = matcher.score(
            self._line("1000.00", date(2026, 1, 20), None),
            self._txn("900.00", date(2026, 1, 10), None),
        )

        assert score.amount == Decimal("0")
        assert score.date == Decimal("0")

    def test_reference_normalisation(self):
        """Case and punctuation are ignored."""
        assert normalize_reference(" inv-1001/a ") == "INV1001A"
        assert normalize_reference(None) == ""


class TestMatchingPasses:
    """Matching bank lines against posted transactions."""

    @pytest.mark.asyncio
    async def test_one_deposit_settles_two_invoices(self, matcher, poster, session_maker, ledger):
        """A 15,000 deposit matches receipts of 10,000 and 5,000 as one match."""
        accounts = ledger["accounts"]
        first = await poster.post(receipt_draft(accounts, "RCPT-1", "10000.00", date(2026, 1, 14)))
        second = await poster.post(receipt_draft(accounts, "RCPT-2", "5000.00", date(2026, 1, 15)))
        lines = await matcher.import_transactions([
            statement_row("STMT-0115-01", "15000.00", date(2026, 1, 15), "BATCH-0115"),
        ])

        matches = await matcher.match_batch(lines, [first, second])

        assert len(matches) == 1
        match = matches[0]
        assert match.match_type == ReconciliationMatchType.ONE_TO_MANY
        assert sorted(match.transaction_ids) == sorted([first.id, second.id])
        assert match.bank_transaction_ids == [lines[0].id]
        assert match.confidence_score == Decimal("75.00")
        assert match.unreconciled_difference == Decimal("0.00")
        assert await bank_statuses(session_maker) == {"STMT-0115-01": BankMatchStatus.MATCHED}
        assert await count_rows(session_maker, ReconciliationMatchTransaction) == 2

    @pytest.mark.asyncio
    async def test_one_to_one_prefers_nearest(self, matcher, poster, ledger):
        """Of two equal amounts, the closer date wins."""
        accounts = ledger["accounts"]
        far = await poster.post(receipt_draft(accounts, "RCPT-FAR", "2500.00", date(2026, 1, 18), "INV-1001"))
        near = await poster.post(receipt_draft(accounts, "RCPT-NEAR", "2500.00", date(2026, 1, 21), "INV-1001"))
        lines = await matcher.import_transactions([
            statement_row("STMT-0121-01", "2500.00", date(2026, 1, 21), "inv 1001"),
        ])

        matches = await matcher.match_batch(lines, [far, near])

        assert len(matches) == 1
        assert matches[0].match_type == ReconciliationMatchType.ONE_TO_ONE
        assert matches[0].transaction_ids == [near.id]
        assert matches[0].confidence_score == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_two_deposits_settle_one_transaction(self, matcher, poster, session_maker, ledger):
        """Deposits of 5,000 and 3,000 match a single 8,000 receipt."""
        accounts = ledger["accounts"]
        receipt = await poster.post(receipt_draft(accounts, "RCPT-8K", "8000.00", date(2026, 1, 25)))
        lines = await matcher.import_transactions([
            statement_row("STMT-0125-01", "5000.00", date(2026, 1, 25)),
            statement_row("STMT-0126-01", "3000.00", date(2026, 1, 26)),
        ])

        matches = await matcher.match_batch(lines, [receipt])

        assert len(matches) == 1
        assert matches[0].match_type == ReconciliationMatchType.MANY_TO_ONE
        assert sorted(matches[0].bank_transaction_ids) == sorted(line.id for line in lines)
        assert set((await bank_statuses(session_maker)).values()) == {BankMatchStatus.MATCHED}

    @pytest.mark.asyncio
    async def test_difference_within_tolerance_is_partial(self, matcher, poster, session_maker, ledger):
        """A 50 rupee bank charge leaves the line PARTIALLY_MATCHED with its difference."""
        accounts = ledger["accounts"]
        receipt = await poster.post(receipt_draft(accounts, "RCPT-10K", "10000.00", date(2026, 1, 9), "CUST-88"))
        lines = await matcher.import_transactions([
            statement_row("STMT-0109-01", "10050.00", date(2026, 1, 9), "CUST-88"),
        ])

        matches = await matcher.match_batch(lines, [receipt])

        assert matches[0].unreconciled_difference == Decimal("50.00")
        assert matches[0].score_breakdown["amount"] == "40.00"
        assert await bank_statuses(session_maker) == {"STMT-0109-01": BankMatchStatus.PARTIALLY_MATCHED}

    @pytest.mark.asyncio
    async def test_low_score_is_left_unmatched(self, matcher, poster, session_maker, ledger):
        """Near amount, three days apart, no common reference: below the threshold."""
        accounts = ledger["accounts"]
        receipt = await poster.post(receipt_draft(accounts, "RCPT-X", "1000.00", date(2026, 1, 10), "ABC"))
        lines = await matcher.import_transactions([
            statement_row("STMT-0113-01", "1005.00", date(2026, 1, 13), "XYZ"),
        ])

        matches = await matcher.match_batch(lines, [receipt])

        assert matches == []
        assert await bank_statuses(session_maker) == {"STMT-0113-01": BankMatchStatus.UNMATCHED}

    @pytest.mark.asyncio
    async def test_rerun_skips_matched_lines(self, matcher, poster, ledger):
        """A second pass over the same inputs creates nothing new."""
        accounts = ledger["accounts"]
        receipt = await poster.post(receipt_draft(accounts, "RCPT-R", "700.00", date(2026, 1, 5), "R-1"))
        lines = await matcher.import_transactions([statement_row("STMT-R", "700.00", date(2026, 1, 5), "R-1")])
        bank_ids = [line.id for line in lines]

        first = await matcher.match_batch(lines, [receipt])
        second = await matcher.match_by_ids(bank_ids, [receipt.id])

        assert len(first) == 1
        assert second == []

    @pytest.mark.asyncio
    async def test_edge_of_window_deposit_settles_two_receipts(self, matcher, poster, session_maker, ledger):
        """A receipt three days before the deposit is still inside the window."""
        accounts = ledger["accounts"]
        first = await poster.post(receipt_draft(accounts, "RCPT-E1", "10000.00", date(2026, 1, 15)))
        second = await poster.post(receipt_draft(accounts, "RCPT-E2", "5000.00", date(2026, 1, 12)))
        lines = await matcher.import_transactions([
            statement_row("STMT-0115-E", "15000.00", date(2026, 1, 15)),
        ])

        matches = await matcher.match_batch(lines, [first, second])

        assert len(matches) == 1
        assert matches[0].match_type == ReconciliationMatchType.ONE_TO_MANY
        assert matches[0].confidence_score == Decimal("65.00")
        assert await bank_statuses(session_maker) == {"STMT-0115-E": BankMatchStatus.MATCHED}

    @pytest.mark.asyncio
    async def test_one_minor_unit_difference_is_matched(self, matcher, poster, session_maker, ledger):
        """100.00 against 99.99 is MATCHED with nothing left unreconciled."""
        accounts = ledger["accounts"]
        receipt = await poster.post(receipt_draft(accounts, "RCPT-M", "99.99", date(2026, 1, 8), "M-1"))
        lines = await matcher.import_transactions([statement_row("STMT-M", "100.00", date(2026, 1, 8), "M-1")])

        matches = await matcher.match_batch(lines, [receipt])

        assert matches[0].score_breakdown["amount"] == "50.00"
        assert matches[0].unreconciled_difference == Decimal("0.00")
        assert await bank_statuses(session_maker) == {"STMT-M": BankMatchStatus.MATCHED}

    @pytest.mark.asyncio
    async def test_withdrawal_is_not_matched_to_deposit(self, matcher, poster, session_maker, ledger):
        """A -500 statement line ignores a receipt that debits the bank 500."""
        accounts = ledger["accounts"]
        await poster.post(receipt_draft(accounts, "RCPT-500", "500.00", date(2026, 1, 8), "R-500"))
        await matcher.import_transactions([statement_row("STMT-W", "-500.00", date(2026, 1, 8), "R-500")])

        matches = await matcher.reconcile_period(date(2026, 1, 1), date(2026, 1, 31), bank_account_code="1200")

        assert matches == []
        assert await bank_statuses(session_maker) == {"STMT-W": BankMatchStatus.UNMATCHED}

    @pytest.mark.asyncio
    async def test_withdrawal_matches_outgoing_payment(self, matcher, poster, session_maker, ledger):
        """A vendor payment crediting the bank pairs with the withdrawal, both sides negative."""
        accounts = ledger["accounts"]
        payment = await poster.post(receipt_draft(
            accounts, "VPAY-500", "500.00", date(2026, 1, 8), "VP-500",
            debit_code="2100", credit_code="1200",
        ))
        lines = await matcher.import_transactions([statement_row("STMT-VP", "-500.00", date(2026, 1, 8), "VP-500")])

        matches = await matcher.match_batch(lines, [payment])

        assert len(matches) == 1
        assert matches[0].bank_amount == Decimal("-500.00")
        assert matches[0].ledger_amount == Decimal("-500.00")
        assert await bank_statuses(session_maker) == {"STMT-VP": BankMatchStatus.MATCHED}

    @pytest.mark.asyncio
    async def test_transactions_without_bank_movement_are_not_offered(self, matcher, poster, session_maker, ledger):
        """An accrual that never touches cash or bank stays out of reconciliation."""
        accounts = ledger["accounts"]
        await poster.post(receipt_draft(
            accounts, "ACCR-300", "300.00", date(2026, 2, 10), "VB-300",
            debit_code="5000", credit_code="2100",
        ))
        await matcher.import_transactions([
            statement_row("STMT-VB", "300.00", date(2026, 2, 10), "VB-300", bank_account_code=None),
        ])

        matches = await matcher.reconcile_period(date(2026, 2, 1), date(2026, 2, 28))

        assert matches == []
        assert await bank_statuses(session_maker) == {"STMT-VB": BankMatchStatus.UNMATCHED}


class TestImportAndCorrection:
    """Statement import, unmatching and period runs."""

    @pytest.mark.asyncio
    async def test_import_is_idempotent_per_external_id(self, matcher, session_maker):
        """Known external ids are returned as stored, not duplicated."""
        first = await matcher.import_transactions([
            statement_row("STMT-1", "100.00", date(2026, 1, 2)),
            statement_row("STMT-2", "-40.00", date(2026, 1, 3)),
        ])
        again = await matcher.import_transactions([
            statement_row("STMT-2", "-40.00", date(2026, 1, 3)),
            statement_row("STMT-3", "12.34", date(2026, 1, 4)),
        ])

        assert again[0].id == first[1].id
        assert await count_rows(session_maker, BankTransaction) == 3

    @pytest.mark.asyncio
    async def test_unmatch_returns_both_sides_to_pool(self, matcher, poster, session_maker, ledger):
        """After unmatching, the same pair can be matched again."""
        accounts = ledger["accounts"]
        receipt = await poster.post(receipt_draft(accounts, "RCPT-U", "900.00", date(2026, 1, 6), "U-9"))
        lines = await matcher.import_transactions([statement_row("STMT-U", "900.00", date(2026, 1, 6), "U-9")])
        bank_ids = [line.id for line in lines]
        matches = await matcher.match_batch(lines, [receipt])

        reopened = await matcher.unmatch(matches[0].id)

        assert reopened == bank_ids
        assert await bank_statuses(session_maker) == {"STMT-U": BankMatchStatus.UNMATCHED}
        assert await count_rows(session_maker, ReconciliationMatch) == 0
        assert await count_rows(session_maker, ReconciliationMatchTransaction) == 0

        rematched = await matcher.match_by_ids(bank_ids, [receipt.id])
        assert len(rematched) == 1

    @pytest.mark.asyncio
    async def test_reconcile_period_filters_by_bank_account(self, matcher, poster, ledger):
        """Only transactions touching the bank account are considered."""
        accounts = ledger["accounts"]
        await poster.post(receipt_draft(accounts, "CASH-SALE", "450.00", date(2026, 2, 3), "P-45",
                                        debit_code="1000", credit_code="4000"))
        banked = await poster.post(receipt_draft(accounts, "BANK-RCPT", "450.00", date(2026, 2, 4), "P-45"))
        await matcher.import_transactions([statement_row("STMT-FEB-1", "450.00", date(2026, 2, 4), "P-45")])

        matches = await matcher.reconcile_period(date(2026, 2, 1), date(2026, 2, 28), bank_account_code="1200")

        assert len(matches) == 1
        assert matches[0].transaction_ids == [banked.id]

    @pytest.mark.asyncio
    async def test_reconcile_period_rejects_inverted_range(self, matcher):
        """Start after end is refused."""
        with pytest.raises(InvalidDateRangeException):
            await matcher.reconcile_period(date(2026, 2, 28), date(2026, 2, 1))


class TestSuggestionsAndStatistics:
    """Review aids for lines the passes leave open."""

    @pytest.mark.asyncio
    async def test_sub_threshold_candidate_is_suggested(self, matcher, poster, ledger):
        """A 55-point candidate is offered as a low confidence suggestion."""
        accounts = ledger["accounts"]
        receipt = await poster.post(receipt_draft(accounts, "RCPT-S", "1000.00", date(2026, 1, 10), "ABC"))
        await poster.post(receipt_draft(
            accounts, "VPAY-S", "1000.00", date(2026, 1, 11), "ABC",
            debit_code="2100", credit_code="1200",
        ))
        lines = await matcher.import_transactions([
            statement_row("STMT-S", "1005.00", date(2026, 1, 13), "XYZ"),
        ])

        suggestions = await matcher.suggest_matches(lines[0].id)

        assert [s.transaction_id for s in suggestions] == [receipt.id]
        assert suggestions[0].confidence_score == Decimal("55.00")
        assert suggestions[0].confidence == "low"

    @pytest.mark.asyncio
    async def test_unknown_bank_line_raises(self, matcher):
        """Suggestions need an existing bank line."""
        with pytest.raises(NotFoundException):
            await matcher.suggest_matches(uuid4())

    @pytest.mark.asyncio
    async def test_statistics(self, matcher, poster, ledger):
        """Counts by status, matches by type and the match rate."""
        accounts = ledger["accounts"]
        receipt = await poster.post(receipt_draft(accounts, "RCPT-ST", "250.00", date(2026, 1, 7), "ST-1"))
        lines = await matcher.import_transactions([
            statement_row("STMT-ST1", "250.00", date(2026, 1, 7), "ST-1"),
            statement_row("STMT-ST2", "-75.00", date(2026, 1, 9), "FEE"),
        ])
        await matcher.match_batch(lines, [receipt])

        stats = await matcher.match_statistics()

        assert stats["total_bank_transactions"] == 2
        assert stats["matched"] == 1
        assert stats["unmatched"] == 1
        assert stats["match_rate_percent"] == Decimal("50.00")
        assert stats["matches_by_type"] == {"one_to_one": 1}
        assert stats["unreconciled_difference"] == Decimal("0.00")


class TestChunkedCommit:
    """Each chunk commits completely or not at all."""

    @pytest.mark.asyncio
    async def test_failed_chunk_keeps_earlier_chunks(self, db_session, poster, session_maker, ledger, monkeypatch):
        """With one decision per chunk, a failure in the second leaves only the first."""
        accounts = ledger["accounts"]
        matcher = BankReconciliationMatcher(db_session, config=ReconciliationConfig(chunk_size=1))
        receipts = [
            await poster.post(receipt_draft(accounts, "C-1", "100.00", date(2026, 1, 5), "C-1")),
            await poster.post(receipt_draft(accounts, "C-2", "200.00", date(2026, 1, 6), "C-2")),
        ]
        lines = await matcher.import_transactions([
            statement_row("STMT-C1", "100.00", date(2026, 1, 5), "C-1"),
            statement_row("STMT-C2", "200.00", date(2026, 1, 6), "C-2"),
        ])
        bank_ids = [line.id for line in lines]
        txn_ids = [t.id for t in receipts]

        original_persist = matcher._persist_chunk
        calls = []

        async def failing_second_chunk(chunk):
            calls.append(chunk)
            match_ids = await original_persist(chunk)
            if len(calls) == 2:
                raise OperationalError("UPDATE bank_transactions", {}, Exception("database is locked"))
            return match_ids

        monkeypatch.setattr(matcher, "_persist_chunk", failing_second_chunk)
        with pytest.raises(StoreCommitError) as exc_info:
            await matcher.match_batch(lines, receipts)

        assert exc_info.value.details["committed_matches"] == 1
        assert exc_info.value.details["failed_chunk"] == 2
        assert await count_rows(session_maker, ReconciliationMatch) == 1
        assert await count_rows(session_maker, ReconciliationMatchTransaction) == 1
        assert await bank_statuses(session_maker) == {
            "STMT-C1": BankMatchStatus.MATCHED,
            "STMT-C2": BankMatchStatus.UNMATCHED,
        }

        monkeypatch.undo()
        retried = await matcher.match_by_ids(bank_ids, txn_ids)
        assert len(retried) == 1
        assert retried[0].bank_transaction_ids == [bank_ids[1]]
