"""
Ledgerline - General Ledger Posting Engine

The single write path into transactions and ledger_lines.

Posting a draft:
1. Idempotency key lookup (replay returns the original posting)
2. Fiscal period resolution and assert_open
3. LedgerValidator checks
4. Guarded posting slot, then transaction + lines inserted together

Amendments are reversing transactions; posted rows are never updated.
"""

import hashlib
import json
import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.models.accounting import (
    EntrySide,
    FiscalPeriodStatus,
    LedgerLine,
    TRANSACTION_PREFIXES,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from ledgerline.schemas.accounting import DraftTransaction, LedgerLineDraft
from ledgerline.services.account_registry import AccountRegistry
from ledgerline.services.fiscal_period_service import FiscalPeriodManager
from ledgerline.services.ledger_validator import LedgerValidator, ledger_validator
from ledgerline.utils.error_handling import (
    DuplicateSubmissionError,
    PeriodLockedError,
    StoreCommitError,
    TransactionNotFoundException,
)

logger = logging.getLogger(__name__)


def draft_fingerprint(
    draft: DraftTransaction,
    reverses_transaction_id: Optional[uuid.UUID] = None,
) -> str:
    """
    Hash of the business content of a draft.

    Amounts are normalised to two decimals so that 500 and 500.00
    describe the same posting.
    """
    cents = Decimal("0.01")
    payload = {
        "type": draft.transaction_type.value,
        "date": draft.transaction_date.isoformat(),
        "currency": draft.currency,
        "exchange_rate": str(draft.exchange_rate.normalize()),
        "source_reference": draft.source_reference,
        "reverses": str(reverses_transaction_id) if reverses_transaction_id else None,
        "lines": [
            [
                str(line.account_id),
                str(line.debit_amount.quantize(cents)),
                str(line.credit_amount.quantize(cents)),
                str(line.cost_centre_id) if line.cost_centre_id else None,
            ]
            for line in draft.lines
        ],
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class GLPostingEngine:
    """Posts balanced transactions atomically."""

    def __init__(
        self,
        db: AsyncSession,
        periods: Optional[FiscalPeriodManager] = None,
        validator: Optional[LedgerValidator] = None,
    ):
        self.db = db
        self.periods = periods or FiscalPeriodManager(db)
        self.validator = validator or ledger_validator
        self.accounts = AccountRegistry(db)

    # ===========================================
    # POSTING
    # ===========================================

    async def post(
        self,
        draft: DraftTransaction,
        commit: bool = True,
        reverses_transaction_id: Optional[uuid.UUID] = None,
        reversal_reason: Optional[str] = None,
    ) -> Transaction:
        """
        Post a draft transaction.

        With commit=False the caller owns the database transaction and
        must commit or roll back; used when a posting is one part of a
        larger atomic change (period close, match approval).
        """
        fingerprint = draft_fingerprint(draft, reverses_transaction_id)

        prior = await self.get_by_idempotency_key(draft.idempotency_key)
        if prior is not None:
            return self._replay(prior, draft, fingerprint)

        period = await self.periods.period_for(draft.transaction_date)
        await self.periods.assert_open(period)

        accounts = await self.accounts.get_many(line.account_id for line in draft.lines)
        self.validator.validate(draft.lines, accounts)

        try:
            sequence = await self.periods.reserve_posting_slot(period.id)
            transaction = self._build_transaction(
                draft, period.id, period.code, sequence, fingerprint,
                reverses_transaction_id, reversal_reason,
            )
            self.db.add(transaction)
            await self.db.flush()
            if commit:
                await self.db.commit()
        except PeriodLockedError:
            # Period closed between assert_open and the posting slot claim
            if commit:
                await self.db.rollback()
            raise
        except IntegrityError as e:
            await self.db.rollback()
            if commit:
                winner = await self.get_by_idempotency_key(draft.idempotency_key)
                if winner is not None:
                    # A concurrent submission with the same key committed first
                    return self._replay(winner, draft, fingerprint)
            if reverses_transaction_id is not None:
                raise DuplicateSubmissionError(
                    f"Transaction {reverses_transaction_id} has already been reversed",
                    resource_type="Transaction",
                    prior_id=reverses_transaction_id,
                )
            logger.error(f"Posting {draft.idempotency_key} violated a constraint: {e}")
            raise StoreCommitError("transaction posting", original_error=e)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Posting {draft.idempotency_key} failed at commit: {e}")
            raise StoreCommitError(
                "transaction posting",
                original_error=e,
                details={"idempotency_key": draft.idempotency_key},
            )

        logger.info(
            f"Posted {transaction.entry_number} ({draft.transaction_type.value}) "
            f"for {transaction.total_debit} in period {period.code}"
        )
        return transaction

    def _replay(self, prior: Transaction, draft: DraftTransaction, fingerprint: str) -> Transaction:
        if prior.payload_hash != fingerprint:
            logger.warning(
                f"Idempotency key {draft.idempotency_key} reused with a different payload"
            )
            raise DuplicateSubmissionError(
                f"Idempotency key '{draft.idempotency_key}' was already used for a different transaction",
                resource_type="Transaction",
                prior_id=prior.id,
                details={"entry_number": prior.entry_number},
            )
        logger.info(f"Replay of {draft.idempotency_key} returned {prior.entry_number}")
        return prior

    def _build_transaction(
        self,
        draft: DraftTransaction,
        period_id: uuid.UUID,
        period_code: str,
        sequence: int,
        fingerprint: str,
        reverses_transaction_id: Optional[uuid.UUID],
        reversal_reason: Optional[str],
    ) -> Transaction:
        prefix = TRANSACTION_PREFIXES[draft.transaction_type]
        lines = [
            LedgerLine(
                line_number=index,
                account_id=line.account_id,
                side=line.side,
                amount=line.amount,
                cost_centre_id=line.cost_centre_id,
                memo=line.memo,
            )
            for index, line in enumerate(draft.lines, start=1)
        ]
        return Transaction(
            entry_number=f"{prefix}-{period_code}-{sequence:05d}",
            transaction_type=draft.transaction_type,
            transaction_date=draft.transaction_date,
            fiscal_period_id=period_id,
            description=draft.description,
            currency=draft.currency,
            exchange_rate=draft.exchange_rate,
            total_debit=draft.total_debit,
            total_credit=draft.total_credit,
            status=TransactionStatus.POSTED,
            posted_at=datetime.now(timezone.utc),
            posted_by=draft.posted_by,
            idempotency_key=draft.idempotency_key,
            payload_hash=fingerprint,
            source_reference=draft.source_reference,
            reference=draft.reference,
            reverses_transaction_id=reverses_transaction_id,
            reversal_reason=reversal_reason,
            lines=lines,
        )

    # ===========================================
    # REVERSAL
    # ===========================================

    async def reverse(
        self,
        transaction_id: uuid.UUID,
        reversal_date: date,
        reason: str,
        idempotency_key: str,
        posted_by: Optional[str] = None,
    ) -> Transaction:
        """
        Post a JOURNAL_ENTRY that mirrors the original with sides swapped.

        Transactions in a LOCKED period cannot be amended at all.
        """
        original = await self.get_transaction(transaction_id)

        # A replay of this very reversal is answered before any other check
        prior = await self.get_by_idempotency_key(idempotency_key)
        if prior is not None and prior.reverses_transaction_id == original.id:
            return prior

        original_period = await self.periods.get_period(original.fiscal_period_id, refresh=True)
        if original_period.status == FiscalPeriodStatus.LOCKED:
            raise PeriodLockedError(original_period.code, original_period.status.value, "reversal")

        existing = await self.db.execute(
            select(Transaction).where(Transaction.reverses_transaction_id == original.id)
        )
        reversal = existing.scalar_one_or_none()
        if reversal is not None:
            raise DuplicateSubmissionError(
                f"Transaction {original.entry_number} has already been reversed by {reversal.entry_number}",
                resource_type="Transaction",
                prior_id=reversal.id,
            )

        lines: List[LedgerLineDraft] = [
            (
                LedgerLineDraft.credit(line.account_id, line.amount)
                if line.side == EntrySide.DEBIT
                else LedgerLineDraft.debit(line.account_id, line.amount)
            ).model_copy(update={"cost_centre_id": line.cost_centre_id, "memo": line.memo})
            for line in original.lines
        ]
        draft = DraftTransaction(
            idempotency_key=idempotency_key,
            transaction_type=TransactionType.JOURNAL_ENTRY,
            transaction_date=reversal_date,
            description=f"Reversal of {original.entry_number}: {reason}"[:500],
            currency=original.currency,
            exchange_rate=original.exchange_rate,
            lines=lines,
            source_reference=f"reversal:{original.id}",
            reference=original.reference,
            posted_by=posted_by,
        )
        return await self.post(draft, reverses_transaction_id=original.id, reversal_reason=reason)

    # ===========================================
    # QUERIES
    # ===========================================

    async def get_transaction(self, transaction_id: uuid.UUID) -> Transaction:
        result = await self.db.execute(select(Transaction).where(Transaction.id == transaction_id))
        transaction = result.scalar_one_or_none()
        if not transaction:
            raise TransactionNotFoundException(transaction_id)
        return transaction

    async def get_by_idempotency_key(self, key: str) -> Optional[Transaction]:
        result = await self.db.execute(select(Transaction).where(Transaction.idempotency_key == key))
        return result.scalar_one_or_none()

    async def list_transactions(
        self,
        fiscal_period_id: Optional[uuid.UUID] = None,
        transaction_type: Optional[TransactionType] = None,
        source_reference: Optional[str] = None,
    ) -> List[Transaction]:
        query = select(Transaction).order_by(Transaction.transaction_date, Transaction.entry_number)
        if fiscal_period_id:
            query = query.where(Transaction.fiscal_period_id == fiscal_period_id)
        if transaction_type:
            query = query.where(Transaction.transaction_type == transaction_type)
        if source_reference:
            query = query.where(Transaction.source_reference == source_reference)
        result = await self.db.execute(query)
        return list(result.scalars().all())


def get_gl_posting_engine(db: AsyncSession) -> GLPostingEngine:
    """Get posting engine instance."""
    return GLPostingEngine(db)
