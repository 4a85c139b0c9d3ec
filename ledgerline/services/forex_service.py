"""
Ledgerline - Forex Adjustment Calculator

Realized exchange gain/loss when a foreign currency item settles at a
rate different from its booking rate.

gain_or_loss = (settlement_rate - booking_rate) x foreign_amount

The result is rounded to the ledger minor unit exactly once, here;
the draft carries the rounded figure unchanged to the posting engine.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.config import settings
from ledgerline.models.accounting import Account, AccountType, Transaction, TransactionType
from ledgerline.schemas.accounting import DraftTransaction, LedgerLineDraft
from ledgerline.services.account_registry import AccountRegistry
from ledgerline.services.gl_posting_service import GLPostingEngine
from ledgerline.utils.error_handling import ValidationException

logger = logging.getLogger(__name__)


class ForexExposure(str, Enum):
    """Whether the entity is owed (receivable) or owes (payable) the foreign amount."""
    RECEIVABLE = "receivable"
    PAYABLE = "payable"


@dataclass(frozen=True)
class ForexAdjustment:
    foreign_amount: Decimal
    booking_rate: Decimal
    settlement_rate: Decimal
    exposure: ForexExposure
    amount: Decimal  # Signed: positive is a gain, negative a loss

    @property
    def is_gain(self) -> bool:
        return self.amount > 0

    @property
    def is_zero(self) -> bool:
        return self.amount == 0


class ForexAdjustmentCalculator:
    """Builds FOREX_ADJUSTMENT drafts and hands them to the posting engine."""

    def __init__(self, db: AsyncSession, engine: Optional[GLPostingEngine] = None):
        self.db = db
        self.engine = engine or GLPostingEngine(db)
        self.accounts = AccountRegistry(db)
        self.minor_unit = settings.ledger_minor_unit

    @staticmethod
    def exposure_for(account: Account) -> ForexExposure:
        """Asset settlement accounts are receivables, liabilities are payables."""
        if account.account_type == AccountType.ASSET:
            return ForexExposure.RECEIVABLE
        if account.account_type == AccountType.LIABILITY:
            return ForexExposure.PAYABLE
        raise ValidationException(
            f"Account {account.code} is not a monetary asset or liability",
            field="settlement_account_id",
        )

    def calculate(
        self,
        foreign_amount: Decimal,
        booking_rate: Decimal,
        settlement_rate: Decimal,
        exposure: ForexExposure,
    ) -> ForexAdjustment:
        if foreign_amount <= 0 or booking_rate <= 0 or settlement_rate <= 0:
            raise ValidationException(
                "Foreign amount and exchange rates must be greater than zero",
                field="foreign_amount",
            )

        raw = (settlement_rate - booking_rate) * foreign_amount
        if exposure == ForexExposure.PAYABLE:
            # A stronger foreign currency costs more to pay
            raw = -raw

        return ForexAdjustment(
            foreign_amount=foreign_amount,
            booking_rate=booking_rate,
            settlement_rate=settlement_rate,
            exposure=exposure,
            amount=raw.quantize(self.minor_unit, rounding=ROUND_HALF_UP),
        )

    async def build_draft(
        self,
        adjustment: ForexAdjustment,
        settlement_account_id: uuid.UUID,
        settlement_date: date,
        source_transaction_id: uuid.UUID,
        foreign_currency: str,
        idempotency_key: Optional[str] = None,
        posted_by: Optional[str] = None,
    ) -> Optional[DraftTransaction]:
        """
        Gain: Dr settlement account / Cr Forex Gain.
        Loss: Dr Forex Loss / Cr settlement account.
        """
        if adjustment.is_zero:
            return None

        amount = abs(adjustment.amount)
        if adjustment.is_gain:
            gain_account = await self.accounts.get_by_code(settings.forex_gain_account_code)
            lines = [
                LedgerLineDraft.debit(settlement_account_id, amount, memo="Settlement variance"),
                LedgerLineDraft.credit(gain_account.id, amount, memo="Realized forex gain"),
            ]
        else:
            loss_account = await self.accounts.get_by_code(settings.forex_loss_account_code)
            lines = [
                LedgerLineDraft.debit(loss_account.id, amount, memo="Realized forex loss"),
                LedgerLineDraft.credit(settlement_account_id, amount, memo="Settlement variance"),
            ]

        kind = "gain" if adjustment.is_gain else "loss"
        return DraftTransaction(
            idempotency_key=idempotency_key or f"forex:{source_transaction_id}:{settlement_date.isoformat()}",
            transaction_type=TransactionType.FOREX_ADJUSTMENT,
            transaction_date=settlement_date,
            description=(
                f"Realized forex {kind} on {adjustment.foreign_amount} {foreign_currency.upper()} "
                f"({adjustment.booking_rate} -> {adjustment.settlement_rate})"
            ),
            currency=foreign_currency.upper(),
            exchange_rate=adjustment.settlement_rate,
            lines=lines,
            source_reference=f"forex:{source_transaction_id}",
            posted_by=posted_by,
        )

    async def post_adjustment(
        self,
        source_transaction_id: uuid.UUID,
        foreign_amount: Decimal,
        booking_rate: Decimal,
        settlement_rate: Decimal,
        settlement_account_id: uuid.UUID,
        settlement_date: date,
        foreign_currency: str,
        exposure: Optional[ForexExposure] = None,
        idempotency_key: Optional[str] = None,
        posted_by: Optional[str] = None,
    ) -> Optional[Transaction]:
        """
        Calculate and post the realized adjustment.

        Returns None when settlement and booking rates give no difference.
        """
        if exposure is None:
            exposure = self.exposure_for(await self.accounts.get(settlement_account_id))

        adjustment = self.calculate(foreign_amount, booking_rate, settlement_rate, exposure)
        draft = await self.build_draft(
            adjustment,
            settlement_account_id=settlement_account_id,
            settlement_date=settlement_date,
            source_transaction_id=source_transaction_id,
            foreign_currency=foreign_currency,
            idempotency_key=idempotency_key,
            posted_by=posted_by,
        )
        if draft is None:
            logger.info(f"No forex adjustment for {source_transaction_id}: rates give zero difference")
            return None

        transaction = await self.engine.post(draft)
        logger.info(
            f"Forex {'gain' if adjustment.is_gain else 'loss'} of {abs(adjustment.amount)} "
            f"posted as {transaction.entry_number}"
        )
        return transaction
