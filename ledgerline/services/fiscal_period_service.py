"""
Ledgerline - Fiscal Period Manager

Period lifecycle and the posting gate:
- Period lookup by date
- assert_open, the only check the posting engine consults
- Guarded posting slot so a period closing mid-flight fails the commit
- OPEN -> CLOSED -> LOCKED, one-directional, no skipping
- Idempotent close that posts the retained earnings transfer first
- Adjustment periods in place of reopening
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional, Union

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.config import settings
from ledgerline.models.audit import AuditAction
from ledgerline.models.accounting import (
    AccountType,
    FiscalPeriod,
    FiscalPeriodStatus,
    TransactionType,
)
from ledgerline.models.procurement import MatchStatus, ThreeWayMatch
from ledgerline.schemas.accounting import DraftTransaction, LedgerLineDraft
from ledgerline.services.account_registry import AccountRegistry
from ledgerline.services.audit_service import AuditService
from ledgerline.services.ledger_balances import LedgerBalanceService
from ledgerline.utils.error_handling import (
    AccountNotFoundException,
    DuplicateEntryException,
    FiscalPeriodNotFoundError,
    InvalidDateRangeException,
    InvalidStateTransitionError,
    PeriodLockedError,
    StoreCommitError,
    ValidationException,
)

logger = logging.getLogger(__name__)

PeriodRef = Union[FiscalPeriod, uuid.UUID]


@dataclass
class CloseReadiness:
    """Blocking errors and advisory warnings for closing one period."""

    period_id: uuid.UUID
    period_code: str
    status: FiscalPeriodStatus
    retained_earnings_account_id: Optional[uuid.UUID] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_ready(self) -> bool:
        return not self.errors


@dataclass
class ClosePreview:
    """What closing the period would post, without posting it."""

    readiness: CloseReadiness
    total_income: Decimal
    total_expenses: Decimal
    net_income: Decimal
    closing_lines: List[LedgerLineDraft]


class FiscalPeriodManager:
    """Tracks period state and guards postings."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ===========================================
    # LOOKUPS
    # ===========================================

    async def get_period(self, period_id: uuid.UUID, refresh: bool = False) -> FiscalPeriod:
        query = select(FiscalPeriod).where(FiscalPeriod.id == period_id)
        if refresh:
            query = query.execution_options(populate_existing=True)
        result = await self.db.execute(query)
        period = result.scalar_one_or_none()
        if not period:
            raise FiscalPeriodNotFoundError(period_id=period_id)
        return period

    async def period_for(self, on: date) -> FiscalPeriod:
        """Return the period whose date range covers the given date."""
        result = await self.db.execute(
            select(FiscalPeriod)
            .where(
                and_(
                    FiscalPeriod.start_date <= on,
                    FiscalPeriod.end_date >= on,
                )
            )
            .execution_options(populate_existing=True)
        )
        period = result.scalars().first()
        if not period:
            raise FiscalPeriodNotFoundError(on_date=on)
        return period

    async def list_periods(self, status: Optional[FiscalPeriodStatus] = None) -> List[FiscalPeriod]:
        query = select(FiscalPeriod).order_by(FiscalPeriod.start_date)
        if status:
            query = query.where(FiscalPeriod.status == status)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    # ===========================================
    # POSTING GATE
    # ===========================================

    async def assert_open(self, period: PeriodRef, operation: str = "posting") -> FiscalPeriod:
        if not isinstance(period, FiscalPeriod):
            period = await self.get_period(period, refresh=True)
        if period.status != FiscalPeriodStatus.OPEN:
            raise PeriodLockedError(period.code, period.status.value, operation)
        return period

    async def reserve_posting_slot(self, period_id: uuid.UUID) -> int:
        """
        Claim the next posting sequence number inside the caller's transaction.

        The UPDATE only matches while the period is still OPEN, so a period
        closed after assert_open makes the posting fail instead of landing
        in a closed period.
        """
        result = await self.db.execute(
            update(FiscalPeriod)
            .where(
                FiscalPeriod.id == period_id,
                FiscalPeriod.status == FiscalPeriodStatus.OPEN,
            )
            .values(posting_sequence=FiscalPeriod.posting_sequence + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            period = await self.get_period(period_id, refresh=True)
            logger.warning(f"Period {period.code} changed to {period.status.value} during posting")
            raise PeriodLockedError(period.code, period.status.value)

        sequence = await self.db.execute(
            select(FiscalPeriod.posting_sequence).where(FiscalPeriod.id == period_id)
        )
        return sequence.scalar_one()

    # ===========================================
    # PERIOD SETUP
    # ===========================================

    async def create_period(
        self,
        code: str,
        name: str,
        start_date: date,
        end_date: date,
        is_adjustment: bool = False,
        adjusts_period_id: Optional[uuid.UUID] = None,
        commit: bool = True,
    ) -> FiscalPeriod:
        if start_date > end_date:
            raise InvalidDateRangeException(str(start_date), str(end_date))

        duplicate = await self.db.execute(select(FiscalPeriod.id).where(FiscalPeriod.code == code))
        if duplicate.scalar_one_or_none():
            raise DuplicateEntryException("FiscalPeriod", "code", code)

        overlap = await self.db.execute(
            select(FiscalPeriod).where(
                and_(
                    FiscalPeriod.start_date <= end_date,
                    FiscalPeriod.end_date >= start_date,
                )
            )
        )
        clash = overlap.scalars().first()
        if clash:
            raise ValidationException(
                f"Period {start_date} to {end_date} overlaps fiscal period {clash.code}",
                field="start_date",
                details={"overlapping_period": clash.code},
            )

        period = FiscalPeriod(
            code=code,
            name=name,
            start_date=start_date,
            end_date=end_date,
            status=FiscalPeriodStatus.OPEN,
            is_adjustment=is_adjustment,
            adjusts_period_id=adjusts_period_id,
            posting_sequence=0,
        )
        self.db.add(period)
        if commit:
            await self.db.commit()
        else:
            await self.db.flush()
        logger.info(f"Created fiscal period {code} ({start_date} to {end_date})")
        return period

    async def open_adjustment_period(
        self,
        closed_period_id: uuid.UUID,
        start_date: date,
        end_date: date,
        code: Optional[str] = None,
    ) -> FiscalPeriod:
        """
        Open a new, later-dated period for adjustments to a closed one.

        This is the only way postings for a closed period can resume.
        """
        original = await self.get_period(closed_period_id, refresh=True)
        if original.status == FiscalPeriodStatus.OPEN:
            raise InvalidStateTransitionError("FiscalPeriod", original.status.value, "adjustment")
        if start_date <= original.end_date:
            raise ValidationException(
                f"Adjustment period must start after {original.end_date}",
                field="start_date",
                details={"adjusts_period": original.code},
            )

        count = await self.db.execute(
            select(func.count(FiscalPeriod.id)).where(FiscalPeriod.adjusts_period_id == original.id)
        )
        sequence = count.scalar_one() + 1
        return await self.create_period(
            code=code or f"{original.code}-ADJ{sequence}",
            name=f"{original.name} - Adjustment {sequence}",
            start_date=start_date,
            end_date=end_date,
            is_adjustment=True,
            adjusts_period_id=original.id,
        )

    # ===========================================
    # STATUS TRANSITIONS
    # ===========================================

    async def close_period(self, period_id: uuid.UUID, closed_by: str) -> FiscalPeriod:
        """
        Close an OPEN period.

        Income and expense balances of the period are transferred to
        retained earnings by a JOURNAL_ENTRY posted through the normal
        posting path; the entry and the status flip commit together.
        Closing an already CLOSED period returns it unchanged.
        """
        from ledgerline.services.gl_posting_service import GLPostingEngine

        period = await self.get_period(period_id, refresh=True)
        if period.status == FiscalPeriodStatus.CLOSED:
            return period
        if period.status != FiscalPeriodStatus.OPEN:
            raise InvalidStateTransitionError("FiscalPeriod", period.status.value, "closed")

        period_code = period.code
        draft = await self.build_closing_entry(period, closed_by)
        engine = GLPostingEngine(self.db, periods=self)
        try:
            closing_id = None
            if draft is not None:
                closing_tx = await engine.post(draft, commit=False)
                closing_id = closing_tx.id

            result = await self.db.execute(
                update(FiscalPeriod)
                .where(
                    FiscalPeriod.id == period_id,
                    FiscalPeriod.status == FiscalPeriodStatus.OPEN,
                )
                .values(
                    status=FiscalPeriodStatus.CLOSED,
                    closing_transaction_id=closing_id,
                    closed_at=datetime.now(timezone.utc),
                    closed_by=closed_by,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.db.rollback()
                current = await self.get_period(period_id, refresh=True)
                if current.status == FiscalPeriodStatus.CLOSED:
                    return current
                raise InvalidStateTransitionError("FiscalPeriod", current.status.value, "closed")
            await AuditService(self.db).log_action(
                "fiscal_period",
                period_id,
                AuditAction.PERIOD_CLOSED,
                closed_by,
                old_values={"status": FiscalPeriodStatus.OPEN.value},
                new_values={
                    "status": FiscalPeriodStatus.CLOSED.value,
                    "closing_transaction_id": str(closing_id) if closing_id else None,
                },
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Closing period {period_code} failed: {e}")
            raise StoreCommitError("period close", original_error=e)
        except Exception:
            await self.db.rollback()
            raise

        period = await self.get_period(period_id, refresh=True)
        logger.info(f"Closed fiscal period {period.code} (closing entry: {period.closing_transaction_id})")
        return period

    async def lock_period(self, period_id: uuid.UUID, locked_by: str) -> FiscalPeriod:
        """CLOSED -> LOCKED. Locked periods also refuse reversals."""
        period = await self.get_period(period_id, refresh=True)
        if period.status == FiscalPeriodStatus.LOCKED:
            return period
        if period.status != FiscalPeriodStatus.CLOSED:
            raise InvalidStateTransitionError("FiscalPeriod", period.status.value, "locked")

        result = await self.db.execute(
            update(FiscalPeriod)
            .where(
                FiscalPeriod.id == period.id,
                FiscalPeriod.status == FiscalPeriodStatus.CLOSED,
            )
            .values(
                status=FiscalPeriodStatus.LOCKED,
                locked_at=datetime.now(timezone.utc),
                locked_by=locked_by,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            current = await self.get_period(period_id, refresh=True)
            if current.status == FiscalPeriodStatus.LOCKED:
                return current
            raise InvalidStateTransitionError("FiscalPeriod", current.status.value, "locked")
        await AuditService(self.db).log_action(
            "fiscal_period",
            period_id,
            AuditAction.PERIOD_LOCKED,
            locked_by,
            old_values={"status": FiscalPeriodStatus.CLOSED.value},
            new_values={"status": FiscalPeriodStatus.LOCKED.value},
        )
        await self.db.commit()

        period = await self.get_period(period.id, refresh=True)
        logger.info(f"Locked fiscal period {period.code}")
        return period

    async def check_close_readiness(self, period_id: uuid.UUID) -> CloseReadiness:
        """
        Check whether a period can be closed cleanly.

        Errors: the period is not OPEN, the retained earnings account is
        missing or inactive, or the period's ledger does not balance.
        Warnings: earlier periods still open, three-way matches dated in
        the period still awaiting approval, or the period has not ended.
        """
        period = await self.get_period(period_id, refresh=True)
        readiness = CloseReadiness(period_id=period.id, period_code=period.code, status=period.status)

        if period.status != FiscalPeriodStatus.OPEN:
            readiness.errors.append(f"Period {period.code} is already {period.status.value}")

        code = settings.retained_earnings_account_code
        try:
            retained = await AccountRegistry(self.db).get_by_code(code)
        except AccountNotFoundException:
            readiness.errors.append(f"Retained earnings account {code} does not exist")
        else:
            readiness.retained_earnings_account_id = retained.id
            if not retained.is_active:
                readiness.errors.append(f"Retained earnings account {code} is inactive")

        difference = await LedgerBalanceService(self.db).trial_balance_difference(period.id)
        if difference != 0:
            readiness.errors.append(f"Ledger for {period.code} is out of balance by {difference}")

        earlier = await self.db.execute(
            select(FiscalPeriod.code)
            .where(
                FiscalPeriod.end_date < period.start_date,
                FiscalPeriod.status == FiscalPeriodStatus.OPEN,
                FiscalPeriod.is_adjustment.is_(False),
            )
            .order_by(FiscalPeriod.start_date)
        )
        open_codes = list(earlier.scalars().all())
        if open_codes:
            readiness.warnings.append(f"Earlier periods are still open: {', '.join(open_codes)}")

        pending = await self.db.execute(
            select(func.count(ThreeWayMatch.id)).where(
                ThreeWayMatch.status == MatchStatus.AWAITING_APPROVAL,
                ThreeWayMatch.invoice_date >= period.start_date,
                ThreeWayMatch.invoice_date <= period.end_date,
            )
        )
        awaiting = pending.scalar_one()
        if awaiting:
            readiness.warnings.append(f"{awaiting} three-way match(es) dated in {period.code} await approval")

        if period.end_date >= date.today():
            readiness.warnings.append(f"Period {period.code} ends on {period.end_date}, which has not passed")

        return readiness

    async def preview_close(self, period_id: uuid.UUID) -> ClosePreview:
        """Readiness plus the closing entry lines the close would post."""
        readiness = await self.check_close_readiness(period_id)
        period = await self.get_period(period_id)

        balances = await LedgerBalanceService(self.db).account_balances(
            fiscal_period_id=period.id,
            account_types=[AccountType.INCOME, AccountType.EXPENSE],
        )
        total_income = sum(
            (b.total_credit - b.total_debit for b in balances if b.account_type == AccountType.INCOME),
            Decimal("0.00"),
        )
        total_expenses = sum(
            (b.total_debit - b.total_credit for b in balances if b.account_type == AccountType.EXPENSE),
            Decimal("0.00"),
        )

        closing_lines: List[LedgerLineDraft] = []
        if readiness.retained_earnings_account_id is not None:
            draft = await self.build_closing_entry(period)
            if draft is not None:
                closing_lines = draft.lines

        return ClosePreview(
            readiness=readiness,
            total_income=total_income,
            total_expenses=total_expenses,
            net_income=total_income - total_expenses,
            closing_lines=closing_lines,
        )

    # ===========================================
    # CLOSING ENTRY
    # ===========================================

    async def build_closing_entry(
        self,
        period: FiscalPeriod,
        closed_by: Optional[str] = None,
    ) -> Optional[DraftTransaction]:
        """
        Build the retained earnings transfer for a period.

        Returns None when the period has no income or expense activity.
        """
        balances = await LedgerBalanceService(self.db).account_balances(
            fiscal_period_id=period.id,
            account_types=[AccountType.INCOME, AccountType.EXPENSE],
        )

        lines: List[LedgerLineDraft] = []
        net_income = Decimal("0.00")
        for item in balances:
            # Raw side, so contra accounts (e.g. returns on a debit-normal income account) close too
            net_debit = item.total_debit - item.total_credit
            if net_debit == 0:
                continue
            net_income -= net_debit
            line = (
                LedgerLineDraft.credit(item.account_id, net_debit)
                if net_debit > 0
                else LedgerLineDraft.debit(item.account_id, -net_debit)
            )
            lines.append(line.model_copy(update={"memo": f"Close {item.account_code}"}))

        if not lines:
            return None

        retained = await AccountRegistry(self.db).get_by_code(settings.retained_earnings_account_code)
        if net_income > 0:
            lines.append(LedgerLineDraft.credit(retained.id, net_income, memo="Net income to retained earnings"))
        elif net_income < 0:
            lines.append(LedgerLineDraft.debit(retained.id, -net_income, memo="Net loss to retained earnings"))

        return DraftTransaction(
            idempotency_key=f"period-close:{period.id}",
            transaction_type=TransactionType.JOURNAL_ENTRY,
            transaction_date=period.end_date,
            description=f"Closing entry for {period.name}",
            currency=settings.ledger_currency,
            lines=lines,
            source_reference=f"fiscal-period:{period.id}",
            posted_by=closed_by,
        )
