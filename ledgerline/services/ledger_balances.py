"""
Ledgerline - Ledger Balance Service

Account balances are always aggregated from posted ledger lines.
No running balance is stored, so concurrent postings cannot lose updates.
"""

import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.models.accounting import (
    Account,
    AccountType,
    EntrySide,
    LedgerLine,
    Transaction,
    TransactionStatus,
)


@dataclass
class AccountBalance:
    account_id: uuid.UUID
    account_code: str
    account_name: str
    account_type: AccountType
    normal_balance: EntrySide
    total_debit: Decimal
    total_credit: Decimal

    @property
    def balance(self) -> Decimal:
        """Balance signed by the account's normal side."""
        if self.normal_balance == EntrySide.DEBIT:
            return self.total_debit - self.total_credit
        return self.total_credit - self.total_debit


class LedgerBalanceService:
    """Derives balances from the transactional log."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def account_balances(
        self,
        fiscal_period_id: Optional[uuid.UUID] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        account_types: Optional[Iterable[AccountType]] = None,
    ) -> List[AccountBalance]:
        debit_sum = func.coalesce(
            func.sum(case((LedgerLine.side == EntrySide.DEBIT, LedgerLine.amount), else_=0)), 0
        )
        credit_sum = func.coalesce(
            func.sum(case((LedgerLine.side == EntrySide.CREDIT, LedgerLine.amount), else_=0)), 0
        )

        query = (
            select(
                Account.id,
                Account.code,
                Account.name,
                Account.account_type,
                Account.normal_balance,
                debit_sum.label("total_debit"),
                credit_sum.label("total_credit"),
            )
            .join(LedgerLine, LedgerLine.account_id == Account.id)
            .join(Transaction, Transaction.id == LedgerLine.transaction_id)
            .where(Transaction.status == TransactionStatus.POSTED)
            .group_by(
                Account.id, Account.code, Account.name,
                Account.account_type, Account.normal_balance,
            )
            .order_by(Account.code)
        )
        if fiscal_period_id:
            query = query.where(Transaction.fiscal_period_id == fiscal_period_id)
        if start_date:
            query = query.where(Transaction.transaction_date >= start_date)
        if end_date:
            query = query.where(Transaction.transaction_date <= end_date)
        if account_types:
            query = query.where(Account.account_type.in_(list(account_types)))

        result = await self.db.execute(query)
        return [
            AccountBalance(
                account_id=row.id,
                account_code=row.code,
                account_name=row.name,
                account_type=row.account_type,
                normal_balance=row.normal_balance,
                total_debit=Decimal(str(row.total_debit)).quantize(Decimal("0.01")),
                total_credit=Decimal(str(row.total_credit)).quantize(Decimal("0.01")),
            )
            for row in result.all()
        ]

    async def trial_balance_difference(self, fiscal_period_id: Optional[uuid.UUID] = None) -> Decimal:
        """Total debits minus total credits across all posted lines."""
        balances = await self.account_balances(fiscal_period_id=fiscal_period_id)
        return sum((b.total_debit - b.total_credit for b in balances), Decimal("0.00"))
