"""
Ledgerline - Chart of Accounts, Fiscal Period & General Ledger Models

Double-entry ledger storage:
- Accounts (Assets, Liabilities, Equity, Income, Expenses)
- Fiscal periods with OPEN -> CLOSED -> LOCKED lifecycle
- Posted transactions owning their ledger lines

Posted transactions are append-only. Amendments are new
transactions that reference the one they reverse.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    Boolean, CheckConstraint, Date, DateTime, ForeignKey, Index, Integer,
    Numeric, String, Text, UniqueConstraint, Uuid, Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledgerline.models.base import BaseModel


# =============================================================================
# ENUMS
# =============================================================================

class AccountType(str, Enum):
    """Main account types."""
    ASSET = "asset"
    LIABILITY = "liability"
    EQUITY = "equity"
    INCOME = "income"
    EXPENSE = "expense"


class EntrySide(str, Enum):
    """Debit/credit side, used for both lines and account normal balance."""
    DEBIT = "debit"
    CREDIT = "credit"


# Normal balance per account type
NORMAL_BALANCE_BY_TYPE = {
    AccountType.ASSET: EntrySide.DEBIT,
    AccountType.EXPENSE: EntrySide.DEBIT,
    AccountType.LIABILITY: EntrySide.CREDIT,
    AccountType.EQUITY: EntrySide.CREDIT,
    AccountType.INCOME: EntrySide.CREDIT,
}


class TransactionType(str, Enum):
    """Closed set of business transaction kinds the ledger accepts."""
    CUSTOMER_INVOICE = "customer_invoice"
    VENDOR_BILL = "vendor_bill"
    PAYMENT = "payment"
    JOURNAL_ENTRY = "journal_entry"
    FOREX_ADJUSTMENT = "forex_adjustment"
    BANK_IMPORT = "bank_import"


# Entry number prefixes
TRANSACTION_PREFIXES = {
    TransactionType.CUSTOMER_INVOICE: "CI",
    TransactionType.VENDOR_BILL: "VB",
    TransactionType.PAYMENT: "PY",
    TransactionType.JOURNAL_ENTRY: "JE",
    TransactionType.FOREX_ADJUSTMENT: "FX",
    TransactionType.BANK_IMPORT: "BI",
}


class TransactionStatus(str, Enum):
    DRAFT = "draft"
    POSTED = "posted"


class FiscalPeriodStatus(str, Enum):
    """Fiscal period status. Transitions are one-directional."""
    OPEN = "open"
    CLOSED = "closed"
    LOCKED = "locked"


# =============================================================================
# CHART OF ACCOUNTS
# =============================================================================

class Account(BaseModel):
    """
    Chart of accounts entry.

    Metadata is owned by the chart-of-accounts collaborator; the engine
    only reads it, apart from seeding through the AccountRegistry.
    """

    __tablename__ = "accounts"

    code: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    account_type: Mapped[AccountType] = mapped_column(SQLEnum(AccountType), nullable=False)
    normal_balance: Mapped[EntrySide] = mapped_column(SQLEnum(EntrySide), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Account(code={self.code}, name={self.name})>"


# =============================================================================
# FISCAL PERIODS
# =============================================================================

class FiscalPeriod(BaseModel):
    """
    Accounting period with a posting-eligibility status.

    Reopening is never a reverse transition: an adjustment period with
    later dates is created instead and points back at the closed one.
    """

    __tablename__ = "fiscal_periods"

    code: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[FiscalPeriodStatus] = mapped_column(
        SQLEnum(FiscalPeriodStatus),
        default=FiscalPeriodStatus.OPEN,
        nullable=False,
    )

    # Bumped by every posting; the guarded UPDATE doubles as the entry number source
    posting_sequence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Adjustment periods
    is_adjustment: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    adjusts_period_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("fiscal_periods.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Closing
    closing_transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, nullable=True,
        comment="JOURNAL_ENTRY that transferred income/expense to retained earnings",
    )
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    __table_args__ = (
        CheckConstraint("start_date <= end_date", name="period_date_range"),
    )

    @property
    def is_open(self) -> bool:
        return self.status == FiscalPeriodStatus.OPEN

    def covers(self, on: date) -> bool:
        return self.start_date <= on <= self.end_date

    def __repr__(self) -> str:
        return f"<FiscalPeriod(code={self.code}, status={self.status.value})>"


# =============================================================================
# GENERAL LEDGER
# =============================================================================

class Transaction(BaseModel):
    """
    Posted business transaction.

    Owns its ledger lines, which are inserted in the same database
    transaction. Rows are never updated after posting.
    """

    __tablename__ = "transactions"

    entry_number: Mapped[str] = mapped_column(
        String(50), nullable=False, unique=True,
        comment="Generated entry number (e.g., VB-2025-04-00001)",
    )
    transaction_type: Mapped[TransactionType] = mapped_column(
        SQLEnum(TransactionType), nullable=False, index=True,
    )
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    fiscal_period_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("fiscal_periods.id"),
        nullable=False,
        index=True,
    )
    description: Mapped[str] = mapped_column(String(500), nullable=False)

    # Source document currency; line amounts are in the ledger currency
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    exchange_rate: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=6),
        default=Decimal("1.000000"),
        nullable=False,
    )

    total_debit: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    total_credit: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)

    status: Mapped[TransactionStatus] = mapped_column(
        SQLEnum(TransactionStatus),
        default=TransactionStatus.DRAFT,
        nullable=False,
    )
    posted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    posted_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Idempotency
    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # Traceability (e.g. "three-way-match:<id>"); deliberately not a foreign key
    source_reference: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, index=True)
    reference: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True,
        comment="External document reference, used by bank reconciliation",
    )

    # Reversal
    reverses_transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("transactions.id"),
        nullable=True,
        unique=True,
    )
    reversal_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    lines: Mapped[List["LedgerLine"]] = relationship(
        "LedgerLine",
        back_populates="transaction",
        cascade="all, delete-orphan",
        order_by="LedgerLine.line_number",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "total_debit - total_credit BETWEEN -0.01 AND 0.01",
            name="transaction_balanced",
        ),
    )

    @property
    def amount(self) -> Decimal:
        return self.total_debit

    def __repr__(self) -> str:
        return f"<Transaction(entry_number={self.entry_number}, type={self.transaction_type.value})>"


class LedgerLine(BaseModel):
    """One debit or credit line within a transaction."""

    __tablename__ = "ledger_lines"

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("accounts.id"),
        nullable=False,
        index=True,
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    side: Mapped[EntrySide] = mapped_column(SQLEnum(EntrySide), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    cost_centre_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    memo: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    transaction: Mapped["Transaction"] = relationship("Transaction", back_populates="lines")

    __table_args__ = (
        CheckConstraint("amount > 0", name="line_amount_positive"),
        UniqueConstraint("transaction_id", "line_number", name="uq_ledger_line_number"),
        Index("ix_ledger_lines_account_side", "account_id", "side"),
    )

    @property
    def debit_amount(self) -> Decimal:
        return self.amount if self.side == EntrySide.DEBIT else Decimal("0.00")

    @property
    def credit_amount(self) -> Decimal:
        return self.amount if self.side == EntrySide.CREDIT else Decimal("0.00")
