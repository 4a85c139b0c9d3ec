"""
Ledgerline - Accounting Schemas

Pydantic schemas for accounts, draft/posted transactions and fiscal periods.

Draft lines are deliberately loose: balance, sign and side checks belong
to the LedgerValidator so that every caller gets the same typed error.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ledgerline.models.accounting import (
    AccountType,
    EntrySide,
    FiscalPeriodStatus,
    TransactionStatus,
    TransactionType,
)


# =============================================================================
# ACCOUNTS
# =============================================================================

class AccountCreate(BaseModel):
    """Schema for registering an account synced from the chart of accounts."""
    code: str = Field(..., min_length=1, max_length=20)
    name: str = Field(..., min_length=1, max_length=200)
    account_type: AccountType
    normal_balance: Optional[EntrySide] = None
    description: Optional[str] = None


class AccountUpdate(BaseModel):
    """Partial update; code is never editable."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    account_type: Optional[AccountType] = None
    normal_balance: Optional[EntrySide] = None
    is_active: Optional[bool] = None
    description: Optional[str] = None


class AccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    name: str
    account_type: AccountType
    normal_balance: EntrySide
    is_active: bool


class AccountBalanceResponse(BaseModel):
    """Balance derived from posted ledger lines."""
    account_id: UUID
    account_code: str
    account_name: str
    account_type: AccountType
    total_debit: Decimal
    total_credit: Decimal
    balance: Decimal


# =============================================================================
# TRANSACTIONS
# =============================================================================

class LedgerLineDraft(BaseModel):
    """One proposed debit or credit line."""
    account_id: UUID
    debit_amount: Decimal = Decimal("0")
    credit_amount: Decimal = Decimal("0")
    cost_centre_id: Optional[UUID] = None
    memo: Optional[str] = Field(None, max_length=500)

    @classmethod
    def debit(cls, account_id: UUID, amount: Decimal, **kwargs) -> "LedgerLineDraft":
        return cls(account_id=account_id, debit_amount=amount, **kwargs)

    @classmethod
    def credit(cls, account_id: UUID, amount: Decimal, **kwargs) -> "LedgerLineDraft":
        return cls(account_id=account_id, credit_amount=amount, **kwargs)

    @property
    def side(self) -> Optional[EntrySide]:
        if self.debit_amount > 0 and self.credit_amount == 0:
            return EntrySide.DEBIT
        if self.credit_amount > 0 and self.debit_amount == 0:
            return EntrySide.CREDIT
        return None

    @property
    def amount(self) -> Decimal:
        return self.debit_amount if self.side == EntrySide.DEBIT else self.credit_amount


class DraftTransaction(BaseModel):
    """
    Business transaction submitted for posting.

    The idempotency key is generated by the caller and must be reused
    on retries of the same business event.
    """
    idempotency_key: str = Field(..., min_length=1, max_length=200)
    transaction_type: TransactionType
    transaction_date: date
    description: str = Field(..., min_length=1, max_length=500)
    currency: str = Field("INR", min_length=3, max_length=3)
    exchange_rate: Decimal = Decimal("1")
    lines: List[LedgerLineDraft] = Field(default_factory=list)
    source_reference: Optional[str] = Field(None, max_length=200)
    reference: Optional[str] = Field(None, max_length=100)
    posted_by: Optional[str] = Field(None, max_length=100)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator("exchange_rate")
    @classmethod
    def positive_rate(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("exchange_rate must be greater than zero")
        return v

    @property
    def total_debit(self) -> Decimal:
        return sum((line.debit_amount for line in self.lines), Decimal("0"))

    @property
    def total_credit(self) -> Decimal:
        return sum((line.credit_amount for line in self.lines), Decimal("0"))


class LedgerLineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    line_number: int
    account_id: UUID
    side: EntrySide
    amount: Decimal
    debit_amount: Decimal
    credit_amount: Decimal
    cost_centre_id: Optional[UUID] = None
    memo: Optional[str] = None


class TransactionResponse(BaseModel):
    """Posted transaction as returned to reporting and export collaborators."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entry_number: str
    transaction_type: TransactionType
    transaction_date: date
    fiscal_period_id: UUID
    description: str
    currency: str
    exchange_rate: Decimal
    total_debit: Decimal
    total_credit: Decimal
    status: TransactionStatus
    posted_at: Optional[datetime] = None
    idempotency_key: str
    source_reference: Optional[str] = None
    reference: Optional[str] = None
    reverses_transaction_id: Optional[UUID] = None
    lines: List[LedgerLineResponse]


class ReverseTransactionRequest(BaseModel):
    idempotency_key: str = Field(..., min_length=1, max_length=200)
    reversal_date: date
    reason: str = Field(..., min_length=1)
    posted_by: Optional[str] = None


# =============================================================================
# FISCAL PERIODS
# =============================================================================

class FiscalPeriodCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=20)
    name: str = Field(..., min_length=1, max_length=100)
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def check_range(self) -> "FiscalPeriodCreate":
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class AdjustmentPeriodCreate(BaseModel):
    start_date: date
    end_date: date
    code: Optional[str] = Field(None, max_length=20)


class PeriodActionRequest(BaseModel):
    actor: str = Field(..., min_length=1, max_length=100)


class FiscalPeriodResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    name: str
    start_date: date
    end_date: date
    status: FiscalPeriodStatus
    is_adjustment: bool
    adjusts_period_id: Optional[UUID] = None
    closing_transaction_id: Optional[UUID] = None
    closed_at: Optional[datetime] = None
    closed_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None


class CloseReadinessResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    period_id: UUID
    period_code: str
    status: FiscalPeriodStatus
    is_ready: bool
    retained_earnings_account_id: Optional[UUID] = None
    errors: List[str]
    warnings: List[str]


class ClosePreviewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    readiness: CloseReadinessResponse
    total_income: Decimal
    total_expenses: Decimal
    net_income: Decimal
    closing_lines: List[LedgerLineDraft]


# =============================================================================
# FOREX
# =============================================================================

class ForexAdjustmentRequest(BaseModel):
    source_transaction_id: UUID
    foreign_amount: Decimal = Field(..., gt=0)
    booking_rate: Decimal = Field(..., gt=0)
    settlement_rate: Decimal = Field(..., gt=0)
    exposure: Optional[str] = Field(None, pattern="^(receivable|payable)$")
    settlement_account_id: UUID
    settlement_date: date
    foreign_currency: str = Field(..., min_length=3, max_length=3)
    idempotency_key: Optional[str] = None
    posted_by: Optional[str] = None
