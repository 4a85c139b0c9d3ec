"""
Ledgerline - Bank Reconciliation Schemas
"""

from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ledgerline.models.bank_reconciliation import BankMatchStatus, ReconciliationMatchType


class BankTransactionCreate(BaseModel):
    """Parsed statement row supplied by the import collaborator."""
    external_id: str = Field(..., min_length=1, max_length=100)
    transaction_date: date
    amount: Decimal
    reference: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=500)
    raw_line: Optional[str] = None
    bank_account_code: Optional[str] = None

    @model_validator(mode="after")
    def non_zero(self) -> "BankTransactionCreate":
        if self.amount == 0:
            raise ValueError("amount must not be zero")
        return self


class BankTransactionImportRequest(BaseModel):
    transactions: List[BankTransactionCreate] = Field(..., min_length=1)


class BankTransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    external_id: str
    transaction_date: date
    amount: Decimal
    reference: Optional[str] = None
    description: Optional[str] = None
    match_status: BankMatchStatus
    reconciliation_match_id: Optional[UUID] = None


class MatchBatchRequest(BaseModel):
    bank_transaction_ids: List[UUID] = Field(..., min_length=1)
    transaction_ids: List[UUID] = Field(..., min_length=1)


class ReconcileRangeRequest(BaseModel):
    start_date: date
    end_date: date
    bank_account_code: Optional[str] = None


class ReconciliationMatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    match_type: ReconciliationMatchType
    confidence_score: Decimal
    score_breakdown: Optional[Dict[str, str]] = None
    bank_amount: Decimal
    ledger_amount: Decimal
    unreconciled_difference: Decimal
    bank_transaction_ids: List[UUID]
    transaction_ids: List[UUID]


class MatchSuggestionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id: UUID
    entry_number: str
    transaction_date: date
    amount: Decimal
    confidence: str
    confidence_score: Decimal
    score_breakdown: Dict[str, str]


class ReconciliationStatisticsResponse(BaseModel):
    total_bank_transactions: int
    matched: int
    partially_matched: int
    unmatched: int
    match_rate_percent: Decimal
    matches_by_type: Dict[str, int]
    unreconciled_difference: Decimal
