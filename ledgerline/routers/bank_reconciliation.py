"""
Ledgerline - Bank Reconciliation API Router

Statement import, automatic matching and manual unmatching.
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.database import get_db
from ledgerline.models.bank_reconciliation import BankMatchStatus
from ledgerline.schemas.bank_reconciliation import (
    BankTransactionImportRequest,
    BankTransactionResponse,
    MatchBatchRequest,
    MatchSuggestionResponse,
    ReconcileRangeRequest,
    ReconciliationMatchResponse,
    ReconciliationStatisticsResponse,
)
from ledgerline.services.bank_reconciliation_service import get_bank_reconciliation_matcher

router = APIRouter()


# =============================================================================
# STATEMENT LINES
# =============================================================================

@router.post(
    "/transactions/import",
    response_model=List[BankTransactionResponse],
    status_code=status.HTTP_201_CREATED,
)
async def import_bank_transactions(
    request: BankTransactionImportRequest,
    db: AsyncSession = Depends(get_db),
):
    """Import parsed statement rows. Known external ids are returned unchanged."""
    return await get_bank_reconciliation_matcher(db).import_transactions(request.transactions)


@router.get("/transactions", response_model=List[BankTransactionResponse])
async def list_bank_transactions(
    match_status: Optional[BankMatchStatus] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return await get_bank_reconciliation_matcher(db).list_bank_transactions(status=match_status)


@router.get(
    "/transactions/{bank_transaction_id}/suggestions",
    response_model=List[MatchSuggestionResponse],
)
async def suggest_matches(
    bank_transaction_id: uuid.UUID,
    limit: int = Query(5, ge=1, le=20),
    db: AsyncSession = Depends(get_db),
):
    """Ranked candidates for an open bank line, for manual review."""
    return await get_bank_reconciliation_matcher(db).suggest_matches(bank_transaction_id, limit=limit)


@router.get("/statistics", response_model=ReconciliationStatisticsResponse)
async def reconciliation_statistics(db: AsyncSession = Depends(get_db)):
    return await get_bank_reconciliation_matcher(db).match_statistics()


# =============================================================================
# MATCHING
# =============================================================================

@router.post("/match-batch", response_model=List[ReconciliationMatchResponse])
async def match_batch(
    request: MatchBatchRequest,
    db: AsyncSession = Depends(get_db),
):
    """Match the given bank lines against the given ledger transactions."""
    return await get_bank_reconciliation_matcher(db).match_by_ids(
        request.bank_transaction_ids,
        request.transaction_ids,
    )


@router.post("/reconcile", response_model=List[ReconciliationMatchResponse])
async def reconcile(
    request: ReconcileRangeRequest,
    db: AsyncSession = Depends(get_db),
):
    """Match all open bank lines in the date range against unreconciled postings."""
    return await get_bank_reconciliation_matcher(db).reconcile_period(
        request.start_date,
        request.end_date,
        bank_account_code=request.bank_account_code,
    )


@router.get("/matches", response_model=List[ReconciliationMatchResponse])
async def list_matches(db: AsyncSession = Depends(get_db)):
    return await get_bank_reconciliation_matcher(db).list_matches()


@router.get("/matches/{match_id}", response_model=ReconciliationMatchResponse)
async def get_match(
    match_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    return await get_bank_reconciliation_matcher(db).get_match(match_id)


@router.delete("/matches/{match_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unmatch(
    match_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Remove a match and return its bank lines to UNMATCHED."""
    await get_bank_reconciliation_matcher(db).unmatch(match_id)
