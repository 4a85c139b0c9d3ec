"""
Ledgerline - Ledger API Router

Endpoints for accounts, transaction posting and reversal, balances
and realized forex adjustments. Every write goes through the
GLPostingEngine.
"""

import uuid
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.database import get_db
from ledgerline.models.accounting import AccountType, TransactionType
from ledgerline.schemas.accounting import (
    AccountBalanceResponse,
    AccountCreate,
    AccountResponse,
    AccountUpdate,
    DraftTransaction,
    ForexAdjustmentRequest,
    ReverseTransactionRequest,
    TransactionResponse,
)
from ledgerline.services.account_registry import AccountRegistry
from ledgerline.services.forex_service import ForexAdjustmentCalculator, ForexExposure
from ledgerline.services.gl_posting_service import get_gl_posting_engine
from ledgerline.services.ledger_balances import LedgerBalanceService

router = APIRouter()


# =============================================================================
# ACCOUNTS
# =============================================================================

@router.get("/accounts", response_model=List[AccountResponse])
async def list_accounts(
    active_only: bool = Query(False, description="Only active accounts"),
    account_type: Optional[AccountType] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """List registered accounts ordered by code."""
    return await AccountRegistry(db).list_accounts(active_only=active_only, account_type=account_type)


@router.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def register_account(
    request: AccountCreate,
    db: AsyncSession = Depends(get_db),
):
    """Register an account synced from the chart of accounts."""
    return await AccountRegistry(db).register(
        code=request.code,
        name=request.name,
        account_type=request.account_type,
        normal_balance=request.normal_balance,
        description=request.description,
    )


@router.patch("/accounts/{account_id}", response_model=AccountResponse)
async def update_account(
    account_id: uuid.UUID,
    request: AccountUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Update account metadata. Type and normal balance freeze once posted lines exist."""
    return await AccountRegistry(db).update_account(account_id, **request.model_dump(exclude_unset=True))


# =============================================================================
# TRANSACTIONS
# =============================================================================

@router.post("/transactions", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
async def post_transaction(
    draft: DraftTransaction,
    db: AsyncSession = Depends(get_db),
):
    """
    Post a balanced transaction.

    Resubmitting the same idempotency key with the same content returns
    the original posting.
    """
    return await get_gl_posting_engine(db).post(draft)


@router.get("/transactions", response_model=List[TransactionResponse])
async def list_transactions(
    fiscal_period_id: Optional[uuid.UUID] = Query(None),
    transaction_type: Optional[TransactionType] = Query(None),
    source_reference: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return await get_gl_posting_engine(db).list_transactions(
        fiscal_period_id=fiscal_period_id,
        transaction_type=transaction_type,
        source_reference=source_reference,
    )


@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(
    transaction_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    return await get_gl_posting_engine(db).get_transaction(transaction_id)


@router.post(
    "/transactions/{transaction_id}/reverse",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def reverse_transaction(
    transaction_id: uuid.UUID,
    request: ReverseTransactionRequest,
    db: AsyncSession = Depends(get_db),
):
    """Post a reversing journal entry for a posted transaction."""
    return await get_gl_posting_engine(db).reverse(
        transaction_id,
        reversal_date=request.reversal_date,
        reason=request.reason,
        idempotency_key=request.idempotency_key,
        posted_by=request.posted_by,
    )


# =============================================================================
# BALANCES
# =============================================================================

@router.get("/balances", response_model=List[AccountBalanceResponse])
async def account_balances(
    fiscal_period_id: Optional[uuid.UUID] = Query(None),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Balances aggregated from posted ledger lines."""
    balances = await LedgerBalanceService(db).account_balances(
        fiscal_period_id=fiscal_period_id,
        start_date=start_date,
        end_date=end_date,
    )
    return [
        AccountBalanceResponse(
            account_id=b.account_id,
            account_code=b.account_code,
            account_name=b.account_name,
            account_type=b.account_type,
            total_debit=b.total_debit,
            total_credit=b.total_credit,
            balance=b.balance,
        )
        for b in balances
    ]


# =============================================================================
# FOREX
# =============================================================================

@router.post("/forex-adjustments", response_model=Optional[TransactionResponse])
async def post_forex_adjustment(
    request: ForexAdjustmentRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Post the realized exchange gain or loss on settlement.

    Returns null when the settlement rate equals the booking rate.
    """
    return await ForexAdjustmentCalculator(db).post_adjustment(
        source_transaction_id=request.source_transaction_id,
        foreign_amount=request.foreign_amount,
        booking_rate=request.booking_rate,
        settlement_rate=request.settlement_rate,
        settlement_account_id=request.settlement_account_id,
        settlement_date=request.settlement_date,
        foreign_currency=request.foreign_currency,
        exposure=ForexExposure(request.exposure) if request.exposure else None,
        idempotency_key=request.idempotency_key,
        posted_by=request.posted_by,
    )
