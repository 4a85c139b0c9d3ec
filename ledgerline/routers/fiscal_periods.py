"""
Ledgerline - Fiscal Periods API Router
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.database import get_db
from ledgerline.models.accounting import FiscalPeriodStatus
from ledgerline.schemas.accounting import (
    AdjustmentPeriodCreate,
    ClosePreviewResponse,
    CloseReadinessResponse,
    FiscalPeriodCreate,
    FiscalPeriodResponse,
    PeriodActionRequest,
)
from ledgerline.services.fiscal_period_service import FiscalPeriodManager

router = APIRouter()


@router.get("", response_model=List[FiscalPeriodResponse])
async def list_periods(
    status_filter: Optional[FiscalPeriodStatus] = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
):
    return await FiscalPeriodManager(db).list_periods(status=status_filter)


@router.post("", response_model=FiscalPeriodResponse, status_code=status.HTTP_201_CREATED)
async def create_period(
    request: FiscalPeriodCreate,
    db: AsyncSession = Depends(get_db),
):
    return await FiscalPeriodManager(db).create_period(
        code=request.code,
        name=request.name,
        start_date=request.start_date,
        end_date=request.end_date,
    )


@router.get("/{period_id}", response_model=FiscalPeriodResponse)
async def get_period(
    period_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    return await FiscalPeriodManager(db).get_period(period_id)


@router.get("/{period_id}/close-readiness", response_model=CloseReadinessResponse)
async def check_close_readiness(
    period_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    readiness = await FiscalPeriodManager(db).check_close_readiness(period_id)
    return CloseReadinessResponse.model_validate(readiness, from_attributes=True)


@router.get("/{period_id}/close-preview", response_model=ClosePreviewResponse)
async def preview_close(
    period_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Totals and closing entry lines the close would post. Nothing is written."""
    preview = await FiscalPeriodManager(db).preview_close(period_id)
    return ClosePreviewResponse.model_validate(preview, from_attributes=True)


@router.post("/{period_id}/close", response_model=FiscalPeriodResponse)
async def close_period(
    period_id: uuid.UUID,
    request: PeriodActionRequest,
    db: AsyncSession = Depends(get_db),
):
    """Close an OPEN period, posting the retained earnings transfer."""
    return await FiscalPeriodManager(db).close_period(period_id, closed_by=request.actor)


@router.post("/{period_id}/lock", response_model=FiscalPeriodResponse)
async def lock_period(
    period_id: uuid.UUID,
    request: PeriodActionRequest,
    db: AsyncSession = Depends(get_db),
):
    return await FiscalPeriodManager(db).lock_period(period_id, locked_by=request.actor)


@router.post(
    "/{period_id}/adjustment-period",
    response_model=FiscalPeriodResponse,
    status_code=status.HTTP_201_CREATED,
)
async def open_adjustment_period(
    period_id: uuid.UUID,
    request: AdjustmentPeriodCreate,
    db: AsyncSession = Depends(get_db),
):
    """Open a later-dated adjustment period for a closed period."""
    return await FiscalPeriodManager(db).open_adjustment_period(
        period_id,
        start_date=request.start_date,
        end_date=request.end_date,
        code=request.code,
    )
