"""
Ledgerline - Three-Way Matching API Router

PO / Receipt / Invoice matching with an approval step for invoices
outside the auto-approve tolerance.
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.database import get_db
from ledgerline.models.procurement import MatchStatus
from ledgerline.schemas.procurement import (
    MatchApprovalRequest,
    MatchRejectionRequest,
    ThreeWayMatchRequest,
    ThreeWayMatchResponse,
)
from ledgerline.services.three_way_matching import get_three_way_match_engine

router = APIRouter()


@router.post("", response_model=ThreeWayMatchResponse, status_code=status.HTTP_201_CREATED)
async def create_match(
    request: ThreeWayMatchRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Match an invoice against its purchase order and goods receipt.

    Within tolerance the vendor bill is posted immediately; otherwise the
    match waits for approval.
    """
    return await get_three_way_match_engine(db).match(
        request.purchase_order,
        request.receipt,
        request.invoice,
        submitted_by=request.submitted_by,
    )


@router.get("", response_model=List[ThreeWayMatchResponse])
async def list_matches(
    status_filter: Optional[MatchStatus] = Query(None, alias="status"),
    po_id: Optional[uuid.UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return await get_three_way_match_engine(db).list_matches(status=status_filter, po_id=po_id)


@router.get("/{match_id}", response_model=ThreeWayMatchResponse)
async def get_match(
    match_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    return await get_three_way_match_engine(db).get_match(match_id)


@router.post("/{match_id}/approve", response_model=ThreeWayMatchResponse)
async def approve_match(
    match_id: uuid.UUID,
    request: MatchApprovalRequest,
    db: AsyncSession = Depends(get_db),
):
    """Approve a match awaiting approval and post its vendor bill."""
    return await get_three_way_match_engine(db).approve(
        match_id,
        approved_by=request.approved_by,
        justification=request.justification,
        approver_tier=request.approver_tier,
        posting_date=request.posting_date,
    )


@router.post("/{match_id}/reject", response_model=ThreeWayMatchResponse)
async def reject_match(
    match_id: uuid.UUID,
    request: MatchRejectionRequest,
    db: AsyncSession = Depends(get_db),
):
    return await get_three_way_match_engine(db).reject(
        match_id,
        rejected_by=request.rejected_by,
        justification=request.justification,
    )
