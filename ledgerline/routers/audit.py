"""
Ledgerline - Audit Trail API Router
"""

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.database import get_db
from ledgerline.models.audit import AuditAction
from ledgerline.schemas.audit import AuditLogResponse
from ledgerline.services.audit_service import AuditService

router = APIRouter()


@router.get("", response_model=List[AuditLogResponse])
async def list_audit_logs(
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[str] = Query(None),
    action: Optional[AuditAction] = Query(None),
    actor: Optional[str] = Query(None),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """Audit entries, newest first."""
    return await AuditService(db).get_audit_logs(
        target_entity_type=entity_type,
        target_entity_id=entity_id,
        action=action,
        actor=actor,
        start_date=start_date,
        end_date=end_date,
        skip=skip,
        limit=limit,
    )
