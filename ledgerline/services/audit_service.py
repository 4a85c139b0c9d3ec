"""
Ledgerline - Audit Trail Service

Records match decisions and period transitions. Callers log inside their
own unit of work so the entry commits or rolls back with the change.
"""

import uuid
from datetime import date
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.models.audit import AuditAction, AuditLog


class AuditService:
    """Service for writing and reading the audit trail."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log_action(
        self,
        entity_type: str,
        entity_id: Union[uuid.UUID, str],
        action: AuditAction,
        actor: Optional[str] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        """
        Add an audit entry to the current transaction.

        Only flushes; the caller's commit makes it durable.
        """
        changes = None
        if old_values and new_values:
            changes = self._calculate_changes(old_values, new_values)

        audit_log = AuditLog(
            target_entity_type=entity_type,
            target_entity_id=str(entity_id),
            action=action,
            actor=actor,
            old_values=old_values,
            new_values=new_values,
            changes=changes,
        )
        self.db.add(audit_log)
        await self.db.flush()
        return audit_log

    def _calculate_changes(
        self,
        old_values: Dict[str, Any],
        new_values: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Calculate what changed between old and new values."""
        changes = {}
        for key in set(old_values) | set(new_values):
            old_val = old_values.get(key)
            new_val = new_values.get(key)
            if old_val != new_val:
                changes[key] = {"old": old_val, "new": new_val}
        return changes

    async def get_audit_logs(
        self,
        target_entity_type: Optional[str] = None,
        target_entity_id: Optional[Union[uuid.UUID, str]] = None,
        action: Optional[AuditAction] = None,
        actor: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[AuditLog]:
        """Audit entries, newest first, with optional filters."""
        query = select(AuditLog)
        if target_entity_type:
            query = query.where(AuditLog.target_entity_type == target_entity_type)
        if target_entity_id:
            query = query.where(AuditLog.target_entity_id == str(target_entity_id))
        if action:
            query = query.where(AuditLog.action == action)
        if actor:
            query = query.where(AuditLog.actor == actor)
        if start_date:
            query = query.where(func.date(AuditLog.created_at) >= start_date)
        if end_date:
            query = query.where(func.date(AuditLog.created_at) <= end_date)

        query = query.order_by(AuditLog.created_at.desc(), AuditLog.id).offset(skip).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_entity_history(
        self,
        target_entity_type: str,
        target_entity_id: Union[uuid.UUID, str],
    ) -> List[AuditLog]:
        """All entries for one entity, oldest first."""
        result = await self.db.execute(
            select(AuditLog)
            .where(
                AuditLog.target_entity_type == target_entity_type,
                AuditLog.target_entity_id == str(target_entity_id),
            )
            .order_by(AuditLog.created_at, AuditLog.id)
        )
        return list(result.scalars().all())
