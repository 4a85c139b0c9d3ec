"""
Ledgerline - Audit Trail Models

Append-only record of decisions taken on matches and fiscal periods.
Rows are written in the same database transaction as the change they
describe and are never updated or deleted.
"""

from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Index, String, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from ledgerline.models.base import BaseModel


class AuditAction(str, Enum):
    MATCH_CREATED = "match_created"
    MATCH_APPROVED = "match_approved"
    MATCH_REJECTED = "match_rejected"
    PERIOD_CLOSED = "period_closed"
    PERIOD_LOCKED = "period_locked"


class AuditLog(BaseModel):
    """Immutable audit log entry."""

    __tablename__ = "audit_logs"

    target_entity_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    target_entity_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action: Mapped[AuditAction] = mapped_column(SQLEnum(AuditAction), nullable=False, index=True)
    actor: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    old_values: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    new_values: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    changes: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_audit_logs_target", "target_entity_type", "target_entity_id"),
    )

    def __repr__(self) -> str:
        return f"<AuditLog({self.action.value} {self.target_entity_type}:{self.target_entity_id})>"
