"""
Ledgerline - Three-Way Match Models

Persisted outcome of matching a Purchase Order, Goods Receipt and
Vendor Invoice. The procurement documents themselves belong to the
procurement collaborator and are referenced by ID only.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String,
    Text, UniqueConstraint, Uuid, Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledgerline.models.base import BaseModel


class MatchStatus(str, Enum):
    PENDING = "pending"
    AUTO_APPROVED = "auto_approved"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


TERMINAL_MATCH_STATUSES = frozenset({
    MatchStatus.AUTO_APPROVED,
    MatchStatus.APPROVED,
    MatchStatus.REJECTED,
})


class DiscrepancySeverity(str, Enum):
    """Severity levels, declared from least to most severe."""
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, DiscrepancySeverity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, DiscrepancySeverity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, DiscrepancySeverity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, DiscrepancySeverity):
            return NotImplemented
        return self.rank >= other.rank


_SEVERITY_ORDER = list(DiscrepancySeverity)


class DiscrepancyKind(str, Enum):
    LINE_VARIANCE = "line_variance"
    MISSING_IN_INVOICE = "missing_in_invoice"
    EXTRA_IN_INVOICE = "extra_in_invoice"
    NOT_RECEIVED = "not_received"
    OVER_INVOICED = "over_invoiced"


class ThreeWayMatch(BaseModel):
    """
    Three-way match of PO, receipt and invoice.

    Aggregate severity is derived from the discrepancy lines.
    """

    __tablename__ = "three_way_matches"

    po_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    receipt_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    invoice_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    vendor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    invoice_number: Mapped[str] = mapped_column(String(100), nullable=False)
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    invoice_net_total: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    invoice_tax_total: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    invoice_total: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)

    status: Mapped[MatchStatus] = mapped_column(
        SQLEnum(MatchStatus),
        default=MatchStatus.PENDING,
        nullable=False,
        index=True,
    )
    required_approval_tier: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    covers_full_po: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Item reference -> quantity billed by this invoice, summed per PO across matches
    invoiced_quantities: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Snapshot of the invoice lines used to build the vendor bill on approval
    bill_lines: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    # Decision
    decided_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    justification: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Set once the vendor bill is posted
    transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("transactions.id"),
        nullable=True,
    )

    discrepancies: Mapped[List["MatchDiscrepancy"]] = relationship(
        "MatchDiscrepancy",
        back_populates="match",
        cascade="all, delete-orphan",
        order_by="MatchDiscrepancy.position",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("po_id", "invoice_id", name="uq_three_way_match_po_invoice"),
        Index("ix_three_way_matches_po_invoice_number", "po_id", "invoice_number"),
    )

    @property
    def severity(self) -> DiscrepancySeverity:
        return max(
            (d.severity for d in self.discrepancies),
            default=DiscrepancySeverity.NONE,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_MATCH_STATUSES

    def __repr__(self) -> str:
        return f"<ThreeWayMatch(po={self.po_id}, invoice={self.invoice_number}, status={self.status.value})>"


class MatchDiscrepancy(BaseModel):
    """Per-item variance between PO, receipt and invoice."""

    __tablename__ = "match_discrepancies"

    match_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("three_way_matches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    item_reference: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[DiscrepancyKind] = mapped_column(SQLEnum(DiscrepancyKind), nullable=False)
    severity: Mapped[DiscrepancySeverity] = mapped_column(SQLEnum(DiscrepancySeverity), nullable=False)

    ordered_quantity: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=4), default=Decimal("0"))
    received_quantity: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=4), default=Decimal("0"))
    invoiced_quantity: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=4), default=Decimal("0"))
    po_unit_price: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), default=Decimal("0"))
    invoice_unit_price: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), default=Decimal("0"))

    quantity_variance: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=4), default=Decimal("0"))
    quantity_variance_percent: Mapped[Decimal] = mapped_column(Numeric(precision=9, scale=2), default=Decimal("0"))
    price_variance: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), default=Decimal("0"))
    price_variance_percent: Mapped[Decimal] = mapped_column(Numeric(precision=9, scale=2), default=Decimal("0"))
    amount_variance: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), default=Decimal("0"))
    amount_variance_percent: Mapped[Decimal] = mapped_column(Numeric(precision=9, scale=2), default=Decimal("0"))

    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    match: Mapped["ThreeWayMatch"] = relationship("ThreeWayMatch", back_populates="discrepancies")
