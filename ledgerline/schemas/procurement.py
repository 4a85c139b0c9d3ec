"""
Ledgerline - Procurement Snapshot & Three-Way Match Schemas

Purchase orders, goods receipts and vendor invoices arrive as immutable
snapshots from the procurement collaborator. The matching engine reads
them and never writes them back.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ledgerline.models.procurement import (
    DiscrepancyKind,
    DiscrepancySeverity,
    MatchStatus,
)


class PurchaseOrderStatus(str, Enum):
    OPEN = "open"
    PARTIALLY_RECEIVED = "partially_received"
    FULLY_MATCHED = "fully_matched"
    CANCELLED = "cancelled"
    CLOSED = "closed"


# =============================================================================
# DOCUMENT SNAPSHOTS
# =============================================================================

class DocumentLine(BaseModel):
    """Line shared by PO, receipt and invoice snapshots."""
    model_config = ConfigDict(frozen=True)

    item_reference: str = Field(..., min_length=1, max_length=100)
    quantity: Decimal = Field(..., ge=0)
    unit_price: Decimal = Field(Decimal("0"), ge=0)
    tax_rate: Decimal = Field(Decimal("0"), ge=0, description="Percent, e.g. 18 for 18%")
    description: Optional[str] = None


class PurchaseOrderLine(DocumentLine):
    pass


class ReceiptLine(DocumentLine):
    pass


class InvoiceLine(DocumentLine):
    expense_account_code: Optional[str] = None


class PurchaseOrderSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    po_id: UUID
    po_number: str
    vendor_id: UUID
    status: PurchaseOrderStatus = PurchaseOrderStatus.OPEN
    currency: str = "INR"
    lines: List[PurchaseOrderLine] = Field(..., min_length=1)


class ReceiptSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    receipt_id: UUID
    po_id: UUID
    received_date: date
    lines: List[ReceiptLine] = Field(..., min_length=1)


class InvoiceSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    invoice_id: UUID
    invoice_number: str = Field(..., min_length=1, max_length=100)
    vendor_id: UUID
    po_id: UUID
    invoice_date: date
    currency: str = "INR"
    lines: List[InvoiceLine] = Field(..., min_length=1)


# =============================================================================
# REQUESTS
# =============================================================================

class ThreeWayMatchRequest(BaseModel):
    purchase_order: PurchaseOrderSnapshot
    receipt: Optional[ReceiptSnapshot] = None
    invoice: InvoiceSnapshot
    submitted_by: Optional[str] = None


class MatchApprovalRequest(BaseModel):
    approved_by: str = Field(..., min_length=1, max_length=100)
    justification: str = Field(..., min_length=1)
    approver_tier: Optional[int] = Field(None, ge=1)
    posting_date: Optional[date] = None


class MatchRejectionRequest(BaseModel):
    rejected_by: str = Field(..., min_length=1, max_length=100)
    justification: str = Field(..., min_length=1)


# =============================================================================
# RESPONSES
# =============================================================================

class MatchDiscrepancyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    position: int
    item_reference: str
    kind: DiscrepancyKind
    severity: DiscrepancySeverity
    ordered_quantity: Decimal
    received_quantity: Decimal
    invoiced_quantity: Decimal
    po_unit_price: Decimal
    invoice_unit_price: Decimal
    quantity_variance: Decimal
    quantity_variance_percent: Decimal
    price_variance: Decimal
    price_variance_percent: Decimal
    amount_variance: Decimal
    amount_variance_percent: Decimal
    description: Optional[str] = None


class ThreeWayMatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    po_id: UUID
    receipt_id: UUID
    invoice_id: UUID
    vendor_id: UUID
    invoice_number: str
    invoice_total: Decimal
    status: MatchStatus
    severity: DiscrepancySeverity
    required_approval_tier: int
    transaction_id: Optional[UUID] = None
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    justification: Optional[str] = None
    discrepancies: List[MatchDiscrepancyResponse]
