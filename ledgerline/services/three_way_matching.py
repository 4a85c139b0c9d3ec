"""
Ledgerline - Three-Way Matching Service
Purchase Order <-> Goods Receipt <-> Vendor Invoice

Compares the three documents line by line, grades every variance,
and either auto-approves the invoice (posting the vendor bill in the
same database transaction) or parks it for an approver.
"""

import logging
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.config import settings
from ledgerline.models.audit import AuditAction
from ledgerline.models.accounting import Transaction, TransactionType
from ledgerline.models.procurement import (
    DiscrepancyKind,
    DiscrepancySeverity,
    MatchDiscrepancy,
    MatchStatus,
    ThreeWayMatch,
)
from ledgerline.schemas.accounting import DraftTransaction, LedgerLineDraft
from ledgerline.schemas.procurement import (
    DocumentLine,
    InvoiceSnapshot,
    PurchaseOrderSnapshot,
    PurchaseOrderStatus,
    ReceiptSnapshot,
)
from ledgerline.services.account_registry import AccountRegistry
from ledgerline.services.audit_service import AuditService
from ledgerline.services.gl_posting_service import GLPostingEngine
from ledgerline.services.match_events import (
    MatchEventPublisher,
    MatchStateChanged,
    match_event_publisher,
)
from ledgerline.services.match_tolerance import MatchToleranceConfig
from ledgerline.utils.error_handling import (
    DuplicateSubmissionError,
    InsufficientApprovalTierError,
    InvalidStateTransitionError,
    MatchNotFoundException,
    MatchRejectedError,
    StoreCommitError,
    ValidationException,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
HUNDRED = Decimal("100")


def _percent(part: Decimal, whole: Decimal) -> Decimal:
    if whole == 0:
        return HUNDRED if part != 0 else Decimal("0")
    return abs(part) / whole * HUNDRED


@dataclass
class ItemPosition:
    """Quantity and weighted unit price of one item on one document."""

    quantity: Decimal
    unit_price: Decimal
    net_amount: Decimal
    tax_amount: Decimal = Decimal("0.00")
    expense_account_code: Optional[str] = None


@dataclass
class LineComparison:
    """Result of comparing one item across PO, receipt and invoice."""

    item_reference: str
    kind: DiscrepancyKind
    severity: DiscrepancySeverity
    ordered_quantity: Decimal = Decimal("0")
    received_quantity: Decimal = Decimal("0")
    invoiced_quantity: Decimal = Decimal("0")
    po_unit_price: Decimal = Decimal("0")
    invoice_unit_price: Decimal = Decimal("0")
    quantity_variance: Decimal = Decimal("0")
    quantity_variance_percent: Decimal = Decimal("0")
    price_variance: Decimal = Decimal("0")
    price_variance_percent: Decimal = Decimal("0")
    amount_variance: Decimal = Decimal("0.00")
    amount_variance_percent: Decimal = Decimal("0")
    description: Optional[str] = None

    @property
    def has_variance(self) -> bool:
        return (
            self.kind != DiscrepancyKind.LINE_VARIANCE
            or self.quantity_variance != 0
            or self.price_variance != 0
            or self.amount_variance != 0
        )


def index_lines(lines: Sequence[DocumentLine]) -> Dict[str, ItemPosition]:
    """
    Collapse document lines by item reference.

    Repeated items are summed; the unit price becomes the quantity
    weighted average.
    """
    positions: Dict[str, ItemPosition] = {}
    for line in lines:
        net = (line.quantity * line.unit_price).quantize(CENTS, rounding=ROUND_HALF_UP)
        tax = (net * line.tax_rate / HUNDRED).quantize(CENTS, rounding=ROUND_HALF_UP)
        account_code = getattr(line, "expense_account_code", None)
        current = positions.get(line.item_reference)
        if current is None:
            positions[line.item_reference] = ItemPosition(
                quantity=line.quantity,
                unit_price=line.unit_price,
                net_amount=net,
                tax_amount=tax,
                expense_account_code=account_code,
            )
            continue
        quantity = current.quantity + line.quantity
        current.unit_price = (
            (current.quantity * current.unit_price + line.quantity * line.unit_price) / quantity
            if quantity
            else line.unit_price
        )
        current.quantity = quantity
        current.net_amount += net
        current.tax_amount += tax
    return positions


class ThreeWayMatchEngine:
    """
    Service for 3-way matching of Purchase Orders, Receipts, and Invoices
    """

    def __init__(
        self,
        db: AsyncSession,
        config: Optional[MatchToleranceConfig] = None,
        publisher: Optional[MatchEventPublisher] = None,
    ):
        self.db = db
        self.config = config or MatchToleranceConfig.from_settings()
        self.publisher = publisher or match_event_publisher
        self.accounts = AccountRegistry(db)
        self.audit = AuditService(db)

    # ===========================================
    # MATCHING
    # ===========================================

    async def match(
        self,
        po: PurchaseOrderSnapshot,
        receipt: Optional[ReceiptSnapshot],
        invoice: InvoiceSnapshot,
        submitted_by: Optional[str] = None,
    ) -> ThreeWayMatch:
        """
        Match an invoice against its PO and receipt.

        Returns the persisted match: AUTO_APPROVED with its vendor bill
        posted when every line is within the auto-approve band, otherwise
        AWAITING_APPROVAL. Resubmitting the same PO and invoice returns
        the existing match.
        """
        existing = await self._find_match(po.po_id, invoice.invoice_id)
        if existing is not None:
            logger.info(f"Replay of match for invoice {invoice.invoice_number} returned {existing.id}")
            return existing

        self._check_documents(po, receipt, invoice)
        invoiced_to_date = await self._check_po_available(po)
        await self._check_duplicate_invoice(po, invoice)

        comparisons, covers_full_po = self.compare(po, receipt, invoice, invoiced_to_date)
        invoice_items = index_lines(invoice.lines)
        net_total = sum((p.net_amount for p in invoice_items.values()), Decimal("0.00"))
        tax_total = sum((p.tax_amount for p in invoice_items.values()), Decimal("0.00"))
        invoice_total = net_total + tax_total

        match_id = uuid.uuid4()
        match = ThreeWayMatch(
            id=match_id,
            po_id=po.po_id,
            receipt_id=receipt.receipt_id,
            invoice_id=invoice.invoice_id,
            vendor_id=invoice.vendor_id,
            invoice_number=invoice.invoice_number,
            invoice_date=invoice.invoice_date,
            currency=invoice.currency,
            invoice_net_total=net_total,
            invoice_tax_total=tax_total,
            invoice_total=invoice_total,
            status=MatchStatus.PENDING,
            required_approval_tier=self.config.approval_tier(invoice_total),
            covers_full_po=covers_full_po,
            invoiced_quantities={item: str(p.quantity) for item, p in invoice_items.items()},
            bill_lines=self._bill_lines(invoice_items),
            discrepancies=[
                MatchDiscrepancy(
                    position=position,
                    item_reference=c.item_reference,
                    kind=c.kind,
                    severity=c.severity,
                    ordered_quantity=c.ordered_quantity,
                    received_quantity=c.received_quantity,
                    invoiced_quantity=c.invoiced_quantity,
                    po_unit_price=c.po_unit_price,
                    invoice_unit_price=c.invoice_unit_price,
                    quantity_variance=c.quantity_variance,
                    quantity_variance_percent=c.quantity_variance_percent,
                    price_variance=c.price_variance,
                    price_variance_percent=c.price_variance_percent,
                    amount_variance=c.amount_variance,
                    amount_variance_percent=c.amount_variance_percent,
                    description=c.description,
                )
                for position, c in enumerate(comparisons, start=1)
            ],
        )
        severities = [c.severity for c in comparisons]
        summary = self._summary(severities)
        events = [MatchStateChanged(match_id, None, MatchStatus.PENDING, submitted_by, summary)]

        try:
            self.db.add(match)
            await self.db.flush()

            if all(self.config.auto_approvable(s) for s in severities):
                transaction = await self._post_vendor_bill(match, invoice.invoice_date, submitted_by)
                match.status = MatchStatus.AUTO_APPROVED
                match.transaction_id = transaction.id
                match.decided_by = submitted_by or "system"
                match.decided_at = datetime.now(timezone.utc)
                match.justification = "Within auto-approve tolerance"
            else:
                match.status = MatchStatus.AWAITING_APPROVAL
            await self.audit.log_action(
                "three_way_match",
                match_id,
                AuditAction.MATCH_CREATED,
                submitted_by,
                new_values={
                    "invoice_number": invoice.invoice_number,
                    "invoice_total": str(invoice_total),
                    "status": match.status.value,
                    "severity": match.severity.value,
                    "transaction_id": str(match.transaction_id) if match.transaction_id else None,
                },
            )
            events.append(
                MatchStateChanged(match_id, MatchStatus.PENDING, match.status, submitted_by, summary)
            )
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            winner = await self._find_match(po.po_id, invoice.invoice_id)
            if winner is not None:
                return winner
            logger.error(f"Saving match for invoice {invoice.invoice_number} violated a constraint: {e}")
            raise StoreCommitError("three-way match", original_error=e)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Saving match for invoice {invoice.invoice_number} failed: {e}")
            raise StoreCommitError("three-way match", original_error=e)
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Matched invoice {invoice.invoice_number} against PO {po.po_number}: "
            f"{match.status.value} (severity {match.severity.value}, tier {match.required_approval_tier})"
        )
        await self.publisher.publish(events)
        return match

    def compare(
        self,
        po: PurchaseOrderSnapshot,
        receipt: ReceiptSnapshot,
        invoice: InvoiceSnapshot,
        invoiced_to_date: Optional[Dict[str, Decimal]] = None,
    ) -> Tuple[List[LineComparison], bool]:
        """
        Pair lines by item reference and grade every variance.

        invoiced_to_date holds the quantities already billed against the
        PO by earlier, non-rejected matches. Returns the discrepancies
        (lines with no variance are omitted) and whether the PO is fully
        invoiced once this invoice is counted.
        """
        invoiced_to_date = invoiced_to_date or {}
        ordered = index_lines(po.lines)
        received = index_lines(receipt.lines)
        invoiced = index_lines(invoice.lines)

        comparisons: List[LineComparison] = []
        covers_full_po = True

        for item, po_item in ordered.items():
            rcpt_item = received.get(item)
            inv_item = invoiced.get(item)
            cumulative = invoiced_to_date.get(item, Decimal("0")) + (inv_item.quantity if inv_item else 0)
            if cumulative < po_item.quantity:
                covers_full_po = False

            if inv_item is None:
                if rcpt_item is not None and rcpt_item.quantity > 0:
                    comparisons.append(LineComparison(
                        item_reference=item,
                        kind=DiscrepancyKind.MISSING_IN_INVOICE,
                        severity=DiscrepancySeverity.MEDIUM,
                        ordered_quantity=po_item.quantity,
                        received_quantity=rcpt_item.quantity,
                        po_unit_price=po_item.unit_price,
                        description=f"Item {item} was received but not invoiced",
                    ))
                continue

            if rcpt_item is None or rcpt_item.quantity == 0:
                comparisons.append(LineComparison(
                    item_reference=item,
                    kind=DiscrepancyKind.NOT_RECEIVED,
                    severity=DiscrepancySeverity.CRITICAL,
                    ordered_quantity=po_item.quantity,
                    invoiced_quantity=inv_item.quantity,
                    po_unit_price=po_item.unit_price,
                    invoice_unit_price=inv_item.unit_price,
                    amount_variance=inv_item.net_amount,
                    description=f"Item {item} is invoiced but was not received",
                ))
                continue

            comparison = self.compare_line(item, po_item, rcpt_item, inv_item)
            if comparison.has_variance:
                comparisons.append(comparison)
            if cumulative > po_item.quantity:
                comparisons.append(self.compare_over_invoice(item, po_item, inv_item, cumulative))

        for item, inv_item in invoiced.items():
            if item in ordered:
                continue
            comparisons.append(LineComparison(
                item_reference=item,
                kind=DiscrepancyKind.EXTRA_IN_INVOICE,
                severity=DiscrepancySeverity.CRITICAL,
                invoiced_quantity=inv_item.quantity,
                invoice_unit_price=inv_item.unit_price,
                amount_variance=inv_item.net_amount,
                description=f"Item {item} is not on the purchase order",
            ))

        return comparisons, covers_full_po

    def compare_over_invoice(
        self,
        item: str,
        po_item: ItemPosition,
        inv_item: ItemPosition,
        cumulative: Decimal,
    ) -> LineComparison:
        """Grade the quantity billed beyond the order across all invoices for the PO."""
        excess = cumulative - po_item.quantity
        excess_pct = _percent(excess, po_item.quantity)
        exposure = excess * max(inv_item.unit_price, po_item.unit_price)
        return LineComparison(
            item_reference=item,
            kind=DiscrepancyKind.OVER_INVOICED,
            severity=self.config.classify_line(excess_pct, Decimal("0"), exposure),
            ordered_quantity=po_item.quantity,
            invoiced_quantity=cumulative,
            po_unit_price=po_item.unit_price,
            invoice_unit_price=inv_item.unit_price,
            quantity_variance=excess,
            quantity_variance_percent=excess_pct.quantize(CENTS, rounding=ROUND_HALF_UP),
            amount_variance=(excess * inv_item.unit_price).quantize(CENTS, rounding=ROUND_HALF_UP),
            description=f"Item {item}: {cumulative} invoiced against {po_item.quantity} ordered",
        )

    def compare_line(
        self,
        item: str,
        po_item: ItemPosition,
        rcpt_item: ItemPosition,
        inv_item: ItemPosition,
    ) -> LineComparison:
        quantity_delta = inv_item.quantity - rcpt_item.quantity
        price_delta = inv_item.unit_price - po_item.unit_price
        expected = rcpt_item.quantity * po_item.unit_price
        # Equals dq*p + q*dp + dq*dp
        amount_delta = inv_item.quantity * inv_item.unit_price - expected

        quantity_pct = _percent(quantity_delta, rcpt_item.quantity)
        price_pct = _percent(price_delta, po_item.unit_price)
        exposure = (
            abs(quantity_delta) * po_item.unit_price
            + rcpt_item.quantity * abs(price_delta)
            + abs(quantity_delta) * abs(price_delta)
        )
        severity = self.config.classify_line(quantity_pct, price_pct, exposure)

        parts = []
        if quantity_delta:
            parts.append(f"quantity {quantity_delta:+} ({quantity_pct.quantize(CENTS)}%)")
        if price_delta:
            parts.append(f"unit price {price_delta:+} ({price_pct.quantize(CENTS)}%)")

        return LineComparison(
            item_reference=item,
            kind=DiscrepancyKind.LINE_VARIANCE,
            severity=severity,
            ordered_quantity=po_item.quantity,
            received_quantity=rcpt_item.quantity,
            invoiced_quantity=inv_item.quantity,
            po_unit_price=po_item.unit_price,
            invoice_unit_price=inv_item.unit_price,
            quantity_variance=quantity_delta,
            quantity_variance_percent=quantity_pct.quantize(CENTS, rounding=ROUND_HALF_UP),
            price_variance=price_delta.quantize(CENTS, rounding=ROUND_HALF_UP),
            price_variance_percent=price_pct.quantize(CENTS, rounding=ROUND_HALF_UP),
            amount_variance=amount_delta.quantize(CENTS, rounding=ROUND_HALF_UP),
            amount_variance_percent=_percent(amount_delta, expected).quantize(CENTS, rounding=ROUND_HALF_UP),
            description=f"Item {item}: " + ", ".join(parts) if parts else None,
        )

    # ===========================================
    # PRECONDITIONS
    # ===========================================

    def _check_documents(
        self,
        po: PurchaseOrderSnapshot,
        receipt: Optional[ReceiptSnapshot],
        invoice: InvoiceSnapshot,
    ) -> None:
        if receipt is None:
            raise MatchRejectedError("No goods receipt recorded for the purchase order", po.po_id)
        if receipt.po_id != po.po_id:
            raise MatchRejectedError("Goods receipt does not match the purchase order", po.po_id)
        if invoice.po_id != po.po_id:
            raise MatchRejectedError("Invoice does not reference the purchase order", po.po_id)
        if invoice.vendor_id != po.vendor_id:
            raise MatchRejectedError("Invoice is from a different vendor than the purchase order", po.po_id)
        if po.status == PurchaseOrderStatus.CANCELLED:
            raise MatchRejectedError("Purchase order is cancelled", po.po_id)
        if po.status in (PurchaseOrderStatus.FULLY_MATCHED, PurchaseOrderStatus.CLOSED):
            raise MatchRejectedError("Purchase order is already fully matched", po.po_id)

    async def _check_po_available(self, po: PurchaseOrderSnapshot) -> Dict[str, Decimal]:
        """
        Sum the quantities billed against the PO by non-rejected matches.

        Raises when every ordered item is already fully invoiced.
        """
        result = await self.db.execute(
            select(ThreeWayMatch.invoiced_quantities).where(
                ThreeWayMatch.po_id == po.po_id,
                ThreeWayMatch.status != MatchStatus.REJECTED,
            )
        )
        invoiced_to_date: Dict[str, Decimal] = {}
        for quantities in result.scalars():
            for item, quantity in (quantities or {}).items():
                invoiced_to_date[item] = invoiced_to_date.get(item, Decimal("0")) + Decimal(quantity)

        ordered = index_lines(po.lines)
        if ordered and all(invoiced_to_date.get(item, 0) >= p.quantity for item, p in ordered.items()):
            logger.warning(f"Rejected match for PO {po.po_number}: already fully matched")
            raise MatchRejectedError("Purchase order is already fully matched", po.po_id)
        return invoiced_to_date

    async def _check_duplicate_invoice(self, po: PurchaseOrderSnapshot, invoice: InvoiceSnapshot) -> None:
        result = await self.db.execute(
            select(ThreeWayMatch).where(
                ThreeWayMatch.po_id == po.po_id,
                ThreeWayMatch.invoice_number == invoice.invoice_number,
                ThreeWayMatch.invoice_id != invoice.invoice_id,
            )
        )
        prior = result.scalars().first()
        if prior is not None:
            logger.warning(
                f"Invoice number {invoice.invoice_number} already matched for PO {po.po_number}"
            )
            raise DuplicateSubmissionError(
                f"Invoice {invoice.invoice_number} has already been submitted for this purchase order",
                resource_type="ThreeWayMatch",
                prior_id=prior.id,
            )

    # ===========================================
    # DECISIONS
    # ===========================================

    async def approve(
        self,
        match_id: uuid.UUID,
        approved_by: str,
        justification: str,
        approver_tier: Optional[int] = None,
        posting_date: Optional[date] = None,
    ) -> ThreeWayMatch:
        """
        Approve a match awaiting approval and post its vendor bill.

        An approver without a stated tier is treated as tier 1.
        """
        match = await self.get_match(match_id, refresh=True)
        if match.status == MatchStatus.APPROVED:
            return match
        if match.status != MatchStatus.AWAITING_APPROVAL:
            raise InvalidStateTransitionError("ThreeWayMatch", match.status.value, "approved")
        if not justification or not justification.strip():
            raise ValidationException("Approval requires a justification", field="justification")
        tier = approver_tier or 1
        if tier < match.required_approval_tier:
            logger.warning(
                f"Approval of match {match_id} by {approved_by} refused: "
                f"tier {tier} < {match.required_approval_tier}"
            )
            raise InsufficientApprovalTierError(match.required_approval_tier, tier)

        summary = self._summary(d.severity for d in match.discrepancies)
        try:
            await self._transition(
                match_id,
                MatchStatus.AWAITING_APPROVAL,
                MatchStatus.APPROVED,
                approved_by,
                justification,
            )
            transaction = await self._post_vendor_bill(
                match, posting_date or match.invoice_date, approved_by
            )
            await self.db.execute(
                update(ThreeWayMatch)
                .where(ThreeWayMatch.id == match_id)
                .values(transaction_id=transaction.id)
                .execution_options(synchronize_session=False)
            )
            await self.audit.log_action(
                "three_way_match",
                match_id,
                AuditAction.MATCH_APPROVED,
                approved_by,
                old_values={"status": MatchStatus.AWAITING_APPROVAL.value},
                new_values={
                    "status": MatchStatus.APPROVED.value,
                    "transaction_id": str(transaction.id),
                    "justification": justification,
                },
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Approving match {match_id} failed: {e}")
            raise StoreCommitError("match approval", original_error=e)
        except Exception:
            await self.db.rollback()
            raise

        await self.publisher.publish([
            MatchStateChanged(match_id, MatchStatus.AWAITING_APPROVAL, MatchStatus.APPROVED, approved_by, summary)
        ])
        return await self.get_match(match_id, refresh=True)

    async def reject(self, match_id: uuid.UUID, rejected_by: str, justification: str) -> ThreeWayMatch:
        match = await self.get_match(match_id, refresh=True)
        if match.status == MatchStatus.REJECTED:
            return match
        if match.status != MatchStatus.AWAITING_APPROVAL:
            raise InvalidStateTransitionError("ThreeWayMatch", match.status.value, "rejected")
        if not justification or not justification.strip():
            raise ValidationException("Rejection requires a justification", field="justification")

        summary = self._summary(d.severity for d in match.discrepancies)
        try:
            await self._transition(
                match_id,
                MatchStatus.AWAITING_APPROVAL,
                MatchStatus.REJECTED,
                rejected_by,
                justification,
            )
            await self.audit.log_action(
                "three_way_match",
                match_id,
                AuditAction.MATCH_REJECTED,
                rejected_by,
                old_values={"status": MatchStatus.AWAITING_APPROVAL.value},
                new_values={"status": MatchStatus.REJECTED.value, "justification": justification},
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Rejecting match {match_id} failed: {e}")
            raise StoreCommitError("match rejection", original_error=e)
        except Exception:
            await self.db.rollback()
            raise

        await self.publisher.publish([
            MatchStateChanged(match_id, MatchStatus.AWAITING_APPROVAL, MatchStatus.REJECTED, rejected_by, summary)
        ])
        return await self.get_match(match_id, refresh=True)

    async def _transition(
        self,
        match_id: uuid.UUID,
        current: MatchStatus,
        target: MatchStatus,
        actor: str,
        justification: str,
    ) -> None:
        result = await self.db.execute(
            update(ThreeWayMatch)
            .where(ThreeWayMatch.id == match_id, ThreeWayMatch.status == current)
            .values(
                status=target,
                decided_by=actor,
                decided_at=datetime.now(timezone.utc),
                justification=justification,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Another decision landed first
            raise InvalidStateTransitionError("ThreeWayMatch", "decided", target.value)

    # ===========================================
    # VENDOR BILL
    # ===========================================

    @staticmethod
    def _bill_lines(invoice_items: Dict[str, ItemPosition]) -> List[Dict[str, str]]:
        """Net amounts per expense account plus the input tax, as JSON-safe strings."""
        by_account: Dict[str, Decimal] = {}
        tax = Decimal("0.00")
        for position in invoice_items.values():
            code = position.expense_account_code or settings.default_expense_account_code
            by_account[code] = by_account.get(code, Decimal("0.00")) + position.net_amount
            tax += position.tax_amount

        lines = [
            {"account_code": code, "side": "debit", "amount": str(amount)}
            for code, amount in sorted(by_account.items())
            if amount > 0
        ]
        if tax > 0:
            lines.append({
                "account_code": settings.input_tax_account_code,
                "side": "debit",
                "amount": str(tax),
            })
        return lines

    async def _post_vendor_bill(
        self,
        match: ThreeWayMatch,
        posting_date: date,
        actor: Optional[str],
    ) -> Transaction:
        """Post Dr expense / Dr input tax / Cr payable inside the caller's transaction."""
        lines: List[LedgerLineDraft] = []
        for entry in match.bill_lines or []:
            account = await self.accounts.get_by_code(entry["account_code"])
            lines.append(LedgerLineDraft.debit(account.id, Decimal(entry["amount"]), memo=match.invoice_number))

        payable = await self.accounts.get_by_code(settings.accounts_payable_account_code)
        gross = sum((line.debit_amount for line in lines), Decimal("0.00"))
        lines.append(LedgerLineDraft.credit(payable.id, gross, memo=f"Vendor {match.vendor_id}"))

        draft = DraftTransaction(
            idempotency_key=f"three-way-match:{match.id}",
            transaction_type=TransactionType.VENDOR_BILL,
            transaction_date=posting_date,
            description=f"Vendor bill {match.invoice_number}",
            currency=match.currency,
            lines=lines,
            source_reference=f"three-way-match:{match.id}",
            reference=match.invoice_number,
            posted_by=actor,
        )
        return await GLPostingEngine(self.db).post(draft, commit=False)

    # ===========================================
    # QUERIES
    # ===========================================

    async def _find_match(self, po_id: uuid.UUID, invoice_id: uuid.UUID) -> Optional[ThreeWayMatch]:
        result = await self.db.execute(
            select(ThreeWayMatch).where(
                ThreeWayMatch.po_id == po_id,
                ThreeWayMatch.invoice_id == invoice_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_match(self, match_id: uuid.UUID, refresh: bool = False) -> ThreeWayMatch:
        query = select(ThreeWayMatch).where(ThreeWayMatch.id == match_id)
        if refresh:
            query = query.execution_options(populate_existing=True)
        result = await self.db.execute(query)
        match = result.scalar_one_or_none()
        if not match:
            raise MatchNotFoundException(match_id)
        return match

    async def list_matches(
        self,
        status: Optional[MatchStatus] = None,
        po_id: Optional[uuid.UUID] = None,
    ) -> List[ThreeWayMatch]:
        query = select(ThreeWayMatch).order_by(ThreeWayMatch.created_at)
        if status:
            query = query.where(ThreeWayMatch.status == status)
        if po_id:
            query = query.where(ThreeWayMatch.po_id == po_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    @staticmethod
    def _summary(severities) -> Dict[str, int]:
        return dict(Counter(s.value for s in severities))


def get_three_way_match_engine(db: AsyncSession) -> ThreeWayMatchEngine:
    """Get three-way match engine instance."""
    return ThreeWayMatchEngine(db)
