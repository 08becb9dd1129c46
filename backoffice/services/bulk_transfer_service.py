import logging
from collections import OrderedDict
from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from backoffice.database import utcnow
from backoffice.errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from backoffice.models.approval import ApprovalObjectType, ApprovalPriority
from backoffice.models.bulk_transfer import (
    BulkInventoryTransfer,
    BulkInventoryTransferItem,
    BulkTransferPriority,
    BulkTransferStatus,
    BulkTransferType,
)
from backoffice.models.transfer import InventoryTransfer, TransferStatus
from backoffice.schemas.bulk_transfer import BulkTransferCreate
from backoffice.services.approval_service import ApprovalRequestManager
from backoffice.services.audit_service import AuditRecorder
from backoffice.services.inventory_service import InventoryLedger
from backoffice.services.repository import find_products, get_scoped, get_store, scoped
from backoffice.services.sequence_service import BULK_TRANSFER_PREFIX, TRANSFER_PREFIX, SequenceGenerator

logger = logging.getLogger(__name__)

CANCELLABLE = frozenset({
    BulkTransferStatus.DRAFT,
    BulkTransferStatus.PENDING,
    BulkTransferStatus.APPROVED,
    BulkTransferStatus.PARTIALLY_SHIPPED,
})
IN_PROGRESS = frozenset({
    BulkTransferStatus.APPROVED,
    BulkTransferStatus.PARTIALLY_SHIPPED,
    BulkTransferStatus.SHIPPED,
    BulkTransferStatus.PARTIALLY_RECEIVED,
})
# Children a bulk cancellation can still stop; anything shipped has physically moved
CASCADE_CANCEL = frozenset({TransferStatus.APPROVED, TransferStatus.PENDING})

APPROVAL_PRIORITY = {
    BulkTransferPriority.LOW: ApprovalPriority.LOW,
    BulkTransferPriority.NORMAL: ApprovalPriority.MEDIUM,
    BulkTransferPriority.HIGH: ApprovalPriority.HIGH,
    BulkTransferPriority.URGENT: ApprovalPriority.URGENT,
}


def rollup_bulk_status(db: Session, bulk: BulkInventoryTransfer | None) -> None:
    """Derive an in-progress bulk transfer's status from its children."""
    if bulk is None or bulk.status not in IN_PROGRESS:
        return
    children = [
        c for c in db.query(InventoryTransfer).filter(InventoryTransfer.bulk_transfer_id == bulk.id).all()
        if c.status != TransferStatus.CANCELLED
    ]
    if not children:
        return

    total = len(children)
    completed = sum(1 for c in children if c.status == TransferStatus.COMPLETED)
    shipped = sum(1 for c in children if c.status in (TransferStatus.SHIPPED, TransferStatus.COMPLETED))

    if completed == total:
        status = BulkTransferStatus.COMPLETED
    elif completed:
        status = BulkTransferStatus.PARTIALLY_RECEIVED
    elif shipped == total:
        status = BulkTransferStatus.SHIPPED
    elif shipped:
        status = BulkTransferStatus.PARTIALLY_SHIPPED
    else:
        status = BulkTransferStatus.APPROVED

    if status != bulk.status:
        logger.info("Bulk transfer %s: %s -> %s", bulk.bulk_transfer_number, bulk.status.value, status.value)
        bulk.status = status
        try:
            db.flush()
        except StaleDataError:
            raise ConflictError(f"Bulk transfer {bulk.bulk_transfer_number} was changed concurrently, reload and retry")


class BulkTransferOrchestrator:
    """Multi-line transfers: one approval, then one child transfer per line.

    Methods do not commit; each call is meant to run inside ``atomic()``.
    """

    def __init__(
        self,
        db: Session,
        ledger: InventoryLedger | None = None,
        approvals: ApprovalRequestManager | None = None,
        sequences: SequenceGenerator | None = None,
        audit: AuditRecorder | None = None,
    ):
        self.db = db
        self.audit = audit or AuditRecorder(db)
        self.ledger = ledger or InventoryLedger(db)
        self.approvals = approvals or ApprovalRequestManager(db, audit=self.audit)
        self.sequences = sequences or SequenceGenerator(db)

    # Reads

    def get_bulk_transfer(self, tenant_id: str, bulk_id: str) -> BulkInventoryTransfer:
        return get_scoped(self.db, BulkInventoryTransfer, tenant_id, bulk_id, "Bulk transfer")

    def list_bulk_transfers(
        self,
        tenant_id: str,
        statuses: list[BulkTransferStatus] | None = None,
        source_store_id: str | None = None,
        destination_store_id: str | None = None,
        transfer_types: list[BulkTransferType] | None = None,
        priorities: list[BulkTransferPriority] | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[list[BulkInventoryTransfer], int]:
        q = scoped(self.db, BulkInventoryTransfer, tenant_id)
        if statuses:
            q = q.filter(BulkInventoryTransfer.status.in_(statuses))
        if source_store_id:
            q = q.filter(BulkInventoryTransfer.source_store_id == source_store_id)
        if destination_store_id:
            q = q.filter(BulkInventoryTransfer.destination_store_id == destination_store_id)
        if transfer_types:
            q = q.filter(BulkInventoryTransfer.transfer_type.in_(transfer_types))
        if priorities:
            q = q.filter(BulkInventoryTransfer.priority.in_(priorities))
        if start_date:
            q = q.filter(BulkInventoryTransfer.created_at >= start_date)
        if end_date:
            q = q.filter(BulkInventoryTransfer.created_at <= end_date)
        total = q.count()
        rows = q.order_by(BulkInventoryTransfer.created_at.desc(), BulkInventoryTransfer.bulk_transfer_number.desc()) \
            .offset(skip).limit(limit).all()
        return rows, total

    # Lifecycle

    def create_bulk_transfer(self, tenant_id: str, user_id: str, data: BulkTransferCreate) -> BulkInventoryTransfer:
        if data.source_store_id == data.destination_store_id:
            raise ValidationError("Source and destination stores cannot be the same")
        if not data.items:
            raise ValidationError("A bulk transfer needs at least one item")
        if any(item.quantity <= 0 for item in data.items):
            raise ValidationError("Item quantities must be greater than zero")
        get_store(self.db, tenant_id, data.source_store_id)
        get_store(self.db, tenant_id, data.destination_store_id)

        needed: OrderedDict[str, int] = OrderedDict()
        for item in data.items:
            needed[item.product_id] = needed.get(item.product_id, 0) + item.quantity

        products = find_products(self.db, tenant_id, list(needed))
        missing = [pid for pid in needed if pid not in products]
        if missing:
            raise NotFoundError(f"Products not found: {', '.join(missing)}")

        # All lines are checked against locked rows before anything is written
        stock = self.ledger.lock_stock(tenant_id, data.source_store_id, list(needed))
        shortages = []
        for product_id, qty in needed.items():
            available = stock[product_id].quantity_available if product_id in stock else 0
            if available < qty:
                shortages.append(f"{products[product_id].sku or product_id} (available {available}, requested {qty})")
        if shortages:
            raise ConflictError(f"Insufficient inventory in source store: {'; '.join(shortages)}")

        bulk = BulkInventoryTransfer(
            tenant_id=tenant_id,
            bulk_transfer_number=self.sequences.next(tenant_id, BULK_TRANSFER_PREFIX),
            source_store_id=data.source_store_id,
            destination_store_id=data.destination_store_id,
            title=data.title,
            description=data.description,
            status=BulkTransferStatus.DRAFT,
            priority=data.priority,
            transfer_type=data.transfer_type,
            requested_by=user_id,
            scheduled_ship_date=data.scheduled_ship_date,
            scheduled_receive_date=data.scheduled_receive_date,
            notes=data.notes,
            reference=data.reference,
            total_items=len(data.items),
            total_quantity=sum(item.quantity for item in data.items),
            total_value=round(sum(item.unit_cost * item.quantity for item in data.items), 2),
        )
        bulk.items = [
            BulkInventoryTransferItem(
                product_id=item.product_id,
                quantity=item.quantity,
                unit_cost=item.unit_cost,
                line_total=round(item.unit_cost * item.quantity, 2),
                notes=item.notes,
            )
            for item in data.items
        ]
        self.db.add(bulk)
        self._flush(bulk)
        self.audit.record(tenant_id, user_id, "bulk_transfer.create", "bulk_inventory_transfers", bulk.id, {
            "bulk_transfer_number": bulk.bulk_transfer_number,
            "total_items": bulk.total_items,
            "total_quantity": bulk.total_quantity,
            "total_value": bulk.total_value,
        })
        logger.info("Created bulk transfer %s with %d items for tenant %s",
                    bulk.bulk_transfer_number, bulk.total_items, tenant_id)
        return bulk

    def submit_bulk_transfer(self, tenant_id: str, bulk_id: str, user_id: str) -> BulkInventoryTransfer:
        bulk = self.get_bulk_transfer(tenant_id, bulk_id)
        if bulk.status != BulkTransferStatus.DRAFT:
            raise InvalidTransitionError("bulk transfer", bulk.status.value, "submit")

        approval_data = {
            "amount": bulk.total_value,
            "store_id": bulk.source_store_id,
            "destination_store_id": bulk.destination_store_id,
            "total_items": bulk.total_items,
            "total_quantity": bulk.total_quantity,
            "bulk_transfer_number": bulk.bulk_transfer_number,
        }
        rule, levels = self.approvals.rules.evaluate(tenant_id, ApprovalObjectType.INVENTORY_TRANSFER, approval_data)
        if levels:
            req = self.approvals.open_request(
                tenant_id,
                user_id,
                ApprovalObjectType.INVENTORY_TRANSFER,
                bulk.id,
                title=f"Bulk transfer {bulk.bulk_transfer_number}: {bulk.title}",
                description=bulk.description,
                approval_data=approval_data,
                priority=APPROVAL_PRIORITY[bulk.priority],
                store_id=bulk.source_store_id,
                rule=rule,
                levels=levels,
            )
            bulk.approval_request_id = req.id

        bulk.status = BulkTransferStatus.PENDING
        return self._saved(bulk, user_id, "submit", {"approval_request_id": bulk.approval_request_id})

    def approve_bulk_transfer(self, tenant_id: str, bulk_id: str, user_id: str, notes: str = "") -> BulkInventoryTransfer:
        """Approve and fan out one approved child transfer per line item."""
        bulk = self.get_bulk_transfer(tenant_id, bulk_id)
        if bulk.status != BulkTransferStatus.PENDING:
            raise InvalidTransitionError("bulk transfer", bulk.status.value, "approve")
        self.approvals.require_approved(tenant_id, bulk.approval_request_id)

        now = utcnow()
        bulk.status = BulkTransferStatus.APPROVED
        bulk.approved_by = user_id
        bulk.approved_at = now
        if notes:
            bulk.notes = f"{bulk.notes}\n{notes}" if bulk.notes else notes

        label = f"Part of bulk transfer {bulk.bulk_transfer_number}"
        for item in bulk.items:
            bulk.child_transfers.append(InventoryTransfer(
                tenant_id=tenant_id,
                transfer_number=self.sequences.next(tenant_id, TRANSFER_PREFIX),
                source_store_id=bulk.source_store_id,
                destination_store_id=bulk.destination_store_id,
                product_id=item.product_id,
                quantity=item.quantity,
                unit_cost=item.unit_cost,
                status=TransferStatus.APPROVED,
                requested_by=bulk.requested_by,
                approved_by=user_id,
                approved_at=now,
                notes=f"{label}: {item.notes}" if item.notes else label,
                reference=bulk.bulk_transfer_number,
                approval_request_id=bulk.approval_request_id,
            ))

        saved = self._saved(bulk, user_id, "approve", {"children": len(bulk.items)})
        logger.info("Approved bulk transfer %s and created %d individual transfers",
                    bulk.bulk_transfer_number, len(bulk.items))
        return saved

    def reject_bulk_transfer(self, tenant_id: str, bulk_id: str, user_id: str, notes: str = "") -> BulkInventoryTransfer:
        bulk = self.get_bulk_transfer(tenant_id, bulk_id)
        if bulk.status != BulkTransferStatus.PENDING:
            raise InvalidTransitionError("bulk transfer", bulk.status.value, "reject")
        self.approvals.cancel_if_pending(tenant_id, bulk.approval_request_id, user_id,
                                        f"Bulk transfer rejected: {notes}" if notes else "Bulk transfer rejected")

        bulk.status = BulkTransferStatus.REJECTED
        if notes:
            bulk.notes = f"{bulk.notes}\nRejection reason: {notes}" if bulk.notes else f"Rejection reason: {notes}"
        return self._saved(bulk, user_id, "reject", {"notes": notes})

    def cancel_bulk_transfer(self, tenant_id: str, bulk_id: str, user_id: str, reason: str = "") -> BulkInventoryTransfer:
        """Cancel the header and every child that has not shipped yet."""
        bulk = self.get_bulk_transfer(tenant_id, bulk_id)
        if bulk.status not in CANCELLABLE:
            raise InvalidTransitionError("bulk transfer", bulk.status.value, "cancel")
        has_children = bulk.status in (BulkTransferStatus.APPROVED, BulkTransferStatus.PARTIALLY_SHIPPED)
        self.approvals.cancel_if_pending(tenant_id, bulk.approval_request_id, user_id, "Bulk transfer cancelled")

        bulk.status = BulkTransferStatus.CANCELLED
        if reason:
            bulk.notes = f"{bulk.notes}\nCancellation reason: {reason}" if bulk.notes else f"Cancellation reason: {reason}"

        cancelled_children = []
        if has_children:
            children = (
                self.db.query(InventoryTransfer)
                .filter(
                    InventoryTransfer.tenant_id == tenant_id,
                    InventoryTransfer.bulk_transfer_id == bulk.id,
                    InventoryTransfer.status.in_(CASCADE_CANCEL),
                )
                .all()
            )
            for child in children:
                child.status = TransferStatus.CANCELLED
                child.notes = f"{child.notes}\nCancelled with bulk transfer {bulk.bulk_transfer_number}"
                cancelled_children.append(child.transfer_number)

        saved = self._saved(bulk, user_id, "cancel", {"reason": reason, "cancelled_children": cancelled_children})
        logger.info("Cancelled bulk transfer %s (%d child transfers cancelled)",
                    bulk.bulk_transfer_number, len(cancelled_children))
        return saved

    # Internals

    def _saved(self, bulk: BulkInventoryTransfer, user_id: str, action: str, data: dict | None = None):
        self._flush(bulk)
        self.audit.record(bulk.tenant_id, user_id, f"bulk_transfer.{action}", "bulk_inventory_transfers", bulk.id, {
            "bulk_transfer_number": bulk.bulk_transfer_number,
            "status": bulk.status.value,
            **(data or {}),
        })
        return bulk

    def _flush(self, bulk: BulkInventoryTransfer) -> None:
        try:
            self.db.flush()
        except StaleDataError:
            raise ConflictError(f"Bulk transfer {bulk.bulk_transfer_number} was changed concurrently, reload and retry")
