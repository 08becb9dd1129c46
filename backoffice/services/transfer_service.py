import logging

from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from backoffice.database import utcnow
from backoffice.errors import ConflictError, InvalidTransitionError, ValidationError
from backoffice.models.approval import ApprovalObjectType
from backoffice.models.transfer import InventoryTransfer, TransferStatus
from backoffice.schemas.transfer import TransferCreate
from backoffice.services.approval_service import ApprovalRequestManager
from backoffice.services.audit_service import AuditRecorder
from backoffice.services.bulk_transfer_service import rollup_bulk_status
from backoffice.services.inventory_service import InventoryLedger
from backoffice.services.repository import get_product, get_scoped, get_store, scoped
from backoffice.services.sequence_service import TRANSFER_PREFIX, SequenceGenerator

logger = logging.getLogger(__name__)

# action -> (allowed from, target)
TRANSITIONS: dict[str, tuple[frozenset[TransferStatus], TransferStatus]] = {
    "submit": (frozenset({TransferStatus.DRAFT}), TransferStatus.PENDING),
    "approve": (frozenset({TransferStatus.PENDING}), TransferStatus.APPROVED),
    "reject": (frozenset({TransferStatus.PENDING}), TransferStatus.REJECTED),
    "ship": (frozenset({TransferStatus.APPROVED}), TransferStatus.SHIPPED),
    "complete": (frozenset({TransferStatus.SHIPPED}), TransferStatus.COMPLETED),
    "cancel": (
        frozenset({TransferStatus.DRAFT, TransferStatus.PENDING, TransferStatus.APPROVED}),
        TransferStatus.CANCELLED,
    ),
}


def check_transition(transfer: InventoryTransfer, action: str) -> TransferStatus:
    allowed, target = TRANSITIONS[action]
    if transfer.status not in allowed:
        raise InvalidTransitionError("transfer", transfer.status.value, action)
    return target


class TransferService:
    """Lifecycle of a single inter-store transfer.

    draft -> pending -> approved -> shipped -> completed, with reject from
    pending and cancel from draft/pending/approved. Stock leaves the source at
    ``ship`` and arrives at the destination at ``complete``; in between the
    quantity is in transit and counted at neither store. Methods do not
    commit: run each call inside ``atomic()`` so the ledger change and the
    status change land together.
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

    def get_transfer(self, tenant_id: str, transfer_id: str) -> InventoryTransfer:
        return get_scoped(self.db, InventoryTransfer, tenant_id, transfer_id, "Transfer")

    def list_transfers(
        self,
        tenant_id: str,
        statuses: list[TransferStatus] | None = None,
        source_store_id: str | None = None,
        destination_store_id: str | None = None,
        product_id: str | None = None,
        reference: str | None = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[InventoryTransfer]:
        q = scoped(self.db, InventoryTransfer, tenant_id)
        if statuses:
            q = q.filter(InventoryTransfer.status.in_(statuses))
        if source_store_id:
            q = q.filter(InventoryTransfer.source_store_id == source_store_id)
        if destination_store_id:
            q = q.filter(InventoryTransfer.destination_store_id == destination_store_id)
        if product_id:
            q = q.filter(InventoryTransfer.product_id == product_id)
        if reference:
            q = q.filter(InventoryTransfer.reference == reference)
        return q.order_by(InventoryTransfer.created_at.desc(), InventoryTransfer.transfer_number.desc()) \
            .offset(skip).limit(limit).all()

    def stats(self, tenant_id: str) -> dict:
        rows = (
            scoped(self.db, InventoryTransfer, tenant_id)
            .with_entities(InventoryTransfer.status, func.count(InventoryTransfer.id), func.sum(InventoryTransfer.quantity))
            .group_by(InventoryTransfer.status)
            .all()
        )
        result = {f"{s.value}_transfers": 0 for s in TransferStatus}
        result["total_transfers"] = 0
        result["total_quantity_transferred"] = 0
        for status, count, quantity in rows:
            status = TransferStatus(status)
            result[f"{status.value}_transfers"] = count
            result["total_transfers"] += count
            if status == TransferStatus.COMPLETED:
                result["total_quantity_transferred"] += int(quantity or 0)
        return result

    # Lifecycle

    def create_transfer(self, tenant_id: str, user_id: str, data: TransferCreate) -> InventoryTransfer:
        if data.source_store_id == data.destination_store_id:
            raise ValidationError("Source and destination stores cannot be the same")
        if data.quantity <= 0:
            raise ValidationError("Quantity must be greater than zero")
        get_store(self.db, tenant_id, data.source_store_id)
        get_store(self.db, tenant_id, data.destination_store_id)
        get_product(self.db, tenant_id, data.product_id)

        available = self.ledger.available(tenant_id, data.source_store_id, data.product_id)
        if available < data.quantity:
            raise ConflictError(f"Insufficient inventory. Available: {available}, requested: {data.quantity}")

        transfer = InventoryTransfer(
            tenant_id=tenant_id,
            transfer_number=self.sequences.next(tenant_id, TRANSFER_PREFIX),
            source_store_id=data.source_store_id,
            destination_store_id=data.destination_store_id,
            product_id=data.product_id,
            quantity=data.quantity,
            unit_cost=data.unit_cost,
            status=TransferStatus.DRAFT,
            requested_by=user_id,
            notes=data.notes,
        )
        self.db.add(transfer)
        self._flush(transfer)
        self.audit.record(tenant_id, user_id, "transfer.create", "inventory_transfers", transfer.id, {
            "transfer_number": transfer.transfer_number,
            "quantity": transfer.quantity,
        })
        logger.info("Transfer %s created (%d x %s)", transfer.transfer_number, transfer.quantity, transfer.product_id)
        return transfer

    def submit(self, tenant_id: str, transfer_id: str, user_id: str) -> InventoryTransfer:
        """Move to pending, opening an approval request if a rule demands one."""
        transfer = self.get_transfer(tenant_id, transfer_id)
        target = check_transition(transfer, "submit")

        approval_data = {
            "amount": transfer.value,
            "store_id": transfer.source_store_id,
            "destination_store_id": transfer.destination_store_id,
            "product_id": transfer.product_id,
            "quantity": transfer.quantity,
        }
        rule, levels = self.approvals.rules.evaluate(tenant_id, ApprovalObjectType.INVENTORY_TRANSFER, approval_data)
        if levels:
            req = self.approvals.open_request(
                tenant_id,
                user_id,
                ApprovalObjectType.INVENTORY_TRANSFER,
                transfer.id,
                title=f"Inventory transfer {transfer.transfer_number}",
                approval_data=approval_data,
                store_id=transfer.source_store_id,
                rule=rule,
                levels=levels,
            )
            transfer.approval_request_id = req.id

        transfer.status = target
        return self._saved(transfer, user_id, "submit", {"approval_request_id": transfer.approval_request_id})

    def approve(self, tenant_id: str, transfer_id: str, user_id: str, notes: str = "") -> InventoryTransfer:
        transfer = self.get_transfer(tenant_id, transfer_id)
        target = check_transition(transfer, "approve")
        self.approvals.require_approved(tenant_id, transfer.approval_request_id)

        transfer.status = target
        transfer.approved_by = user_id
        transfer.approved_at = utcnow()
        self._append_notes(transfer, notes)
        return self._saved(transfer, user_id, "approve")

    def reject(self, tenant_id: str, transfer_id: str, user_id: str, notes: str = "") -> InventoryTransfer:
        transfer = self.get_transfer(tenant_id, transfer_id)
        target = check_transition(transfer, "reject")
        self.approvals.cancel_if_pending(tenant_id, transfer.approval_request_id, user_id,
                                        f"Transfer rejected: {notes}" if notes else "Transfer rejected")

        transfer.status = target
        transfer.approved_by = user_id
        self._append_notes(transfer, notes)
        return self._saved(transfer, user_id, "reject", {"notes": notes})

    def ship(self, tenant_id: str, transfer_id: str, user_id: str) -> InventoryTransfer:
        """Take the quantity out of the source store; fails whole on short stock."""
        transfer = self.get_transfer(tenant_id, transfer_id)
        target = check_transition(transfer, "ship")

        note = f"Shipped on transfer {transfer.transfer_number}"
        self.ledger.reserve(tenant_id, transfer.source_store_id, transfer.product_id, transfer.quantity,
                            reference=transfer.transfer_number, note=note)
        self.ledger.commit(tenant_id, transfer.source_store_id, transfer.product_id, transfer.quantity,
                           reference=transfer.transfer_number, note=note)

        transfer.status = target
        transfer.shipped_at = utcnow()
        saved = self._saved(transfer, user_id, "ship")
        self._rollup(transfer)
        return saved

    def complete(self, tenant_id: str, transfer_id: str, user_id: str) -> InventoryTransfer:
        """Receive the quantity at the destination store."""
        transfer = self.get_transfer(tenant_id, transfer_id)
        target = check_transition(transfer, "complete")

        self.ledger.receive(tenant_id, transfer.destination_store_id, transfer.product_id, transfer.quantity,
                            reference=transfer.transfer_number,
                            note=f"Received on transfer {transfer.transfer_number}")

        transfer.status = target
        transfer.received_at = utcnow()
        saved = self._saved(transfer, user_id, "complete")
        self._rollup(transfer)
        return saved

    def cancel(self, tenant_id: str, transfer_id: str, user_id: str, notes: str = "") -> InventoryTransfer:
        transfer = self.get_transfer(tenant_id, transfer_id)
        target = check_transition(transfer, "cancel")
        self.approvals.cancel_if_pending(tenant_id, transfer.approval_request_id, user_id, "Transfer cancelled")

        transfer.status = target
        self._append_notes(transfer, notes)
        saved = self._saved(transfer, user_id, "cancel", {"notes": notes})
        self._rollup(transfer)
        return saved

    # Internals

    @staticmethod
    def _append_notes(transfer: InventoryTransfer, notes: str) -> None:
        if notes:
            transfer.notes = f"{transfer.notes}\n{notes}" if transfer.notes else notes

    def _rollup(self, transfer: InventoryTransfer) -> None:
        if transfer.bulk_transfer_id:
            rollup_bulk_status(self.db, transfer.bulk_transfer)

    def _saved(self, transfer: InventoryTransfer, user_id: str, action: str, data: dict | None = None):
        self._flush(transfer)
        self.audit.record(transfer.tenant_id, user_id, f"transfer.{action}", "inventory_transfers", transfer.id, {
            "transfer_number": transfer.transfer_number,
            "status": transfer.status.value,
            **(data or {}),
        })
        logger.info("Transfer %s: %s -> %s", transfer.transfer_number, action, transfer.status.value)
        return transfer

    def _flush(self, transfer: InventoryTransfer) -> None:
        try:
            self.db.flush()
        except StaleDataError:
            raise ConflictError(f"Transfer {transfer.transfer_number} was changed concurrently, reload and retry")
