import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backoffice.errors import ConflictError, ValidationError
from backoffice.models.common import RecordStatus
from backoffice.models.inventory import Inventory, InventoryLog, MovementKind
from backoffice.services.repository import require_tenant, scoped

logger = logging.getLogger(__name__)


class InventoryLedger:
    """The only writer of inventory quantities.

    Every primitive is a single conditional UPDATE: the guard (enough stock,
    enough reservation) and the change are applied by the database in one
    statement, so two concurrent callers can never both pass a check against
    the same stale quantity. Nothing here commits; callers run the ledger
    inside the same transaction as the record whose status it backs.
    """

    def __init__(self, db: Session):
        self.db = db

    # Reads

    def get_stock(self, tenant_id: str, store_id: str, product_id: str) -> Inventory | None:
        return (
            scoped(self.db, Inventory, tenant_id)
            .filter(Inventory.store_id == store_id, Inventory.product_id == product_id)
            .first()
        )

    def available(self, tenant_id: str, store_id: str, product_id: str) -> int:
        row = self.get_stock(tenant_id, store_id, product_id)
        return row.quantity_available if row else 0

    def lock_stock(self, tenant_id: str, store_id: str, product_ids: list[str]) -> dict[str, Inventory]:
        """Row-lock the given products' stock at one store for the rest of the transaction."""
        rows = (
            scoped(self.db, Inventory, tenant_id)
            .filter(Inventory.store_id == store_id, Inventory.product_id.in_(set(product_ids)))
            .order_by(Inventory.product_id)
            .with_for_update()
            .all()
        )
        return {row.product_id: row for row in rows}

    def list_stock(
        self,
        tenant_id: str,
        store_id: str | None = None,
        product_id: str | None = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[Inventory]:
        q = scoped(self.db, Inventory, tenant_id)
        if store_id:
            q = q.filter(Inventory.store_id == store_id)
        if product_id:
            q = q.filter(Inventory.product_id == product_id)
        return q.order_by(Inventory.store_id, Inventory.product_id).offset(skip).limit(limit).all()

    def movements(self, tenant_id: str, reference: str) -> list[InventoryLog]:
        return (
            self.db.query(InventoryLog)
            .filter(InventoryLog.tenant_id == require_tenant(tenant_id), InventoryLog.reference == reference)
            .order_by(InventoryLog.created_at, InventoryLog.kind)
            .all()
        )

    # Primitives

    def reserve(self, tenant_id, store_id, product_id, qty: int, reference: str = "", note: str = "") -> Inventory:
        """Hold ``qty`` of available stock."""
        self._check_qty(qty)
        changed = self._apply(
            tenant_id, store_id, product_id,
            guard=Inventory.quantity_available >= qty,
            values={
                "quantity_reserved": Inventory.quantity_reserved + qty,
                "quantity_available": Inventory.quantity_available - qty,
            },
        )
        if not changed:
            raise ConflictError(self._shortage_message(tenant_id, store_id, product_id, qty))
        return self._log(tenant_id, store_id, product_id, MovementKind.RESERVE, qty, 0, reference, note)

    def release(self, tenant_id, store_id, product_id, qty: int, reference: str = "", note: str = "") -> Inventory:
        """Return a reservation to available stock."""
        self._check_qty(qty)
        changed = self._apply(
            tenant_id, store_id, product_id,
            guard=Inventory.quantity_reserved >= qty,
            values={
                "quantity_reserved": Inventory.quantity_reserved - qty,
                "quantity_available": Inventory.quantity_available + qty,
            },
        )
        if not changed:
            raise ConflictError(f"Cannot release {qty}: not reserved for product {product_id} at store {store_id}")
        return self._log(tenant_id, store_id, product_id, MovementKind.RELEASE, qty, 0, reference, note)

    def commit(self, tenant_id, store_id, product_id, qty: int, reference: str = "", note: str = "") -> Inventory:
        """Turn a reservation into a permanent on-hand decrease."""
        self._check_qty(qty)
        changed = self._apply(
            tenant_id, store_id, product_id,
            guard=(Inventory.quantity_reserved >= qty) & (Inventory.quantity_on_hand >= qty),
            values={
                "quantity_on_hand": Inventory.quantity_on_hand - qty,
                "quantity_reserved": Inventory.quantity_reserved - qty,
            },
        )
        if not changed:
            raise ConflictError(f"Cannot commit {qty}: not reserved for product {product_id} at store {store_id}")
        return self._log(tenant_id, store_id, product_id, MovementKind.COMMIT, qty, -qty, reference, note)

    def receive(self, tenant_id, store_id, product_id, qty: int, reference: str = "", note: str = "") -> Inventory:
        """Add ``qty`` to on-hand stock, creating the row on first receipt."""
        self._check_qty(qty)
        values = {
            "quantity_on_hand": Inventory.quantity_on_hand + qty,
            "quantity_available": Inventory.quantity_available + qty,
        }
        if not self._apply(tenant_id, store_id, product_id, guard=None, values=values):
            try:
                with self.db.begin_nested():
                    self.db.add(Inventory(
                        tenant_id=tenant_id,
                        store_id=store_id,
                        product_id=product_id,
                        quantity_on_hand=qty,
                        quantity_reserved=0,
                        quantity_available=qty,
                    ))
            except IntegrityError:
                # Created by a concurrent receipt, or archived
                if not self._apply(tenant_id, store_id, product_id, guard=None, values=values):
                    raise ConflictError(f"Stock record for product {product_id} at store {store_id} is archived")
        return self._log(tenant_id, store_id, product_id, MovementKind.RECEIVE, qty, qty, reference, note)

    # Internals

    @staticmethod
    def _check_qty(qty: int) -> None:
        if not isinstance(qty, int) or isinstance(qty, bool) or qty <= 0:
            raise ValidationError(f"Quantity must be a positive integer, got {qty!r}")

    def _apply(self, tenant_id, store_id, product_id, guard, values: dict) -> bool:
        stmt = update(Inventory).where(
            Inventory.tenant_id == require_tenant(tenant_id),
            Inventory.store_id == store_id,
            Inventory.product_id == product_id,
            Inventory.status == RecordStatus.ACTIVE,
        )
        if guard is not None:
            stmt = stmt.where(guard)
        result = self.db.execute(stmt.values(**values).execution_options(synchronize_session="fetch"))
        return result.rowcount == 1

    def _shortage_message(self, tenant_id, store_id, product_id, qty: int) -> str:
        available = self.available(tenant_id, store_id, product_id)
        return (
            f"Insufficient stock for product {product_id} at store {store_id}. "
            f"Available: {available}, requested: {qty}"
        )

    def _log(self, tenant_id, store_id, product_id, kind: MovementKind, qty, change, reference, note) -> Inventory:
        row = self.get_stock(tenant_id, store_id, product_id)
        self.db.refresh(row)
        self.db.add(InventoryLog(
            tenant_id=tenant_id,
            store_id=store_id,
            product_id=product_id,
            kind=kind,
            quantity=qty,
            change=change,
            on_hand_after=row.quantity_on_hand,
            reserved_after=row.quantity_reserved,
            reference=reference,
            note=note,
        ))
        logger.debug("Ledger %s %d of %s at %s (%s)", kind.value, qty, product_id, store_id, reference)
        return row
