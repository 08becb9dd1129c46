import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import CheckConstraint, DateTime, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from backoffice.database import Base
from backoffice.models.common import ArchivableMixin, TenantScopedMixin, enum_column


class Inventory(TenantScopedMixin, ArchivableMixin, Base):
    """Stock of one product at one store.

    ``quantity_available`` is always ``quantity_on_hand - quantity_reserved``.
    Only ``InventoryLedger`` writes these columns.
    """

    __tablename__ = "inventory"
    __table_args__ = (
        UniqueConstraint("tenant_id", "store_id", "product_id", name="uq_inventory_tenant_store_product"),
        CheckConstraint("quantity_on_hand >= 0", name="ck_inventory_on_hand_non_negative"),
        CheckConstraint("quantity_reserved >= 0", name="ck_inventory_reserved_non_negative"),
        CheckConstraint(
            "quantity_available = quantity_on_hand - quantity_reserved",
            name="ck_inventory_available_balance",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    store_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String, nullable=False, index=True)

    quantity_on_hand: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quantity_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quantity_available: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    reorder_point: Mapped[int] = mapped_column(Integer, default=0)
    reorder_quantity: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class MovementKind(str, PyEnum):
    RESERVE = "reserve"
    RELEASE = "release"
    COMMIT = "commit"
    RECEIVE = "receive"


class InventoryLog(TenantScopedMixin, Base):
    """Tracks every ledger movement for audit trail."""

    __tablename__ = "inventory_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    store_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    kind: Mapped[MovementKind] = enum_column(MovementKind, MovementKind.RECEIVE)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    change: Mapped[int] = mapped_column(Integer, nullable=False)  # on-hand delta: positive=in, negative=out
    on_hand_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reserved_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reference: Mapped[str] = mapped_column(String, default="")  # transfer number
    note: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
