import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import CheckConstraint, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backoffice.database import Base
from backoffice.models.common import TenantScopedMixin, enum_column


class BulkTransferStatus(str, PyEnum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    PARTIALLY_SHIPPED = "partially_shipped"
    SHIPPED = "shipped"
    PARTIALLY_RECEIVED = "partially_received"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class BulkTransferPriority(str, PyEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class BulkTransferType(str, PyEnum):
    REPLENISHMENT = "replenishment"
    ALLOCATION = "allocation"
    RETURN = "return"
    ADJUSTMENT = "adjustment"
    EMERGENCY = "emergency"


class BulkInventoryTransfer(TenantScopedMixin, Base):
    __tablename__ = "bulk_inventory_transfers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "bulk_transfer_number", name="uq_bulk_transfers_tenant_number"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    bulk_transfer_number: Mapped[str] = mapped_column(String, index=True, nullable=False)
    source_store_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    destination_store_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")

    status: Mapped[BulkTransferStatus] = enum_column(BulkTransferStatus, BulkTransferStatus.DRAFT)
    priority: Mapped[BulkTransferPriority] = enum_column(BulkTransferPriority, BulkTransferPriority.NORMAL)
    transfer_type: Mapped[BulkTransferType] = enum_column(BulkTransferType, BulkTransferType.REPLENISHMENT)

    requested_by: Mapped[str] = mapped_column(String, nullable=False)
    approved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    scheduled_ship_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    scheduled_receive_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Derived from the line items at creation, never written afterwards
    total_items: Mapped[int] = mapped_column(Integer, default=0)
    total_quantity: Mapped[int] = mapped_column(Integer, default=0)
    total_value: Mapped[float] = mapped_column(Float, default=0.0)

    notes: Mapped[str] = mapped_column(Text, default="")
    reference: Mapped[str] = mapped_column(String, default="")
    approval_request_id: Mapped[str | None] = mapped_column(String, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    items: Mapped[list["BulkInventoryTransferItem"]] = relationship(
        "BulkInventoryTransferItem", back_populates="bulk_transfer", cascade="all, delete-orphan"
    )
    child_transfers: Mapped[list["InventoryTransfer"]] = relationship(  # noqa: F821
        "InventoryTransfer", back_populates="bulk_transfer", order_by="InventoryTransfer.transfer_number"
    )

    __mapper_args__ = {"version_id_col": version}


class BulkInventoryTransferItem(Base):
    __tablename__ = "bulk_inventory_transfer_items"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_bulk_items_quantity_positive"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    bulk_transfer_id: Mapped[str] = mapped_column(
        String, ForeignKey("bulk_inventory_transfers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[str] = mapped_column(String, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_cost: Mapped[float] = mapped_column(Float, default=0.0)
    line_total: Mapped[float] = mapped_column(Float, default=0.0)
    notes: Mapped[str] = mapped_column(Text, default="")

    bulk_transfer: Mapped["BulkInventoryTransfer"] = relationship("BulkInventoryTransfer", back_populates="items")
