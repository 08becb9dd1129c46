import uuid
from datetime import datetime
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backoffice.database import Base
from backoffice.models.common import TenantScopedMixin, enum_column


class TransferStatus(str, PyEnum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    SHIPPED = "shipped"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class InventoryTransfer(TenantScopedMixin, Base):
    __tablename__ = "inventory_transfers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "transfer_number", name="uq_transfers_tenant_number"),
        CheckConstraint("quantity > 0", name="ck_transfers_quantity_positive"),
        CheckConstraint("source_store_id <> destination_store_id", name="ck_transfers_distinct_stores"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    transfer_number: Mapped[str] = mapped_column(String, index=True, nullable=False)
    source_store_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    destination_store_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_cost: Mapped[float | None] = mapped_column(Float, nullable=True)

    status: Mapped[TransferStatus] = enum_column(TransferStatus, TransferStatus.DRAFT)

    requested_by: Mapped[str] = mapped_column(String, nullable=False)
    approved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    received_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    notes: Mapped[str] = mapped_column(Text, default="")
    # Bulk transfer number when created by fan-out
    reference: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    bulk_transfer_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("bulk_inventory_transfers.id"), nullable=True, index=True
    )
    approval_request_id: Mapped[str | None] = mapped_column(String, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    bulk_transfer: Mapped[Optional["BulkInventoryTransfer"]] = relationship(  # noqa: F821
        "BulkInventoryTransfer", back_populates="child_transfers"
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def value(self) -> float:
        return round((self.unit_cost or 0.0) * self.quantity, 2)
