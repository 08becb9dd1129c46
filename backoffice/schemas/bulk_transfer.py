from datetime import datetime

from pydantic import BaseModel, Field

from backoffice.models.bulk_transfer import BulkTransferPriority, BulkTransferStatus, BulkTransferType
from backoffice.schemas.transfer import TransferOut


class BulkTransferItemCreate(BaseModel):
    product_id: str
    quantity: int = Field(gt=0)
    unit_cost: float = Field(default=0.0, ge=0)
    notes: str = ""


class BulkTransferCreate(BaseModel):
    """Totals are derived from ``items``; they are not accepted as input."""

    source_store_id: str
    destination_store_id: str
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    priority: BulkTransferPriority = BulkTransferPriority.NORMAL
    transfer_type: BulkTransferType = BulkTransferType.REPLENISHMENT
    scheduled_ship_date: datetime | None = None
    scheduled_receive_date: datetime | None = None
    notes: str = ""
    reference: str = ""
    items: list[BulkTransferItemCreate] = Field(min_length=1)

    model_config = {"extra": "ignore"}


class BulkTransferAction(BaseModel):
    notes: str = ""


class BulkTransferCancel(BaseModel):
    reason: str = ""


class BulkTransferItemOut(BaseModel):
    id: str
    product_id: str
    quantity: int
    unit_cost: float
    line_total: float
    notes: str

    model_config = {"from_attributes": True}


class BulkTransferOut(BaseModel):
    id: str
    tenant_id: str
    bulk_transfer_number: str
    source_store_id: str
    destination_store_id: str
    title: str
    description: str
    status: BulkTransferStatus
    priority: BulkTransferPriority
    transfer_type: BulkTransferType
    requested_by: str
    approved_by: str | None
    approved_at: datetime | None
    scheduled_ship_date: datetime | None
    scheduled_receive_date: datetime | None
    total_items: int
    total_quantity: int
    total_value: float
    notes: str
    reference: str
    approval_request_id: str | None
    items: list[BulkTransferItemOut]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class BulkTransferDetailOut(BulkTransferOut):
    child_transfers: list[TransferOut] = []
