from datetime import datetime

from pydantic import BaseModel, Field

from backoffice.models.transfer import TransferStatus


class TransferCreate(BaseModel):
    source_store_id: str
    destination_store_id: str
    product_id: str
    quantity: int = Field(gt=0)
    unit_cost: float | None = Field(default=None, ge=0)
    notes: str = ""


class TransferAction(BaseModel):
    notes: str = ""


class TransferOut(BaseModel):
    id: str
    tenant_id: str
    transfer_number: str
    source_store_id: str
    destination_store_id: str
    product_id: str
    quantity: int
    unit_cost: float | None
    value: float
    status: TransferStatus
    requested_by: str
    approved_by: str | None
    approved_at: datetime | None
    shipped_at: datetime | None
    received_at: datetime | None
    notes: str
    reference: str | None
    bulk_transfer_id: str | None
    approval_request_id: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class TransferStatsOut(BaseModel):
    total_transfers: int = 0
    draft_transfers: int = 0
    pending_transfers: int = 0
    approved_transfers: int = 0
    shipped_transfers: int = 0
    completed_transfers: int = 0
    rejected_transfers: int = 0
    cancelled_transfers: int = 0
    total_quantity_transferred: int = 0
