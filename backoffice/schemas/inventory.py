from datetime import datetime

from pydantic import BaseModel, Field


class StockReceipt(BaseModel):
    store_id: str
    product_id: str
    quantity: int = Field(gt=0)
    reference: str = ""
    note: str = ""


class InventoryOut(BaseModel):
    id: str
    tenant_id: str
    store_id: str
    product_id: str
    quantity_on_hand: int
    quantity_reserved: int
    quantity_available: int
    reorder_point: int
    reorder_quantity: int
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}
