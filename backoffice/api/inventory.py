from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from backoffice.api.deps import get_audit, get_current_user, get_ledger, get_tenant_id
from backoffice.database import atomic, get_db
from backoffice.models.user import User
from backoffice.schemas.common import ApiList, ApiResponse
from backoffice.schemas.inventory import InventoryOut, StockReceipt
from backoffice.services.audit_service import AuditRecorder
from backoffice.services.inventory_service import InventoryLedger
from backoffice.services.repository import get_product, get_store

router = APIRouter(prefix="/inventory", tags=["Inventory"])


@router.get("", response_model=ApiList[InventoryOut])
def list_stock(
    store_id: str | None = None,
    product_id: str | None = None,
    skip: int = 0,
    limit: int = 100,
    tenant_id: str = Depends(get_tenant_id),
    ledger: InventoryLedger = Depends(get_ledger),
):
    rows = ledger.list_stock(tenant_id, store_id=store_id, product_id=product_id, skip=skip, limit=limit)
    return ApiList(data=[InventoryOut.model_validate(r) for r in rows], count=len(rows))


@router.post("/receipts", response_model=ApiResponse[InventoryOut], status_code=201)
def receive_stock(
    data: StockReceipt,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    ledger: InventoryLedger = Depends(get_ledger),
    audit: AuditRecorder = Depends(get_audit),
    db: Session = Depends(get_db),
):
    """Book goods arriving from outside the store network."""
    with atomic(db):
        get_store(db, tenant_id, data.store_id)
        get_product(db, tenant_id, data.product_id)
        row = ledger.receive(tenant_id, data.store_id, data.product_id, data.quantity,
                             reference=data.reference, note=data.note or "Stock receipt")
        audit.record(tenant_id, user.id, "inventory.receive", "inventory", row.id,
                     {"quantity": data.quantity, "reference": data.reference})
    return ApiResponse(message=f"Received {data.quantity} units", data=InventoryOut.model_validate(row))
