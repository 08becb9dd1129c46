from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from backoffice.api.deps import announce_resolved, get_current_user, get_tenant_id, get_transfer_service
from backoffice.database import atomic, get_db
from backoffice.models.transfer import TransferStatus
from backoffice.models.user import User
from backoffice.schemas.common import ApiList, ApiResponse
from backoffice.schemas.transfer import TransferAction, TransferCreate, TransferOut, TransferStatsOut
from backoffice.services.transfer_service import TransferService

router = APIRouter(prefix="/inventory-transfers", tags=["Inventory Transfers"])


@router.post("", response_model=ApiResponse[TransferOut], status_code=201)
def create_transfer(
    data: TransferCreate,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    service: TransferService = Depends(get_transfer_service),
    db: Session = Depends(get_db),
):
    with atomic(db):
        transfer = service.create_transfer(tenant_id, user.id, data)
    return ApiResponse(message=f"Transfer {transfer.transfer_number} created", data=TransferOut.model_validate(transfer))


@router.get("", response_model=ApiList[TransferOut])
def list_transfers(
    status: list[TransferStatus] | None = Query(default=None),
    source_store_id: str | None = None,
    destination_store_id: str | None = None,
    product_id: str | None = None,
    reference: str | None = None,
    skip: int = 0,
    limit: int = 100,
    tenant_id: str = Depends(get_tenant_id),
    service: TransferService = Depends(get_transfer_service),
):
    rows = service.list_transfers(
        tenant_id,
        statuses=status,
        source_store_id=source_store_id,
        destination_store_id=destination_store_id,
        product_id=product_id,
        reference=reference,
        skip=skip,
        limit=limit,
    )
    return ApiList(data=[TransferOut.model_validate(t) for t in rows], count=len(rows))


@router.get("/stats", response_model=ApiResponse[TransferStatsOut])
def transfer_stats(tenant_id: str = Depends(get_tenant_id), service: TransferService = Depends(get_transfer_service)):
    return ApiResponse(data=TransferStatsOut(**service.stats(tenant_id)))


@router.get("/{transfer_id}", response_model=ApiResponse[TransferOut])
def get_transfer(
    transfer_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: TransferService = Depends(get_transfer_service),
):
    return ApiResponse(data=TransferOut.model_validate(service.get_transfer(tenant_id, transfer_id)))


@router.put("/{transfer_id}/submit", response_model=ApiResponse[TransferOut])
def submit_transfer(
    transfer_id: str,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    service: TransferService = Depends(get_transfer_service),
    db: Session = Depends(get_db),
):
    with atomic(db):
        transfer = service.submit(tenant_id, transfer_id, user.id)
    return ApiResponse(message="Transfer submitted", data=TransferOut.model_validate(transfer))


@router.put("/{transfer_id}/approve", response_model=ApiResponse[TransferOut])
def approve_transfer(
    transfer_id: str,
    data: TransferAction | None = None,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    service: TransferService = Depends(get_transfer_service),
    db: Session = Depends(get_db),
):
    with atomic(db):
        transfer = service.approve(tenant_id, transfer_id, user.id, data.notes if data else "")
    return ApiResponse(message="Transfer approved", data=TransferOut.model_validate(transfer))


@router.put("/{transfer_id}/reject", response_model=ApiResponse[TransferOut])
def reject_transfer(
    transfer_id: str,
    background_tasks: BackgroundTasks,
    data: TransferAction | None = None,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    service: TransferService = Depends(get_transfer_service),
    db: Session = Depends(get_db),
):
    with atomic(db):
        transfer = service.reject(tenant_id, transfer_id, user.id, data.notes if data else "")
    announce_resolved(background_tasks, service.approvals)
    return ApiResponse(message="Transfer rejected", data=TransferOut.model_validate(transfer))


@router.put("/{transfer_id}/ship", response_model=ApiResponse[TransferOut])
def ship_transfer(
    transfer_id: str,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    service: TransferService = Depends(get_transfer_service),
    db: Session = Depends(get_db),
):
    with atomic(db):
        transfer = service.ship(tenant_id, transfer_id, user.id)
    return ApiResponse(message="Transfer shipped", data=TransferOut.model_validate(transfer))


@router.put("/{transfer_id}/complete", response_model=ApiResponse[TransferOut])
def complete_transfer(
    transfer_id: str,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    service: TransferService = Depends(get_transfer_service),
    db: Session = Depends(get_db),
):
    with atomic(db):
        transfer = service.complete(tenant_id, transfer_id, user.id)
    return ApiResponse(message="Transfer completed", data=TransferOut.model_validate(transfer))


@router.put("/{transfer_id}/cancel", response_model=ApiResponse[TransferOut])
def cancel_transfer(
    transfer_id: str,
    background_tasks: BackgroundTasks,
    data: TransferAction | None = None,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    service: TransferService = Depends(get_transfer_service),
    db: Session = Depends(get_db),
):
    with atomic(db):
        transfer = service.cancel(tenant_id, transfer_id, user.id, data.notes if data else "")
    announce_resolved(background_tasks, service.approvals)
    return ApiResponse(message="Transfer cancelled", data=TransferOut.model_validate(transfer))
