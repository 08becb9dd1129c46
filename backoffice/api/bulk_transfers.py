from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from backoffice.api.deps import announce_resolved, get_bulk_orchestrator, get_current_user, get_tenant_id
from backoffice.database import atomic, get_db
from backoffice.models.bulk_transfer import BulkTransferPriority, BulkTransferStatus, BulkTransferType
from backoffice.models.user import User
from backoffice.schemas.bulk_transfer import (
    BulkTransferAction,
    BulkTransferCancel,
    BulkTransferCreate,
    BulkTransferDetailOut,
    BulkTransferOut,
)
from backoffice.schemas.common import ApiList, ApiResponse
from backoffice.services.bulk_transfer_service import BulkTransferOrchestrator

router = APIRouter(prefix="/bulk-transfers", tags=["Bulk Transfers"])


@router.post("", response_model=ApiResponse[BulkTransferOut], status_code=201)
def create_bulk_transfer(
    data: BulkTransferCreate,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    service: BulkTransferOrchestrator = Depends(get_bulk_orchestrator),
    db: Session = Depends(get_db),
):
    with atomic(db):
        bulk = service.create_bulk_transfer(tenant_id, user.id, data)
    return ApiResponse(
        message=f"Bulk transfer {bulk.bulk_transfer_number} created with {bulk.total_items} items",
        data=BulkTransferOut.model_validate(bulk),
    )


@router.get("", response_model=ApiList[BulkTransferOut])
def list_bulk_transfers(
    status: list[BulkTransferStatus] | None = Query(default=None),
    transfer_type: list[BulkTransferType] | None = Query(default=None),
    priority: list[BulkTransferPriority] | None = Query(default=None),
    source_store_id: str | None = None,
    destination_store_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    skip: int = 0,
    limit: int = Query(default=50, le=100),
    tenant_id: str = Depends(get_tenant_id),
    service: BulkTransferOrchestrator = Depends(get_bulk_orchestrator),
):
    rows, total = service.list_bulk_transfers(
        tenant_id,
        statuses=status,
        source_store_id=source_store_id,
        destination_store_id=destination_store_id,
        transfer_types=transfer_type,
        priorities=priority,
        start_date=start_date,
        end_date=end_date,
        skip=skip,
        limit=limit,
    )
    return ApiList(data=[BulkTransferOut.model_validate(b) for b in rows], count=len(rows), total=total)


@router.get("/{bulk_id}", response_model=ApiResponse[BulkTransferDetailOut])
def get_bulk_transfer(
    bulk_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: BulkTransferOrchestrator = Depends(get_bulk_orchestrator),
):
    """Bulk transfer with its line items and the transfers created from them."""
    return ApiResponse(data=BulkTransferDetailOut.model_validate(service.get_bulk_transfer(tenant_id, bulk_id)))


@router.post("/{bulk_id}/submit", response_model=ApiResponse[BulkTransferOut])
def submit_bulk_transfer(
    bulk_id: str,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    service: BulkTransferOrchestrator = Depends(get_bulk_orchestrator),
    db: Session = Depends(get_db),
):
    with atomic(db):
        bulk = service.submit_bulk_transfer(tenant_id, bulk_id, user.id)
    return ApiResponse(message="Bulk transfer submitted for approval", data=BulkTransferOut.model_validate(bulk))


@router.post("/{bulk_id}/approve", response_model=ApiResponse[BulkTransferDetailOut])
def approve_bulk_transfer(
    bulk_id: str,
    data: BulkTransferAction | None = None,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    service: BulkTransferOrchestrator = Depends(get_bulk_orchestrator),
    db: Session = Depends(get_db),
):
    with atomic(db):
        bulk = service.approve_bulk_transfer(tenant_id, bulk_id, user.id, data.notes if data else "")
    return ApiResponse(
        message=f"Bulk transfer approved, {bulk.total_items} transfers created",
        data=BulkTransferDetailOut.model_validate(bulk),
    )


@router.post("/{bulk_id}/reject", response_model=ApiResponse[BulkTransferOut])
def reject_bulk_transfer(
    bulk_id: str,
    background_tasks: BackgroundTasks,
    data: BulkTransferAction | None = None,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    service: BulkTransferOrchestrator = Depends(get_bulk_orchestrator),
    db: Session = Depends(get_db),
):
    with atomic(db):
        bulk = service.reject_bulk_transfer(tenant_id, bulk_id, user.id, data.notes if data else "")
    announce_resolved(background_tasks, service.approvals)
    return ApiResponse(message="Bulk transfer rejected", data=BulkTransferOut.model_validate(bulk))


@router.post("/{bulk_id}/cancel", response_model=ApiResponse[BulkTransferDetailOut])
def cancel_bulk_transfer(
    bulk_id: str,
    background_tasks: BackgroundTasks,
    data: BulkTransferCancel | None = None,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    service: BulkTransferOrchestrator = Depends(get_bulk_orchestrator),
    db: Session = Depends(get_db),
):
    with atomic(db):
        bulk = service.cancel_bulk_transfer(tenant_id, bulk_id, user.id, data.reason if data else "")
    announce_resolved(background_tasks, service.approvals)
    return ApiResponse(message="Bulk transfer cancelled", data=BulkTransferDetailOut.model_validate(bulk))
