from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from backoffice.api.deps import (
    announce_resolved,
    get_approvals,
    get_current_user,
    get_rules,
    get_tenant_id,
    require_rule_manager,
)
from backoffice.database import atomic, get_db
from backoffice.models.approval import ApprovalObjectType, ApprovalStatus
from backoffice.models.user import User
from backoffice.schemas.approval import (
    ApprovalCancelIn,
    ApprovalDecisionIn,
    ApprovalRequestCreate,
    ApprovalRequestOut,
    ApprovalRuleCreate,
    ApprovalRuleOut,
    ApprovalRuleUpdate,
    ApprovalStatisticsOut,
    CheckRequiredOut,
    CheckRequiredRequest,
    ExpireSweepOut,
)
from backoffice.schemas.common import ApiList, ApiResponse
from backoffice.services.approval_rule_service import ApprovalRuleEngine
from backoffice.services.approval_service import ApprovalRequestManager

router = APIRouter(prefix="/approvals", tags=["Approvals"])


# Rules

@router.post("/rules", response_model=ApiResponse[ApprovalRuleOut], status_code=201)
def create_rule(
    data: ApprovalRuleCreate,
    user: User = Depends(require_rule_manager),
    tenant_id: str = Depends(get_tenant_id),
    rules: ApprovalRuleEngine = Depends(get_rules),
    db: Session = Depends(get_db),
):
    with atomic(db):
        rule = rules.create_rule(tenant_id, user.id, data)
    return ApiResponse(message="Approval rule created", data=ApprovalRuleOut.model_validate(rule))


@router.get("/rules", response_model=ApiList[ApprovalRuleOut])
def list_rules(
    object_type: ApprovalObjectType | None = None,
    include_archived: bool = False,
    tenant_id: str = Depends(get_tenant_id),
    rules: ApprovalRuleEngine = Depends(get_rules),
):
    rows = rules.list_rules(tenant_id, object_type=object_type, include_archived=include_archived)
    return ApiList(data=[ApprovalRuleOut.model_validate(r) for r in rows], count=len(rows))


@router.get("/rules/{rule_id}", response_model=ApiResponse[ApprovalRuleOut])
def get_rule(rule_id: str, tenant_id: str = Depends(get_tenant_id), rules: ApprovalRuleEngine = Depends(get_rules)):
    return ApiResponse(data=ApprovalRuleOut.model_validate(rules.get_rule(tenant_id, rule_id)))


@router.put("/rules/{rule_id}", response_model=ApiResponse[ApprovalRuleOut])
def update_rule(
    rule_id: str,
    data: ApprovalRuleUpdate,
    user: User = Depends(require_rule_manager),
    tenant_id: str = Depends(get_tenant_id),
    rules: ApprovalRuleEngine = Depends(get_rules),
    db: Session = Depends(get_db),
):
    with atomic(db):
        rule = rules.update_rule(tenant_id, user.id, rule_id, data)
    return ApiResponse(message="Approval rule updated", data=ApprovalRuleOut.model_validate(rule))


@router.delete("/rules/{rule_id}", response_model=ApiResponse[ApprovalRuleOut])
def archive_rule(
    rule_id: str,
    user: User = Depends(require_rule_manager),
    tenant_id: str = Depends(get_tenant_id),
    rules: ApprovalRuleEngine = Depends(get_rules),
    db: Session = Depends(get_db),
):
    with atomic(db):
        rule = rules.archive_rule(tenant_id, user.id, rule_id)
    return ApiResponse(message="Approval rule archived", data=ApprovalRuleOut.model_validate(rule))


@router.post("/check-required", response_model=ApiResponse[CheckRequiredOut])
def check_required(
    data: CheckRequiredRequest,
    tenant_id: str = Depends(get_tenant_id),
    rules: ApprovalRuleEngine = Depends(get_rules),
):
    rule, levels = rules.evaluate(tenant_id, data.object_type, data.approval_data)
    return ApiResponse(data=CheckRequiredOut(required=bool(levels), rule_id=rule.id if rule else None, levels=levels))


# Requests

@router.post("/requests", response_model=ApiResponse[ApprovalRequestOut], status_code=201)
def create_request(
    data: ApprovalRequestCreate,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    approvals: ApprovalRequestManager = Depends(get_approvals),
    db: Session = Depends(get_db),
):
    with atomic(db):
        req = approvals.open_request(
            tenant_id,
            user.id,
            data.object_type,
            data.object_id,
            title=data.title,
            description=data.description,
            approval_data=data.approval_data,
            priority=data.priority,
            store_id=data.store_id,
        )
    return ApiResponse(message="Approval request created", data=ApprovalRequestOut.model_validate(req))


@router.get("/requests", response_model=ApiList[ApprovalRequestOut])
def list_requests(
    status: ApprovalStatus | None = None,
    object_type: ApprovalObjectType | None = None,
    object_id: str | None = None,
    skip: int = 0,
    limit: int = 100,
    tenant_id: str = Depends(get_tenant_id),
    approvals: ApprovalRequestManager = Depends(get_approvals),
):
    rows = approvals.list_requests(tenant_id, status=status, object_type=object_type, object_id=object_id,
                                   skip=skip, limit=limit)
    return ApiList(data=[ApprovalRequestOut.model_validate(r) for r in rows], count=len(rows))


@router.get("/requests/pending", response_model=ApiList[ApprovalRequestOut])
def list_pending(
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    approvals: ApprovalRequestManager = Depends(get_approvals),
):
    """Requests waiting on the caller's decision."""
    rows = approvals.list_pending_for_user(tenant_id, user.id)
    return ApiList(data=[ApprovalRequestOut.model_validate(r) for r in rows], count=len(rows))


@router.post("/requests/expire", response_model=ApiResponse[ExpireSweepOut])
def expire_requests(
    background_tasks: BackgroundTasks,
    tenant_id: str = Depends(get_tenant_id),
    approvals: ApprovalRequestManager = Depends(get_approvals),
    db: Session = Depends(get_db),
):
    with atomic(db):
        expired = approvals.expire(tenant_id=tenant_id)
    announce_resolved(background_tasks, approvals)
    return ApiResponse(message=f"Expired {expired} request(s)", data=ExpireSweepOut(expired=expired))


@router.get("/requests/{request_id}", response_model=ApiResponse[ApprovalRequestOut])
def get_request(
    request_id: str,
    tenant_id: str = Depends(get_tenant_id),
    approvals: ApprovalRequestManager = Depends(get_approvals),
):
    return ApiResponse(data=ApprovalRequestOut.model_validate(approvals.get_request(tenant_id, request_id)))


@router.post("/requests/{request_id}/process", response_model=ApiResponse[ApprovalRequestOut])
def process_request(
    request_id: str,
    data: ApprovalDecisionIn,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    approvals: ApprovalRequestManager = Depends(get_approvals),
    db: Session = Depends(get_db),
):
    with atomic(db):
        req = approvals.decide(tenant_id, request_id, user.id, data.decision, data.comments)
    announce_resolved(background_tasks, approvals)
    return ApiResponse(message=f"Decision recorded: {data.decision.value}", data=ApprovalRequestOut.model_validate(req))


@router.post("/requests/{request_id}/cancel", response_model=ApiResponse[ApprovalRequestOut])
def cancel_request(
    request_id: str,
    data: ApprovalCancelIn,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    approvals: ApprovalRequestManager = Depends(get_approvals),
    db: Session = Depends(get_db),
):
    with atomic(db):
        req = approvals.cancel(tenant_id, request_id, user.id, data.reason)
    announce_resolved(background_tasks, approvals)
    return ApiResponse(message="Approval request cancelled", data=ApprovalRequestOut.model_validate(req))


@router.get("/statistics", response_model=ApiResponse[ApprovalStatisticsOut])
def statistics(
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    tenant_id: str = Depends(get_tenant_id),
    approvals: ApprovalRequestManager = Depends(get_approvals),
):
    return ApiResponse(data=ApprovalStatisticsOut(**approvals.statistics(tenant_id, start_date, end_date)))
