"""Request-scoped dependencies: the caller, their tenant and the services.

FastAPI caches a dependency per request, so every service built for one
request shares the same session, audit recorder and approval manager.
"""

from fastapi import BackgroundTasks, Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from backoffice.database import get_db
from backoffice.errors import AuthenticationError, AuthorizationError
from backoffice.models.user import User
from backoffice.services import auth_service
from backoffice.services.approval_rule_service import ApprovalRuleEngine
from backoffice.services.approval_service import ApprovalRequestManager
from backoffice.services.audit_service import AuditRecorder
from backoffice.services.bulk_transfer_service import BulkTransferOrchestrator
from backoffice.services.inventory_service import InventoryLedger
from backoffice.services.repository import require_tenant
from backoffice.services.sequence_service import SequenceGenerator
from backoffice.services.transfer_service import TransferService
from backoffice.services.webhook_service import build_resolution_payload, send_webhook

RULE_MANAGER_ROLES = ("admin", "manager")

bearer = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    db: Session = Depends(get_db),
) -> User:
    if not credentials:
        raise AuthenticationError("Not authenticated")
    payload = auth_service.decode_token(credentials.credentials)
    if not payload:
        raise AuthenticationError("Invalid or expired token")
    user = auth_service.get_user_by_id(db, payload["sub"])
    if not user or not user.active:
        raise AuthenticationError("User not found or disabled")
    return user


def get_tenant_id(user: User = Depends(get_current_user)) -> str:
    return require_tenant(user.tenant_id)


def require_rule_manager(user: User = Depends(get_current_user)) -> User:
    if not user.has_any_role(*RULE_MANAGER_ROLES):
        raise AuthorizationError("Managing approval rules requires the admin or manager role")
    return user


def get_audit(db: Session = Depends(get_db)) -> AuditRecorder:
    return AuditRecorder(db)


def get_ledger(db: Session = Depends(get_db)) -> InventoryLedger:
    return InventoryLedger(db)


def get_rules(db: Session = Depends(get_db), audit: AuditRecorder = Depends(get_audit)) -> ApprovalRuleEngine:
    return ApprovalRuleEngine(db, audit)


def get_approvals(
    db: Session = Depends(get_db),
    rules: ApprovalRuleEngine = Depends(get_rules),
    audit: AuditRecorder = Depends(get_audit),
) -> ApprovalRequestManager:
    return ApprovalRequestManager(db, rules=rules, audit=audit)


def get_transfer_service(
    db: Session = Depends(get_db),
    ledger: InventoryLedger = Depends(get_ledger),
    approvals: ApprovalRequestManager = Depends(get_approvals),
    audit: AuditRecorder = Depends(get_audit),
) -> TransferService:
    return TransferService(db, ledger=ledger, approvals=approvals, sequences=SequenceGenerator(db), audit=audit)


def get_bulk_orchestrator(
    db: Session = Depends(get_db),
    ledger: InventoryLedger = Depends(get_ledger),
    approvals: ApprovalRequestManager = Depends(get_approvals),
    audit: AuditRecorder = Depends(get_audit),
) -> BulkTransferOrchestrator:
    return BulkTransferOrchestrator(db, ledger=ledger, approvals=approvals, sequences=SequenceGenerator(db), audit=audit)


def announce_resolved(background_tasks: BackgroundTasks, approvals: ApprovalRequestManager) -> None:
    """Queue webhooks for requests resolved by this (committed) unit of work."""
    for req in approvals.resolved:
        background_tasks.add_task(send_webhook, build_resolution_payload(req))
    approvals.resolved.clear()
