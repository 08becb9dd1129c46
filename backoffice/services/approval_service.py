import json
import logging
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from backoffice.config import settings
from backoffice.database import utcnow
from backoffice.errors import AuthorizationError, ConflictError, InvalidTransitionError, ValidationError
from backoffice.models.approval import (
    ApprovalObjectType,
    ApprovalPriority,
    ApprovalRequest,
    ApprovalRule,
    ApprovalStatus,
    Decision,
)
from backoffice.models.user import User
from backoffice.schemas.approval import ApprovalLevelRule, ApprovalRuleConditions
from backoffice.services.approval_rule_service import ApprovalRuleEngine
from backoffice.services.audit_service import AuditRecorder
from backoffice.services.repository import find_active_users, find_eligible_approvers, get_scoped, scoped

logger = logging.getLogger(__name__)

CANCEL_OVERRIDE_ROLES = ("admin", "manager")


class ApprovalRequestManager:
    """Opens approval requests and resolves them level by level.

    ``pending`` is the only non-terminal status. Every write to a request goes
    through the ORM version column, so a decision racing the expiry sweep (or
    another decision) fails with ConflictError instead of overwriting it.
    Requests resolved during this unit of work are collected in ``resolved``
    for the caller to announce once the transaction has committed.
    """

    def __init__(self, db: Session, rules: ApprovalRuleEngine | None = None, audit: AuditRecorder | None = None):
        self.db = db
        self.audit = audit or AuditRecorder(db)
        self.rules = rules or ApprovalRuleEngine(db, self.audit)
        self.resolved: list[ApprovalRequest] = []

    # Lookups

    def get_request(self, tenant_id: str, request_id: str) -> ApprovalRequest:
        return get_scoped(self.db, ApprovalRequest, tenant_id, request_id, "Approval request")

    def list_requests(
        self,
        tenant_id: str,
        status: ApprovalStatus | None = None,
        object_type: ApprovalObjectType | None = None,
        object_id: str | None = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[ApprovalRequest]:
        q = scoped(self.db, ApprovalRequest, tenant_id)
        if status:
            q = q.filter(ApprovalRequest.status == status)
        if object_type:
            q = q.filter(ApprovalRequest.object_type == object_type)
        if object_id:
            q = q.filter(ApprovalRequest.object_id == object_id)
        return q.order_by(ApprovalRequest.created_at.desc()).offset(skip).limit(limit).all()

    def list_pending_for_user(self, tenant_id: str, user_id: str, now: datetime | None = None) -> list[ApprovalRequest]:
        """Pending requests whose current level ``user_id`` may still decide."""
        now = now or utcnow()
        pending = (
            scoped(self.db, ApprovalRequest, tenant_id)
            .filter(ApprovalRequest.status == ApprovalStatus.PENDING)
            .order_by(ApprovalRequest.created_at)
            .all()
        )
        result = []
        for req in pending:
            if req.expires_at and req.expires_at <= now:
                continue
            if user_id in req.approvers_at(req.current_level):
                continue
            if self._is_eligible(req, user_id):
                result.append(req)
        return result

    # Lifecycle

    def open_request(
        self,
        tenant_id: str,
        requested_by: str,
        object_type: ApprovalObjectType | str,
        object_id: str,
        title: str,
        approval_data: dict | None = None,
        description: str = "",
        priority: ApprovalPriority | str = ApprovalPriority.MEDIUM,
        store_id: str | None = None,
        rule: ApprovalRule | None = None,
        levels: list[ApprovalLevelRule] | None = None,
    ) -> ApprovalRequest:
        """Open a request, evaluating the rules unless ``rule``/``levels`` come pre-evaluated.

        With no level to sign off the request is created already approved.
        """
        approval_data = dict(approval_data or {})
        if store_id and "store_id" not in approval_data:
            approval_data["store_id"] = store_id
        if levels is None:
            rule, levels = self.rules.evaluate(tenant_id, object_type, approval_data)

        now = utcnow()
        req = ApprovalRequest(
            tenant_id=tenant_id,
            store_id=store_id,
            object_type=ApprovalObjectType(object_type),
            object_id=object_id,
            title=title,
            description=description,
            priority=ApprovalPriority(priority),
            approval_rule_id=rule.id if rule else None,
            current_level=1,
            levels_json=json.dumps([lv.model_dump() for lv in levels]),
            approval_data_json=json.dumps(approval_data, default=str),
            requested_by=requested_by,
        )

        if levels:
            req.status = ApprovalStatus.PENDING
            req.decisions_json = "[]"
            req.expires_at = now + timedelta(hours=self._expiry_hours(rule))
        else:
            req.status = ApprovalStatus.APPROVED
            req.resolved_at = now
            req.decisions_json = json.dumps([{
                "level": 1,
                "approver_id": requested_by,
                "decision": Decision.APPROVED.value,
                "comments": "Auto-approved - no rule required approval",
                "decided_at": now.isoformat(),
            }])

        self.db.add(req)
        self.db.flush()
        self.audit.record(tenant_id, requested_by, "approval_request.create", "approval_requests", req.id, {
            "object_type": req.object_type.value,
            "object_id": object_id,
            "rule_id": req.approval_rule_id,
            "status": req.status.value,
        })
        logger.info("Approval request %s opened for %s:%s (%s)", req.id, req.object_type.value, object_id, req.status.value)
        return req

    def decide(
        self,
        tenant_id: str,
        request_id: str,
        approver_id: str,
        decision: Decision | str,
        comments: str = "",
        now: datetime | None = None,
    ) -> ApprovalRequest:
        decision = Decision(decision)
        now = now or utcnow()
        req = self.get_request(tenant_id, request_id)

        if req.status != ApprovalStatus.PENDING:
            raise InvalidTransitionError("approval request", req.status.value, "decide")
        if req.expires_at and req.expires_at <= now:
            raise ConflictError(f"Approval request {req.id} expired at {req.expires_at.isoformat()}")

        level = req.current_level_rule
        if level is None:
            raise ValidationError(f"Approval request {req.id} has no level {req.current_level}")
        if not self._is_eligible(req, approver_id):
            raise AuthorizationError(f"User {approver_id} is not an approver for level {req.current_level}")
        if approver_id in req.approvers_at(req.current_level):
            raise ConflictError(f"User {approver_id} already approved level {req.current_level}")

        decided_level = req.current_level
        decisions = req.decisions
        decisions.append({
            "level": decided_level,
            "approver_id": approver_id,
            "decision": decision.value,
            "comments": comments or "",
            "decided_at": now.isoformat(),
        })
        req.decisions_json = json.dumps(decisions)

        if decision == Decision.REJECTED:
            self._resolve(req, ApprovalStatus.REJECTED, now)
        elif len(req.approvers_at(decided_level)) >= level["min_approvals"]:
            if decided_level >= req.total_levels:
                self._resolve(req, ApprovalStatus.APPROVED, now)
            else:
                req.current_level = decided_level + 1

        self._flush(req)
        self.audit.record(tenant_id, approver_id, f"approval_request.{decision.value}", "approval_requests", req.id, {
            "level": decided_level,
            "comments": comments,
            "status": req.status.value,
        })
        logger.info("Approval request %s: %s by %s at level %d -> %s",
                    req.id, decision.value, approver_id, decided_level, req.status.value)
        return req

    def cancel(
        self,
        tenant_id: str,
        request_id: str,
        cancelled_by: str,
        reason: str = "",
        enforce_owner: bool = True,
    ) -> ApprovalRequest:
        req = self.get_request(tenant_id, request_id)
        if req.status != ApprovalStatus.PENDING:
            raise InvalidTransitionError("approval request", req.status.value, "cancel")

        if enforce_owner and req.requested_by != cancelled_by:
            user = self.db.get(User, cancelled_by)
            if not user or user.tenant_id != tenant_id or not user.has_any_role(*CANCEL_OVERRIDE_ROLES):
                raise AuthorizationError("Only the requester or an admin/manager can cancel this request")

        req.cancel_reason = reason or ""
        self._resolve(req, ApprovalStatus.CANCELLED, utcnow())
        self._flush(req)
        self.audit.record(tenant_id, cancelled_by, "approval_request.cancel", "approval_requests", req.id,
                          {"reason": reason})
        logger.info("Approval request %s cancelled by %s", req.id, cancelled_by)
        return req

    def expire(self, now: datetime | None = None, tenant_id: str | None = None) -> int:
        """Resolve every pending request past its expiry. Safe to repeat."""
        now = now or utcnow()
        q = self.db.query(ApprovalRequest.id, ApprovalRequest.version, ApprovalRequest.tenant_id).filter(
            ApprovalRequest.status == ApprovalStatus.PENDING,
            ApprovalRequest.expires_at.is_not(None),
            ApprovalRequest.expires_at <= now,
        )
        if tenant_id:
            q = q.filter(ApprovalRequest.tenant_id == tenant_id)

        expired = 0
        for req_id, version, req_tenant in q.all():
            # Compare-and-set: a decision that got there first wins
            result = self.db.execute(
                update(ApprovalRequest)
                .where(
                    ApprovalRequest.id == req_id,
                    ApprovalRequest.status == ApprovalStatus.PENDING,
                    ApprovalRequest.version == version,
                )
                .values(
                    status=ApprovalStatus.EXPIRED,
                    resolved_at=now,
                    updated_at=now,
                    version=ApprovalRequest.version + 1,
                )
                .execution_options(synchronize_session="fetch")
            )
            if result.rowcount != 1:
                continue
            expired += 1
            req = self.db.get(ApprovalRequest, req_id)
            self.db.refresh(req)
            self.resolved.append(req)
            self.audit.record(req_tenant, "system", "approval_request.expire", "approval_requests", req_id)

        if expired:
            logger.info("Expired %d approval request(s)", expired)
        return expired

    def statistics(self, tenant_id: str, start: datetime | None = None, end: datetime | None = None) -> dict:
        q = scoped(self.db, ApprovalRequest, tenant_id)
        if start:
            q = q.filter(ApprovalRequest.created_at >= start)
        if end:
            q = q.filter(ApprovalRequest.created_at <= end)

        stats = {f"{s.value}_requests": 0 for s in ApprovalStatus}
        stats["total_requests"] = 0
        hours = []
        for req in q.all():
            stats["total_requests"] += 1
            stats[f"{req.status.value}_requests"] += 1
            if req.status == ApprovalStatus.APPROVED and req.resolved_at:
                hours.append((req.resolved_at - req.created_at).total_seconds() / 3600)
        stats["avg_approval_time_hours"] = round(sum(hours) / len(hours), 2) if hours else None
        return stats

    # Gate helpers for transfer operations

    def require_approved(self, tenant_id: str, request_id: str | None) -> None:
        """Raise unless the gating request (if any) has resolved approved."""
        if not request_id:
            return
        req = self.get_request(tenant_id, request_id)
        if req.status == ApprovalStatus.APPROVED:
            return
        if req.status == ApprovalStatus.PENDING:
            raise ConflictError(
                f"Awaiting approval request {req.id} (level {req.current_level} of {req.total_levels})"
            )
        raise ConflictError(f"Approval request {req.id} was {req.status.value}")

    def cancel_if_pending(self, tenant_id: str, request_id: str | None, user_id: str, reason: str) -> None:
        if not request_id:
            return
        req = self.get_request(tenant_id, request_id)
        if req.status == ApprovalStatus.PENDING:
            self.cancel(tenant_id, request_id, user_id, reason, enforce_owner=False)

    # Internals

    def _is_eligible(self, req: ApprovalRequest, user_id: str) -> bool:
        level = req.current_level_rule
        if level is None:
            return False
        if level.get("approver_roles"):
            return user_id in find_eligible_approvers(self.db, req.tenant_id, level["approver_roles"])
        return user_id in level.get("approvers", []) and bool(find_active_users(self.db, req.tenant_id, [user_id]))

    @staticmethod
    def _expiry_hours(rule: ApprovalRule | None) -> float:
        if rule is not None:
            hours = ApprovalRuleConditions.model_validate(rule.conditions).expires_in_hours
            if hours:
                return hours
        return settings.DEFAULT_APPROVAL_EXPIRY_HOURS

    def _resolve(self, req: ApprovalRequest, status: ApprovalStatus, now: datetime) -> None:
        req.status = status
        req.resolved_at = now
        self.resolved.append(req)

    def _flush(self, req: ApprovalRequest) -> None:
        try:
            self.db.flush()
        except StaleDataError:
            raise ConflictError(f"Approval request {req.id} was changed concurrently, reload and retry")
