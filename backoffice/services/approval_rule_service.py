import logging
from numbers import Number

from sqlalchemy.orm import Session

from backoffice.errors import ValidationError
from backoffice.models.approval import ApprovalObjectType, ApprovalRule
from backoffice.models.common import RecordStatus
from backoffice.schemas.approval import (
    ApprovalLevelRule,
    ApprovalRuleConditions,
    ApprovalRuleCreate,
    ApprovalRuleUpdate,
)
from backoffice.services.audit_service import AuditRecorder
from backoffice.services.repository import find_active_users, find_eligible_approvers, get_scoped, scoped

logger = logging.getLogger(__name__)


def extract_amount(action_data: dict | None) -> float:
    """The numeric field rule bounds apply to; absent means 0."""
    amount = (action_data or {}).get("amount", 0)
    if amount is None:
        return 0.0
    if isinstance(amount, bool) or not isinstance(amount, Number):
        raise ValidationError(f"approval_data.amount must be a number, got {amount!r}")
    return float(amount)


class ApprovalRuleEngine:
    """Decides whether an action needs approval and which levels sign it off.

    When several active rules exist for one (tenant, object type), the most
    recently updated rule whose bounds match wins; ``id`` breaks exact ties.
    """

    def __init__(self, db: Session, audit: AuditRecorder | None = None):
        self.db = db
        self.audit = audit or AuditRecorder(db)

    # Evaluation

    def find_applicable_rule(
        self, tenant_id: str, object_type: ApprovalObjectType | str, action_data: dict | None
    ) -> tuple[ApprovalRule, ApprovalRuleConditions] | None:
        amount = extract_amount(action_data)
        store_id = (action_data or {}).get("store_id")
        rules = (
            scoped(self.db, ApprovalRule, tenant_id)
            .filter(ApprovalRule.object_type == ApprovalObjectType(object_type))
            .order_by(ApprovalRule.updated_at.desc(), ApprovalRule.id.desc())
            .all()
        )
        for rule in rules:
            conditions = ApprovalRuleConditions.model_validate(rule.conditions)
            if conditions.matches(amount, store_id):
                return rule, conditions
        return None

    def evaluate(
        self, tenant_id: str, object_type: ApprovalObjectType | str, action_data: dict | None
    ) -> tuple[ApprovalRule | None, list[ApprovalLevelRule]]:
        found = self.find_applicable_rule(tenant_id, object_type, action_data)
        if not found:
            return None, []
        rule, conditions = found
        if not conditions.requires_approval:
            return rule, []
        return rule, list(conditions.approval_levels)

    def is_approval_required(self, tenant_id: str, object_type, action_data: dict | None) -> bool:
        _, levels = self.evaluate(tenant_id, object_type, action_data)
        return bool(levels)

    def resolve_levels(self, tenant_id: str, object_type, action_data: dict | None) -> list[ApprovalLevelRule]:
        _, levels = self.evaluate(tenant_id, object_type, action_data)
        return levels

    # Rule management

    def create_rule(self, tenant_id: str, user_id: str, data: ApprovalRuleCreate) -> ApprovalRule:
        self._check_satisfiable(tenant_id, data.conditions)
        rule = ApprovalRule(
            tenant_id=tenant_id,
            name=data.name,
            description=data.description,
            object_type=data.object_type,
            conditions_json=data.conditions.model_dump_json(),
        )
        self.db.add(rule)
        self.db.flush()
        self.audit.record(tenant_id, user_id, "approval_rule.create", "approval_rules", rule.id,
                          {"name": rule.name, "object_type": rule.object_type.value})
        logger.info("Approval rule %s created for %s (tenant %s)", rule.id, rule.object_type.value, tenant_id)
        return rule

    def get_rule(self, tenant_id: str, rule_id: str) -> ApprovalRule:
        return get_scoped(self.db, ApprovalRule, tenant_id, rule_id, "Approval rule")

    def list_rules(
        self, tenant_id: str, object_type: ApprovalObjectType | None = None, include_archived: bool = False
    ) -> list[ApprovalRule]:
        q = scoped(self.db, ApprovalRule, tenant_id, include_archived=include_archived)
        if object_type:
            q = q.filter(ApprovalRule.object_type == object_type)
        return q.order_by(ApprovalRule.updated_at.desc(), ApprovalRule.id.desc()).all()

    def update_rule(self, tenant_id: str, user_id: str, rule_id: str, data: ApprovalRuleUpdate) -> ApprovalRule:
        rule = self.get_rule(tenant_id, rule_id)
        if data.name is not None:
            rule.name = data.name
        if data.description is not None:
            rule.description = data.description
        if data.conditions is not None:
            self._check_satisfiable(tenant_id, data.conditions)
            rule.conditions_json = data.conditions.model_dump_json()
        self.db.flush()
        self.audit.record(tenant_id, user_id, "approval_rule.update", "approval_rules", rule.id,
                          data.model_dump(exclude_none=True, mode="json"))
        return rule

    def archive_rule(self, tenant_id: str, user_id: str, rule_id: str) -> ApprovalRule:
        """DELETE archives; requests already opened keep their snapshot."""
        rule = self.get_rule(tenant_id, rule_id)
        rule.status = RecordStatus.ARCHIVED
        self.db.flush()
        self.audit.record(tenant_id, user_id, "approval_rule.archive", "approval_rules", rule.id)
        logger.info("Approval rule %s archived", rule.id)
        return rule

    def _check_satisfiable(self, tenant_id: str, conditions: ApprovalRuleConditions) -> None:
        for level in conditions.approval_levels:
            if level.approver_roles:
                eligible = find_eligible_approvers(self.db, tenant_id, level.approver_roles)
                source = f"roles {', '.join(level.approver_roles)}"
            else:
                eligible = find_active_users(self.db, tenant_id, level.approvers)
                source = "the listed approvers"
            if level.min_approvals > len(eligible):
                raise ValidationError(
                    f"Level {level.level} requires {level.min_approvals} approvals but only "
                    f"{len(eligible)} eligible approver(s) hold {source}"
                )
