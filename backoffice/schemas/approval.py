from datetime import datetime

from pydantic import BaseModel, Field, field_validator, model_validator

from backoffice.models.approval import ApprovalObjectType, ApprovalPriority, ApprovalStatus, Decision
from backoffice.models.common import RecordStatus


class ApprovalLevelRule(BaseModel):
    """One sign-off stage: ``min_approvals`` distinct approvers from a role set or a fixed id set."""

    level: int = Field(ge=1)
    min_approvals: int = Field(default=1, ge=1)
    approver_roles: list[str] = []
    approvers: list[str] = []

    @field_validator("approver_roles", "approvers")
    @classmethod
    def _dedupe(cls, v: list[str]) -> list[str]:
        return list(dict.fromkeys(s.strip() for s in v if s.strip()))

    @model_validator(mode="after")
    def _one_approver_source(self):
        if bool(self.approver_roles) == bool(self.approvers):
            raise ValueError(f"Level {self.level} must name either approver_roles or approvers")
        return self


class ApprovalRuleConditions(BaseModel):
    requires_approval: bool = False
    min_amount: float | None = Field(default=None, ge=0)
    max_amount: float | None = Field(default=None, ge=0)
    store_ids: list[str] = []
    approval_levels: list[ApprovalLevelRule] = []
    expires_in_hours: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _check_shape(self):
        if self.min_amount is not None and self.max_amount is not None and self.min_amount > self.max_amount:
            raise ValueError("min_amount cannot be greater than max_amount")
        if self.requires_approval and not self.approval_levels:
            raise ValueError("A rule that requires approval needs at least one approval level")
        expected = list(range(1, len(self.approval_levels) + 1))
        if [lv.level for lv in self.approval_levels] != expected:
            raise ValueError(f"Approval levels must be numbered {expected} in order")
        return self

    def matches(self, amount: float, store_id: str | None = None) -> bool:
        if self.min_amount is not None and amount < self.min_amount:
            return False
        if self.max_amount is not None and amount > self.max_amount:
            return False
        if self.store_ids and store_id and store_id not in self.store_ids:
            return False
        return True


class ApprovalRuleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str = ""
    object_type: ApprovalObjectType
    conditions: ApprovalRuleConditions


class ApprovalRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    conditions: ApprovalRuleConditions | None = None


class ApprovalRuleOut(BaseModel):
    id: str
    tenant_id: str
    name: str
    description: str
    object_type: ApprovalObjectType
    conditions: ApprovalRuleConditions
    status: RecordStatus
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class CheckRequiredRequest(BaseModel):
    object_type: ApprovalObjectType
    approval_data: dict = {}


class CheckRequiredOut(BaseModel):
    required: bool
    rule_id: str | None = None
    levels: list[ApprovalLevelRule] = []


class ApprovalRequestCreate(BaseModel):
    object_type: ApprovalObjectType
    object_id: str
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    priority: ApprovalPriority = ApprovalPriority.MEDIUM
    store_id: str | None = None
    approval_data: dict = {}


class ApprovalDecisionIn(BaseModel):
    decision: Decision
    comments: str = ""


class ApprovalCancelIn(BaseModel):
    reason: str = ""


class DecisionRecord(BaseModel):
    level: int
    approver_id: str
    decision: str
    comments: str = ""
    decided_at: datetime


class ApprovalRequestOut(BaseModel):
    id: str
    tenant_id: str
    store_id: str | None
    object_type: ApprovalObjectType
    object_id: str
    title: str
    description: str
    priority: ApprovalPriority
    status: ApprovalStatus
    approval_rule_id: str | None
    current_level: int
    total_levels: int
    levels: list[ApprovalLevelRule]
    decisions: list[DecisionRecord]
    approval_data: dict
    requested_by: str
    expires_at: datetime | None
    resolved_at: datetime | None
    cancel_reason: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ExpireSweepOut(BaseModel):
    expired: int


class ApprovalStatisticsOut(BaseModel):
    total_requests: int = 0
    pending_requests: int = 0
    approved_requests: int = 0
    rejected_requests: int = 0
    cancelled_requests: int = 0
    expired_requests: int = 0
    avg_approval_time_hours: float | None = None
