import json
import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from backoffice.database import Base, utcnow
from backoffice.models.common import ArchivableMixin, TenantScopedMixin, enum_column


class ApprovalObjectType(str, PyEnum):
    INVENTORY_TRANSFER = "inventory_transfer"
    INVENTORY_ADJUSTMENT = "inventory_adjustment"
    SALE = "sale"
    REFUND = "refund"


class ApprovalStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ApprovalPriority(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Decision(str, PyEnum):
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalRule(TenantScopedMixin, ArchivableMixin, Base):
    __tablename__ = "approval_rules"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    object_type: Mapped[ApprovalObjectType] = enum_column(ApprovalObjectType, ApprovalObjectType.INVENTORY_TRANSFER)

    # Validated ApprovalRuleConditions as JSON
    conditions_json: Mapped[str] = mapped_column("conditions", Text, default="{}")

    # Python-side timestamps: the newest rule wins ties, so keep sub-second precision
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def conditions(self) -> dict:
        return json.loads(self.conditions_json) if self.conditions_json else {}


class ApprovalRequest(TenantScopedMixin, Base):
    __tablename__ = "approval_requests"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    store_id: Mapped[str | None] = mapped_column(String, nullable=True)
    object_type: Mapped[ApprovalObjectType] = enum_column(ApprovalObjectType, ApprovalObjectType.INVENTORY_TRANSFER)
    object_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    priority: Mapped[ApprovalPriority] = enum_column(ApprovalPriority, ApprovalPriority.MEDIUM)
    status: Mapped[ApprovalStatus] = enum_column(ApprovalStatus, ApprovalStatus.PENDING)

    approval_rule_id: Mapped[str | None] = mapped_column(String, nullable=True)
    current_level: Mapped[int] = mapped_column(Integer, default=1)
    # Snapshot of the rule's approval levels when the request was opened
    levels_json: Mapped[str] = mapped_column("levels", Text, default="[]")
    # JSON list of {level, approver_id, decision, comments, decided_at}
    decisions_json: Mapped[str] = mapped_column("decisions", Text, default="[]")
    approval_data_json: Mapped[str] = mapped_column("approval_data", Text, default="{}")

    requested_by: Mapped[str] = mapped_column(String, nullable=False, index=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancel_reason: Mapped[str] = mapped_column(Text, default="")

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    @property
    def levels(self) -> list[dict]:
        return json.loads(self.levels_json) if self.levels_json else []

    @property
    def decisions(self) -> list[dict]:
        return json.loads(self.decisions_json) if self.decisions_json else []

    @property
    def approval_data(self) -> dict:
        return json.loads(self.approval_data_json) if self.approval_data_json else {}

    @property
    def total_levels(self) -> int:
        return len(self.levels)

    @property
    def current_level_rule(self) -> dict | None:
        for level in self.levels:
            if level["level"] == self.current_level:
                return level
        return None

    def approvers_at(self, level: int) -> set[str]:
        """Distinct approvers who approved ``level``."""
        return {
            d["approver_id"]
            for d in self.decisions
            if d["level"] == level and d["decision"] == Decision.APPROVED.value
        }
