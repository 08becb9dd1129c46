from datetime import timedelta

import pytest

from backoffice.database import atomic, utcnow
from backoffice.errors import AuthorizationError, ConflictError, InvalidTransitionError
from backoffice.models.approval import ApprovalObjectType, ApprovalRequest, ApprovalStatus, Decision
from backoffice.schemas.approval import ApprovalRuleCreate
from backoffice.services.approval_rule_service import ApprovalRuleEngine
from backoffice.services.approval_service import ApprovalRequestManager
from conftest import add_manager_rule

TRANSFER = ApprovalObjectType.INVENTORY_TRANSFER


def open_request(db, seed, amount=1500, requested_by=None, object_id="obj-1"):
    with atomic(db):
        return ApprovalRequestManager(db).open_request(
            seed.tenant,
            requested_by or seed.clerk,
            TRANSFER,
            object_id,
            title="Move widgets",
            approval_data={"amount": amount},
        )


def decide(db, seed, req_id, user_id, decision=Decision.APPROVED, now=None):
    with atomic(db):
        return ApprovalRequestManager(db).decide(seed.tenant, req_id, user_id, decision, now=now)


def test_open_request_snapshots_rule_levels(db, seed):
    rule = add_manager_rule(db, seed.admin)
    before = utcnow()
    req = open_request(db, seed)

    assert req.status == ApprovalStatus.PENDING
    assert req.approval_rule_id == rule.id
    assert req.current_level == 1
    assert req.total_levels == 1
    assert req.levels[0]["approver_roles"] == ["Manager"]
    assert req.approval_data == {"amount": 1500}
    assert before + timedelta(hours=167) < req.expires_at <= utcnow() + timedelta(hours=168)


def test_rule_expiry_overrides_the_default(db, seed):
    add_manager_rule(db, seed.admin, expires_in_hours=2)
    req = open_request(db, seed)
    assert req.expires_at <= utcnow() + timedelta(hours=2)


def test_request_is_auto_approved_when_no_rule_applies(db, seed):
    req = open_request(db, seed, amount=10)
    assert req.status == ApprovalStatus.APPROVED
    assert req.resolved_at is not None
    assert req.expires_at is None


def test_level_needs_distinct_approvers(db, seed):
    add_manager_rule(db, seed.admin, min_approvals=2)
    req = open_request(db, seed)

    req = decide(db, seed, req.id, seed.manager1)
    assert req.status == ApprovalStatus.PENDING
    assert req.current_level == 1

    with pytest.raises(ConflictError, match="already approved"):
        decide(db, seed, req.id, seed.manager1)

    req = decide(db, seed, req.id, seed.manager2)
    assert req.status == ApprovalStatus.APPROVED
    assert req.resolved_at is not None
    assert [d["approver_id"] for d in req.decisions] == [seed.manager1, seed.manager2]


def test_levels_advance_in_order(db, seed):
    with atomic(db):
        ApprovalRuleEngine(db).create_rule(seed.tenant, seed.admin, ApprovalRuleCreate(
            name="Two step",
            object_type=TRANSFER,
            conditions={
                "requires_approval": True,
                "approval_levels": [
                    {"level": 1, "approver_roles": ["manager"]},
                    {"level": 2, "approvers": [seed.admin]},
                ],
            },
        ))
    req = open_request(db, seed)

    with pytest.raises(AuthorizationError):
        decide(db, seed, req.id, seed.admin)

    req = decide(db, seed, req.id, seed.manager1)
    assert (req.status, req.current_level) == (ApprovalStatus.PENDING, 2)

    with pytest.raises(AuthorizationError):
        decide(db, seed, req.id, seed.manager2)

    req = decide(db, seed, req.id, seed.admin)
    assert req.status == ApprovalStatus.APPROVED


def test_single_rejection_vetoes(db, seed):
    add_manager_rule(db, seed.admin, min_approvals=2)
    req = open_request(db, seed)
    decide(db, seed, req.id, seed.manager1)

    req = decide(db, seed, req.id, seed.manager2, Decision.REJECTED)
    assert req.status == ApprovalStatus.REJECTED

    with pytest.raises(InvalidTransitionError):
        decide(db, seed, req.id, seed.manager2)


def test_ineligible_users_cannot_decide(db, seed):
    add_manager_rule(db, seed.admin, min_approvals=1)
    req = open_request(db, seed)
    with pytest.raises(AuthorizationError):
        decide(db, seed, req.id, seed.clerk)
    db.expire_all()
    assert db.get(ApprovalRequest, req.id).decisions == []


def test_expired_request_cannot_be_decided(db, seed):
    add_manager_rule(db, seed.admin, min_approvals=1)
    req = open_request(db, seed)
    later = req.expires_at + timedelta(seconds=1)

    with pytest.raises(ConflictError, match="expired"):
        decide(db, seed, req.id, seed.manager1, now=later)
    db.expire_all()
    assert db.get(ApprovalRequest, req.id).status == ApprovalStatus.PENDING


def test_expire_sweep_is_idempotent(db, seed):
    add_manager_rule(db, seed.admin, min_approvals=1)
    stale = open_request(db, seed, object_id="old")
    open_request(db, seed, amount=10, object_id="auto")
    later = stale.expires_at + timedelta(minutes=1)

    manager = ApprovalRequestManager(db)
    with atomic(db):
        assert manager.expire(now=later) == 1
    assert [r.id for r in manager.resolved] == [stale.id]
    with atomic(db):
        assert ApprovalRequestManager(db).expire(now=later) == 0

    req = db.get(ApprovalRequest, stale.id)
    assert req.status == ApprovalStatus.EXPIRED
    assert req.resolved_at == later


def test_decision_racing_the_sweep_loses(session_factory, seed):
    setup = session_factory()
    try:
        add_manager_rule(setup, seed.admin, min_approvals=1)
        req = open_request(setup, seed)
        req_id, expires_at = req.id, req.expires_at
    finally:
        setup.close()

    # The approver loaded the request before the sweep ran
    approver = session_factory(expire_on_commit=False)
    sweeper = session_factory()
    try:
        manager = ApprovalRequestManager(approver)
        manager.get_request(seed.tenant, req_id)
        approver.commit()

        with atomic(sweeper):
            assert ApprovalRequestManager(sweeper).expire(now=expires_at + timedelta(seconds=1)) == 1

        with pytest.raises(ConflictError):
            with atomic(approver):
                manager.decide(seed.tenant, req_id, seed.manager1, Decision.APPROVED, now=expires_at - timedelta(hours=1))
    finally:
        approver.close()
        sweeper.close()


def test_cancel_by_requester_or_manager_only(db, seed):
    add_manager_rule(db, seed.admin, min_approvals=1)
    first = open_request(db, seed, object_id="a")
    second = open_request(db, seed, object_id="b")
    manager = ApprovalRequestManager(db)

    with pytest.raises(AuthorizationError):
        with atomic(db):
            manager.cancel(seed.tenant, first.id, seed.outsider)

    with atomic(db):
        req = manager.cancel(seed.tenant, first.id, seed.clerk, "no longer needed")
    assert req.status == ApprovalStatus.CANCELLED
    assert req.cancel_reason == "no longer needed"

    with atomic(db):
        assert manager.cancel(seed.tenant, second.id, seed.manager2).status == ApprovalStatus.CANCELLED

    with pytest.raises(InvalidTransitionError):
        manager.cancel(seed.tenant, second.id, seed.clerk)


def test_pending_list_follows_the_current_level(db, seed):
    add_manager_rule(db, seed.admin, min_approvals=2)
    req = open_request(db, seed)
    manager = ApprovalRequestManager(db)

    assert [r.id for r in manager.list_pending_for_user(seed.tenant, seed.manager1)] == [req.id]
    assert manager.list_pending_for_user(seed.tenant, seed.clerk) == []

    decide(db, seed, req.id, seed.manager1)
    assert manager.list_pending_for_user(seed.tenant, seed.manager1) == []
    assert [r.id for r in manager.list_pending_for_user(seed.tenant, seed.manager2)] == [req.id]


def test_statistics(db, seed):
    add_manager_rule(db, seed.admin, min_approvals=1)
    approved = open_request(db, seed, object_id="a")
    rejected = open_request(db, seed, object_id="b")
    open_request(db, seed, object_id="c")
    decide(db, seed, approved.id, seed.manager1)
    decide(db, seed, rejected.id, seed.manager1, Decision.REJECTED)

    stats = ApprovalRequestManager(db).statistics(seed.tenant)
    assert stats["total_requests"] == 3
    assert stats["approved_requests"] == 1
    assert stats["rejected_requests"] == 1
    assert stats["pending_requests"] == 1
    assert stats["avg_approval_time_hours"] is not None
    assert ApprovalRequestManager(db).statistics("tenant-b")["total_requests"] == 0
