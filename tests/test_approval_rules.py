import pydantic
import pytest

from backoffice.database import atomic
from backoffice.errors import NotFoundError, ValidationError
from backoffice.models.approval import ApprovalObjectType
from backoffice.models.common import RecordStatus
from backoffice.schemas.approval import ApprovalRuleConditions, ApprovalRuleCreate, ApprovalRuleUpdate
from backoffice.services.approval_rule_service import ApprovalRuleEngine, extract_amount
from conftest import add_manager_rule

TRANSFER = ApprovalObjectType.INVENTORY_TRANSFER


def test_nothing_required_without_rules(db, seed):
    engine = ApprovalRuleEngine(db)
    assert engine.evaluate(seed.tenant, TRANSFER, {"amount": 10_000}) == (None, [])
    assert engine.is_approval_required(seed.tenant, TRANSFER, {"amount": 10_000}) is False


def test_amount_bounds_decide_applicability(db, seed):
    rule = add_manager_rule(db, seed.admin, min_amount=1000)
    engine = ApprovalRuleEngine(db)

    assert engine.is_approval_required(seed.tenant, TRANSFER, {"amount": 999.99}) is False
    assert engine.is_approval_required(seed.tenant, TRANSFER, {"amount": 1000}) is True

    found, levels = engine.evaluate(seed.tenant, TRANSFER, {"amount": 1500})
    assert found.id == rule.id
    assert [(lv.level, lv.min_approvals, lv.approver_roles) for lv in levels] == [(1, 2, ["Manager"])]


def test_missing_amount_counts_as_zero(db, seed):
    add_manager_rule(db, seed.admin, min_amount=1)
    engine = ApprovalRuleEngine(db)
    assert extract_amount({}) == 0
    assert extract_amount(None) == 0
    assert engine.is_approval_required(seed.tenant, TRANSFER, {}) is False


def test_non_numeric_amount_is_rejected(db, seed):
    with pytest.raises(ValidationError):
        ApprovalRuleEngine(db).evaluate(seed.tenant, TRANSFER, {"amount": "lots"})


def test_rules_only_apply_to_their_object_type(db, seed):
    add_manager_rule(db, seed.admin, min_amount=0)
    assert ApprovalRuleEngine(db).is_approval_required(seed.tenant, ApprovalObjectType.REFUND, {"amount": 5000}) is False


def test_most_recently_updated_matching_rule_wins(db, seed):
    older = add_manager_rule(db, seed.admin, min_amount=0, min_approvals=1)
    newer = add_manager_rule(db, seed.admin, min_amount=0, min_approvals=2)
    engine = ApprovalRuleEngine(db)

    rule, levels = engine.evaluate(seed.tenant, TRANSFER, {"amount": 50})
    assert rule.id == newer.id
    assert levels[0].min_approvals == 2

    with atomic(db):
        engine.update_rule(seed.tenant, seed.admin, older.id, ApprovalRuleUpdate(description="bumped"))
    rule, _ = engine.evaluate(seed.tenant, TRANSFER, {"amount": 50})
    assert rule.id == older.id


def test_rule_without_approval_requirement_short_circuits(db, seed):
    engine = ApprovalRuleEngine(db)
    with atomic(db):
        rule = engine.create_rule(seed.tenant, seed.admin, ApprovalRuleCreate(
            name="Small transfers are fine",
            object_type=TRANSFER,
            conditions={"requires_approval": False, "max_amount": 100},
        ))
    assert engine.evaluate(seed.tenant, TRANSFER, {"amount": 20}) == (rule, [])


def test_store_condition_limits_the_rule(db, seed):
    add_manager_rule(db, seed.admin, min_amount=0, store_ids=[seed.south])
    engine = ApprovalRuleEngine(db)
    assert engine.is_approval_required(seed.tenant, TRANSFER, {"amount": 10, "store_id": seed.north}) is False
    assert engine.is_approval_required(seed.tenant, TRANSFER, {"amount": 10, "store_id": seed.south}) is True


def test_archived_rules_are_ignored(db, seed):
    rule = add_manager_rule(db, seed.admin, min_amount=0)
    engine = ApprovalRuleEngine(db)
    with atomic(db):
        engine.archive_rule(seed.tenant, seed.admin, rule.id)

    assert engine.is_approval_required(seed.tenant, TRANSFER, {"amount": 5000}) is False
    assert engine.list_rules(seed.tenant) == []
    archived = engine.list_rules(seed.tenant, include_archived=True)
    assert [r.status for r in archived] == [RecordStatus.ARCHIVED]
    with pytest.raises(NotFoundError):
        engine.get_rule(seed.tenant, rule.id)


def test_rules_are_tenant_scoped(db, seed):
    rule = add_manager_rule(db, seed.admin, min_amount=0)
    engine = ApprovalRuleEngine(db)
    assert engine.is_approval_required("tenant-b", TRANSFER, {"amount": 5000}) is False
    with pytest.raises(NotFoundError):
        engine.get_rule("tenant-b", rule.id)


def test_unsatisfiable_level_is_refused(db, seed):
    with pytest.raises(ValidationError, match="Manager"):
        add_manager_rule(db, seed.admin, min_approvals=3)


@pytest.mark.parametrize("conditions", [
    {"requires_approval": True, "approval_levels": []},
    {"min_amount": 500, "max_amount": 100},
    {"requires_approval": True, "approval_levels": [{"level": 2, "approver_roles": ["Manager"]}]},
    {"requires_approval": True, "approval_levels": [{"level": 1}]},
    {"requires_approval": True, "approval_levels": [{"level": 1, "min_approvals": 0, "approvers": ["u1"]}]},
])
def test_malformed_conditions_fail_validation(conditions):
    with pytest.raises(pydantic.ValidationError):
        ApprovalRuleConditions.model_validate(conditions)


def test_resolve_levels_matches_evaluate(db, seed):
    add_manager_rule(db, seed.admin, min_amount=100, min_approvals=1)
    engine = ApprovalRuleEngine(db)
    assert engine.resolve_levels(seed.tenant, TRANSFER, {"amount": 50}) == []
    levels = engine.resolve_levels(seed.tenant, TRANSFER, {"amount": 150})
    assert [lv.min_approvals for lv in levels] == [1]
