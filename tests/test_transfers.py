from datetime import timedelta

import pytest

from backoffice.database import atomic
from backoffice.errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from backoffice.models.approval import ApprovalRequest, ApprovalStatus, Decision
from backoffice.models.transfer import InventoryTransfer, TransferStatus
from backoffice.schemas.transfer import TransferCreate
from backoffice.services.approval_service import ApprovalRequestManager
from backoffice.services.audit_service import AuditRecorder
from backoffice.services.inventory_service import InventoryLedger
from backoffice.services.transfer_service import TransferService
from conftest import add_manager_rule


def new_transfer(db, seed, quantity=10, unit_cost=150.0, product=None, user=None):
    data = TransferCreate(
        source_store_id=seed.north,
        destination_store_id=seed.south,
        product_id=product or seed.widget,
        quantity=quantity,
        unit_cost=unit_cost,
    )
    with atomic(db):
        return TransferService(db).create_transfer(seed.tenant, user or seed.clerk, data)


def act(db, seed, action, transfer_id, user=None, **kwargs):
    with atomic(db):
        return getattr(TransferService(db), action)(seed.tenant, transfer_id, user or seed.manager1, **kwargs)


def test_create_persists_a_draft(db, seed):
    transfer = new_transfer(db, seed)
    assert transfer.status == TransferStatus.DRAFT
    assert transfer.transfer_number.startswith("IT-")
    assert transfer.value == 1500.0
    assert transfer.requested_by == seed.clerk
    # Nothing moves before shipping
    assert InventoryLedger(db).available(seed.tenant, seed.north, seed.widget) == 100


def test_create_validates_the_route_and_stock(db, seed):
    service = TransferService(db)
    same_store = TransferCreate(source_store_id=seed.north, destination_store_id=seed.north,
                                product_id=seed.widget, quantity=1)
    with pytest.raises(ValidationError):
        service.create_transfer(seed.tenant, seed.clerk, same_store)

    foreign = TransferCreate(source_store_id=seed.north, destination_store_id=seed.foreign_store,
                             product_id=seed.widget, quantity=1)
    with pytest.raises(NotFoundError):
        service.create_transfer(seed.tenant, seed.clerk, foreign)

    with pytest.raises(ConflictError, match="Available: 5, requested: 6"):
        new_transfer(db, seed, quantity=6, product=seed.gizmo)
    assert db.query(InventoryTransfer).count() == 0


def test_full_lifecycle_without_rules(db, seed):
    transfer = new_transfer(db, seed, quantity=25)

    transfer = act(db, seed, "submit", transfer.id)
    assert transfer.status == TransferStatus.PENDING
    assert transfer.approval_request_id is None

    transfer = act(db, seed, "approve", transfer.id, notes="ok")
    assert transfer.status == TransferStatus.APPROVED
    assert transfer.approved_by == seed.manager1

    transfer = act(db, seed, "ship", transfer.id)
    assert transfer.status == TransferStatus.SHIPPED
    assert transfer.shipped_at is not None
    ledger = InventoryLedger(db)
    source = ledger.get_stock(seed.tenant, seed.north, seed.widget)
    assert (source.quantity_on_hand, source.quantity_reserved, source.quantity_available) == (75, 0, 75)
    assert ledger.get_stock(seed.tenant, seed.south, seed.widget) is None

    transfer = act(db, seed, "complete", transfer.id)
    assert transfer.status == TransferStatus.COMPLETED
    assert transfer.received_at is not None
    assert ledger.available(seed.tenant, seed.south, seed.widget) == 25

    moves = ledger.movements(seed.tenant, transfer.transfer_number)
    assert sorted(m.kind.value for m in moves) == ["commit", "receive", "reserve"]


def test_approval_gate_needs_two_managers(db, seed):
    add_manager_rule(db, seed.admin, min_amount=1000, min_approvals=2)
    transfer = new_transfer(db, seed, quantity=10, unit_cost=150.0)

    transfer = act(db, seed, "submit", transfer.id, user=seed.clerk)
    assert transfer.status == TransferStatus.PENDING
    req_id = transfer.approval_request_id
    req = db.get(ApprovalRequest, req_id)
    assert req.status == ApprovalStatus.PENDING
    assert req.approval_data["amount"] == 1500.0
    assert req.object_id == transfer.id

    with pytest.raises(ConflictError, match="Awaiting approval"):
        act(db, seed, "approve", transfer.id)

    with atomic(db):
        ApprovalRequestManager(db).decide(seed.tenant, req_id, seed.manager1, Decision.APPROVED)
    with pytest.raises(ConflictError):
        act(db, seed, "approve", transfer.id)

    with atomic(db):
        ApprovalRequestManager(db).decide(seed.tenant, req_id, seed.manager2, Decision.APPROVED)
    transfer = act(db, seed, "approve", transfer.id)
    assert transfer.status == TransferStatus.APPROVED


def test_small_transfer_skips_the_gate(db, seed):
    add_manager_rule(db, seed.admin, min_amount=1000)
    transfer = new_transfer(db, seed, quantity=2, unit_cost=150.0)
    transfer = act(db, seed, "submit", transfer.id)
    assert transfer.approval_request_id is None
    assert act(db, seed, "approve", transfer.id).status == TransferStatus.APPROVED


def test_expired_approval_blocks_the_transfer(db, seed):
    add_manager_rule(db, seed.admin, min_approvals=1)
    transfer = act(db, seed, "submit", new_transfer(db, seed).id)
    req = db.get(ApprovalRequest, transfer.approval_request_id)
    with atomic(db):
        ApprovalRequestManager(db).expire(now=req.expires_at + timedelta(seconds=1))

    with pytest.raises(ConflictError, match="expired"):
        act(db, seed, "approve", transfer.id)
    assert act(db, seed, "cancel", transfer.id).status == TransferStatus.CANCELLED


def test_reject_cancels_the_pending_approval(db, seed):
    add_manager_rule(db, seed.admin, min_approvals=1)
    transfer = act(db, seed, "submit", new_transfer(db, seed).id)

    transfer = act(db, seed, "reject", transfer.id, notes="not this week")
    assert transfer.status == TransferStatus.REJECTED
    assert "not this week" in transfer.notes
    req = db.get(ApprovalRequest, transfer.approval_request_id)
    assert req.status == ApprovalStatus.CANCELLED
    assert req.cancel_reason == "Transfer rejected: not this week"


def test_cancel_after_approval_leaves_stock_alone(db, seed):
    transfer = new_transfer(db, seed, quantity=30)
    act(db, seed, "submit", transfer.id)
    act(db, seed, "approve", transfer.id)

    assert act(db, seed, "cancel", transfer.id).status == TransferStatus.CANCELLED
    row = InventoryLedger(db).get_stock(seed.tenant, seed.north, seed.widget)
    assert (row.quantity_on_hand, row.quantity_reserved, row.quantity_available) == (100, 0, 100)


@pytest.mark.parametrize("steps, action", [
    ([], "ship"),
    ([], "complete"),
    ([], "approve"),
    (["submit"], "ship"),
    (["submit", "approve"], "complete"),
    (["submit", "approve", "ship"], "cancel"),
    (["submit", "approve", "ship", "complete"], "cancel"),
    (["submit", "approve", "ship", "complete"], "ship"),
    (["cancel"], "submit"),
    (["submit", "reject"], "approve"),
    (["submit", "reject"], "cancel"),
    (["submit", "reject"], "ship"),
    (["submit", "reject"], "reject"),
])
def test_invalid_transitions_are_refused(db, seed, steps, action):
    transfer = new_transfer(db, seed, quantity=1)
    for step in steps:
        act(db, seed, step, transfer.id)
    status = transfer.status

    with pytest.raises(InvalidTransitionError):
        act(db, seed, action, transfer.id)
    db.expire_all()
    assert db.get(InventoryTransfer, transfer.id).status == status


def test_ship_fails_whole_when_stock_ran_out(db, seed):
    first = new_transfer(db, seed, quantity=4, product=seed.gizmo, unit_cost=5.0)
    second = new_transfer(db, seed, quantity=3, product=seed.gizmo, unit_cost=5.0)
    for transfer in (first, second):
        act(db, seed, "submit", transfer.id)
        act(db, seed, "approve", transfer.id)

    act(db, seed, "ship", first.id)
    with pytest.raises(ConflictError, match="Available: 1, requested: 3"):
        act(db, seed, "ship", second.id)

    db.expire_all()
    assert db.get(InventoryTransfer, second.id).status == TransferStatus.APPROVED
    row = InventoryLedger(db).get_stock(seed.tenant, seed.north, seed.gizmo)
    assert (row.quantity_on_hand, row.quantity_reserved, row.quantity_available) == (1, 0, 1)


def test_transfers_are_tenant_scoped(db, seed):
    transfer = new_transfer(db, seed)
    service = TransferService(db)
    with pytest.raises(NotFoundError):
        service.get_transfer("tenant-b", transfer.id)
    assert service.list_transfers("tenant-b") == []
    with pytest.raises(ValidationError):
        service.list_transfers("")


def test_list_and_stats(db, seed):
    done = new_transfer(db, seed, quantity=5)
    for step in ("submit", "approve", "ship", "complete"):
        act(db, seed, step, done.id)
    new_transfer(db, seed, quantity=2)
    service = TransferService(db)

    assert [t.id for t in service.list_transfers(seed.tenant, statuses=[TransferStatus.COMPLETED])] == [done.id]
    assert len(service.list_transfers(seed.tenant, source_store_id=seed.north)) == 2

    stats = service.stats(seed.tenant)
    assert stats["total_transfers"] == 2
    assert stats["completed_transfers"] == 1
    assert stats["draft_transfers"] == 1
    assert stats["total_quantity_transferred"] == 5


def test_transitions_are_audited(db, seed):
    transfer = new_transfer(db, seed, quantity=3)
    act(db, seed, "submit", transfer.id)
    act(db, seed, "approve", transfer.id)

    entries = AuditRecorder(db).list_for_object(seed.tenant, "inventory_transfers", transfer.id)
    assert [e.action for e in entries] == ["transfer.create", "transfer.submit", "transfer.approve"]
    assert {e.user_id for e in entries[1:]} == {seed.manager1}
