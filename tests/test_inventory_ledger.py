import pytest

from backoffice.database import atomic
from backoffice.errors import ConflictError, ValidationError
from backoffice.models.inventory import MovementKind
from backoffice.services.inventory_service import InventoryLedger


def assert_balanced(row):
    assert row.quantity_available == row.quantity_on_hand - row.quantity_reserved
    assert row.quantity_on_hand >= 0
    assert row.quantity_reserved >= 0


def test_receive_creates_stock_on_first_receipt(db, seed):
    ledger = InventoryLedger(db)
    with atomic(db):
        row = ledger.receive(seed.tenant, seed.south, seed.widget, 7, reference="PO-1")

    assert (row.quantity_on_hand, row.quantity_reserved, row.quantity_available) == (7, 0, 7)
    with atomic(db):
        row = ledger.receive(seed.tenant, seed.south, seed.widget, 3)
    assert row.quantity_on_hand == 10
    assert_balanced(row)


def test_reserve_then_commit_moves_stock_out(db, seed):
    ledger = InventoryLedger(db)
    with atomic(db):
        row = ledger.reserve(seed.tenant, seed.north, seed.widget, 30, reference="IT-1")
        assert (row.quantity_on_hand, row.quantity_reserved, row.quantity_available) == (100, 30, 70)
        row = ledger.commit(seed.tenant, seed.north, seed.widget, 30, reference="IT-1")

    assert (row.quantity_on_hand, row.quantity_reserved, row.quantity_available) == (70, 0, 70)
    assert_balanced(row)


def test_release_returns_reservation(db, seed):
    ledger = InventoryLedger(db)
    with atomic(db):
        ledger.reserve(seed.tenant, seed.north, seed.gadget, 20)
        row = ledger.release(seed.tenant, seed.north, seed.gadget, 20)
    assert (row.quantity_on_hand, row.quantity_reserved, row.quantity_available) == (50, 0, 50)


def test_reserve_more_than_available_changes_nothing(db, seed):
    ledger = InventoryLedger(db)
    with pytest.raises(ConflictError, match="Available: 5, requested: 10"):
        with atomic(db):
            ledger.reserve(seed.tenant, seed.north, seed.gizmo, 10)

    row = ledger.get_stock(seed.tenant, seed.north, seed.gizmo)
    assert (row.quantity_on_hand, row.quantity_reserved, row.quantity_available) == (5, 0, 5)


def test_reserve_without_stock_record_is_a_conflict(db, seed):
    with pytest.raises(ConflictError, match="Available: 0"):
        InventoryLedger(db).reserve(seed.tenant, seed.south, seed.widget, 1)


def test_release_and_commit_require_a_reservation(db, seed):
    ledger = InventoryLedger(db)
    with pytest.raises(ConflictError):
        ledger.release(seed.tenant, seed.north, seed.widget, 1)
    with pytest.raises(ConflictError):
        ledger.commit(seed.tenant, seed.north, seed.widget, 1)
    assert ledger.available(seed.tenant, seed.north, seed.widget) == 100


@pytest.mark.parametrize("qty", [0, -3, 2.5, True])
def test_quantities_must_be_positive_integers(db, seed, qty):
    with pytest.raises(ValidationError):
        InventoryLedger(db).reserve(seed.tenant, seed.north, seed.widget, qty)


def test_every_movement_is_logged(db, seed):
    ledger = InventoryLedger(db)
    with atomic(db):
        ledger.reserve(seed.tenant, seed.north, seed.widget, 4, reference="IT-9")
        ledger.commit(seed.tenant, seed.north, seed.widget, 4, reference="IT-9")

    moves = ledger.movements(seed.tenant, "IT-9")
    assert sorted(m.kind for m in moves) == sorted([MovementKind.RESERVE, MovementKind.COMMIT])
    commit = next(m for m in moves if m.kind == MovementKind.COMMIT)
    assert commit.change == -4
    assert commit.on_hand_after == 96
    assert commit.reserved_after == 0


def test_stock_is_scoped_to_the_tenant(db, seed):
    ledger = InventoryLedger(db)
    assert ledger.available("tenant-b", seed.north, seed.widget) == 0
    assert ledger.list_stock("tenant-b") == []
    assert len(ledger.list_stock(seed.tenant, store_id=seed.north)) == 3
    with pytest.raises(ValidationError):
        ledger.list_stock(None)
