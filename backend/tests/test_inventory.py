from datetime import datetime, timedelta

import pytest

from wholesale_erp.models import InventoryLedgerEntry
from wholesale_erp.services import count_service, inventory_service, ledger_service
from wholesale_erp.services.concurrency import commit_session
from wholesale_erp.validation import ConflictError, InsufficientStockError, ValidationError


def test_adjustment_types_move_stock_in_their_direction(db_session, product, add_stock):
    add_stock(product.id, 20)

    for adjustment_type, quantity in (("reduction", 3), ("damage", 2), ("loss", 1), ("return", 4)):
        inventory_service.create_adjustment(
            product_id=product.id, adjustment_type=adjustment_type, quantity=quantity
        )
        commit_session()

    assert ledger_service.get_quantity_on_hand(product.id) == 20 - 3 - 2 - 1 + 4


def test_correction_requires_direction(db_session, product, add_stock):
    add_stock(product.id, 5)

    with pytest.raises(ValidationError) as excinfo:
        inventory_service.create_adjustment(product_id=product.id, adjustment_type="correction", quantity=2)
    assert "direction" in excinfo.value.errors

    inventory_service.create_adjustment(
        product_id=product.id, adjustment_type="correction", quantity=2, direction="decrease"
    )
    commit_session()
    assert ledger_service.get_quantity_on_hand(product.id) == 3


def test_decrease_below_zero_is_rejected_without_writes(db_session, product, add_stock):
    add_stock(product.id, 2)

    with pytest.raises(ValidationError):
        inventory_service.create_adjustment(product_id=product.id, adjustment_type="damage", quantity=3)

    assert ledger_service.get_quantity_on_hand(product.id) == 2
    assert db_session.query(InventoryLedgerEntry).count() == 1


def test_invalid_adjustment_payload(db_session, product):
    with pytest.raises(ValidationError) as excinfo:
        inventory_service.create_adjustment(product_id=product.id, adjustment_type="theft", quantity=0)
    assert set(excinfo.value.errors) == {"adjustment_type", "quantity"}


def test_void_appends_offsetting_entry(db_session, product, add_stock):
    adjustment = add_stock(product.id, 8)

    inventory_service.void_adjustment(adjustment_id=adjustment.id, reason="keyed twice")
    commit_session()

    assert adjustment.voided_at is not None
    assert ledger_service.get_quantity_on_hand(product.id) == 0
    assert ledger_service.net_delta_for_reference(product.id, "adjustment", adjustment.id) == 0
    entry_types = sorted(e.entry_type for e in db_session.query(InventoryLedgerEntry).all())
    assert entry_types == ["ADJUSTMENT", "ADJUSTMENT_VOID"]

    with pytest.raises(ConflictError):
        inventory_service.void_adjustment(adjustment_id=adjustment.id)


def test_void_fails_when_stock_was_consumed(db_session, product, add_stock):
    adjustment = add_stock(product.id, 5)
    inventory_service.create_adjustment(product_id=product.id, adjustment_type="loss", quantity=4)
    commit_session()

    with pytest.raises(ConflictError):
        inventory_service.void_adjustment(adjustment_id=adjustment.id)
    assert inventory_service.get_adjustment(adjustment.id).voided_at is None
    assert len(inventory_service.list_adjustments(product_id=product.id, include_voided=False)) == 2


def test_stock_status_thresholds(db_session, product, add_stock):
    add_stock(product.id, 5)
    assert inventory_service.get_stock_level(product.id)["status"] == "low"

    add_stock(product.id, 6)
    assert inventory_service.get_stock_level(product.id)["status"] == "normal"

    add_stock(product.id, 5)
    level = inventory_service.get_stock_level(product.id)
    assert level["status"] == "overstocked"
    assert level["quantity_on_hand"] == 16


def test_zero_reorder_level_is_never_overstocked(db_session, product, other_product, add_stock):
    add_stock(other_product.id, 1000)
    assert inventory_service.stock_status(1000, 0) == "normal"
    assert inventory_service.stock_status(0, 0) == "low"

    low = inventory_service.list_low_stock()
    assert [row["product_id"] for row in low] == [product.id]


def test_ledger_guards(db_session, product, add_stock):
    add_stock(product.id, 1)
    with pytest.raises(ValueError):
        ledger_service.append_entry(product_id=product.id, entry_type="MYSTERY", quantity_delta=1)
    with pytest.raises(ValueError):
        ledger_service.append_entry(product_id=product.id, entry_type="ADJUSTMENT", quantity_delta=0)
    with pytest.raises(InsufficientStockError) as excinfo:
        ledger_service.append_entry(product_id=product.id, entry_type="SALE", quantity_delta=-2)
    assert (excinfo.value.on_hand, excinfo.value.requested) == (1, 2)
    db_session.rollback()


def test_on_hand_as_of(db_session, product):
    ledger_service.append_entry(
        product_id=product.id, entry_type="ADJUSTMENT", quantity_delta=10, occurred_at=datetime(2024, 1, 1)
    )
    ledger_service.append_entry(
        product_id=product.id, entry_type="ADJUSTMENT", quantity_delta=-4, occurred_at=datetime(2024, 2, 1)
    )
    db_session.commit()

    assert ledger_service.get_quantity_on_hand(product.id, as_of=datetime(2024, 1, 15)) == 10
    assert ledger_service.get_quantity_on_hand(product.id) == 6

    rows, total = ledger_service.list_entries(product_id=product.id, start=datetime(2024, 1, 20))
    assert total == 1
    assert rows[0].quantity_before == 10
    assert rows[0].quantity_after == 6


def test_count_posts_variance_against_live_on_hand(db_session, product, other_product, add_stock):
    add_stock(product.id, 10)
    count = count_service.create_count(
        lines=[
            {"product_id": product.id, "counted_quantity": 7},
            {"product_id": other_product.id, "counted_quantity": 0},
        ],
        reason="quarter end",
    )
    commit_session()
    assert count.status == "PENDING"
    expected = {line.product_id: line.expected_quantity for line in count.lines}
    assert expected == {product.id: 10, other_product.id: 0}

    # Movement between counting and posting
    add_stock(product.id, 2)

    count_service.post_count(count_id=count.id)
    commit_session()

    variances = {line.product_id: line.variance for line in count.lines}
    assert variances == {product.id: -5, other_product.id: 0}
    assert ledger_service.get_quantity_on_hand(product.id) == 7
    assert ledger_service.net_delta_for_reference(product.id, "count", count.id) == -5
    assert count.status == "POSTED"

    with pytest.raises(ConflictError):
        count_service.cancel_count(count_id=count.id)


def test_count_rejects_duplicate_products(db_session, product):
    with pytest.raises(ValidationError):
        count_service.create_count(lines=[
            {"product_id": product.id, "counted_quantity": 1},
            {"product_id": product.id, "counted_quantity": 2},
        ])


def test_cancelled_count_cannot_post(db_session, product):
    count = count_service.create_count(lines=[{"product_id": product.id, "counted_quantity": 3}])
    commit_session()
    count_service.cancel_count(count_id=count.id)
    commit_session()

    with pytest.raises(ConflictError):
        count_service.post_count(count_id=count.id)
    assert ledger_service.get_quantity_on_hand(product.id) == 0


def test_weighted_average_ignores_uncosted_rows(db_session, product):
    now = datetime(2024, 3, 1)
    ledger_service.append_entry(product_id=product.id, entry_type="RECEIVING", quantity_delta=10,
                                unit_cost_cents=100, occurred_at=now)
    ledger_service.append_entry(product_id=product.id, entry_type="RECEIVING", quantity_delta=5,
                                unit_cost_cents=131, occurred_at=now + timedelta(days=1))
    ledger_service.append_entry(product_id=product.id, entry_type="ADJUSTMENT", quantity_delta=50)
    db_session.commit()

    # (1000 + 655) / 15 = 110.33
    assert ledger_service.get_weighted_average_cost_cents(product.id) == 110
    assert ledger_service.get_weighted_average_cost_cents(product.id, as_of=now) == 100
