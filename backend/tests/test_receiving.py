from datetime import datetime

import pytest

from wholesale_erp.models import InventoryLedgerEntry, ReceivingReport
from wholesale_erp.services import product_price_service, receiving_service
from wholesale_erp.services.concurrency import commit_session
from wholesale_erp.services.ledger_service import (
    get_quantity_on_hand,
    get_weighted_average_cost_cents,
    net_delta_for_reference,
)
from wholesale_erp.validation import ConflictError, NotFoundError, ValidationError


def _ledger_snapshot(session):
    return sorted(
        (e.product_id, e.entry_type, e.quantity_delta)
        for e in session.query(InventoryLedgerEntry).all()
    )


def test_landed_cost_is_allocated_by_line_value(db_session, product, other_product, cost_type, make_po, receive):
    po = make_po((product.id, 20, 1000), (other_product.id, 10, 500))
    report = receive(
        po,
        (product.id, 10, 1000),
        (other_product.id, 10, 500),
        additional_costs=[
            {"cost_type_id": cost_type.id, "amount_cents": 3000},
            {"cost_type_id": cost_type.id, "amount_cents": 600, "is_deduction": True, "description": "rebate"},
        ],
    )

    landed = {item.product_id: item.distribution_price_cents for item in report.items}
    assert landed == {product.id: 1160, other_product.id: 580}
    assert get_weighted_average_cost_cents(product.id) == 1160

    assert po.status == "partially_received"
    received = {item.product_id: item.received_quantity for item in po.items}
    assert received == {product.id: 10, other_product.id: 10}
    # Requested lines plus the net additional cost booked on receipts
    assert po.total_cents == 20 * 1000 + 10 * 500 + 2400


def test_second_receipt_completes_order_and_blends_cost(db_session, product, cost_type, make_po, receive):
    po = make_po((product.id, 20, 1000))
    receive(po, (product.id, 10, 1000), additional_costs=[{"cost_type_id": cost_type.id, "amount_cents": 1600}])
    receive(po, (product.id, 10, 1000))

    assert po.status == "completed"
    assert po.completed_at is not None
    assert get_quantity_on_hand(product.id) == 20
    assert get_weighted_average_cost_cents(product.id) == (10 * 1160 + 10 * 1000) // 20

    with pytest.raises(ConflictError):
        receiving_service.create_receiving_report(
            purchase_order_id=po.id,
            data={"items": [{"product_id": product.id, "received_quantity": 1, "cost_price_cents": 1000}]},
        )


def test_over_receipt_completes_order(db_session, product, make_po, receive):
    po = make_po((product.id, 5, 100))
    receive(po, (product.id, 7, 100))
    assert po.status == "completed"
    assert get_quantity_on_hand(product.id) == 7


def test_receipt_is_dated_at_received_date(db_session, product, make_po, receive):
    po = make_po((product.id, 5, 100))
    report = receive(po, (product.id, 5, 100), received_date="2024-05-02T09:30:00", payment_status="paid")

    assert report.payment_status == "paid"
    entry = db_session.query(InventoryLedgerEntry).filter_by(reference_id=report.id).one()
    assert entry.occurred_at == datetime(2024, 5, 2, 9, 30)
    assert entry.unit_cost_cents == 100
    assert len(report.batch_number) == 12
    assert report.batch_number.startswith("20240502")


def test_receiving_rejects_foreign_products_and_cost_types(db_session, product, other_product, make_po):
    po = make_po((product.id, 5, 100))

    with pytest.raises(ValidationError) as excinfo:
        receiving_service.create_receiving_report(
            purchase_order_id=po.id,
            data={"items": [{"product_id": other_product.id, "received_quantity": 1, "cost_price_cents": 10}]},
        )
    assert "items[0].product_id" in excinfo.value.errors

    with pytest.raises(NotFoundError):
        receiving_service.create_receiving_report(
            purchase_order_id=po.id,
            data={
                "items": [{"product_id": product.id, "received_quantity": 1, "cost_price_cents": 10}],
                "additional_costs": [{"cost_type_id": 4242, "amount_cents": 10}],
            },
        )
    assert db_session.query(ReceivingReport).count() == 0
    assert get_quantity_on_hand(product.id) == 0


def test_selling_prices_on_receipt_become_active_price(db_session, product, make_po, set_price):
    set_price(product.id, 900)
    po = make_po((product.id, 5, 600))

    report = receiving_service.create_receiving_report(
        purchase_order_id=po.id,
        data={"items": [{
            "product_id": product.id, "received_quantity": 5, "cost_price_cents": 600,
            "regular_price_cents": 1000, "wholesale_price_cents": 950, "walk_in_price_cents": 1100,
        }]},
    )
    commit_session()

    current = product_price_service.get_current_price(product_id=product.id)
    assert (current.regular_price_cents, current.wholesale_price_cents, current.walk_in_price_cents) == (1000, 950, 1100)
    assert current.source == "receiving"
    assert current.source_reference_id == report.items[0].id


def _priced_line(product_id, quantity, regular):
    return {
        "product_id": product_id, "received_quantity": quantity, "cost_price_cents": 500,
        "regular_price_cents": regular, "wholesale_price_cents": regular, "walk_in_price_cents": regular,
    }


def test_editing_an_older_receipt_keeps_current_prices(db_session, product, make_po):
    po = make_po((product.id, 10, 500))
    older = receiving_service.create_receiving_report(
        purchase_order_id=po.id, data={"items": [_priced_line(product.id, 4, 1000)]}
    )
    commit_session()
    receiving_service.create_receiving_report(
        purchase_order_id=po.id, data={"items": [_priced_line(product.id, 2, 2000)]}
    )
    commit_session()

    receiving_service.update_receiving_report(report_id=older.id, data={"notes": "typo fix"})
    commit_session()
    assert product_price_service.get_current_price(product_id=product.id).regular_price_cents == 2000

    # Same selling prices, new quantity: still no republish
    line = dict(_priced_line(product.id, 5, 1000), id=older.items[0].id)
    receiving_service.update_receiving_report(report_id=older.id, data={"items": [line]})
    commit_session()
    assert product_price_service.get_current_price(product_id=product.id).regular_price_cents == 2000

    line["regular_price_cents"] = 2500
    receiving_service.update_receiving_report(report_id=older.id, data={"items": [line]})
    commit_session()
    current = product_price_service.get_current_price(product_id=product.id)
    assert current.regular_price_cents == 2500
    assert current.source_reference_id == older.items[0].id


def test_receipt_rejects_duplicate_product_lines(db_session, product, make_po, receive):
    po = make_po((product.id, 10, 100))

    with pytest.raises(ValidationError) as excinfo:
        receive(po, (product.id, 5, 100), (product.id, 5, 300))
    assert excinfo.value.errors == {"items[1].product_id": ["duplicate product on receiving report"]}
    assert get_quantity_on_hand(product.id) == 0

    report = receive(po, (product.id, 5, 100))
    with pytest.raises(ValidationError):
        receiving_service.update_receiving_report(
            report_id=report.id,
            data={"items": [
                {"id": report.items[0].id, "product_id": product.id, "received_quantity": 5, "cost_price_cents": 100},
                {"product_id": product.id, "received_quantity": 5, "cost_price_cents": 300},
            ]},
        )
    assert get_weighted_average_cost_cents(product.id) == 100


def test_update_reconciles_children_and_corrects_ledger(db_session, product, other_product, cost_type, make_po, receive):
    po = make_po((product.id, 20, 1000), (other_product.id, 10, 500))
    report = receive(po, (product.id, 8, 1000), additional_costs=[{"cost_type_id": cost_type.id, "amount_cents": 800}])
    (item,) = report.items
    (cost,) = report.additional_costs

    receiving_service.update_receiving_report(
        report_id=report.id,
        data={
            "items": [
                {"id": item.id, "product_id": product.id, "received_quantity": 5, "cost_price_cents": 1000},
                {"product_id": other_product.id, "received_quantity": 3, "cost_price_cents": 500},
            ],
            "additional_costs": [{"id": cost.id, "cost_type_id": cost_type.id, "amount_cents": 650}],
        },
    )
    commit_session()

    assert net_delta_for_reference(product.id, "receiving_report", report.id) == 5
    assert net_delta_for_reference(other_product.id, "receiving_report", report.id) == 3
    assert get_quantity_on_hand(product.id) == 5
    assert len(report.items) == 2
    assert report.additional_costs[0].id == cost.id
    assert report.additional_costs[0].amount_cents == 650
    # 650 split by value 5000:1500
    landed = {i.product_id: i.distribution_price_cents for i in report.items}
    assert landed == {product.id: 1100, other_product.id: 550}

    received = {i.product_id: i.received_quantity for i in po.items}
    assert received == {product.id: 5, other_product.id: 3}
    assert po.total_cents == 20 * 1000 + 10 * 500 + 650

    corrections = sorted(
        (e.product_id, e.quantity_delta)
        for e in db_session.query(InventoryLedgerEntry).filter_by(entry_type="RECEIVING_CORRECTION").all()
    )
    assert corrections == sorted([(product.id, -3), (other_product.id, 3)])

    # Dropping the added line reverses it again
    receiving_service.update_receiving_report(
        report_id=report.id,
        data={"items": [{"id": item.id, "product_id": product.id, "received_quantity": 5, "cost_price_cents": 1000}]},
    )
    commit_session()
    assert get_quantity_on_hand(other_product.id) == 0
    assert len(report.items) == 1


def test_update_rejects_items_from_other_reports(db_session, product, make_po, receive):
    po = make_po((product.id, 20, 100))
    first = receive(po, (product.id, 2, 100))
    second = receive(po, (product.id, 3, 100))

    with pytest.raises(ValidationError):
        receiving_service.update_receiving_report(
            report_id=second.id,
            data={"items": [{"id": first.items[0].id, "product_id": product.id,
                             "received_quantity": 1, "cost_price_cents": 100}]},
        )
    assert get_quantity_on_hand(product.id) == 5


def test_delete_reverses_stock(db_session, product, make_po, receive):
    po = make_po((product.id, 20, 100))
    keep = receive(po, (product.id, 4, 100))
    doomed = receive(po, (product.id, 6, 100))

    receiving_service.delete_receiving_report(report_id=doomed.id)
    commit_session()

    assert get_quantity_on_hand(product.id) == 4
    assert net_delta_for_reference(product.id, "receiving_report", doomed.id) == 0
    rows, total = receiving_service.list_receiving_reports(purchase_order_id=po.id)
    assert [r.id for r in rows] == [keep.id]
    assert po.items[0].received_quantity == 4
    assert po.status == "partially_received"


def test_delete_on_completed_order_changes_nothing(db_session, product, make_po, receive):
    po = make_po((product.id, 5, 100))
    report = receive(po, (product.id, 5, 100))
    before = _ledger_snapshot(db_session)

    with pytest.raises(ConflictError):
        receiving_service.delete_receiving_report(report_id=report.id)

    assert _ledger_snapshot(db_session) == before
    assert receiving_service.get_receiving_report(report.id).id == report.id
    assert po.status == "completed"


def test_payment_status_and_stats(db_session, product, make_po, receive):
    po = make_po((product.id, 20, 100))
    report = receive(po, (product.id, 4, 250), received_date="2024-05-02T09:30:00")
    receive(po, (product.id, 1, 100), received_date="2024-05-20T12:00:00")

    with pytest.raises(ValidationError):
        receiving_service.update_payment_status(report_id=report.id, payment_status="settled")

    receiving_service.update_payment_status(report_id=report.id, payment_status="paid")
    commit_session()

    stats = receiving_service.receiving_stats(now=datetime(2024, 5, 20, 15, 0))
    assert stats["total_reports"] == 2
    assert stats["paid_reports"] == 1
    assert stats["unpaid_reports"] == 1
    assert stats["total_received_value_cents"] == 4 * 250 + 1 * 100
    assert stats["reports_today"] == 1
    assert stats["reports_this_month"] == 2

    rows, total = receiving_service.list_receiving_reports(
        start=datetime(2024, 5, 1), end=datetime(2024, 5, 10)
    )
    assert total == 1
    assert rows[0].id == report.id
