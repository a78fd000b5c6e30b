import pytest

from wholesale_erp.services import return_service, sales_service
from wholesale_erp.services.concurrency import commit_session
from wholesale_erp.services.ledger_service import get_quantity_on_hand, net_delta_for_reference
from wholesale_erp.validation import ConflictError, ValidationError


@pytest.fixture
def sold(db_session, product, customer, set_price, add_stock, make_sale):
    """A completed sale of 3 units at 1000 with 7 left on hand."""
    set_price(product.id, 1000)
    add_stock(product.id, 10)
    return make_sale((product.id, 3), customer_id=customer.id)


def _open_return(sale, quantity, condition="good"):
    sale_return = return_service.create_return(
        sale_id=sale.id,
        items=[{"sale_item_id": sale.items[0].id, "quantity": quantity, "condition": condition}],
        reason="customer changed mind",
    )
    commit_session()
    return sale_return


def test_approved_good_return_restocks(db_session, product, sold):
    sale_return = _open_return(sold, 2)
    assert sale_return.status == "PENDING"
    assert sale_return.credit_memo_number.startswith("CM")
    assert sale_return.refund_cents == 2000
    assert get_quantity_on_hand(product.id) == 7

    return_service.approve_return(return_id=sale_return.id, approved_by=3)
    commit_session()

    assert sale_return.status == "APPROVED"
    assert sale_return.items[0].restocked is True
    assert sold.items[0].returned_quantity == 2
    assert sold.status == "completed"
    assert get_quantity_on_hand(product.id) == 9
    assert net_delta_for_reference(product.id, "sale_return", sale_return.id) == 2


def test_damaged_units_are_not_restocked_and_sale_closes(db_session, product, sold):
    first = _open_return(sold, 2)
    return_service.approve_return(return_id=first.id)
    commit_session()

    last = _open_return(sold, 1, condition="damaged")
    return_service.approve_return(return_id=last.id)
    commit_session()

    assert last.items[0].restocked is False
    assert get_quantity_on_hand(product.id) == 9
    assert sold.items[0].returned_quantity == 3
    assert sold.status == "returned"


def test_open_returns_count_against_returnable_quantity(db_session, sold):
    pending = _open_return(sold, 3)

    with pytest.raises(ValidationError):
        _open_return(sold, 1)

    return_service.reject_return(return_id=pending.id, reason="no receipt")
    commit_session()
    assert pending.status == "REJECTED"
    assert pending.rejection_reason == "no receipt"

    retry = _open_return(sold, 1)
    assert retry.status == "PENDING"


def test_return_cannot_exceed_sold_quantity(db_session, sold):
    with pytest.raises(ValidationError):
        return_service.create_return(
            sale_id=sold.id,
            items=[
                {"sale_item_id": sold.items[0].id, "quantity": 2},
                {"sale_item_id": sold.items[0].id, "quantity": 2},
            ],
        )


def test_refund_is_net_of_sale_discount(db_session, product, customer, set_price, add_stock, make_sale):
    set_price(product.id, 1000)
    add_stock(product.id, 5)
    sale = make_sale((product.id, 2), customer_id=customer.id, discount_percent=10)
    assert sale.discount_cents == 200

    sale_return = _open_return(sale, 1)
    assert sale_return.refund_cents == 900


def test_status_transitions(db_session, sold):
    sale_return = _open_return(sold, 1)

    with pytest.raises(ConflictError):
        return_service.complete_return(return_id=sale_return.id)

    return_service.approve_return(return_id=sale_return.id)
    commit_session()
    with pytest.raises(ConflictError):
        return_service.reject_return(return_id=sale_return.id)

    return_service.complete_return(return_id=sale_return.id, completed_by=2)
    commit_session()
    assert sale_return.status == "COMPLETED"
    assert [r.id for r in return_service.list_returns(sale_id=sold.id, status="completed")] == [sale_return.id]


def test_sale_with_returns_cannot_be_cancelled(db_session, product, sold):
    pending = _open_return(sold, 1)
    with pytest.raises(ConflictError):
        sales_service.cancel_sale(sale_id=sold.id)

    return_service.reject_return(return_id=pending.id)
    commit_session()

    sales_service.cancel_sale(sale_id=sold.id)
    commit_session()
    assert sold.status == "cancelled"
    assert get_quantity_on_hand(product.id) == 10

    with pytest.raises(ConflictError):
        _open_return(sold, 1)
