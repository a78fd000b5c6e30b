import pytest

from wholesale_erp.models import CustomerCustomPrice
from wholesale_erp.services import custom_pricing_service
from wholesale_erp.services.concurrency import commit_session
from wholesale_erp.services.price_resolver import resolve_line_price
from wholesale_erp.validation import ConflictError, NotFoundError, ValidationError


def _price(product_id, min_qty, price, max_qty=None, **extra):
    row = {"product_id": product_id, "min_quantity": min_qty, "max_quantity": max_qty, "price_cents": price,
           "effective_from": "2020-01-01T00:00:00"}
    row.update(extra)
    return row


def test_customer_must_be_valued(db_session, product, customer):
    with pytest.raises(ConflictError):
        custom_pricing_service.set_custom_prices_for_customer(
            customer_id=customer.id, prices=[_price(product.id, 1, 500)]
        )

    custom_pricing_service.mark_valued_customer(customer_id=customer.id, notes="annual contract")
    commit_session()

    rows = custom_pricing_service.set_custom_prices_for_customer(
        customer_id=customer.id, prices=[_price(product.id, 1, 500)]
    )
    commit_session()
    assert rows[0].label == "(1+)"
    assert customer.valued_since is not None


def test_request_overlapping_itself_is_rejected(db_session, product, valued_customer):
    with pytest.raises(ConflictError):
        custom_pricing_service.set_custom_prices_for_customer(
            customer_id=valued_customer.id,
            prices=[_price(product.id, 1, 500, max_qty=10), _price(product.id, 10, 450)],
        )
    assert db_session.query(CustomerCustomPrice).count() == 0


def test_disjoint_date_ranges_do_not_overlap(db_session, product, valued_customer):
    rows = custom_pricing_service.set_custom_prices_for_customer(
        customer_id=valued_customer.id,
        prices=[
            _price(product.id, 1, 500, effective_to="2021-01-01T00:00:00"),
            _price(product.id, 1, 450, effective_from="2021-01-01T00:00:00"),
        ],
    )
    commit_session()
    assert len(rows) == 2


def test_new_price_replaces_overlapping_existing_row(db_session, product, other_product, valued_customer):
    old, untouched = custom_pricing_service.set_custom_prices_for_customer(
        customer_id=valued_customer.id,
        prices=[_price(product.id, 1, 500, max_qty=9), _price(other_product.id, 1, 50)],
    )
    commit_session()

    custom_pricing_service.set_custom_prices_for_customer(
        customer_id=valued_customer.id, prices=[_price(product.id, 5, 480)]
    )
    commit_session()

    db_session.refresh(old)
    db_session.refresh(untouched)
    assert old.is_active is False
    assert untouched.is_active is True

    active = custom_pricing_service.get_custom_pricing_for_product(
        customer_id=valued_customer.id, product_id=product.id
    )
    assert [(r.min_quantity, r.price_cents) for r in active] == [(5, 480)]


def test_unknown_product_is_not_found(db_session, valued_customer):
    with pytest.raises(NotFoundError):
        custom_pricing_service.set_custom_prices_for_customer(
            customer_id=valued_customer.id, prices=[_price(424242, 1, 500)]
        )


def test_removing_valued_status_deactivates_prices(db_session, product, valued_customer, set_price):
    set_price(product.id, 1000)
    custom_pricing_service.set_custom_prices_for_customer(
        customer_id=valued_customer.id, prices=[_price(product.id, 1, 500)]
    )
    commit_session()

    custom_pricing_service.remove_valued_status(customer_id=valued_customer.id)
    commit_session()

    assert custom_pricing_service.list_custom_prices(customer_id=valued_customer.id) == []
    assert len(custom_pricing_service.list_custom_prices(customer_id=valued_customer.id, include_inactive=True)) == 1
    assert custom_pricing_service.get_custom_pricing_for_product(
        customer_id=valued_customer.id, product_id=product.id
    ) == []

    resolution = resolve_line_price(product.id, 1, "regular", customer_id=valued_customer.id)
    assert resolution.price_cents == 1000
    assert resolution.custom_pricing_checked is False


def test_deactivate_twice_is_a_validation_error(db_session, product, valued_customer):
    (row,) = custom_pricing_service.set_custom_prices_for_customer(
        customer_id=valued_customer.id, prices=[_price(product.id, 1, 500)]
    )
    commit_session()

    custom_pricing_service.deactivate_custom_price(price_id=row.id)
    commit_session()
    with pytest.raises(ValidationError):
        custom_pricing_service.deactivate_custom_price(price_id=row.id)
