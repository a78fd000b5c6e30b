"""
Pytest fixtures for wholesale ERP backend tests.

Provides the in-memory application, a per-test clean database, master data
(products, customers, suppliers, warehouses, cost types) and small factory
fixtures for prices, stock, purchase orders and sales.
"""

import pytest

from wholesale_erp import create_app
from wholesale_erp.extensions import db
from wholesale_erp.models import AdditionalCostType, Customer, Product, Supplier, Warehouse
from wholesale_erp.services import (
    inventory_service,
    product_price_service,
    purchase_order_service,
    receiving_service,
    sales_service,
)
from wholesale_erp.services.concurrency import commit_session


PAST = "2020-01-01T00:00:00"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LOCK_RETRY_BACKOFF': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def product(db_session):
    product = Product(sku="WID-001", name="Widget", unit="pcs", reorder_level=5)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def other_product(db_session):
    product = Product(sku="BOLT-010", name="Bolt", unit="pcs", reorder_level=0)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def customer(db_session):
    customer = Customer(name="Corner Hardware", customer_type="regular")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def valued_customer(db_session):
    customer = Customer(name="Big Builder Co", customer_type="wholesale", is_valued_customer=True)
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def supplier(db_session):
    supplier = Supplier(name="Steel Supply Ltd", contact_name="Dana")
    db_session.add(supplier)
    db_session.commit()
    return supplier


@pytest.fixture(scope='function')
def warehouse(db_session):
    warehouse = Warehouse(code="WH-NORTH", name="North Branch")
    db_session.add(warehouse)
    db_session.commit()
    return warehouse


@pytest.fixture(scope='function')
def cost_type(db_session):
    row = AdditionalCostType(name="Freight", description="Inbound shipping")
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture(scope='function')
def set_price(db_session):
    """Create and commit an active flat price, effective from 2020 unless given."""
    def _set_price(product_id, regular, wholesale=None, walk_in=None, effective_from=PAST):
        row = product_price_service.create_product_price(
            product_id=product_id,
            data={
                "regular_price_cents": regular,
                "wholesale_price_cents": wholesale if wholesale is not None else regular,
                "walk_in_price_cents": walk_in if walk_in is not None else regular,
                "effective_from": effective_from,
            },
        )
        commit_session()
        return row

    return _set_price


@pytest.fixture(scope='function')
def add_stock(db_session):
    """Add on-hand stock through an 'addition' adjustment (no cost basis)."""
    def _add_stock(product_id, quantity):
        adjustment = inventory_service.create_adjustment(
            product_id=product_id, adjustment_type="addition", quantity=quantity, reason="opening stock"
        )
        commit_session()
        return adjustment

    return _add_stock


@pytest.fixture(scope='function')
def make_po(db_session, supplier):
    """Create and commit a purchase order; lines are (product_id, requested_quantity, price_cents)."""
    def _make_po(*lines):
        po = purchase_order_service.create_purchase_order(
            data={
                "supplier_id": supplier.id,
                "items": [
                    {"product_id": pid, "requested_quantity": qty, "price_cents": price}
                    for pid, qty, price in lines
                ],
            },
        )
        commit_session()
        return po

    return _make_po


@pytest.fixture(scope='function')
def receive(db_session):
    """Receive against a PO; items are (product_id, quantity, cost_price_cents)."""
    def _receive(po, *items, additional_costs=None, **extra):
        data = {
            "items": [
                {"product_id": pid, "received_quantity": qty, "cost_price_cents": cost}
                for pid, qty, cost in items
            ],
            "additional_costs": additional_costs or [],
        }
        data.update(extra)
        report = receiving_service.create_receiving_report(purchase_order_id=po.id, data=data)
        commit_session()
        return report

    return _receive


@pytest.fixture(scope='function')
def make_sale(db_session):
    """Create and commit a sale; lines are (product_id, quantity[, extra line fields])."""
    def _make_sale(*lines, **data):
        items = []
        for line in lines:
            item = {"product_id": line[0], "quantity": line[1]}
            if len(line) > 2:
                item.update(line[2])
            items.append(item)
        data["items"] = items
        sale = sales_service.create_sale(data=data)
        commit_session()
        return sale

    return _make_sale
