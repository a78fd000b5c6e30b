import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from wholesale_erp.extensions import db
from wholesale_erp.models import Product, Warehouse
from wholesale_erp.services.concurrency import commit_session, run_with_retry
from wholesale_erp.validation import ConflictError, ValidationError


def _bump_version_behind_orm(product_id):
    """Simulate another writer: bump the row version without touching the loaded object."""
    db.session.execute(
        update(Product).where(Product.id == product_id).values(version_id=Product.version_id + 1)
    )


def test_stale_rows_are_retried_then_reported_as_retryable(db_session, product, monkeypatch, app):
    monkeypatch.setitem(app.config, "LOCK_RETRY_ATTEMPTS", 2)
    calls = []

    def _op():
        calls.append(1)
        db.session.add(Warehouse(code=f"WH-{len(calls)}", name="Scratch"))
        _bump_version_behind_orm(product.id)
        product.name = "Renamed"
        db.session.flush()

    with pytest.raises(ConflictError) as excinfo:
        run_with_retry(_op)

    assert len(calls) == 2
    assert excinfo.value.retryable is True
    assert excinfo.value.to_dict()["retryable"] is True
    assert not db_session.new
    assert db_session.query(Warehouse).count() == 0
    db_session.refresh(product)
    assert (product.name, product.version_id) == ("Widget", 1)


def test_lock_timeout_is_retried_until_it_clears(db_session):
    calls = []

    def _op():
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError("UPDATE products", {}, Exception("database is locked"))
        return "done"

    assert run_with_retry(_op) == "done"
    assert len(calls) == 2


def test_domain_errors_roll_back_without_retry(db_session):
    calls = []

    def _op():
        calls.append(1)
        db.session.add(Warehouse(code="WH-1", name="Scratch"))
        db.session.flush()
        raise ValidationError({"code": ["taken"]})

    with pytest.raises(ValidationError):
        run_with_retry(_op)

    assert len(calls) == 1
    assert db_session.query(Warehouse).count() == 0


def test_nested_operations_retry_as_one_unit(db_session):
    outer_calls, inner_calls = [], []

    def _inner():
        inner_calls.append(1)
        if len(inner_calls) == 1:
            raise OperationalError("UPDATE products", {}, Exception("database is locked"))
        return "inner"

    def _outer():
        outer_calls.append(1)
        return run_with_retry(_inner)

    assert run_with_retry(_outer) == "inner"
    assert (len(outer_calls), len(inner_calls)) == (2, 2)


def test_commit_conflict_is_retryable_and_rolled_back(db_session, product):
    _bump_version_behind_orm(product.id)
    product.name = "Renamed"
    db_session.add(Warehouse(code="WH-1", name="Scratch"))

    with pytest.raises(ConflictError) as excinfo:
        commit_session()

    assert excinfo.value.retryable is True
    assert not db_session.new
    assert db_session.query(Warehouse).count() == 0
    db_session.refresh(product)
    assert (product.name, product.version_id) == ("Widget", 1)
