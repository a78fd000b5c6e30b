# Overview: Flat (non-bracket) product prices with a single active row per product.

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import or_

from wholesale_erp.extensions import db
from wholesale_erp.models import Product, ProductPrice
from wholesale_erp.services.concurrency import lock_for_update, run_with_retry
from wholesale_erp.services.price_resolver import find_product_price, get_product
from wholesale_erp.time_utils import utcnow
from wholesale_erp.validation import (
    ConflictError,
    FieldErrors,
    NotFoundError,
    coerce_cents,
    coerce_datetime,
)

logger = logging.getLogger(__name__)

SOURCE_MANUAL = "manual"
SOURCE_RECEIVING = "receiving"

PRICE_FIELDS = ("regular_price_cents", "wholesale_price_cents", "walk_in_price_cents")


def _lock_product(product_id: int) -> Product:
    product = lock_for_update(
        db.session.query(Product).filter(Product.id == product_id, Product.deleted_at.is_(None))
    ).first()
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product


def _get_price(price_id: int, *, include_deleted: bool = False) -> ProductPrice:
    query = db.session.query(ProductPrice).filter(ProductPrice.id == price_id)
    if not include_deleted:
        query = query.filter(ProductPrice.deleted_at.is_(None))
    row = query.first()
    if row is None:
        raise NotFoundError(f"Product price {price_id} not found")
    return row


def _close_prices_in_effect(product_id: int, keep_id: int | None, effective_from: datetime) -> int:
    """
    End every other non-draft row of the product at effective_from.

    Superseded rows are truncated too, so a backdated price never leaves two rows
    covering the same instant. effective_to never moves before a row's own
    effective_from; later rows collapse to an empty range.
    """
    rows = (
        db.session.query(ProductPrice)
        .filter(
            ProductPrice.product_id == product_id,
            ProductPrice.id != keep_id,
            ProductPrice.deleted_at.is_(None),
            or_(ProductPrice.is_active.is_(True), ProductPrice.effective_to.isnot(None)),
        )
        .all()
    )
    closed = 0
    for row in rows:
        if row.effective_to is None or row.effective_to > effective_from:
            row.effective_to = max(effective_from, row.effective_from)
            closed += 1
        row.is_active = False
    return closed


def _validate_prices(data: dict, *, partial: bool) -> dict:
    errors = FieldErrors()
    clean = {}
    for field in PRICE_FIELDS:
        if partial and field not in data:
            continue
        clean[field] = coerce_cents(data.get(field), field, errors)
    for field in ("effective_from", "effective_to"):
        if field in data:
            clean[field] = coerce_datetime(data.get(field), field, errors)
    errors.raise_if_any()
    return clean


def create_product_price(
    *,
    product_id: int,
    data: dict,
    created_by: int | None = None,
    source: str = SOURCE_MANUAL,
    source_reference_id: int | None = None,
) -> ProductPrice:
    """
    Create a price row. Active rows (the default) close the previously active row
    at the new effective_from so at most one active row exists per product.
    """
    def _op():
        clean = _validate_prices(data, partial=False)
        effective_from = clean.get("effective_from") or utcnow()
        effective_to = clean.get("effective_to")
        if effective_to is not None and effective_to <= effective_from:
            errors = FieldErrors()
            errors.add("effective_to", "must be after effective_from")
            errors.raise_if_any()

        product = _lock_product(product_id)
        is_active = bool(data.get("is_active", True))

        row = ProductPrice(
            product_id=product.id,
            regular_price_cents=clean["regular_price_cents"],
            wholesale_price_cents=clean["wholesale_price_cents"],
            walk_in_price_cents=clean["walk_in_price_cents"],
            is_active=is_active,
            effective_from=effective_from,
            effective_to=effective_to,
            source=source,
            source_reference_id=source_reference_id,
            created_by=created_by,
        )
        db.session.add(row)
        db.session.flush()

        if is_active:
            _close_prices_in_effect(product.id, row.id, effective_from)
            product.pricing_updated_at = utcnow()
            db.session.flush()
        return row

    return run_with_retry(_op)


def update_product_price(*, price_id: int, data: dict) -> ProductPrice:
    """Amend a price row in place. Closed (superseded) rows are historical and read-only."""
    def _op():
        row = _get_price(price_id)
        product = _lock_product(row.product_id)
        if not row.is_active and row.effective_to is not None:
            raise ConflictError(f"Product price {row.id} has been superseded and cannot be edited")

        clean = _validate_prices(data, partial=True)
        for field in PRICE_FIELDS:
            if field in clean:
                setattr(row, field, clean[field])
        if "effective_to" in clean:
            effective_to = clean["effective_to"]
            if effective_to is not None and effective_to <= row.effective_from:
                errors = FieldErrors()
                errors.add("effective_to", "must be after effective_from")
                errors.raise_if_any()
            row.effective_to = effective_to
        product.pricing_updated_at = utcnow()
        db.session.flush()
        return row

    return run_with_retry(_op)


def set_active_price(*, price_id: int) -> ProductPrice:
    """Make a draft row the active price from now; other active rows close now."""
    def _op():
        row = _get_price(price_id)
        product = _lock_product(row.product_id)
        if row.is_active:
            return row
        if row.effective_to is not None:
            raise ConflictError(f"Product price {row.id} has been superseded and cannot be reactivated")

        now = utcnow()
        row.effective_from = max(row.effective_from, now)
        row.is_active = True
        db.session.flush()
        _close_prices_in_effect(product.id, row.id, row.effective_from)
        product.pricing_updated_at = now
        db.session.flush()
        return row

    return run_with_retry(_op)


def get_current_price(*, product_id: int, as_of: datetime | None = None) -> ProductPrice:
    get_product(product_id)
    row = find_product_price(product_id, as_of or utcnow())
    if row is None:
        raise NotFoundError(f"No price in effect for product {product_id}")
    return row


def list_product_prices(*, product_id: int, trashed: bool = False) -> list[ProductPrice]:
    get_product(product_id)
    query = db.session.query(ProductPrice).filter(ProductPrice.product_id == product_id)
    if trashed:
        query = query.filter(ProductPrice.deleted_at.isnot(None))
    else:
        query = query.filter(ProductPrice.deleted_at.is_(None))
    return query.order_by(ProductPrice.effective_from.desc(), ProductPrice.id.desc()).all()


def delete_product_price(*, price_id: int) -> ProductPrice:
    """Soft delete. The active row cannot be trashed; activate a replacement first."""
    def _op():
        row = _get_price(price_id)
        _lock_product(row.product_id)
        if row.is_active:
            raise ConflictError(f"Product price {row.id} is active; activate another price before deleting it")
        row.deleted_at = utcnow()
        db.session.flush()
        return row

    return run_with_retry(_op)


def restore_product_price(*, price_id: int) -> ProductPrice:
    def _op():
        row = _get_price(price_id, include_deleted=True)
        _lock_product(row.product_id)
        if row.deleted_at is None:
            raise ConflictError(f"Product price {row.id} is not deleted")
        row.deleted_at = None
        db.session.flush()
        return row

    return run_with_retry(_op)


def apply_received_prices(*, received_item, created_by: int | None = None) -> ProductPrice | None:
    """
    Publish the selling prices captured on a receipt line as the product's new active price.

    Lines without all three selling prices leave pricing unchanged.
    """
    values = {field: getattr(received_item, field) for field in PRICE_FIELDS}
    if any(v is None for v in values.values()):
        return None

    current = find_product_price(received_item.product_id, utcnow())
    if current is not None and current.is_active and all(
        getattr(current, field) == value for field, value in values.items()
    ):
        return current

    row = create_product_price(
        product_id=received_item.product_id,
        data=values,
        created_by=created_by,
        source=SOURCE_RECEIVING,
        source_reference_id=received_item.id,
    )
    logger.info("Product %s prices updated from received item %s", received_item.product_id, received_item.id)
    return row
