# backend/wholesale_erp/services/custom_pricing_service.py
"""
Per-customer custom pricing.

ELIGIBILITY: only customers flagged is_valued_customer may own custom prices.
This is a service-boundary rule; the database does not enforce it.

INVARIANT: active rows for the same (customer, product) never overlap in both
quantity range and effective date range. New rows replace the overlapping ones
(the old rows are deactivated, not deleted, so history stays readable).
"""
from __future__ import annotations

import logging

from wholesale_erp.extensions import db
from wholesale_erp.models import Customer, CustomerCustomPrice, Product
from wholesale_erp.services.concurrency import lock_for_update, run_with_retry
from wholesale_erp.services.pricing_rules import (
    conflicts_with,
    custom_price_range,
    describe_conflict,
    find_conflicts,
    validate_range_fields,
)
from wholesale_erp.time_utils import utcnow
from wholesale_erp.validation import (
    ConflictError,
    FieldErrors,
    NotFoundError,
    ValidationError,
    coerce_cents,
    coerce_datetime,
    coerce_int,
)

logger = logging.getLogger(__name__)


def _get_customer(customer_id: int, *, lock: bool = False) -> Customer:
    query = db.session.query(Customer).filter(Customer.id == customer_id, Customer.deleted_at.is_(None))
    if lock:
        query = lock_for_update(query)
    customer = query.first()
    if customer is None:
        raise NotFoundError(f"Customer {customer_id} not found")
    return customer


def mark_valued_customer(*, customer_id: int, notes: str | None = None) -> Customer:
    def _op():
        customer = _get_customer(customer_id, lock=True)
        if not customer.is_valued_customer:
            customer.is_valued_customer = True
            customer.valued_since = utcnow()
        if notes is not None:
            customer.valued_customer_notes = notes
        db.session.flush()
        return customer

    return run_with_retry(_op)


def remove_valued_status(*, customer_id: int) -> Customer:
    """Revoke valued status and deactivate every custom price the customer owns."""
    def _op():
        customer = _get_customer(customer_id, lock=True)
        customer.is_valued_customer = False
        customer.valued_since = None

        rows = (
            db.session.query(CustomerCustomPrice)
            .filter_by(customer_id=customer.id, is_active=True)
            .all()
        )
        for row in rows:
            row.is_active = False
        db.session.flush()
        logger.info("Valued status removed for customer %s; %s custom prices deactivated", customer.id, len(rows))
        return customer

    return run_with_retry(_op)


def _default_label(min_qty: int, max_qty: int | None) -> str:
    if max_qty is None:
        return f"({min_qty}+)"
    return f"({min_qty}-{max_qty})"


def _validate_price_rows(prices) -> list[dict]:
    errors = FieldErrors()
    if not isinstance(prices, list) or not prices:
        errors.add("prices", "at least one price is required")
        errors.raise_if_any()

    now = utcnow()
    cleaned = []
    for index, raw in enumerate(prices):
        row_errors = FieldErrors(f"prices[{index}].")
        if not isinstance(raw, dict):
            row_errors.add("_", "price must be an object")
            errors.merge(row_errors)
            continue
        product_id = coerce_int(raw.get("product_id"), "product_id", row_errors, minimum=1)
        min_qty, max_qty = validate_range_fields(raw, row_errors)
        price_cents = coerce_cents(raw.get("price_cents"), "price_cents", row_errors)
        effective_from = coerce_datetime(raw.get("effective_from"), "effective_from", row_errors) or now
        effective_to = coerce_datetime(raw.get("effective_to"), "effective_to", row_errors)
        if effective_to is not None and effective_to <= effective_from:
            row_errors.add("effective_to", "must be after effective_from")
        errors.merge(row_errors)
        cleaned.append({
            "product_id": product_id,
            "min_quantity": min_qty,
            "max_quantity": max_qty,
            "price_cents": price_cents,
            "effective_from": effective_from,
            "effective_to": effective_to,
            "label": (raw.get("label") or "").strip() or None,
            "notes": raw.get("notes"),
        })
    errors.raise_if_any()

    conflicts = find_conflicts([custom_price_range(c, key=i) for i, c in enumerate(cleaned)], check_dates=True)
    if conflicts:
        a, b = conflicts[0]
        raise ConflictError(f"Request contains overlapping prices: {describe_conflict(a, b)}")
    return cleaned


def set_custom_prices_for_customer(
    *,
    customer_id: int,
    prices: list[dict],
    created_by: int | None = None,
) -> list[CustomerCustomPrice]:
    """
    Create custom prices for a valued customer.

    Existing active rows that overlap a new row (same product, intersecting
    quantity range and date range) are deactivated first, so the active set
    stays overlap-free per product.

    Raises:
        ConflictError: customer is not a valued customer, or the request overlaps itself
        NotFoundError: customer or a product does not exist
    """
    def _op():
        customer = _get_customer(customer_id, lock=True)
        if not customer.is_valued_customer:
            raise ConflictError(f"Customer {customer.id} is not a valued customer; custom pricing is not allowed")

        cleaned = _validate_price_rows(prices)

        product_ids = sorted({c["product_id"] for c in cleaned})
        found = {
            pid for (pid,) in db.session.query(Product.id)
            .filter(Product.id.in_(product_ids), Product.deleted_at.is_(None))
            .all()
        }
        missing = [pid for pid in product_ids if pid not in found]
        if missing:
            raise NotFoundError(f"Products not found: {', '.join(str(p) for p in missing)}")

        existing = (
            db.session.query(CustomerCustomPrice)
            .filter(
                CustomerCustomPrice.customer_id == customer.id,
                CustomerCustomPrice.product_id.in_(product_ids),
                CustomerCustomPrice.is_active.is_(True),
            )
            .all()
        )
        existing_by_id = {row.id: row for row in existing}
        existing_ranges = [custom_price_range(row, key=row.id) for row in existing]

        deactivated = 0
        for clean in cleaned:
            for clash in conflicts_with(custom_price_range(clean), existing_ranges, check_dates=True):
                row = existing_by_id[clash.key]
                if row.is_active:
                    row.is_active = False
                    deactivated += 1

        created = []
        for clean in cleaned:
            row = CustomerCustomPrice(
                customer_id=customer.id,
                product_id=clean["product_id"],
                min_quantity=clean["min_quantity"],
                max_quantity=clean["max_quantity"],
                price_cents=clean["price_cents"],
                effective_from=clean["effective_from"],
                effective_to=clean["effective_to"],
                label=clean["label"] or _default_label(clean["min_quantity"], clean["max_quantity"]),
                notes=clean["notes"],
                is_active=True,
                created_by=created_by,
            )
            db.session.add(row)
            created.append(row)
        db.session.flush()

        logger.info(
            "Customer %s: %s custom prices created, %s replaced",
            customer.id, len(created), deactivated,
        )
        return created

    return run_with_retry(_op)


def get_custom_pricing_for_product(*, customer_id: int, product_id: int) -> list[CustomerCustomPrice]:
    """Active custom prices for the pair; [] for a customer who is not valued."""
    customer = _get_customer(customer_id)
    if not customer.is_valued_customer:
        return []
    return (
        db.session.query(CustomerCustomPrice)
        .filter_by(customer_id=customer.id, product_id=product_id, is_active=True)
        .order_by(CustomerCustomPrice.min_quantity)
        .all()
    )


def list_custom_prices(*, customer_id: int, include_inactive: bool = False) -> list[CustomerCustomPrice]:
    customer = _get_customer(customer_id)
    query = db.session.query(CustomerCustomPrice).filter_by(customer_id=customer.id)
    if not include_inactive:
        query = query.filter_by(is_active=True)
    return query.order_by(CustomerCustomPrice.product_id, CustomerCustomPrice.min_quantity).all()


def deactivate_custom_price(*, price_id: int) -> CustomerCustomPrice:
    def _op():
        row = lock_for_update(db.session.query(CustomerCustomPrice).filter_by(id=price_id)).first()
        if row is None:
            raise NotFoundError(f"Custom price {price_id} not found")
        if not row.is_active:
            raise ValidationError({"is_active": ["custom price is already inactive"]})
        row.is_active = False
        db.session.flush()
        return row

    return run_with_retry(_op)
