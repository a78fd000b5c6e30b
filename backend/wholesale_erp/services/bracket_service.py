# backend/wholesale_erp/services/bracket_service.py
"""
Bracket (tiered) pricing service.

WHY: Wholesale products are priced by quantity tier and price type. Brackets are
versioned over time so historical sales keep resolving to the price that applied.

LIFECYCLE:
1. draft: created with is_selected=False, not used for pricing
2. active: is_selected=True, at most one per product
3. superseded: replaced by a newer activation, effective_to closed at the successor's effective_from

CONCURRENCY:
Every mutation locks the product row and bumps Product.version_id, so two concurrent
activations for the same product serialize (or the loser fails with StaleDataError and
is retried by run_with_retry). The deactivate-then-activate pair runs in one transaction;
no reader can observe zero or two selected brackets.
"""
from __future__ import annotations

import csv
import io
import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from wholesale_erp.extensions import db
from wholesale_erp.models import BracketItem, PriceBracket, Product, ReceivedItem
from wholesale_erp.services.concurrency import lock_for_update, run_with_retry
from wholesale_erp.services.price_resolver import (
    BRACKET_STATUS_ACTIVE,
    BRACKET_STATUS_DRAFT,
    BRACKET_STATUS_SUPERSEDED,
    SOURCE_PRODUCT_PRICE,
    find_product_price,
    get_product,
    resolve_line_price,
)
from wholesale_erp.services.pricing_rules import (
    bracket_item_range,
    conflicts_with,
    describe_conflict,
    find_conflicts,
    validate_bracket_item,
)
from wholesale_erp.time_utils import utcnow
from wholesale_erp.validation import (
    ConflictError,
    FieldErrors,
    NotFoundError,
    PRICE_TYPE_REGULAR,
    PRICE_TYPES,
    ValidationError,
    coerce_choice,
    coerce_datetime,
)

logger = logging.getLogger(__name__)

DEFAULT_BREAKDOWN_QUANTITIES = (1, 5, 10, 25, 50, 100)
DEFAULT_SUGGESTION_QUANTITIES = (1, 10, 25, 50)
DEFAULT_TARGET_MARGIN = 0.30
MARGIN_STEP_PER_TIER = Decimal("0.02")
MINIMUM_TIER_MARGIN = Decimal("0.10")

CSV_REQUIRED_COLUMNS = ("min_quantity", "price", "price_type")


def _lock_product(product_id: int) -> Product:
    product = lock_for_update(
        db.session.query(Product).filter(Product.id == product_id, Product.deleted_at.is_(None))
    ).first()
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product


def _touch_product(product: Product) -> None:
    # Bumps version_id so a concurrent pricing writer on the same product goes stale
    product.pricing_updated_at = utcnow()


def get_bracket(bracket_id: int) -> PriceBracket:
    bracket = db.session.query(PriceBracket).filter_by(id=bracket_id).first()
    if bracket is None:
        raise NotFoundError(f"Bracket {bracket_id} not found")
    return bracket


def list_brackets(product_id: int) -> list[PriceBracket]:
    get_product(product_id)
    return (
        db.session.query(PriceBracket)
        .filter_by(product_id=product_id)
        .order_by(PriceBracket.effective_from.desc(), PriceBracket.id.desc())
        .all()
    )


def _validate_items(items, *, require_items: bool = True) -> list[dict]:
    """Validate an item list and check the whole set for overlaps."""
    errors = FieldErrors()
    if items is None or not isinstance(items, list):
        errors.add("items", "must be a list")
        errors.raise_if_any()
    if require_items and not items:
        errors.add("items", "at least one item is required")
        errors.raise_if_any()

    cleaned = []
    for index, raw in enumerate(items):
        clean, item_errors = validate_bracket_item(raw, prefix=f"items[{index}].")
        errors.merge(item_errors)
        cleaned.append(clean)
    errors.raise_if_any()

    active = [bracket_item_range(c, key=i) for i, c in enumerate(cleaned) if c["is_active"]]
    conflicts = find_conflicts(active)
    if conflicts:
        a, b = conflicts[0]
        raise ConflictError(describe_conflict(a, b))
    return cleaned


def _validate_dates(data: dict, *, default_from: datetime | None) -> tuple[datetime | None, datetime | None]:
    errors = FieldErrors()
    effective_from = coerce_datetime(data.get("effective_from"), "effective_from", errors) or default_from
    effective_to = coerce_datetime(data.get("effective_to"), "effective_to", errors)
    if effective_from and effective_to and effective_to <= effective_from:
        errors.add("effective_to", "must be after effective_from")
    errors.raise_if_any()
    return effective_from, effective_to


def _close_brackets_in_effect(product: Product, keep: PriceBracket, effective_from: datetime) -> None:
    """
    Close every other non-draft bracket still in effect at or after effective_from.

    effective_to never moves before a sibling's own effective_from, so a sibling
    scheduled for the future collapses to an empty range instead of an inverted one.
    """
    siblings = (
        db.session.query(PriceBracket)
        .filter(
            PriceBracket.product_id == product.id,
            PriceBracket.id != keep.id,
            PriceBracket.status.in_((BRACKET_STATUS_ACTIVE, BRACKET_STATUS_SUPERSEDED)),
        )
        .all()
    )
    for sibling in siblings:
        was_active = sibling.status == BRACKET_STATUS_ACTIVE
        if sibling.effective_to is None or sibling.effective_to > effective_from:
            sibling.effective_to = max(effective_from, sibling.effective_from)
        sibling.is_selected = False
        sibling.status = BRACKET_STATUS_SUPERSEDED
        if was_active:
            logger.info(
                "Bracket %s superseded by %s for product %s at %s",
                sibling.id, keep.id, product.id, sibling.effective_to,
            )


def _activate(product: Product, bracket: PriceBracket, effective_from: datetime) -> PriceBracket:
    if bracket.effective_to is not None and bracket.effective_to <= effective_from:
        raise ValidationError({"effective_from": ["must be before the bracket's effective_to"]})

    _close_brackets_in_effect(product, bracket, effective_from)
    db.session.flush()

    bracket.effective_from = effective_from
    bracket.is_selected = True
    bracket.status = BRACKET_STATUS_ACTIVE
    product.use_bracket_pricing = True
    _touch_product(product)
    db.session.flush()
    return bracket


def create_bracket_with_items(
    *,
    product_id: int,
    data: dict,
    created_by: int | None = None,
) -> PriceBracket:
    """
    Create a bracket and its items in one transaction.

    With is_selected=true the new bracket is activated at its effective_from and
    the previously active bracket is closed at that instant.
    """
    def _op():
        if not isinstance(data, dict):
            raise ValidationError("Invalid JSON payload")
        items = _validate_items(data.get("items"))
        effective_from, effective_to = _validate_dates(data, default_from=utcnow())

        product = _lock_product(product_id)

        bracket = PriceBracket(
            product_id=product.id,
            name=(data.get("name") or None),
            status=BRACKET_STATUS_DRAFT,
            is_selected=False,
            effective_from=effective_from,
            effective_to=effective_to,
            created_by=created_by,
        )
        for order, item in enumerate(items):
            bracket.items.append(
                BracketItem(
                    min_quantity=item["min_quantity"],
                    max_quantity=item["max_quantity"],
                    price_cents=item["price_cents"],
                    price_type=item["price_type"],
                    is_active=item["is_active"],
                    sort_order=order,
                )
            )
        db.session.add(bracket)
        _touch_product(product)
        db.session.flush()

        if data.get("is_selected"):
            _activate(product, bracket, effective_from)

        logger.info("Created bracket %s for product %s with %s items", bracket.id, product.id, len(items))
        return bracket

    return run_with_retry(_op)


def update_bracket_with_items(*, bracket_id: int, data: dict) -> PriceBracket:
    """
    Update bracket fields and reconcile its items by id.

    Items with an id are updated, items without an id are inserted, existing items
    missing from the payload are deleted. The overlap check runs on the final set.
    """
    def _op():
        if not isinstance(data, dict):
            raise ValidationError("Invalid JSON payload")
        bracket = get_bracket(bracket_id)
        product = _lock_product(bracket.product_id)

        if bracket.status == BRACKET_STATUS_SUPERSEDED:
            raise ConflictError(f"Bracket {bracket.id} is superseded and read-only; clone it instead")

        if "name" in data:
            bracket.name = data.get("name") or None

        if "effective_from" in data or "effective_to" in data:
            if bracket.status == BRACKET_STATUS_ACTIVE and "effective_from" in data:
                raise ConflictError("effective_from of the active bracket cannot change; activate a new bracket")
            merged = {
                "effective_from": data.get("effective_from", bracket.effective_from),
                "effective_to": data.get("effective_to", bracket.effective_to),
            }
            bracket.effective_from, bracket.effective_to = _validate_dates(merged, default_from=bracket.effective_from)

        if "items" in data:
            items = _validate_items(data.get("items"))
            existing = {item.id: item for item in bracket.items}

            unknown = [i["id"] for i in items if "id" in i and i["id"] not in existing]
            if unknown:
                raise ValidationError({"items": [f"item {item_id} does not belong to bracket {bracket.id}"
                                                 for item_id in unknown]})

            keep_ids = {i["id"] for i in items if "id" in i}
            for item_id, item in existing.items():
                if item_id not in keep_ids:
                    bracket.items.remove(item)

            for order, clean in enumerate(items):
                if "id" in clean:
                    row = existing[clean["id"]]
                else:
                    row = BracketItem()
                    bracket.items.append(row)
                row.min_quantity = clean["min_quantity"]
                row.max_quantity = clean["max_quantity"]
                row.price_cents = clean["price_cents"]
                row.price_type = clean["price_type"]
                row.is_active = clean["is_active"]
                row.sort_order = order

        _touch_product(product)
        db.session.flush()
        return bracket

    return run_with_retry(_op)


def activate_bracket(*, bracket_id: int, effective_from: datetime | str | None = None) -> PriceBracket:
    """
    Make a draft bracket the product's active bracket.

    The previously active bracket is deselected and its effective_to set to the
    new bracket's effective_from, in the same transaction.
    """
    def _op():
        bracket = get_bracket(bracket_id)
        product = _lock_product(bracket.product_id)

        if bracket.status == BRACKET_STATUS_ACTIVE:
            return bracket
        if bracket.status == BRACKET_STATUS_SUPERSEDED:
            raise ConflictError(f"Bracket {bracket.id} is superseded; clone it to reuse its prices")

        errors = FieldErrors()
        start = coerce_datetime(effective_from, "effective_from", errors)
        errors.raise_if_any()
        if start is None:
            start = max(bracket.effective_from, utcnow())

        return _activate(product, bracket, start)

    return run_with_retry(_op)


def deactivate_bracket_pricing(*, product_id: int) -> Product:
    """Close the active bracket now and switch the product back to flat pricing."""
    def _op():
        product = _lock_product(product_id)
        now = utcnow()
        active = (
            db.session.query(PriceBracket)
            .filter_by(product_id=product.id, status=BRACKET_STATUS_ACTIVE)
            .all()
        )
        for bracket in active:
            if bracket.effective_to is None or bracket.effective_to > now:
                bracket.effective_to = max(now, bracket.effective_from)
            bracket.is_selected = False
            bracket.status = BRACKET_STATUS_SUPERSEDED

        product.use_bracket_pricing = False
        _touch_product(product)
        db.session.flush()
        logger.info("Bracket pricing deactivated for product %s", product.id)
        return product

    return run_with_retry(_op)


def delete_bracket(*, bracket_id: int) -> None:
    def _op():
        bracket = get_bracket(bracket_id)
        product = _lock_product(bracket.product_id)
        was_selected = bracket.is_selected

        db.session.delete(bracket)
        db.session.flush()

        if was_selected:
            remaining = (
                db.session.query(PriceBracket.id)
                .filter_by(product_id=product.id, is_selected=True)
                .first()
            )
            if remaining is None:
                product.use_bracket_pricing = False
        _touch_product(product)
        db.session.flush()

    return run_with_retry(_op)


def clone_bracket(*, bracket_id: int, overrides: dict | None = None, created_by: int | None = None) -> PriceBracket:
    """Copy a bracket and its items as a new draft. The source is left untouched."""
    overrides = overrides or {}

    def _op():
        source = get_bracket(bracket_id)
        product = _lock_product(source.product_id)
        effective_from, effective_to = _validate_dates(overrides, default_from=utcnow())

        clone = PriceBracket(
            product_id=source.product_id,
            name=overrides.get("name") or (f"{source.name} (copy)" if source.name else None),
            status=BRACKET_STATUS_DRAFT,
            is_selected=False,
            effective_from=effective_from,
            effective_to=effective_to,
            created_by=created_by,
        )
        for item in source.items:
            clone.items.append(
                BracketItem(
                    min_quantity=item.min_quantity,
                    max_quantity=item.max_quantity,
                    price_cents=item.price_cents,
                    price_type=item.price_type,
                    is_active=item.is_active,
                    sort_order=item.sort_order,
                )
            )
        db.session.add(clone)
        _touch_product(product)
        db.session.flush()
        return clone

    return run_with_retry(_op)


# =============================================================================
# Pure computations
# =============================================================================


def calculate_price_for_quantity(
    *,
    product_id: int,
    quantity: int,
    price_type: str = PRICE_TYPE_REGULAR,
    as_of: datetime | None = None,
    customer_id: int | None = None,
) -> dict:
    resolution = resolve_line_price(product_id, quantity, price_type, as_of, customer_id)
    return {
        "product_id": product_id,
        "quantity": quantity,
        "price_type": price_type,
        "unit_price_cents": resolution.price_cents,
        "total_cents": resolution.price_cents * quantity,
        "source": resolution.source,
        "reference_id": resolution.reference_id,
    }


def _clean_quantities(quantities, default) -> list[int]:
    if quantities is None:
        return list(default)
    errors = FieldErrors()
    cleaned = set()
    for q in quantities:
        if isinstance(q, bool) or not isinstance(q, int) or q < 1:
            errors.add("quantities", f"invalid quantity: {q!r}")
        else:
            cleaned.add(q)
    if not cleaned and not errors:
        errors.add("quantities", "at least one quantity is required")
    errors.raise_if_any()
    return sorted(cleaned)


def get_pricing_breakdown(
    *,
    product_id: int,
    price_type: str = PRICE_TYPE_REGULAR,
    quantities: list[int] | None = None,
    as_of: datetime | None = None,
) -> dict:
    """
    Unit price, line total and savings versus single-unit price for each quantity.

    Products without bracket pricing get a "traditional" breakdown from the flat price.
    """
    errors = FieldErrors()
    price_type = coerce_choice(price_type, "price_type", PRICE_TYPES, errors)
    errors.raise_if_any()
    quantities = _clean_quantities(quantities, DEFAULT_BREAKDOWN_QUANTITIES)
    product = get_product(product_id)
    as_of = as_of or utcnow()

    if not product.use_bracket_pricing:
        price = find_product_price(product_id, as_of)
        if price is None:
            raise NotFoundError(f"Product {product_id} has no pricing configured")
        unit = price.price_for_type(price_type)
        rows = [
            {
                "quantity": q,
                "unit_price_cents": unit,
                "total_cents": unit * q,
                "unit_savings_cents": 0,
                "total_savings_cents": 0,
                "source": SOURCE_PRODUCT_PRICE,
            }
            for q in quantities
        ]
        return {"product_id": product_id, "pricing_mode": "traditional", "price_type": price_type, "rows": rows}

    def _unit(q):
        try:
            return resolve_line_price(product_id, q, price_type, as_of)
        except NotFoundError:
            return None

    base = _unit(1)
    rows = []
    for q in quantities:
        resolution = _unit(q)
        if resolution is None:
            rows.append({"quantity": q, "unit_price_cents": None, "total_cents": None,
                         "unit_savings_cents": None, "total_savings_cents": None, "source": None})
            continue
        unit_savings = (base.price_cents - resolution.price_cents) if base is not None else 0
        rows.append({
            "quantity": q,
            "unit_price_cents": resolution.price_cents,
            "total_cents": resolution.price_cents * q,
            "unit_savings_cents": unit_savings,
            "total_savings_cents": unit_savings * q,
            "source": resolution.source,
        })
    return {"product_id": product_id, "pricing_mode": "bracket", "price_type": price_type, "rows": rows}


def latest_cost_price_cents(product_id: int) -> int | None:
    row = (
        db.session.query(ReceivedItem.cost_price_cents)
        .filter(ReceivedItem.product_id == product_id)
        .order_by(ReceivedItem.id.desc())
        .first()
    )
    return row[0] if row else None


def get_optimal_pricing_suggestions(
    *,
    product_id: int,
    target_margin: float = DEFAULT_TARGET_MARGIN,
    quantities: list[int] | None = None,
) -> dict:
    """
    Suggest tier prices from the latest received cost.

    Margin steps down 2 points per tier (never below 10%, or the target if lower);
    price = cost / (1 - margin), rounded half-up to the cent and never below cost.
    """
    try:
        margin = Decimal(str(target_margin))
    except (ArithmeticError, ValueError):
        raise ValidationError({"target_margin": ["must be a number"]})
    if not margin.is_finite() or margin < 0 or margin >= 1:
        raise ValidationError({"target_margin": ["must satisfy 0 <= margin < 1"]})

    tiers = _clean_quantities(quantities, DEFAULT_SUGGESTION_QUANTITIES)
    get_product(product_id)
    cost = latest_cost_price_cents(product_id)
    if cost is None:
        raise NotFoundError(f"No received cost found for product {product_id}")

    floor = min(margin, MINIMUM_TIER_MARGIN)
    suggestions = []
    for index, min_qty in enumerate(tiers):
        tier_margin = max(margin - MARGIN_STEP_PER_TIER * index, floor)
        price = (Decimal(cost) / (1 - tier_margin)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        price_cents = max(int(price), cost)
        max_qty = tiers[index + 1] - 1 if index + 1 < len(tiers) else None
        suggestions.append({
            "min_quantity": min_qty,
            "max_quantity": max_qty,
            "price_cents": price_cents,
            "margin_percentage": float((tier_margin * 100).quantize(Decimal("0.01"))),
            "profit_per_unit_cents": price_cents - cost,
        })

    return {
        "product_id": product_id,
        "cost_price_cents": cost,
        "target_margin": float(margin),
        "suggestions": suggestions,
    }


# =============================================================================
# CSV import (partial success)
# =============================================================================


def parse_bracket_csv(text: str) -> list[dict]:
    """
    Parse CSV text into row dicts. Each dict carries "_line" (1-based file line).

    Raises ValidationError when required columns are missing from the header.
    """
    reader = csv.DictReader(io.StringIO(text))
    headers = [h.strip().lower() for h in (reader.fieldnames or [])]
    missing = [col for col in CSV_REQUIRED_COLUMNS if col not in headers]
    if missing:
        raise ValidationError({"file": [f"missing required columns: {', '.join(missing)}"]})

    rows = []
    for row in reader:
        normalized = {
            (k or "").strip().lower(): (v.strip() if isinstance(v, str) else v)
            for k, v in row.items()
        }
        if not any(normalized.get(col) for col in CSV_REQUIRED_COLUMNS + ("max_quantity",)):
            continue
        normalized["_line"] = reader.line_num
        rows.append(normalized)
    return rows


def import_brackets_from_csv(
    *,
    product_id: int,
    rows: list[dict],
    bracket_id: int | None = None,
    created_by: int | None = None,
) -> dict:
    """
    Bulk-create bracket items with per-row results.

    Each row is validated on its own and checked for overlap against the bracket's
    live items plus rows accepted earlier in this import. Invalid rows are reported
    and skipped; valid rows persist. Without bracket_id a new draft bracket is created
    (and dropped again when no row succeeds).
    """
    def _op():
        product = _lock_product(product_id)

        created_bracket = False
        if bracket_id is not None:
            bracket = get_bracket(bracket_id)
            if bracket.product_id != product.id:
                raise ValidationError({"bracket_id": [f"bracket {bracket_id} does not belong to product {product_id}"]})
            if bracket.status == BRACKET_STATUS_SUPERSEDED:
                raise ConflictError(f"Bracket {bracket.id} is superseded and read-only")
        else:
            bracket = PriceBracket(
                product_id=product.id,
                name=f"CSV import {utcnow():%Y-%m-%d %H:%M}",
                status=BRACKET_STATUS_DRAFT,
                is_selected=False,
                effective_from=utcnow(),
                created_by=created_by,
            )
            db.session.add(bracket)
            db.session.flush()
            created_bracket = True

        accepted = [bracket_item_range(item, key=item.id) for item in bracket.items if item.is_active]
        next_order = len(bracket.items)
        results = []

        for index, raw in enumerate(rows or []):
            line = raw.get("_line", index + 1) if isinstance(raw, dict) else index + 1
            clean, errors = validate_bracket_item(raw, money_as_decimal=True)
            if errors:
                results.append({"row": line, "success": False, "errors": errors.errors})
                continue

            candidate = bracket_item_range(clean, key=f"row {line}")
            clashes = conflicts_with(candidate, accepted)
            if clashes:
                results.append({
                    "row": line,
                    "success": False,
                    "errors": {"range": [describe_conflict(candidate, c) for c in clashes]},
                })
                continue

            item = BracketItem(
                min_quantity=clean["min_quantity"],
                max_quantity=clean["max_quantity"],
                price_cents=clean["price_cents"],
                price_type=clean["price_type"],
                is_active=True,
                sort_order=next_order,
            )
            next_order += 1
            bracket.items.append(item)
            db.session.flush()
            accepted.append(bracket_item_range(item, key=item.id))
            results.append({"row": line, "success": True, "item_id": item.id})

        imported = sum(1 for r in results if r["success"])
        failed = len(results) - imported

        result_bracket_id = bracket.id
        if created_bracket and imported == 0:
            db.session.delete(bracket)
            result_bracket_id = None
        _touch_product(product)
        db.session.flush()

        logger.info("CSV import for product %s: %s imported, %s failed", product.id, imported, failed)
        return {
            "bracket_id": result_bracket_id,
            "imported": imported,
            "failed": failed,
            "results": results,
        }

    return run_with_retry(_op)
