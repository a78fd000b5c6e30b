# Overview: Shared range rules for bracket items and custom prices (validation and overlap detection).

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

from ..validation import (
    FieldErrors,
    PRICE_TYPES,
    coerce_cents,
    coerce_choice,
    coerce_int,
    parse_money_to_cents,
)
"""
Range semantics (authoritative)

- Quantity ranges are inclusive: [min_quantity, max_quantity]; max_quantity None is unbounded.
- Date ranges are half-open: [effective_from, effective_to); effective_to None is open-ended.
- Two rows conflict when they share a scope (price_type for bracket items, product for
  custom prices) AND their quantity ranges intersect AND (for dated rows) their date
  ranges intersect.

Every write path (create, update, CSV import, custom pricing) calls find_conflicts()
against the FULL final set of live rows, never just the incoming delta.
"""


@dataclass(frozen=True)
class QuantityRange:
    """A candidate or stored range, detached from the ORM so checks are pure."""
    min_quantity: int
    max_quantity: int | None
    scope: object = None
    effective_from: datetime | None = None
    effective_to: datetime | None = None
    key: object = None

    def contains_quantity(self, quantity: int) -> bool:
        if quantity < self.min_quantity:
            return False
        return self.max_quantity is None or quantity <= self.max_quantity

    def label(self) -> str:
        if self.max_quantity is None:
            return f"({self.min_quantity}+)"
        return f"({self.min_quantity}-{self.max_quantity})"


def quantity_ranges_overlap(a_min: int, a_max: int | None, b_min: int, b_max: int | None) -> bool:
    a_upper = float("inf") if a_max is None else a_max
    b_upper = float("inf") if b_max is None else b_max
    return a_min <= b_upper and b_min <= a_upper


def date_ranges_overlap(
    a_from: datetime | None,
    a_to: datetime | None,
    b_from: datetime | None,
    b_to: datetime | None,
) -> bool:
    # None bounds are open; ranges are half-open so touching ends do not overlap
    if a_to is not None and b_from is not None and a_to <= b_from:
        return False
    if b_to is not None and a_from is not None and b_to <= a_from:
        return False
    return True


def date_range_contains(effective_from: datetime | None, effective_to: datetime | None, as_of: datetime) -> bool:
    if effective_from is not None and as_of < effective_from:
        return False
    if effective_to is not None and as_of >= effective_to:
        return False
    return True


def ranges_conflict(a: QuantityRange, b: QuantityRange, *, check_dates: bool = False) -> bool:
    if a.scope != b.scope:
        return False
    if not quantity_ranges_overlap(a.min_quantity, a.max_quantity, b.min_quantity, b.max_quantity):
        return False
    if check_dates:
        return date_ranges_overlap(a.effective_from, a.effective_to, b.effective_from, b.effective_to)
    return True


def find_conflicts(
    ranges: Sequence[QuantityRange],
    *,
    check_dates: bool = False,
) -> list[tuple[QuantityRange, QuantityRange]]:
    """Every conflicting pair within one set of ranges."""
    conflicts = []
    for i, a in enumerate(ranges):
        for b in ranges[i + 1:]:
            if ranges_conflict(a, b, check_dates=check_dates):
                conflicts.append((a, b))
    return conflicts


def conflicts_with(
    candidate: QuantityRange,
    existing: Iterable[QuantityRange],
    *,
    check_dates: bool = False,
) -> list[QuantityRange]:
    return [r for r in existing if ranges_conflict(candidate, r, check_dates=check_dates)]


def describe_conflict(a: QuantityRange, b: QuantityRange) -> str:
    scope = f" for {a.scope}" if a.scope is not None else ""
    return f"Quantity range {a.label()} overlaps {b.label()}{scope}"


def validate_range_fields(data: dict, errors: FieldErrors) -> tuple[int | None, int | None]:
    """min_quantity >= 1 and, when present, max_quantity > min_quantity."""
    min_qty = coerce_int(data.get("min_quantity"), "min_quantity", errors, minimum=1)
    max_qty = coerce_int(data.get("max_quantity"), "max_quantity", errors, required=False)
    if min_qty is not None and max_qty is not None and max_qty <= min_qty:
        errors.add("max_quantity", "must be greater than min_quantity")
        max_qty = None
    return min_qty, max_qty


def validate_bracket_item(data: dict, *, prefix: str = "", money_as_decimal: bool = False) -> tuple[dict, FieldErrors]:
    """
    Validate one bracket item payload.

    Returns (clean, errors). price is accepted either as integer cents
    ("price_cents") or, for CSV input, as a decimal amount ("price").
    """
    errors = FieldErrors(prefix)
    if not isinstance(data, dict):
        errors.add("_", "item must be an object")
        return {}, errors

    min_qty, max_qty = validate_range_fields(data, errors)
    if money_as_decimal:
        price_cents = parse_money_to_cents(data.get("price"), "price", errors)
    else:
        price_cents = coerce_cents(data.get("price_cents"), "price_cents", errors)
    price_type = coerce_choice(data.get("price_type"), "price_type", PRICE_TYPES, errors)

    clean = {
        "min_quantity": min_qty,
        "max_quantity": max_qty,
        "price_cents": price_cents,
        "price_type": price_type,
        "is_active": bool(data.get("is_active", True)),
    }
    if data.get("id") is not None:
        item_id = coerce_int(data.get("id"), "id", errors, minimum=1)
        if item_id is not None:
            clean["id"] = item_id
    return clean, errors


def bracket_item_range(item, key=None) -> QuantityRange:
    """Range view of a BracketItem row or a validated item dict."""
    get = item.get if isinstance(item, dict) else lambda name: getattr(item, name)
    return QuantityRange(
        min_quantity=get("min_quantity"),
        max_quantity=get("max_quantity"),
        scope=get("price_type"),
        key=key,
    )


def custom_price_range(row, key=None) -> QuantityRange:
    get = row.get if isinstance(row, dict) else lambda name: getattr(row, name)
    return QuantityRange(
        min_quantity=get("min_quantity"),
        max_quantity=get("max_quantity"),
        scope=get("product_id"),
        effective_from=get("effective_from"),
        effective_to=get("effective_to"),
        key=key,
    )
