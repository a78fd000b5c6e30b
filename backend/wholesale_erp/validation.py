from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable

from sqlalchemy import Boolean, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from wholesale_erp.time_utils import normalize_datetime


# Maximum price: 9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999

PRICE_TYPE_REGULAR = "regular"
PRICE_TYPE_WHOLESALE = "wholesale"
PRICE_TYPE_WALK_IN = "walk_in"
PRICE_TYPES = (PRICE_TYPE_REGULAR, PRICE_TYPE_WHOLESALE, PRICE_TYPE_WALK_IN)


"""
Error taxonomy (authoritative)

- ValidationError: malformed/out-of-range input, raised before any write. Carries
  a field -> [messages] mapping. Never retryable.
- NotFoundError: a referenced entity does not exist (or is soft-deleted). Never retryable.
- ConflictError: state-machine or invariant violation (overlapping ranges, deleting a
  completed PO's report, negative stock). retryable=True only for lock contention.
- DataIntegrityError: an invariant was violated despite the guards. Signals a bug.

Route handlers translate these into 400/404/409/500 via http_status_for().
"""


class DomainError(Exception):
    """Base for errors raised by the service layer."""

    status_code = 500

    def to_dict(self) -> dict:
        return {"error": str(self), "kind": type(self).__name__}


class ValidationError(DomainError, ValueError):
    """400-level input problem."""

    status_code = 400

    def __init__(self, errors: dict[str, list[str]] | str, message: str | None = None):
        if isinstance(errors, str):
            errors = {"_": [errors]}
        self.errors = errors
        if message is None:
            parts = []
            for field, messages in errors.items():
                for msg in messages:
                    parts.append(msg if field == "_" else f"{field}: {msg}")
            message = "; ".join(parts) or "Invalid input"
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class NotFoundError(DomainError, LookupError):
    """404-level missing entity."""

    status_code = 404


class ConflictError(DomainError, ValueError):
    """409-level business rule conflict (e.g., overlapping price ranges)."""

    status_code = 409

    def __init__(self, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["retryable"] = self.retryable
        return data


class InsufficientStockError(ConflictError):
    """Requested quantity exceeds ledger-derived on-hand."""

    def __init__(self, product_id: int, on_hand: int, requested: int):
        super().__init__(
            f"Insufficient stock for product {product_id}. On-hand: {on_hand}, requested: {requested}"
        )
        self.product_id = product_id
        self.on_hand = on_hand
        self.requested = requested


class DataIntegrityError(DomainError):
    """Stored state violates an invariant the write paths are supposed to guard."""

    status_code = 500


class OverlappingBracketError(DataIntegrityError):
    """More than one stored price range matched a single lookup."""


def http_status_for(exc: Exception) -> int:
    return getattr(exc, "status_code", 500)


class FieldErrors:
    """Collects per-field messages so a payload is reported in one pass."""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix
        self.errors: dict[str, list[str]] = {}

    def add(self, field: str, message: str) -> None:
        self.errors.setdefault(f"{self.prefix}{field}", []).append(message)

    def merge(self, other: "FieldErrors") -> None:
        for field, messages in other.errors.items():
            self.errors.setdefault(field, []).extend(messages)

    def __bool__(self) -> bool:
        return bool(self.errors)

    def raise_if_any(self) -> None:
        if self.errors:
            raise ValidationError(self.errors)


def coerce_int(value: Any, field: str, errors: FieldErrors, *, minimum: int | None = None,
               required: bool = True) -> int | None:
    """Strict integer parsing: rejects floats, decimals and scientific notation."""
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            errors.add(field, "is required")
        return None
    if isinstance(value, bool):
        errors.add(field, "must be an integer")
        return None
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if "e" in stripped.lower() or "." in stripped:
            errors.add(field, "must be a plain integer")
            return None
        try:
            result = int(stripped)
        except ValueError:
            errors.add(field, "must be an integer")
            return None
    else:
        errors.add(field, "must be an integer")
        return None

    if minimum is not None and result < minimum:
        errors.add(field, f"must be >= {minimum}")
        return None
    return result


def coerce_cents(value: Any, field: str, errors: FieldErrors, *, required: bool = True,
                 minimum: int = 0) -> int | None:
    cents = coerce_int(value, field, errors, required=required)
    if cents is None:
        return None
    if cents < minimum:
        errors.add(field, f"must be >= {minimum}")
        return None
    if cents > MAX_PRICE_CENTS:
        errors.add(field, f"cannot exceed {MAX_PRICE_CENTS}")
        return None
    return cents


def parse_money_to_cents(value: Any, field: str, errors: FieldErrors, *, required: bool = True) -> int | None:
    """Parse a decimal currency amount ("12.50") into integer cents, half-up."""
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            errors.add(field, "is required")
        return None
    if isinstance(value, bool):
        errors.add(field, "must be a number")
        return None
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        errors.add(field, "must be a number")
        return None
    if not amount.is_finite():
        errors.add(field, "must be a number")
        return None
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cents < 0:
        errors.add(field, "must be >= 0")
        return None
    if cents > MAX_PRICE_CENTS:
        errors.add(field, f"cannot exceed {MAX_PRICE_CENTS}")
        return None
    return cents


def coerce_choice(value: Any, field: str, choices: Iterable[str], errors: FieldErrors, *,
                  required: bool = True) -> str | None:
    if value is None or value == "":
        if required:
            errors.add(field, "is required")
        return None
    normalized = str(value).strip().lower()
    choices = tuple(choices)
    if normalized not in choices:
        errors.add(field, f"must be one of: {', '.join(choices)}")
        return None
    return normalized


def coerce_datetime(value: Any, field: str, errors: FieldErrors, *, required: bool = False) -> datetime | None:
    if value is None or value == "":
        if required:
            errors.add(field, "is required")
        return None
    try:
        return normalize_datetime(value)
    except (TypeError, ValueError):
        errors.add(field, "must be an ISO-8601 datetime")
        return None


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    errors = FieldErrors()
    required = policy.required_on_create or set()
    if not partial:
        for field in sorted(required):
            if field not in payload:
                errors.add(field, "is required")

    cols = _columns_by_key(model)
    patch: dict = {}

    for key, raw in payload.items():
        if key not in policy.writable_fields or key not in cols:
            errors.add(key, "field not allowed")
            continue
        col = cols[key]

        if raw is None:
            if not col.nullable:
                errors.add(key, "cannot be null")
            else:
                patch[key] = None
            continue

        coltype = col.type
        if isinstance(coltype, Integer):
            val = coerce_int(raw, key, errors)
        elif isinstance(coltype, Boolean):
            val = raw if isinstance(raw, bool) else bool(raw)
        elif isinstance(coltype, DateTime):
            val = coerce_datetime(raw, key, errors, required=True)
        elif isinstance(coltype, (String, Text)):
            val = str(raw).strip()
            if not col.nullable and val == "":
                errors.add(key, "cannot be blank")
                continue
            if isinstance(coltype, String) and coltype.length and len(val) > coltype.length:
                errors.add(key, f"exceeds max length {coltype.length}")
                continue
        else:
            val = raw

        if val is not None:
            patch[key] = val

    errors.raise_if_any()
    return patch
