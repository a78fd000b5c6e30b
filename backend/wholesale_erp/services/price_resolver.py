# backend/wholesale_erp/services/price_resolver.py
"""
Price resolution: which unit price applies to (customer, product, quantity, price type, date).

PRECEDENCE (sale lines):
1. Customer custom price, only when the customer is a valued customer
2. Selected bracket, only when the product has use_bracket_pricing on
3. Flat ProductPrice in effect at the date

MATCHING:
- A bracket or price row applies at as_of when effective_from <= as_of < effective_to
  (NULL effective_to is open-ended). Draft brackets never apply; superseded brackets
  apply inside their closed range so historical lookups stay stable.
- An item applies when price_type matches and min_quantity <= quantity <= max_quantity
  (NULL max_quantity is unbounded).

All functions are pure reads. Stored ambiguity is never resolved by picking one row:
two matching ranges raise OverlappingBracketError, two brackets in effect at once
raise DataIntegrityError.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import or_

from wholesale_erp.extensions import db
from wholesale_erp.models import (
    BracketItem,
    Customer,
    CustomerCustomPrice,
    PriceBracket,
    Product,
    ProductPrice,
)
from wholesale_erp.services.pricing_rules import date_range_contains
from wholesale_erp.time_utils import utcnow
from wholesale_erp.validation import (
    DataIntegrityError,
    NotFoundError,
    OverlappingBracketError,
    PRICE_TYPES,
    ValidationError,
)


BRACKET_STATUS_DRAFT = "draft"
BRACKET_STATUS_ACTIVE = "active"
BRACKET_STATUS_SUPERSEDED = "superseded"

SOURCE_CUSTOM = "custom"
SOURCE_BRACKET = "bracket"
SOURCE_PRODUCT_PRICE = "product_price"


@dataclass(frozen=True)
class PriceResolution:
    price_cents: int
    source: str
    reference_id: int
    price_type: str
    custom_pricing_checked: bool = False

    def to_dict(self) -> dict:
        return {
            "price_cents": self.price_cents,
            "source": self.source,
            "reference_id": self.reference_id,
            "price_type": self.price_type,
            "custom_pricing_checked": self.custom_pricing_checked,
        }


def _check_inputs(quantity: int, price_type: str | None = None) -> None:
    errors = {}
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
        errors["quantity"] = ["must be a positive integer"]
    if price_type is not None and price_type not in PRICE_TYPES:
        errors["price_type"] = [f"must be one of: {', '.join(PRICE_TYPES)}"]
    if errors:
        raise ValidationError(errors)


def get_product(product_id: int) -> Product:
    product = (
        db.session.query(Product)
        .filter(Product.id == product_id, Product.deleted_at.is_(None))
        .first()
    )
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product


def _has_any_pricing(product_id: int) -> bool:
    has_bracket = db.session.query(PriceBracket.id).filter_by(product_id=product_id).first() is not None
    if has_bracket:
        return True
    return (
        db.session.query(ProductPrice.id)
        .filter(ProductPrice.product_id == product_id, ProductPrice.deleted_at.is_(None))
        .first()
        is not None
    )


def get_bracket_in_effect(product_id: int, as_of: datetime) -> PriceBracket | None:
    """The single active or superseded bracket whose range contains as_of."""
    candidates = (
        db.session.query(PriceBracket)
        .filter(
            PriceBracket.product_id == product_id,
            PriceBracket.status.in_((BRACKET_STATUS_ACTIVE, BRACKET_STATUS_SUPERSEDED)),
            PriceBracket.effective_from <= as_of,
            or_(PriceBracket.effective_to.is_(None), PriceBracket.effective_to > as_of),
        )
        .order_by(PriceBracket.id)
        .all()
    )
    if not candidates:
        return None
    if len(candidates) > 1:
        ids = ", ".join(str(b.id) for b in candidates)
        raise DataIntegrityError(f"Product {product_id} has more than one bracket in effect at {as_of}: {ids}")
    return candidates[0]


def _match_single(rows, quantity: int, what: str):
    matches = [
        r for r in rows
        if r.min_quantity <= quantity and (r.max_quantity is None or quantity <= r.max_quantity)
    ]
    if len(matches) > 1:
        ids = ", ".join(str(r.id) for r in matches)
        raise OverlappingBracketError(f"Overlapping {what} ranges match quantity {quantity}: {ids}")
    return matches[0] if matches else None


def find_bracket_item(product_id: int, quantity: int, price_type: str, as_of: datetime) -> BracketItem | None:
    bracket = get_bracket_in_effect(product_id, as_of)
    if bracket is None:
        return None
    items = (
        db.session.query(BracketItem)
        .filter_by(bracket_id=bracket.id, price_type=price_type, is_active=True)
        .order_by(BracketItem.min_quantity)
        .all()
    )
    return _match_single(items, quantity, "bracket item")


def resolve_price(
    product_id: int,
    quantity: int,
    price_type: str,
    as_of: datetime | None = None,
) -> int | None:
    """
    Bracket price per unit in cents, or None when no bracket/item applies.

    Raises:
        NotFoundError: product missing or has no pricing configured at all
        OverlappingBracketError: more than one item matches
        DataIntegrityError: more than one bracket in effect
    """
    _check_inputs(quantity, price_type)
    get_product(product_id)
    if not _has_any_pricing(product_id):
        raise NotFoundError(f"Product {product_id} has no pricing configured")

    item = find_bracket_item(product_id, quantity, price_type, as_of or utcnow())
    return item.price_cents if item is not None else None


def _get_customer(customer_id: int) -> Customer:
    customer = (
        db.session.query(Customer)
        .filter(Customer.id == customer_id, Customer.deleted_at.is_(None))
        .first()
    )
    if customer is None:
        raise NotFoundError(f"Customer {customer_id} not found")
    return customer


def find_custom_price(
    customer_id: int,
    product_id: int,
    quantity: int,
    as_of: datetime,
) -> CustomerCustomPrice | None:
    rows = (
        db.session.query(CustomerCustomPrice)
        .filter(
            CustomerCustomPrice.customer_id == customer_id,
            CustomerCustomPrice.product_id == product_id,
            CustomerCustomPrice.is_active.is_(True),
        )
        .order_by(CustomerCustomPrice.min_quantity)
        .all()
    )
    in_effect = [r for r in rows if date_range_contains(r.effective_from, r.effective_to, as_of)]
    return _match_single(in_effect, quantity, "custom price")


def resolve_custom_price(
    customer_id: int,
    product_id: int,
    quantity: int,
    as_of: datetime | None = None,
) -> int | None:
    """
    Custom price per unit in cents, or None when the valued customer has no matching range.

    A customer who is not a valued customer is not eligible at all: NotFoundError,
    so callers can never mistake ineligibility for "no override, use the bracket".
    """
    _check_inputs(quantity)
    customer = _get_customer(customer_id)
    if not customer.is_valued_customer:
        raise NotFoundError(f"Customer {customer_id} is not a valued customer; no custom pricing")
    get_product(product_id)

    row = find_custom_price(customer_id, product_id, quantity, as_of or utcnow())
    return row.price_cents if row is not None else None


def find_product_price(product_id: int, as_of: datetime) -> ProductPrice | None:
    """
    Flat price row in effect at as_of.

    Active rows and closed (superseded) rows both count inside their range;
    inactive rows that were never put into effect (no effective_to) do not.
    """
    rows = (
        db.session.query(ProductPrice)
        .filter(
            ProductPrice.product_id == product_id,
            ProductPrice.deleted_at.is_(None),
            or_(ProductPrice.is_active.is_(True), ProductPrice.effective_to.isnot(None)),
            ProductPrice.effective_from <= as_of,
            or_(ProductPrice.effective_to.is_(None), ProductPrice.effective_to > as_of),
        )
        .order_by(ProductPrice.id)
        .all()
    )
    if len(rows) > 1:
        ids = ", ".join(str(r.id) for r in rows)
        raise DataIntegrityError(f"Product {product_id} has more than one price in effect at {as_of}: {ids}")
    return rows[0] if rows else None


def resolve_line_price(
    product_id: int,
    quantity: int,
    price_type: str,
    as_of: datetime | None = None,
    customer_id: int | None = None,
) -> PriceResolution:
    """
    Resolve the unit price for a sale line following custom -> bracket -> flat precedence.

    Eligibility for custom pricing is checked explicitly (valued customers only) and
    recorded on the result; it is never inferred from an empty lookup.
    """
    _check_inputs(quantity, price_type)
    as_of = as_of or utcnow()
    product = get_product(product_id)

    custom_checked = False
    if customer_id is not None:
        customer = _get_customer(customer_id)
        if customer.is_valued_customer:
            custom_checked = True
            row = find_custom_price(customer_id, product_id, quantity, as_of)
            if row is not None:
                return PriceResolution(row.price_cents, SOURCE_CUSTOM, row.id, price_type, True)

    if product.use_bracket_pricing:
        item = find_bracket_item(product_id, quantity, price_type, as_of)
        if item is not None:
            return PriceResolution(item.price_cents, SOURCE_BRACKET, item.id, price_type, custom_checked)

    price = find_product_price(product_id, as_of)
    if price is not None:
        return PriceResolution(price.price_for_type(price_type), SOURCE_PRODUCT_PRICE, price.id, price_type,
                               custom_checked)

    raise NotFoundError(
        f"No price configured for product {product_id} ({price_type}, qty {quantity}) at {as_of.isoformat()}"
    )
