# Overview: Service-layer operations for inventory; adjustments and ledger-derived stock views.

import logging

from ..extensions import db
from ..models import InventoryAdjustment, Product
from wholesale_erp.time_utils import utcnow
from ..validation import (
    ConflictError,
    FieldErrors,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
    coerce_choice,
    coerce_int,
)
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import (
    ENTRY_ADJUSTMENT,
    ENTRY_ADJUSTMENT_VOID,
    append_entry,
    get_quantities_on_hand,
    get_quantity_on_hand,
    get_weighted_average_cost_cents,
    lock_product,
)
"""
Inventory Adjustment Rules (authoritative)

- quantity is always a positive magnitude; direction comes from adjustment_type.
- addition, return increase stock. reduction, damage, loss decrease stock.
- correction needs an explicit direction (increase | decrease).
- A decrease that would take on-hand below zero is rejected (ValidationError) before any write.
- Adjustments are never edited or deleted; void appends an offsetting ledger row.

Stock status:
- low: on_hand <= reorder_level
- overstocked: on_hand > 3 * reorder_level (only when reorder_level > 0)
- normal: otherwise
"""

logger = logging.getLogger(__name__)

ADJUSTMENT_ADDITION = "addition"
ADJUSTMENT_REDUCTION = "reduction"
ADJUSTMENT_DAMAGE = "damage"
ADJUSTMENT_LOSS = "loss"
ADJUSTMENT_RETURN = "return"
ADJUSTMENT_CORRECTION = "correction"

ADJUSTMENT_TYPES = (
    ADJUSTMENT_ADDITION,
    ADJUSTMENT_REDUCTION,
    ADJUSTMENT_DAMAGE,
    ADJUSTMENT_LOSS,
    ADJUSTMENT_RETURN,
    ADJUSTMENT_CORRECTION,
)
INCREASE_TYPES = (ADJUSTMENT_ADDITION, ADJUSTMENT_RETURN)

DIRECTION_INCREASE = "increase"
DIRECTION_DECREASE = "decrease"

STATUS_LOW = "low"
STATUS_NORMAL = "normal"
STATUS_OVERSTOCKED = "overstocked"
OVERSTOCK_FACTOR = 3


def _signed_quantity(adjustment_type: str, quantity: int, direction: str | None) -> int:
    if adjustment_type == ADJUSTMENT_CORRECTION:
        return quantity if direction == DIRECTION_INCREASE else -quantity
    return quantity if adjustment_type in INCREASE_TYPES else -quantity


def create_adjustment(
    *,
    product_id: int,
    adjustment_type: str,
    quantity,
    reason: str | None = None,
    created_by: int | None = None,
    direction: str | None = None,
) -> InventoryAdjustment:
    """
    Record a manual stock adjustment and append its ledger row.

    Raises:
        ValidationError: bad input, or a decrease larger than current on-hand
        NotFoundError: product missing
    """
    def _op():
        errors = FieldErrors()
        adj_type = coerce_choice(adjustment_type, "adjustment_type", ADJUSTMENT_TYPES, errors)
        qty = coerce_int(quantity, "quantity", errors, minimum=1)
        corr = None
        if adj_type == ADJUSTMENT_CORRECTION:
            corr = coerce_choice(direction, "direction", (DIRECTION_INCREASE, DIRECTION_DECREASE), errors)
        errors.raise_if_any()

        product = lock_product(product_id)
        delta = _signed_quantity(adj_type, qty, corr)
        on_hand = get_quantity_on_hand(product.id)
        if on_hand + delta < 0:
            raise ValidationError(
                {"quantity": [f"would make stock negative (on hand {on_hand}, adjustment {delta})"]}
            )

        adjustment = InventoryAdjustment(
            product_id=product.id,
            adjustment_type=adj_type,
            correction_direction=corr,
            quantity=qty,
            reason=reason,
            created_by=created_by,
        )
        db.session.add(adjustment)
        db.session.flush()

        entry = append_entry(
            product_id=product.id,
            entry_type=ENTRY_ADJUSTMENT,
            quantity_delta=delta,
            reference_type="adjustment",
            reference_id=adjustment.id,
            note=(reason or adj_type)[:255],
            created_by=created_by,
        )
        adjustment.ledger_entry_id = entry.id
        db.session.flush()
        return adjustment

    return run_with_retry(_op)


def void_adjustment(*, adjustment_id: int, voided_by: int | None = None, reason: str | None = None) -> InventoryAdjustment:
    """Soft-void an adjustment by appending the opposite ledger delta."""
    def _op():
        adjustment = lock_for_update(
            db.session.query(InventoryAdjustment).filter_by(id=adjustment_id)
        ).first()
        if adjustment is None:
            raise NotFoundError(f"Adjustment {adjustment_id} not found")
        if adjustment.voided_at is not None:
            raise ConflictError(f"Adjustment {adjustment.id} is already voided")

        delta = -_signed_quantity(adjustment.adjustment_type, adjustment.quantity, adjustment.correction_direction)
        try:
            entry = append_entry(
                product_id=adjustment.product_id,
                entry_type=ENTRY_ADJUSTMENT_VOID,
                quantity_delta=delta,
                reference_type="adjustment",
                reference_id=adjustment.id,
                note=(reason or "void")[:255],
                created_by=voided_by,
            )
        except InsufficientStockError as exc:
            raise ConflictError(
                f"Cannot void adjustment {adjustment.id}: stock already consumed ({exc})"
            ) from exc

        adjustment.voided_at = utcnow()
        adjustment.voided_by = voided_by
        adjustment.void_reason = reason
        adjustment.void_entry_id = entry.id
        db.session.flush()
        logger.info("Adjustment %s voided", adjustment.id)
        return adjustment

    return run_with_retry(_op)


def get_adjustment(adjustment_id: int) -> InventoryAdjustment:
    adjustment = db.session.query(InventoryAdjustment).filter_by(id=adjustment_id).first()
    if adjustment is None:
        raise NotFoundError(f"Adjustment {adjustment_id} not found")
    return adjustment


def list_adjustments(*, product_id: int | None = None, include_voided: bool = True) -> list[InventoryAdjustment]:
    query = db.session.query(InventoryAdjustment)
    if product_id is not None:
        query = query.filter(InventoryAdjustment.product_id == product_id)
    if not include_voided:
        query = query.filter(InventoryAdjustment.voided_at.is_(None))
    return query.order_by(InventoryAdjustment.id.desc()).all()


def stock_status(on_hand: int, reorder_level: int) -> str:
    if on_hand <= reorder_level:
        return STATUS_LOW
    if reorder_level > 0 and on_hand > OVERSTOCK_FACTOR * reorder_level:
        return STATUS_OVERSTOCKED
    return STATUS_NORMAL


def _stock_row(product: Product, on_hand: int) -> dict:
    return {
        "product_id": product.id,
        "sku": product.sku,
        "name": product.name,
        "quantity_on_hand": on_hand,
        "reorder_level": product.reorder_level,
        "status": stock_status(on_hand, product.reorder_level),
    }


def get_stock_level(product_id: int) -> dict:
    product = (
        db.session.query(Product)
        .filter(Product.id == product_id, Product.deleted_at.is_(None))
        .first()
    )
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    row = _stock_row(product, get_quantity_on_hand(product.id))
    row["weighted_average_cost_cents"] = get_weighted_average_cost_cents(product.id)
    return row


def list_stock_levels(*, status: str | None = None) -> list[dict]:
    products = (
        db.session.query(Product)
        .filter(Product.deleted_at.is_(None), Product.is_active.is_(True))
        .order_by(Product.name)
        .all()
    )
    quantities = get_quantities_on_hand([p.id for p in products])
    rows = [_stock_row(p, quantities.get(p.id, 0)) for p in products]
    if status:
        rows = [r for r in rows if r["status"] == status]
    return rows


def list_low_stock() -> list[dict]:
    return list_stock_levels(status=STATUS_LOW)
