# Overview: Append-only inventory ledger; the single source of on-hand quantity and weighted average cost.

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func

from ..extensions import db
from ..models import InventoryLedgerEntry, Product
from ..time_utils import utcnow
from ..validation import InsufficientStockError, NotFoundError
from .concurrency import lock_for_update
"""
Inventory Ledger Invariants (authoritative)

- Append-only: rows are never updated or deleted. Corrections are new rows.
- Quantity on hand is SUM(quantity_delta) over the product's rows (optionally as-of).
- Writers lock the product row first so quantity_before/quantity_after snapshots and
  negative-stock checks are taken against a stable total.
- WAC is computed from inbound rows carrying unit_cost_cents (RECEIVING and
  RECEIVING_CORRECTION), as sum(qty * unit_cost) / sum(qty), nearest cent, half-up.
- As-of filters are inclusive: occurred_at <= as_of.
"""

ENTRY_ADJUSTMENT = "ADJUSTMENT"
ENTRY_ADJUSTMENT_VOID = "ADJUSTMENT_VOID"
ENTRY_RECEIVING = "RECEIVING"
ENTRY_RECEIVING_CORRECTION = "RECEIVING_CORRECTION"
ENTRY_SALE = "SALE"
ENTRY_SALE_CANCEL = "SALE_CANCEL"
ENTRY_TRANSFER_OUT = "TRANSFER_OUT"
ENTRY_TRANSFER_CANCEL = "TRANSFER_CANCEL"
ENTRY_RETURN = "RETURN"
ENTRY_COUNT = "COUNT"

ENTRY_TYPES = {
    ENTRY_ADJUSTMENT,
    ENTRY_ADJUSTMENT_VOID,
    ENTRY_RECEIVING,
    ENTRY_RECEIVING_CORRECTION,
    ENTRY_SALE,
    ENTRY_SALE_CANCEL,
    ENTRY_TRANSFER_OUT,
    ENTRY_TRANSFER_CANCEL,
    ENTRY_RETURN,
    ENTRY_COUNT,
}

COSTED_ENTRY_TYPES = (ENTRY_RECEIVING, ENTRY_RECEIVING_CORRECTION)


def lock_product(product_id: int) -> Product:
    """Lock the product row for a stock mutation. Soft-deleted products are not found."""
    product = lock_for_update(
        db.session.query(Product).filter(Product.id == product_id, Product.deleted_at.is_(None))
    ).first()
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product


def get_quantity_on_hand(product_id: int, as_of: datetime | None = None) -> int:
    q = db.session.query(
        func.coalesce(func.sum(InventoryLedgerEntry.quantity_delta), 0)
    ).filter(InventoryLedgerEntry.product_id == product_id)
    if as_of is not None:
        q = q.filter(InventoryLedgerEntry.occurred_at <= as_of)
    return int(q.scalar() or 0)


def get_quantities_on_hand(product_ids: list[int] | None = None) -> dict[int, int]:
    """Bulk on-hand for many products in one GROUP BY."""
    q = db.session.query(
        InventoryLedgerEntry.product_id,
        func.coalesce(func.sum(InventoryLedgerEntry.quantity_delta), 0),
    ).group_by(InventoryLedgerEntry.product_id)
    if product_ids is not None:
        q = q.filter(InventoryLedgerEntry.product_id.in_(product_ids))
    return {pid: int(qty) for pid, qty in q.all()}


def get_weighted_average_cost_cents(product_id: int, as_of: datetime | None = None) -> int | None:
    """
    Weighted average landed cost from costed inbound rows.

    Corrections carry the same unit cost as the row they correct, so a receipt
    reduced to zero drops out of the average entirely.
    """
    q = db.session.query(
        func.coalesce(func.sum(InventoryLedgerEntry.quantity_delta), 0).label("units"),
        func.coalesce(
            func.sum(InventoryLedgerEntry.quantity_delta * InventoryLedgerEntry.unit_cost_cents),
            0,
        ).label("total_cost"),
    ).filter(
        InventoryLedgerEntry.product_id == product_id,
        InventoryLedgerEntry.entry_type.in_(COSTED_ENTRY_TYPES),
        InventoryLedgerEntry.unit_cost_cents.isnot(None),
    )
    if as_of is not None:
        q = q.filter(InventoryLedgerEntry.occurred_at <= as_of)

    row = q.one()
    units = int(row.units or 0)
    total_cost = int(row.total_cost or 0)
    if units <= 0:
        return None

    # Half-up rounding in integer arithmetic
    return (total_cost + units // 2) // units


def append_entry(
    *,
    product_id: int,
    entry_type: str,
    quantity_delta: int,
    reference_type: str | None = None,
    reference_id: int | None = None,
    unit_cost_cents: int | None = None,
    note: str | None = None,
    created_by: int | None = None,
    occurred_at: datetime | None = None,
    allow_negative: bool = False,
) -> InventoryLedgerEntry:
    """
    Append one ledger row. Caller owns the transaction.

    Raises InsufficientStockError when a negative delta would take on-hand
    below zero (unless allow_negative, used only for exact reversals).
    """
    if entry_type not in ENTRY_TYPES:
        raise ValueError(f"Unknown ledger entry type: {entry_type}")
    if quantity_delta == 0:
        raise ValueError("quantity_delta must be non-zero")

    lock_product(product_id)
    before = get_quantity_on_hand(product_id)
    after = before + quantity_delta
    if after < 0 and not allow_negative:
        raise InsufficientStockError(product_id, before, -quantity_delta)

    entry = InventoryLedgerEntry(
        product_id=product_id,
        entry_type=entry_type,
        quantity_delta=quantity_delta,
        unit_cost_cents=unit_cost_cents,
        quantity_before=before,
        quantity_after=after,
        reference_type=reference_type,
        reference_id=reference_id,
        note=note,
        created_by=created_by,
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def list_entries(
    *,
    product_id: int | None = None,
    entry_type: str | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[InventoryLedgerEntry], int]:
    q = db.session.query(InventoryLedgerEntry)
    if product_id is not None:
        q = q.filter(InventoryLedgerEntry.product_id == product_id)
    if entry_type:
        q = q.filter(InventoryLedgerEntry.entry_type == entry_type)
    if reference_type:
        q = q.filter(InventoryLedgerEntry.reference_type == reference_type)
    if reference_id is not None:
        q = q.filter(InventoryLedgerEntry.reference_id == reference_id)
    if start is not None:
        q = q.filter(InventoryLedgerEntry.occurred_at >= start)
    if end is not None:
        q = q.filter(InventoryLedgerEntry.occurred_at <= end)

    total = q.count()
    limit = min(max(limit, 1), 500)
    rows = (
        q.order_by(InventoryLedgerEntry.occurred_at.desc(), InventoryLedgerEntry.id.desc())
        .offset(max(offset, 0))
        .limit(limit)
        .all()
    )
    return rows, total


def net_delta_for_reference(product_id: int, reference_type: str, reference_id: int) -> int:
    """Net quantity a referenced document has put into (or taken out of) stock for a product."""
    q = db.session.query(
        func.coalesce(func.sum(InventoryLedgerEntry.quantity_delta), 0)
    ).filter(
        InventoryLedgerEntry.product_id == product_id,
        InventoryLedgerEntry.reference_type == reference_type,
        InventoryLedgerEntry.reference_id == reference_id,
    )
    return int(q.scalar() or 0)
