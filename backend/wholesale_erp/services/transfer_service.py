# Overview: Stock transfers out of main stock; cancellation reverses exactly what creation applied.

from __future__ import annotations

import logging

from ..extensions import db
from ..models import Transfer, TransferItem, Warehouse
from ..time_utils import utcnow
from ..validation import ConflictError, FieldErrors, NotFoundError, ValidationError, coerce_int
from .concurrency import lock_for_update, run_with_retry
from .document_service import next_document_number
from .ledger_service import (
    ENTRY_TRANSFER_CANCEL,
    ENTRY_TRANSFER_OUT,
    append_entry,
    get_weighted_average_cost_cents,
    lock_product,
)

logger = logging.getLogger(__name__)

TRANSFER_STATUS_IN_TRANSIT = "in_transit"
TRANSFER_STATUS_COMPLETED = "completed"
TRANSFER_STATUS_CANCELLED = "cancelled"
TRANSFER_STATUSES = (TRANSFER_STATUS_IN_TRANSIT, TRANSFER_STATUS_COMPLETED, TRANSFER_STATUS_CANCELLED)

REFERENCE_TYPE = "transfer"


def _get_transfer(transfer_id: int, *, lock: bool = False) -> Transfer:
    query = db.session.query(Transfer).filter_by(id=transfer_id)
    if lock:
        query = lock_for_update(query)
    transfer = query.first()
    if transfer is None:
        raise NotFoundError(f"Transfer {transfer_id} not found")
    return transfer


def get_transfer(transfer_id: int) -> Transfer:
    return _get_transfer(transfer_id)


def _get_warehouse(warehouse_id: int) -> Warehouse:
    warehouse = db.session.query(Warehouse).filter(
        Warehouse.id == warehouse_id, Warehouse.deleted_at.is_(None)
    ).first()
    if warehouse is None:
        raise NotFoundError(f"Warehouse {warehouse_id} not found")
    return warehouse


def create_transfer(*, data: dict, created_by: int | None = None) -> Transfer:
    """
    Move stock out of main stock (status: in_transit).

    Each item's ledger delta is stored on the item as applied_delta; unit cost is
    the product's weighted average cost at the time of transfer.
    """
    def _op():
        errors = FieldErrors()
        to_id = coerce_int(data.get("to_warehouse_id"), "to_warehouse_id", errors, minimum=1)
        from_id = coerce_int(data.get("from_warehouse_id"), "from_warehouse_id", errors, minimum=1, required=False)
        items = data.get("items")
        if not isinstance(items, list) or not items:
            errors.add("items", "at least one item is required")
        errors.raise_if_any()
        if from_id is not None and from_id == to_id:
            raise ValidationError({"to_warehouse_id": ["must differ from from_warehouse_id"]})

        cleaned = []
        seen = set()
        for index, raw in enumerate(items):
            item_errors = FieldErrors(f"items[{index}].")
            raw = raw if isinstance(raw, dict) else {}
            product_id = coerce_int(raw.get("product_id"), "product_id", item_errors, minimum=1)
            quantity = coerce_int(raw.get("quantity"), "quantity", item_errors, minimum=1)
            if product_id is not None and product_id in seen:
                item_errors.add("product_id", "duplicate product on transfer")
            seen.add(product_id)
            errors.merge(item_errors)
            cleaned.append((product_id, quantity))
        errors.raise_if_any()

        _get_warehouse(to_id)
        if from_id is not None:
            _get_warehouse(from_id)

        transfer = Transfer(
            transfer_number=next_document_number(document_type="TRANSFER"),
            from_warehouse_id=from_id,
            to_warehouse_id=to_id,
            status=TRANSFER_STATUS_IN_TRANSIT,
            notes=data.get("notes"),
            created_by=created_by,
        )
        db.session.add(transfer)
        db.session.flush()

        total = 0
        # Lock in product id order so concurrent transfers cannot deadlock
        for product_id, quantity in sorted(cleaned):
            lock_product(product_id)
            unit_cost = get_weighted_average_cost_cents(product_id) or 0
            entry = append_entry(
                product_id=product_id,
                entry_type=ENTRY_TRANSFER_OUT,
                quantity_delta=-quantity,
                unit_cost_cents=unit_cost,
                reference_type=REFERENCE_TYPE,
                reference_id=transfer.id,
                note=f"Transfer {transfer.transfer_number}",
                created_by=created_by,
            )
            transfer.items.append(
                TransferItem(
                    product_id=product_id,
                    quantity=quantity,
                    unit_cost_cents=unit_cost,
                    total_cost_cents=unit_cost * quantity,
                    applied_delta=entry.quantity_delta,
                    ledger_entry_id=entry.id,
                )
            )
            total += unit_cost * quantity

        transfer.total_cost_cents = total
        db.session.flush()
        logger.info("Transfer %s created with %s items", transfer.transfer_number, len(cleaned))
        return transfer

    return run_with_retry(_op)


def complete_transfer(*, transfer_id: int, completed_by: int | None = None) -> Transfer:
    """Mark delivered. Stock already left main stock at creation."""
    def _op():
        transfer = _get_transfer(transfer_id, lock=True)
        if transfer.status != TRANSFER_STATUS_IN_TRANSIT:
            raise ConflictError(f"Cannot complete transfer in {transfer.status} status")
        transfer.status = TRANSFER_STATUS_COMPLETED
        transfer.completed_by = completed_by
        transfer.completed_at = utcnow()
        db.session.flush()
        return transfer

    return run_with_retry(_op)


def cancel_transfer(*, transfer_id: int, cancelled_by: int | None = None) -> Transfer:
    """Reverse exactly the recorded deltas and mark cancelled."""
    def _op():
        transfer = _get_transfer(transfer_id, lock=True)
        if transfer.status != TRANSFER_STATUS_IN_TRANSIT:
            raise ConflictError(f"Cannot cancel transfer in {transfer.status} status")

        for item in sorted(transfer.items, key=lambda i: i.product_id):
            if item.applied_delta == 0:
                continue
            append_entry(
                product_id=item.product_id,
                entry_type=ENTRY_TRANSFER_CANCEL,
                quantity_delta=-item.applied_delta,
                unit_cost_cents=item.unit_cost_cents,
                reference_type=REFERENCE_TYPE,
                reference_id=transfer.id,
                note=f"Transfer {transfer.transfer_number} cancelled",
                created_by=cancelled_by,
                allow_negative=True,
            )

        transfer.status = TRANSFER_STATUS_CANCELLED
        transfer.cancelled_by = cancelled_by
        transfer.cancelled_at = utcnow()
        db.session.flush()
        logger.info("Transfer %s cancelled", transfer.transfer_number)
        return transfer

    return run_with_retry(_op)


def list_transfers(
    *,
    status: str | None = None,
    to_warehouse_id: int | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[Transfer], int]:
    query = db.session.query(Transfer)
    if status:
        query = query.filter(Transfer.status == status)
    if to_warehouse_id is not None:
        query = query.filter(Transfer.to_warehouse_id == to_warehouse_id)
    total = query.count()
    rows = (
        query.order_by(Transfer.id.desc())
        .offset(max(offset, 0))
        .limit(min(max(limit, 1), 500))
        .all()
    )
    return rows, total
