# backend/wholesale_erp/services/purchase_order_service.py
"""
Purchase order service.

LIFECYCLE:
1. pending: created with requested lines, nothing received
2. partially_received: at least one unit received on some line
3. completed: every line received >= requested
4. cancelled: cancelled before completion

Status after receiving is DERIVED by recompute_status(); it runs synchronously
inside the same transaction as the receiving write that triggered it.
"""
from __future__ import annotations

import logging

from sqlalchemy import func

from wholesale_erp.extensions import db
from wholesale_erp.models import (
    Product,
    PurchaseOrder,
    PurchaseOrderItem,
    ReceivedItem,
    ReceivingReport,
    Supplier,
)
from wholesale_erp.services.concurrency import lock_for_update, run_with_retry
from wholesale_erp.services.document_service import next_document_number
from wholesale_erp.time_utils import utcnow
from wholesale_erp.validation import (
    ConflictError,
    FieldErrors,
    NotFoundError,
    coerce_cents,
    coerce_datetime,
    coerce_int,
)

logger = logging.getLogger(__name__)

PO_STATUS_PENDING = "pending"
PO_STATUS_PARTIALLY_RECEIVED = "partially_received"
PO_STATUS_COMPLETED = "completed"
PO_STATUS_CANCELLED = "cancelled"

PO_STATUSES = (PO_STATUS_PENDING, PO_STATUS_PARTIALLY_RECEIVED, PO_STATUS_COMPLETED, PO_STATUS_CANCELLED)

VALID_TRANSITIONS = {
    PO_STATUS_PENDING: {PO_STATUS_PARTIALLY_RECEIVED, PO_STATUS_CANCELLED},
    PO_STATUS_PARTIALLY_RECEIVED: {PO_STATUS_COMPLETED, PO_STATUS_CANCELLED},
    PO_STATUS_COMPLETED: set(),
    PO_STATUS_CANCELLED: set(),
}


def get_purchase_order(purchase_order_id: int, *, lock: bool = False) -> PurchaseOrder:
    query = db.session.query(PurchaseOrder).filter_by(id=purchase_order_id)
    if lock:
        query = lock_for_update(query)
    po = query.first()
    if po is None:
        raise NotFoundError(f"Purchase order {purchase_order_id} not found")
    return po


def _validate_items(items) -> list[dict]:
    errors = FieldErrors()
    if not isinstance(items, list) or not items:
        errors.add("items", "at least one item is required")
        errors.raise_if_any()

    cleaned = []
    seen = set()
    for index, raw in enumerate(items):
        item_errors = FieldErrors(f"items[{index}].")
        raw = raw if isinstance(raw, dict) else {}
        product_id = coerce_int(raw.get("product_id"), "product_id", item_errors, minimum=1)
        quantity = coerce_int(raw.get("requested_quantity"), "requested_quantity", item_errors, minimum=1)
        price = coerce_cents(raw.get("price_cents"), "price_cents", item_errors)
        if product_id is not None and product_id in seen:
            item_errors.add("product_id", "duplicate product on purchase order")
        seen.add(product_id)
        errors.merge(item_errors)
        cleaned.append({"product_id": product_id, "requested_quantity": quantity, "price_cents": price})
    errors.raise_if_any()

    product_ids = [c["product_id"] for c in cleaned]
    found = {
        pid for (pid,) in db.session.query(Product.id)
        .filter(Product.id.in_(product_ids), Product.deleted_at.is_(None))
        .all()
    }
    missing = [pid for pid in product_ids if pid not in found]
    if missing:
        raise NotFoundError(f"Products not found: {', '.join(str(p) for p in missing)}")
    return cleaned


def additional_costs_total_cents(po: PurchaseOrder) -> int:
    total = 0
    for report in po.receiving_reports:
        total += sum(cost.signed_amount_cents for cost in report.additional_costs)
    return total


def recompute_total(po: PurchaseOrder) -> int:
    """Total = requested lines + additional costs booked on its receiving reports."""
    items_total = sum(item.requested_quantity * item.price_cents for item in po.items)
    po.total_cents = items_total + additional_costs_total_cents(po)
    return po.total_cents


def create_purchase_order(*, data: dict, created_by: int | None = None) -> PurchaseOrder:
    def _op():
        errors = FieldErrors()
        supplier_id = coerce_int(data.get("supplier_id"), "supplier_id", errors, minimum=1)
        order_date = coerce_datetime(data.get("order_date"), "order_date", errors) or utcnow()
        expected = coerce_datetime(data.get("expected_delivery_date"), "expected_delivery_date", errors)
        errors.raise_if_any()
        items = _validate_items(data.get("items"))

        supplier = db.session.query(Supplier).filter(
            Supplier.id == supplier_id, Supplier.deleted_at.is_(None)
        ).first()
        if supplier is None:
            raise NotFoundError(f"Supplier {supplier_id} not found")

        po = PurchaseOrder(
            po_number=next_document_number(document_type="PURCHASE_ORDER", at=order_date),
            supplier_id=supplier.id,
            order_date=order_date,
            expected_delivery_date=expected,
            status=PO_STATUS_PENDING,
            notes=data.get("notes"),
            created_by=created_by,
        )
        for item in items:
            po.items.append(
                PurchaseOrderItem(
                    product_id=item["product_id"],
                    requested_quantity=item["requested_quantity"],
                    received_quantity=0,
                    price_cents=item["price_cents"],
                )
            )
        db.session.add(po)
        db.session.flush()
        recompute_total(po)
        db.session.flush()
        logger.info("Purchase order %s created with %s items", po.po_number, len(items))
        return po

    return run_with_retry(_op)


def update_purchase_order(*, purchase_order_id: int, data: dict) -> PurchaseOrder:
    """Header fields may change while pending; lines only while nothing has been received."""
    def _op():
        po = get_purchase_order(purchase_order_id, lock=True)
        if po.status != PO_STATUS_PENDING:
            raise ConflictError(f"Cannot edit purchase order in {po.status} status")

        errors = FieldErrors()
        if "expected_delivery_date" in data:
            po.expected_delivery_date = coerce_datetime(
                data.get("expected_delivery_date"), "expected_delivery_date", errors
            )
        errors.raise_if_any()
        if "notes" in data:
            po.notes = data.get("notes")

        if "items" in data:
            if po.receiving_reports:
                raise ConflictError("Cannot change lines of a purchase order that has receiving reports")
            items = _validate_items(data.get("items"))
            po.items.clear()
            db.session.flush()
            for item in items:
                po.items.append(
                    PurchaseOrderItem(
                        product_id=item["product_id"],
                        requested_quantity=item["requested_quantity"],
                        received_quantity=0,
                        price_cents=item["price_cents"],
                    )
                )
        db.session.flush()
        recompute_total(po)
        db.session.flush()
        return po

    return run_with_retry(_op)


def transition_status(po: PurchaseOrder, new_status: str) -> PurchaseOrder:
    """Apply an explicit status change, enforcing the transition table."""
    if new_status == po.status:
        return po
    if new_status not in VALID_TRANSITIONS.get(po.status, set()):
        raise ConflictError(f"Invalid purchase order transition {po.status} -> {new_status}")
    po.status = new_status
    if new_status == PO_STATUS_COMPLETED:
        po.completed_at = utcnow()
    elif new_status == PO_STATUS_CANCELLED:
        po.cancelled_at = utcnow()
    return po


def cancel_purchase_order(*, purchase_order_id: int) -> PurchaseOrder:
    def _op():
        po = get_purchase_order(purchase_order_id, lock=True)
        if po.status == PO_STATUS_COMPLETED:
            raise ConflictError("Cannot cancel a completed purchase order")
        if po.status == PO_STATUS_CANCELLED:
            raise ConflictError("Purchase order is already cancelled")
        transition_status(po, PO_STATUS_CANCELLED)
        db.session.flush()
        logger.info("Purchase order %s cancelled", po.po_number)
        return po

    return run_with_retry(_op)


def recompute_status(po: PurchaseOrder) -> PurchaseOrder:
    """
    Refresh each line's received_quantity from its receiving reports, then derive status.

    - every line received >= requested -> completed
    - any unit received -> partially_received
    - nothing received -> status unchanged

    Caller holds the PO lock and owns the transaction. Cancelled orders are left alone.
    """
    db.session.flush()
    received = dict(
        db.session.query(ReceivedItem.product_id, func.coalesce(func.sum(ReceivedItem.received_quantity), 0))
        .join(ReceivingReport, ReceivingReport.id == ReceivedItem.receiving_report_id)
        .filter(ReceivingReport.purchase_order_id == po.id)
        .group_by(ReceivedItem.product_id)
        .all()
    )
    for item in po.items:
        item.received_quantity = int(received.get(item.product_id, 0))

    if po.status == PO_STATUS_CANCELLED:
        return po

    total_received = sum(item.received_quantity for item in po.items)
    all_received = bool(po.items) and all(item.received_quantity >= item.requested_quantity for item in po.items)

    if all_received:
        if po.status != PO_STATUS_COMPLETED:
            po.status = PO_STATUS_COMPLETED
            po.completed_at = utcnow()
    elif total_received > 0:
        po.status = PO_STATUS_PARTIALLY_RECEIVED
        po.completed_at = None

    recompute_total(po)
    db.session.flush()
    return po


def list_purchase_orders(
    *,
    status: str | None = None,
    supplier_id: int | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[PurchaseOrder], int]:
    query = db.session.query(PurchaseOrder)
    if status:
        query = query.filter(PurchaseOrder.status == status)
    if supplier_id is not None:
        query = query.filter(PurchaseOrder.supplier_id == supplier_id)
    total = query.count()
    rows = (
        query.order_by(PurchaseOrder.order_date.desc(), PurchaseOrder.id.desc())
        .offset(max(offset, 0))
        .limit(min(max(limit, 1), 500))
        .all()
    )
    return rows, total


def purchase_order_stats() -> dict:
    counts = dict(
        db.session.query(PurchaseOrder.status, func.count(PurchaseOrder.id))
        .group_by(PurchaseOrder.status)
        .all()
    )
    open_value = (
        db.session.query(func.coalesce(func.sum(PurchaseOrder.total_cents), 0))
        .filter(PurchaseOrder.status.in_((PO_STATUS_PENDING, PO_STATUS_PARTIALLY_RECEIVED)))
        .scalar()
    )
    return {
        "total": sum(counts.values()),
        "by_status": {status: int(counts.get(status, 0)) for status in PO_STATUSES},
        "open_value_cents": int(open_value or 0),
    }
