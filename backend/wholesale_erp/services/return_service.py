# backend/wholesale_erp/services/return_service.py
"""
Sale returns (credit memos).

LIFECYCLE:
1. PENDING: created; quantities reserved against the sale lines
2. APPROVED: returned quantities booked on the sale, good-condition units restocked
3. COMPLETED: refund handed over
4. REJECTED: closed from PENDING without any stock or sale change

A line can never be returned beyond what was sold, counting quantities held by
other open (PENDING or APPROVED) returns as well as completed ones.
"""
from __future__ import annotations

import logging

from wholesale_erp.extensions import db
from wholesale_erp.models import Sale, SaleItem, SaleReturn, SaleReturnItem
from wholesale_erp.services.concurrency import lock_for_update, run_with_retry
from wholesale_erp.services.document_service import next_document_number
from wholesale_erp.services.ledger_service import ENTRY_RETURN, append_entry
from wholesale_erp.services.reporting_service import refresh_summaries_for_sale
from wholesale_erp.services.sales_service import (
    SALE_STATUS_COMPLETED,
    SALE_STATUS_RETURNED,
    release_batches,
)
from wholesale_erp.time_utils import utcnow
from wholesale_erp.validation import ConflictError, FieldErrors, NotFoundError, ValidationError, coerce_choice, coerce_int

logger = logging.getLogger(__name__)

RETURN_STATUS_PENDING = "PENDING"
RETURN_STATUS_APPROVED = "APPROVED"
RETURN_STATUS_COMPLETED = "COMPLETED"
RETURN_STATUS_REJECTED = "REJECTED"
OPEN_STATUSES = (RETURN_STATUS_PENDING, RETURN_STATUS_APPROVED, RETURN_STATUS_COMPLETED)

CONDITION_GOOD = "good"
CONDITION_DAMAGED = "damaged"
CONDITION_DEFECTIVE = "defective"
CONDITIONS = (CONDITION_GOOD, CONDITION_DAMAGED, CONDITION_DEFECTIVE)

REFERENCE_TYPE = "sale_return"


def _get_return(return_id: int, *, lock: bool = False) -> SaleReturn:
    query = db.session.query(SaleReturn).filter_by(id=return_id)
    if lock:
        query = lock_for_update(query)
    row = query.first()
    if row is None:
        raise NotFoundError(f"Return {return_id} not found")
    return row


def get_return(return_id: int) -> SaleReturn:
    return _get_return(return_id)


def _lock_sale(sale_id: int) -> Sale:
    sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
    if sale is None:
        raise NotFoundError(f"Sale {sale_id} not found")
    return sale


def _claimed_quantity(sale_item_id: int) -> int:
    """Units of a sale line already claimed by non-rejected returns."""
    rows = (
        db.session.query(SaleReturnItem.quantity)
        .join(SaleReturn, SaleReturn.id == SaleReturnItem.sale_return_id)
        .filter(SaleReturnItem.sale_item_id == sale_item_id, SaleReturn.status.in_(OPEN_STATUSES))
        .all()
    )
    return sum(q for (q,) in rows)


def refund_for(sale: Sale, item: SaleItem, quantity: int) -> int:
    """Refund for `quantity` units: the line's net amount, pro rata, less the sale-level discount share."""
    line_share = item.line_total_cents * quantity
    refund = (line_share + item.quantity // 2) // item.quantity
    if sale.discount_cents and sale.subtotal_cents:
        net = sale.subtotal_cents - sale.discount_cents
        refund = (refund * net + sale.subtotal_cents // 2) // sale.subtotal_cents
    return refund


def create_return(
    *,
    sale_id: int,
    items: list[dict],
    reason: str | None = None,
    created_by: int | None = None,
) -> SaleReturn:
    """
    Open a return against a completed sale.

    Each item: {"sale_item_id": int, "quantity": int >= 1, "condition": good|damaged|defective}
    """
    def _op():
        errors = FieldErrors()
        if not isinstance(items, list) or not items:
            errors.add("items", "at least one item is required")
            errors.raise_if_any()

        cleaned = []
        for index, raw in enumerate(items):
            item_errors = FieldErrors(f"items[{index}].")
            raw = raw if isinstance(raw, dict) else {}
            cleaned.append((
                coerce_int(raw.get("sale_item_id"), "sale_item_id", item_errors, minimum=1),
                coerce_int(raw.get("quantity"), "quantity", item_errors, minimum=1),
                coerce_choice(raw.get("condition", CONDITION_GOOD), "condition", CONDITIONS, item_errors),
            ))
            errors.merge(item_errors)
        errors.raise_if_any()

        sale = _lock_sale(sale_id)
        if sale.status != SALE_STATUS_COMPLETED:
            raise ConflictError(f"Cannot return items of a sale in {sale.status} status")

        lines = {item.id: item for item in sale.items}
        requested: dict[int, int] = {}
        for index, (sale_item_id, quantity, _condition) in enumerate(cleaned):
            if sale_item_id not in lines:
                raise ValidationError({f"items[{index}].sale_item_id": ["does not belong to this sale"]})
            requested[sale_item_id] = requested.get(sale_item_id, 0) + quantity

        for sale_item_id, quantity in requested.items():
            item = lines[sale_item_id]
            available = item.quantity - _claimed_quantity(item.id)
            if quantity > available:
                raise ValidationError(
                    {"items": [f"sale item {item.id}: return quantity {quantity} exceeds returnable {available}"]}
                )

        sale_return = SaleReturn(
            credit_memo_number=next_document_number(document_type="CREDIT_MEMO"),
            sale_id=sale.id,
            status=RETURN_STATUS_PENDING,
            reason=reason,
            created_by=created_by,
        )
        total = 0
        for sale_item_id, quantity, condition in cleaned:
            item = lines[sale_item_id]
            refund = refund_for(sale, item, quantity)
            sale_return.items.append(
                SaleReturnItem(
                    sale_item_id=item.id,
                    product_id=item.product_id,
                    quantity=quantity,
                    condition=condition,
                    refund_cents=refund,
                )
            )
            total += refund
        sale_return.refund_cents = total
        db.session.add(sale_return)
        db.session.flush()
        logger.info("Return %s opened for sale %s", sale_return.credit_memo_number, sale.invoice_number)
        return sale_return

    return run_with_retry(_op)


def approve_return(*, return_id: int, approved_by: int | None = None) -> SaleReturn:
    """Book returned quantities on the sale and restock good-condition units."""
    def _op():
        sale_return = _get_return(return_id)
        sale = _lock_sale(sale_return.sale_id)
        sale_return = _get_return(return_id, lock=True)
        if sale_return.status != RETURN_STATUS_PENDING:
            raise ConflictError(f"Cannot approve return in {sale_return.status} status")

        for row in sorted(sale_return.items, key=lambda r: r.product_id):
            item = row.sale_item
            item.returned_quantity += row.quantity
            if row.condition != CONDITION_GOOD:
                continue
            append_entry(
                product_id=row.product_id,
                entry_type=ENTRY_RETURN,
                quantity_delta=row.quantity,
                unit_cost_cents=item.unit_cost_cents,
                reference_type=REFERENCE_TYPE,
                reference_id=sale_return.id,
                note=f"Credit memo {sale_return.credit_memo_number}",
                created_by=approved_by,
            )
            release_batches(row.product_id, row.quantity)
            row.restocked = True

        if all(item.returned_quantity >= item.quantity for item in sale.items):
            sale.status = SALE_STATUS_RETURNED

        sale_return.status = RETURN_STATUS_APPROVED
        sale_return.approved_by = approved_by
        sale_return.approved_at = utcnow()
        db.session.flush()
        refresh_summaries_for_sale(sale)
        logger.info("Return %s approved", sale_return.credit_memo_number)
        return sale_return

    return run_with_retry(_op)


def reject_return(*, return_id: int, rejected_by: int | None = None, reason: str | None = None) -> SaleReturn:
    def _op():
        sale_return = _get_return(return_id, lock=True)
        if sale_return.status != RETURN_STATUS_PENDING:
            raise ConflictError(f"Cannot reject return in {sale_return.status} status")
        sale_return.status = RETURN_STATUS_REJECTED
        sale_return.rejected_by = rejected_by
        sale_return.rejected_at = utcnow()
        sale_return.rejection_reason = reason
        db.session.flush()
        return sale_return

    return run_with_retry(_op)


def complete_return(*, return_id: int, completed_by: int | None = None) -> SaleReturn:
    def _op():
        sale_return = _get_return(return_id, lock=True)
        if sale_return.status != RETURN_STATUS_APPROVED:
            raise ConflictError(f"Cannot complete return in {sale_return.status} status")
        sale_return.status = RETURN_STATUS_COMPLETED
        sale_return.completed_by = completed_by
        sale_return.completed_at = utcnow()
        db.session.flush()
        return sale_return

    return run_with_retry(_op)


def list_returns(*, sale_id: int | None = None, status: str | None = None) -> list[SaleReturn]:
    query = db.session.query(SaleReturn)
    if sale_id is not None:
        query = query.filter(SaleReturn.sale_id == sale_id)
    if status:
        query = query.filter(SaleReturn.status == status.upper())
    return query.order_by(SaleReturn.id.desc()).all()
