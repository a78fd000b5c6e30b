# backend/wholesale_erp/services/sales_service.py
"""
Sales, payments and discount approval.

WHY: A sale is a pricing snapshot. Unit price, price source and unit cost are
captured on each line at creation and never recomputed, so later price changes
cannot rewrite history.

LIFECYCLE:
1. completed: created, stock decremented (SALE ledger rows)
2. cancelled: stock restored (SALE_CANCEL rows); blocked once returns exist
3. returned: every unit has come back through approved returns

Money:
- line total = quantity * unit price - line discount
- discount = subtotal * discount_percent / 100 (half-up); needs approval when > 0
- total = subtotal - discount + delivery fee + cutting charges
- profit = total - cogs
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from wholesale_erp.extensions import db
from wholesale_erp.models import Customer, ReceivedItem, Sale, SaleItem, SalePayment
from wholesale_erp.services.concurrency import lock_for_update, run_with_retry
from wholesale_erp.services.document_service import next_document_number
from wholesale_erp.services.ledger_service import (
    ENTRY_SALE,
    ENTRY_SALE_CANCEL,
    append_entry,
    get_weighted_average_cost_cents,
    lock_product,
)
from wholesale_erp.services.price_resolver import resolve_line_price
from wholesale_erp.services.reporting_service import refresh_summaries_for_sale
from wholesale_erp.time_utils import utcnow
from wholesale_erp.validation import (
    PRICE_TYPE_WALK_IN,
    PRICE_TYPES,
    ConflictError,
    FieldErrors,
    NotFoundError,
    ValidationError,
    coerce_cents,
    coerce_choice,
    coerce_datetime,
    coerce_int,
)

logger = logging.getLogger(__name__)

SALE_STATUS_COMPLETED = "completed"
SALE_STATUS_CANCELLED = "cancelled"
SALE_STATUS_RETURNED = "returned"

PAYMENT_UNPAID = "unpaid"
PAYMENT_PARTIAL = "partial"
PAYMENT_PAID = "paid"

DELIVERY_PENDING = "pending"
DELIVERY_DELIVERED = "delivered"
DELIVERY_STATUSES = (DELIVERY_PENDING, DELIVERY_DELIVERED)

PAYMENT_METHODS = ("cash", "bank_transfer", "check", "card", "credit")

REFERENCE_TYPE = "sale"


def _get_sale(sale_id: int, *, lock: bool = False) -> Sale:
    query = db.session.query(Sale).filter_by(id=sale_id)
    if lock:
        query = lock_for_update(query)
    sale = query.first()
    if sale is None:
        raise NotFoundError(f"Sale {sale_id} not found")
    return sale


def get_sale(sale_id: int) -> Sale:
    return _get_sale(sale_id)


def _parse_percent(value, errors: FieldErrors) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        percent = Decimal(str(value))
    except (InvalidOperation, ValueError):
        errors.add("discount_percent", "must be a number")
        return Decimal("0")
    if not percent.is_finite() or percent < 0 or percent > 100:
        errors.add("discount_percent", "must be between 0 and 100")
        return Decimal("0")
    return percent.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def discount_for(subtotal_cents: int, percent: Decimal) -> int:
    amount = Decimal(subtotal_cents) * percent / Decimal(100)
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def payment_status_for(total_cents: int, paid_cents: int) -> str:
    if paid_cents <= 0:
        return PAYMENT_PAID if total_cents <= 0 else PAYMENT_UNPAID
    if paid_cents >= total_cents:
        return PAYMENT_PAID
    return PAYMENT_PARTIAL


def _recompute_payments(sale: Sale) -> None:
    sale.amount_paid_cents = sum(p.amount_cents for p in sale.payments if p.voided_at is None)
    sale.payment_status = payment_status_for(sale.total_cents, sale.amount_paid_cents)


def allocate_batches(product_id: int, quantity: int) -> int:
    """Mark received units as sold, oldest batch first. Returns the units allocated."""
    remaining = quantity
    rows = (
        db.session.query(ReceivedItem)
        .filter(ReceivedItem.product_id == product_id, ReceivedItem.sold_quantity < ReceivedItem.received_quantity)
        .order_by(ReceivedItem.id)
        .all()
    )
    for row in rows:
        if remaining <= 0:
            break
        take = min(row.received_quantity - row.sold_quantity, remaining)
        row.sold_quantity += take
        remaining -= take
    return quantity - remaining


def release_batches(product_id: int, quantity: int) -> int:
    """Undo allocate_batches, newest batch first. Returns the units released."""
    remaining = quantity
    rows = (
        db.session.query(ReceivedItem)
        .filter(ReceivedItem.product_id == product_id, ReceivedItem.sold_quantity > 0)
        .order_by(ReceivedItem.id.desc())
        .all()
    )
    for row in rows:
        if remaining <= 0:
            break
        give = min(row.sold_quantity, remaining)
        row.sold_quantity -= give
        remaining -= give
    return quantity - remaining


def _validate_lines(items, default_price_type: str) -> list[dict]:
    errors = FieldErrors()
    if not isinstance(items, list) or not items:
        errors.add("items", "at least one item is required")
        errors.raise_if_any()

    cleaned = []
    for index, raw in enumerate(items):
        line_errors = FieldErrors(f"items[{index}].")
        raw = raw if isinstance(raw, dict) else {}
        cleaned.append({
            "product_id": coerce_int(raw.get("product_id"), "product_id", line_errors, minimum=1),
            "quantity": coerce_int(raw.get("quantity"), "quantity", line_errors, minimum=1),
            "price_type": coerce_choice(
                raw.get("price_type") or default_price_type, "price_type", PRICE_TYPES, line_errors
            ),
            "discount_cents": coerce_cents(raw.get("discount_cents"), "discount_cents", line_errors, required=False) or 0,
        })
        errors.merge(line_errors)
    errors.raise_if_any()
    return cleaned


def create_sale(*, data: dict, created_by: int | None = None) -> Sale:
    """
    Price, cost and book a sale.

    Raises:
        ValidationError: bad payload
        NotFoundError: customer/product missing, or no price configured
        InsufficientStockError: any line short of stock (nothing is written)
    """
    def _op():
        errors = FieldErrors()
        customer_id = coerce_int(data.get("customer_id"), "customer_id", errors, minimum=1, required=False)
        order_date = coerce_datetime(data.get("order_date"), "order_date", errors) or utcnow()
        delivery_fee = coerce_cents(data.get("delivery_fee_cents"), "delivery_fee_cents", errors, required=False) or 0
        cutting = coerce_cents(data.get("cutting_charges_cents"), "cutting_charges_cents", errors, required=False) or 0
        received = coerce_cents(data.get("amount_received_cents"), "amount_received_cents", errors, required=False) or 0
        percent = _parse_percent(data.get("discount_percent"), errors)
        payment_method = coerce_choice(
            data.get("payment_method"), "payment_method", PAYMENT_METHODS, errors, required=False
        )
        delivery_status = coerce_choice(
            data.get("delivery_status", DELIVERY_PENDING), "delivery_status", DELIVERY_STATUSES, errors
        )
        errors.raise_if_any()

        customer = None
        if customer_id is not None:
            customer = db.session.query(Customer).filter(
                Customer.id == customer_id, Customer.deleted_at.is_(None)
            ).first()
            if customer is None:
                raise NotFoundError(f"Customer {customer_id} not found")
        customer_type = customer.customer_type if customer is not None else PRICE_TYPE_WALK_IN
        if data.get("customer_type"):
            customer_type = coerce_choice(data.get("customer_type"), "customer_type", PRICE_TYPES, errors)
            errors.raise_if_any()

        lines = _validate_lines(data.get("items"), customer_type)

        sale = Sale(
            invoice_number=next_document_number(document_type="INVOICE", at=order_date),
            customer_id=customer_id,
            customer_type=customer_type,
            order_date=order_date,
            status=SALE_STATUS_COMPLETED,
            payment_method=payment_method,
            delivery_status=delivery_status,
            discount_percent=percent,
            delivery_fee_cents=delivery_fee,
            cutting_charges_cents=cutting,
            notes=data.get("notes"),
            created_by=created_by,
        )
        db.session.add(sale)
        db.session.flush()

        # Lock products in id order so concurrent sales cannot deadlock
        for product_id in sorted({line["product_id"] for line in lines}):
            lock_product(product_id)

        subtotal = 0
        cogs = 0
        for index, line in enumerate(lines):
            resolution = resolve_line_price(
                line["product_id"], line["quantity"], line["price_type"], as_of=order_date, customer_id=customer_id
            )
            gross = resolution.price_cents * line["quantity"]
            if line["discount_cents"] > gross:
                raise ValidationError({f"items[{index}].discount_cents": ["cannot exceed the line amount"]})
            unit_cost = get_weighted_average_cost_cents(line["product_id"]) or 0

            append_entry(
                product_id=line["product_id"],
                entry_type=ENTRY_SALE,
                quantity_delta=-line["quantity"],
                unit_cost_cents=unit_cost,
                reference_type=REFERENCE_TYPE,
                reference_id=sale.id,
                note=f"Invoice {sale.invoice_number}",
                created_by=created_by,
            )
            allocate_batches(line["product_id"], line["quantity"])

            item = SaleItem(
                product_id=line["product_id"],
                quantity=line["quantity"],
                returned_quantity=0,
                price_type=resolution.price_type,
                unit_price_cents=resolution.price_cents,
                price_source=resolution.source,
                price_reference_id=resolution.reference_id,
                discount_cents=line["discount_cents"],
                line_total_cents=gross - line["discount_cents"],
                unit_cost_cents=unit_cost,
                cogs_cents=unit_cost * line["quantity"],
            )
            sale.items.append(item)
            subtotal += item.line_total_cents
            cogs += item.cogs_cents

        sale.subtotal_cents = subtotal
        sale.discount_cents = discount_for(subtotal, percent)
        sale.is_discount_approved = sale.discount_cents == 0
        sale.total_cents = subtotal - sale.discount_cents + delivery_fee + cutting
        sale.cogs_cents = cogs
        sale.profit_cents = sale.total_cents - cogs

        if received > 0:
            if received > sale.total_cents:
                raise ValidationError({"amount_received_cents": ["cannot exceed the sale total"]})
            sale.payments.append(
                SalePayment(amount_cents=received, method=payment_method or "cash", received_by=created_by)
            )
        _recompute_payments(sale)
        db.session.flush()

        refresh_summaries_for_sale(sale)
        logger.info("Sale %s created: total=%s cogs=%s", sale.invoice_number, sale.total_cents, sale.cogs_cents)
        return sale

    return run_with_retry(_op)


def approve_discount(*, sale_id: int, approved_by: int | None = None) -> Sale:
    def _op():
        sale = _get_sale(sale_id, lock=True)
        if sale.status == SALE_STATUS_CANCELLED:
            raise ConflictError("Cannot approve a discount on a cancelled sale")
        if sale.discount_cents == 0:
            raise ConflictError(f"Sale {sale.invoice_number} has no discount to approve")
        if sale.is_discount_approved:
            raise ConflictError(f"Discount on sale {sale.invoice_number} is already approved")
        sale.is_discount_approved = True
        sale.approved_by = approved_by
        sale.approved_at = utcnow()
        db.session.flush()
        return sale

    return run_with_retry(_op)


def record_payment(
    *,
    sale_id: int,
    amount_cents,
    method: str = "cash",
    reference: str | None = None,
    received_by: int | None = None,
) -> SalePayment:
    def _op():
        errors = FieldErrors()
        amount = coerce_cents(amount_cents, "amount_cents", errors, minimum=1)
        pay_method = coerce_choice(method, "method", PAYMENT_METHODS, errors)
        errors.raise_if_any()

        sale = _get_sale(sale_id, lock=True)
        if sale.status == SALE_STATUS_CANCELLED:
            raise ConflictError("Cannot record a payment on a cancelled sale")
        if amount > sale.balance_due_cents:
            raise ValidationError({"amount_cents": [f"exceeds balance due ({sale.balance_due_cents})"]})

        payment = SalePayment(amount_cents=amount, method=pay_method, reference=reference, received_by=received_by)
        sale.payments.append(payment)
        _recompute_payments(sale)
        db.session.flush()
        refresh_summaries_for_sale(sale)
        return payment

    return run_with_retry(_op)


def void_payment(*, payment_id: int, voided_by: int | None = None, reason: str | None = None) -> Sale:
    """Void a payment and recompute the sale's payment status under the sale lock."""
    def _op():
        payment = db.session.query(SalePayment).filter_by(id=payment_id).first()
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        sale = _get_sale(payment.sale_id, lock=True)
        if payment.voided_at is not None:
            raise ConflictError(f"Payment {payment.id} is already voided")
        payment.voided_at = utcnow()
        payment.voided_by = voided_by
        payment.void_reason = reason
        _recompute_payments(sale)
        db.session.flush()
        return sale

    return run_with_retry(_op)


def cancel_sale(*, sale_id: int, cancelled_by: int | None = None) -> Sale:
    """Restore stock for every line and mark the sale cancelled."""
    def _op():
        sale = _get_sale(sale_id, lock=True)
        if sale.status != SALE_STATUS_COMPLETED:
            raise ConflictError(f"Cannot cancel sale in {sale.status} status")
        if any(r.status != "REJECTED" for r in sale.returns):
            raise ConflictError(f"Sale {sale.invoice_number} has returns and cannot be cancelled")

        for item in sorted(sale.items, key=lambda i: i.product_id):
            append_entry(
                product_id=item.product_id,
                entry_type=ENTRY_SALE_CANCEL,
                quantity_delta=item.quantity,
                unit_cost_cents=item.unit_cost_cents,
                reference_type=REFERENCE_TYPE,
                reference_id=sale.id,
                note=f"Invoice {sale.invoice_number} cancelled",
                created_by=cancelled_by,
            )
            release_batches(item.product_id, item.quantity)

        sale.status = SALE_STATUS_CANCELLED
        sale.cancelled_at = utcnow()
        sale.cancelled_by = cancelled_by
        db.session.flush()
        refresh_summaries_for_sale(sale)
        logger.info("Sale %s cancelled", sale.invoice_number)
        return sale

    return run_with_retry(_op)


def list_sales(
    *,
    status: str | None = None,
    payment_status: str | None = None,
    customer_id: int | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[Sale], int]:
    query = db.session.query(Sale)
    if status:
        query = query.filter(Sale.status == status)
    if payment_status:
        query = query.filter(Sale.payment_status == payment_status)
    if customer_id is not None:
        query = query.filter(Sale.customer_id == customer_id)
    if start is not None:
        query = query.filter(Sale.order_date >= start)
    if end is not None:
        query = query.filter(Sale.order_date < end)
    total = query.count()
    rows = (
        query.order_by(Sale.order_date.desc(), Sale.id.desc())
        .offset(max(offset, 0))
        .limit(min(max(limit, 1), 500))
        .all()
    )
    return rows, total
