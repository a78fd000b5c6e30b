# backend/wholesale_erp/services/receiving_service.py
"""
Receiving reports: goods arriving against a purchase order.

WHY: A receiving report is the only way stock enters through purchasing. Every
mutation touches several entities (report, items, additional costs, ledger,
product prices, PO status) and must land as one unit of work.

LIFECYCLE:
1. create: RECEIVING ledger rows, landed cost per line, selling prices published
2. update: children reconciled by id, RECEIVING_CORRECTION rows for the net change
3. delete: quantities reversed, children removed; blocked once the PO is completed

Landed cost (distribution_price_cents):
- net additional cost = sum(costs) - sum(deductions)
- allocated to lines in proportion to line value (quantity * cost price),
  or by quantity when every cost price is zero
- per unit = cost price + line share / quantity, rounded half-up
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import func

from wholesale_erp.extensions import db
from wholesale_erp.models import AdditionalCost, AdditionalCostType, ReceivedItem, ReceivingReport
from wholesale_erp.services.concurrency import lock_for_update, run_with_retry
from wholesale_erp.services.document_service import next_document_number
from wholesale_erp.services.ledger_service import (
    ENTRY_RECEIVING,
    ENTRY_RECEIVING_CORRECTION,
    append_entry,
    net_delta_for_reference,
)
from wholesale_erp.services.product_price_service import apply_received_prices
from wholesale_erp.services.purchase_order_service import (
    PO_STATUS_CANCELLED,
    PO_STATUS_COMPLETED,
    get_purchase_order,
    recompute_status,
)
from wholesale_erp.time_utils import utcnow
from wholesale_erp.validation import (
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

PAYMENT_UNPAID = "unpaid"
PAYMENT_PARTIAL = "partial"
PAYMENT_PAID = "paid"
PAYMENT_STATUSES = (PAYMENT_UNPAID, PAYMENT_PARTIAL, PAYMENT_PAID)

REFERENCE_TYPE = "receiving_report"

SELLING_PRICE_FIELDS = ("regular_price_cents", "wholesale_price_cents", "walk_in_price_cents")


def _round_div(numerator: int, denominator: int) -> int:
    """Integer division rounded half-up (away from zero for negatives)."""
    if numerator < 0:
        return -((-numerator + denominator // 2) // denominator)
    return (numerator + denominator // 2) // denominator


def allocate_landed_costs(lines: list[dict], additional_costs: list[dict]) -> list[int]:
    """
    Return distribution_price_cents for each line.

    lines: [{"received_quantity", "cost_price_cents"}]
    additional_costs: [{"amount_cents", "is_deduction"}]
    """
    net = sum(-c["amount_cents"] if c.get("is_deduction") else c["amount_cents"] for c in additional_costs)
    if not lines:
        return []

    values = [line["received_quantity"] * line["cost_price_cents"] for line in lines]
    weights = values if sum(values) > 0 else [line["received_quantity"] for line in lines]
    total_weight = sum(weights)

    prices = []
    for line, weight in zip(lines, weights):
        share = _round_div(net * weight, total_weight) if total_weight else 0
        unit = line["cost_price_cents"] + _round_div(share, line["received_quantity"])
        prices.append(max(unit, 0))
    return prices


def _get_report(report_id: int, *, lock: bool = False) -> ReceivingReport:
    query = db.session.query(ReceivingReport).filter_by(id=report_id)
    if lock:
        query = lock_for_update(query)
    report = query.first()
    if report is None:
        raise NotFoundError(f"Receiving report {report_id} not found")
    return report


def get_receiving_report(report_id: int) -> ReceivingReport:
    return _get_report(report_id)


def _validate_items(items, allowed_product_ids: set[int]) -> list[dict]:
    errors = FieldErrors()
    if not isinstance(items, list) or not items:
        errors.add("items", "at least one item is required")
        errors.raise_if_any()

    cleaned = []
    seen = set()
    for index, raw in enumerate(items):
        item_errors = FieldErrors(f"items[{index}].")
        raw = raw if isinstance(raw, dict) else {}
        clean = {
            "id": coerce_int(raw.get("id"), "id", item_errors, minimum=1, required=False),
            "product_id": coerce_int(raw.get("product_id"), "product_id", item_errors, minimum=1),
            "received_quantity": coerce_int(raw.get("received_quantity"), "received_quantity", item_errors, minimum=1),
            "cost_price_cents": coerce_cents(raw.get("cost_price_cents"), "cost_price_cents", item_errors),
        }
        for field in SELLING_PRICE_FIELDS:
            clean[field] = coerce_cents(raw.get(field), field, item_errors, required=False)
        if clean["product_id"] is not None and clean["product_id"] not in allowed_product_ids:
            item_errors.add("product_id", "product is not on this purchase order")
        if clean["product_id"] is not None and clean["product_id"] in seen:
            item_errors.add("product_id", "duplicate product on receiving report")
        seen.add(clean["product_id"])
        errors.merge(item_errors)
        cleaned.append(clean)
    errors.raise_if_any()
    return cleaned


def _validate_costs(costs) -> list[dict]:
    if costs is None:
        return []
    errors = FieldErrors()
    if not isinstance(costs, list):
        errors.add("additional_costs", "must be a list")
        errors.raise_if_any()

    cleaned = []
    for index, raw in enumerate(costs):
        cost_errors = FieldErrors(f"additional_costs[{index}].")
        raw = raw if isinstance(raw, dict) else {}
        clean = {
            "id": coerce_int(raw.get("id"), "id", cost_errors, minimum=1, required=False),
            "cost_type_id": coerce_int(raw.get("cost_type_id"), "cost_type_id", cost_errors, minimum=1),
            "amount_cents": coerce_cents(raw.get("amount_cents"), "amount_cents", cost_errors),
            "description": raw.get("description"),
            "is_deduction": bool(raw.get("is_deduction", False)),
        }
        errors.merge(cost_errors)
        cleaned.append(clean)
    errors.raise_if_any()

    type_ids = {c["cost_type_id"] for c in cleaned}
    if type_ids:
        found = {
            tid for (tid,) in db.session.query(AdditionalCostType.id)
            .filter(AdditionalCostType.id.in_(type_ids))
            .all()
        }
        missing = sorted(type_ids - found)
        if missing:
            raise NotFoundError(f"Cost types not found: {', '.join(str(t) for t in missing)}")
    return cleaned


def _apply_landed_costs(report: ReceivingReport) -> None:
    lines = [
        {"received_quantity": item.received_quantity, "cost_price_cents": item.cost_price_cents}
        for item in report.items
    ]
    costs = [
        {"amount_cents": cost.amount_cents, "is_deduction": cost.is_deduction}
        for cost in report.additional_costs
    ]
    for item, price in zip(report.items, allocate_landed_costs(lines, costs)):
        item.distribution_price_cents = price


def _quantities_by_product(report: ReceivingReport) -> dict[int, int]:
    totals: dict[int, int] = {}
    for item in report.items:
        totals[item.product_id] = totals.get(item.product_id, 0) + item.received_quantity
    return totals


def _unit_cost_for(report: ReceivingReport, product_id: int) -> int | None:
    for item in report.items:
        if item.product_id == product_id:
            return item.distribution_price_cents
    return None


def _sync_ledger(report: ReceivingReport, product_ids: set[int], *, entry_type: str, created_by: int | None) -> None:
    """Bring the report's ledger contribution per product in line with its current items."""
    wanted = _quantities_by_product(report)
    for product_id in sorted(product_ids):
        current = net_delta_for_reference(product_id, REFERENCE_TYPE, report.id)
        delta = wanted.get(product_id, 0) - current
        if delta == 0:
            continue
        append_entry(
            product_id=product_id,
            entry_type=entry_type,
            quantity_delta=delta,
            unit_cost_cents=_unit_cost_for(report, product_id),
            reference_type=REFERENCE_TYPE,
            reference_id=report.id,
            note=f"Batch {report.batch_number}",
            created_by=created_by,
            occurred_at=report.received_date if entry_type == ENTRY_RECEIVING else None,
        )


def create_receiving_report(
    *,
    purchase_order_id: int,
    data: dict,
    received_by: int | None = None,
) -> ReceivingReport:
    """
    Receive goods against a purchase order.

    Raises:
        ConflictError: PO cancelled or already completed
        ValidationError: bad payload, or a product not on the PO
    """
    def _op():
        po = get_purchase_order(purchase_order_id, lock=True)
        if po.status in (PO_STATUS_CANCELLED, PO_STATUS_COMPLETED):
            raise ConflictError(f"Cannot receive against a {po.status} purchase order")

        errors = FieldErrors()
        received_date = coerce_datetime(data.get("received_date"), "received_date", errors) or utcnow()
        payment_status = coerce_choice(
            data.get("payment_status", PAYMENT_UNPAID), "payment_status", PAYMENT_STATUSES, errors
        )
        errors.raise_if_any()

        items = _validate_items(data.get("items"), {item.product_id for item in po.items})
        costs = _validate_costs(data.get("additional_costs"))

        report = ReceivingReport(
            purchase_order=po,
            batch_number=next_document_number(document_type="RECEIVING_BATCH", at=received_date),
            received_date=received_date,
            received_by=received_by,
            payment_status=payment_status,
            attachment_path=data.get("attachment_path"),
            notes=data.get("notes"),
        )
        for item in items:
            report.items.append(
                ReceivedItem(
                    product_id=item["product_id"],
                    received_quantity=item["received_quantity"],
                    cost_price_cents=item["cost_price_cents"],
                    distribution_price_cents=item["cost_price_cents"],
                    regular_price_cents=item["regular_price_cents"],
                    wholesale_price_cents=item["wholesale_price_cents"],
                    walk_in_price_cents=item["walk_in_price_cents"],
                    sold_quantity=0,
                )
            )
        for cost in costs:
            report.additional_costs.append(
                AdditionalCost(
                    cost_type_id=cost["cost_type_id"],
                    description=cost["description"],
                    amount_cents=cost["amount_cents"],
                    is_deduction=cost["is_deduction"],
                )
            )
        _apply_landed_costs(report)
        db.session.add(report)
        db.session.flush()

        _sync_ledger(
            report,
            {item.product_id for item in report.items},
            entry_type=ENTRY_RECEIVING,
            created_by=received_by,
        )
        for item in report.items:
            apply_received_prices(received_item=item, created_by=received_by)

        recompute_status(po)
        logger.info(
            "Receiving report %s created for PO %s (%s lines)",
            report.batch_number, po.po_number, len(report.items),
        )
        return report

    return run_with_retry(_op)


def _reconcile_items(report: ReceivingReport, items: list[dict]) -> list[ReceivedItem]:
    """Apply the payload to the report's items; returns the rows whose selling prices are new."""
    existing = {item.id: item for item in report.items}
    keep_ids = set()
    repriced = []
    for clean in items:
        item_id = clean["id"]
        if item_id is not None:
            if item_id not in existing:
                raise ValidationError({"items": [f"received item {item_id} does not belong to this report"]})
            row = existing[item_id]
            if clean["received_quantity"] < row.sold_quantity:
                raise ConflictError(
                    f"Received item {row.id} has {row.sold_quantity} units sold; quantity cannot drop below that"
                )
            keep_ids.add(item_id)
            row.product_id = clean["product_id"]
            row.received_quantity = clean["received_quantity"]
            row.cost_price_cents = clean["cost_price_cents"]
            if any(getattr(row, field) != clean[field] for field in SELLING_PRICE_FIELDS):
                repriced.append(row)
            for field in SELLING_PRICE_FIELDS:
                setattr(row, field, clean[field])
        else:
            row = ReceivedItem(
                product_id=clean["product_id"],
                received_quantity=clean["received_quantity"],
                cost_price_cents=clean["cost_price_cents"],
                distribution_price_cents=clean["cost_price_cents"],
                regular_price_cents=clean["regular_price_cents"],
                wholesale_price_cents=clean["wholesale_price_cents"],
                walk_in_price_cents=clean["walk_in_price_cents"],
                sold_quantity=0,
            )
            report.items.append(row)
            repriced.append(row)

    for item_id, row in existing.items():
        if item_id in keep_ids:
            continue
        if row.sold_quantity > 0:
            raise ConflictError(f"Received item {row.id} has sold units and cannot be removed")
        report.items.remove(row)
    return repriced


def _reconcile_costs(report: ReceivingReport, costs: list[dict]) -> None:
    existing = {cost.id: cost for cost in report.additional_costs}
    keep_ids = set()
    for clean in costs:
        cost_id = clean["id"]
        if cost_id is not None:
            if cost_id not in existing:
                raise ValidationError({"additional_costs": [f"additional cost {cost_id} does not belong to this report"]})
            keep_ids.add(cost_id)
            row = existing[cost_id]
            row.cost_type_id = clean["cost_type_id"]
            row.description = clean["description"]
            row.amount_cents = clean["amount_cents"]
            row.is_deduction = clean["is_deduction"]
        else:
            report.additional_costs.append(
                AdditionalCost(
                    cost_type_id=clean["cost_type_id"],
                    description=clean["description"],
                    amount_cents=clean["amount_cents"],
                    is_deduction=clean["is_deduction"],
                )
            )
    for cost_id, row in existing.items():
        if cost_id not in keep_ids:
            report.additional_costs.remove(row)


def update_receiving_report(*, report_id: int, data: dict, updated_by: int | None = None) -> ReceivingReport:
    """
    Update header fields and reconcile children by id.

    Items and additional costs in the payload with an id update the matching row,
    rows without an id are inserted, and existing rows missing from the payload
    are deleted. The ledger receives one RECEIVING_CORRECTION per product whose
    net quantity changed.
    """
    def _op():
        report = _get_report(report_id)
        po = get_purchase_order(report.purchase_order_id, lock=True)
        report = _get_report(report_id, lock=True)
        if po.status == PO_STATUS_CANCELLED:
            raise ConflictError("Cannot update a receiving report of a cancelled purchase order")

        errors = FieldErrors()
        if "received_date" in data:
            received_date = coerce_datetime(data.get("received_date"), "received_date", errors, required=True)
        if "payment_status" in data:
            payment_status = coerce_choice(data.get("payment_status"), "payment_status", PAYMENT_STATUSES, errors)
        errors.raise_if_any()

        if "received_date" in data:
            report.received_date = received_date
        if "payment_status" in data:
            report.payment_status = payment_status
        for field in ("notes", "attachment_path"):
            if field in data:
                setattr(report, field, data.get(field))

        touched = {item.product_id for item in report.items}
        repriced = []
        if "items" in data:
            items = _validate_items(data.get("items"), {item.product_id for item in po.items})
            repriced = _reconcile_items(report, items)
        if "additional_costs" in data:
            _reconcile_costs(report, _validate_costs(data.get("additional_costs")))

        _apply_landed_costs(report)
        db.session.flush()

        touched |= {item.product_id for item in report.items}
        _sync_ledger(report, touched, entry_type=ENTRY_RECEIVING_CORRECTION, created_by=updated_by)
        # Only lines whose selling prices changed publish them
        for item in repriced:
            apply_received_prices(received_item=item, created_by=updated_by)

        recompute_status(po)
        logger.info("Receiving report %s updated", report.batch_number)
        return report

    return run_with_retry(_op)


def delete_receiving_report(*, report_id: int, deleted_by: int | None = None) -> None:
    """
    Delete a receiving report and reverse its stock.

    Raises ConflictError (nothing changed) when the PO is completed, or when
    received stock has already left the warehouse.
    """
    def _op():
        report = _get_report(report_id)
        po = get_purchase_order(report.purchase_order_id, lock=True)
        report = _get_report(report_id, lock=True)
        if po.status == PO_STATUS_COMPLETED:
            raise ConflictError("Cannot delete a receiving report of a completed purchase order")
        if any(item.sold_quantity > 0 for item in report.items):
            raise ConflictError("Cannot delete a receiving report with sold units")

        batch_number = report.batch_number
        product_ids = {item.product_id for item in report.items}
        for product_id in sorted(product_ids):
            net = net_delta_for_reference(product_id, REFERENCE_TYPE, report.id)
            if net == 0:
                continue
            append_entry(
                product_id=product_id,
                entry_type=ENTRY_RECEIVING_CORRECTION,
                quantity_delta=-net,
                unit_cost_cents=_unit_cost_for(report, product_id),
                reference_type=REFERENCE_TYPE,
                reference_id=report.id,
                note=f"Batch {batch_number} deleted",
                created_by=deleted_by,
            )

        db.session.delete(report)
        db.session.flush()
        db.session.expire(po, ["receiving_reports"])

        recompute_status(po)
        logger.info("Receiving report %s deleted from PO %s", batch_number, po.po_number)

    return run_with_retry(_op)


def update_payment_status(*, report_id: int, payment_status: str) -> ReceivingReport:
    def _op():
        errors = FieldErrors()
        status = coerce_choice(payment_status, "payment_status", PAYMENT_STATUSES, errors)
        errors.raise_if_any()
        report = _get_report(report_id, lock=True)
        report.payment_status = status
        db.session.flush()
        return report

    return run_with_retry(_op)


def list_receiving_reports(
    *,
    purchase_order_id: int | None = None,
    payment_status: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[ReceivingReport], int]:
    query = db.session.query(ReceivingReport)
    if purchase_order_id is not None:
        query = query.filter(ReceivingReport.purchase_order_id == purchase_order_id)
    if payment_status:
        query = query.filter(ReceivingReport.payment_status == payment_status)
    if start is not None:
        query = query.filter(ReceivingReport.received_date >= start)
    if end is not None:
        query = query.filter(ReceivingReport.received_date < end)
    total = query.count()
    rows = (
        query.order_by(ReceivingReport.received_date.desc(), ReceivingReport.id.desc())
        .offset(max(offset, 0))
        .limit(min(max(limit, 1), 500))
        .all()
    )
    return rows, total


def receiving_stats(*, now: datetime | None = None) -> dict:
    now = now or utcnow()
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    month_start = day_start.replace(day=1)

    by_status = dict(
        db.session.query(ReceivingReport.payment_status, func.count(ReceivingReport.id))
        .group_by(ReceivingReport.payment_status)
        .all()
    )
    total_value = (
        db.session.query(
            func.coalesce(func.sum(ReceivedItem.received_quantity * ReceivedItem.distribution_price_cents), 0)
        ).scalar()
    )
    today = (
        db.session.query(func.count(ReceivingReport.id))
        .filter(ReceivingReport.received_date >= day_start, ReceivingReport.received_date < day_start + timedelta(days=1))
        .scalar()
    )
    this_month = (
        db.session.query(func.count(ReceivingReport.id))
        .filter(ReceivingReport.received_date >= month_start)
        .scalar()
    )
    return {
        "total_reports": int(sum(by_status.values())),
        "paid_reports": int(by_status.get(PAYMENT_PAID, 0)),
        "partial_reports": int(by_status.get(PAYMENT_PARTIAL, 0)),
        "unpaid_reports": int(by_status.get(PAYMENT_UNPAID, 0)),
        "total_received_value_cents": int(total_value or 0),
        "reports_today": int(today or 0),
        "reports_this_month": int(this_month or 0),
    }
