# backend/wholesale_erp/services/count_service.py
"""
Physical inventory count service.

WHY: Regular physical counts keep the ledger honest. A count compares the
system quantity with the counted quantity and posts each variance as a COUNT
ledger row.

LIFECYCLE:
1. PENDING: Count created with its lines (expected quantity snapshotted)
2. POSTED: Variances against the live on-hand posted to the inventory ledger
3. CANCELLED: Cancelled before posting
"""
from __future__ import annotations
from wholesale_erp.extensions import db
from wholesale_erp.models import InventoryCount, InventoryCountLine, Product
from wholesale_erp.services.concurrency import lock_for_update, run_with_retry
from wholesale_erp.services.document_service import next_document_number
from wholesale_erp.services.ledger_service import ENTRY_COUNT, append_entry, get_quantity_on_hand, lock_product
from wholesale_erp.time_utils import utcnow
from wholesale_erp.validation import ConflictError, FieldErrors, NotFoundError, coerce_int


COUNT_STATUS_PENDING = "PENDING"
COUNT_STATUS_POSTED = "POSTED"
COUNT_STATUS_CANCELLED = "CANCELLED"


def _get_count(count_id: int, *, lock: bool = False) -> InventoryCount:
    query = db.session.query(InventoryCount).filter_by(id=count_id)
    if lock:
        query = lock_for_update(query)
    count = query.first()
    if count is None:
        raise NotFoundError(f"Count {count_id} not found")
    return count


def create_count(*, lines: list[dict], created_by: int | None = None, reason: str | None = None) -> InventoryCount:
    """
    Create a count document (status: PENDING).

    Each line: {"product_id": int, "counted_quantity": int >= 0}
    """
    def _op():
        errors = FieldErrors()
        if not isinstance(lines, list) or not lines:
            errors.add("lines", "at least one line is required")
            errors.raise_if_any()

        cleaned = []
        seen = set()
        for index, raw in enumerate(lines):
            line_errors = FieldErrors(f"lines[{index}].")
            raw = raw if isinstance(raw, dict) else {}
            product_id = coerce_int(raw.get("product_id"), "product_id", line_errors, minimum=1)
            counted = coerce_int(raw.get("counted_quantity"), "counted_quantity", line_errors, minimum=0)
            if product_id is not None and product_id in seen:
                line_errors.add("product_id", "duplicate product on count")
            seen.add(product_id)
            errors.merge(line_errors)
            cleaned.append((product_id, counted))
        errors.raise_if_any()

        count = InventoryCount(
            document_number=next_document_number(document_type="INVENTORY_COUNT"),
            status=COUNT_STATUS_PENDING,
            reason=reason,
            created_by=created_by,
        )
        for product_id, counted in cleaned:
            product = db.session.query(Product).filter(
                Product.id == product_id, Product.deleted_at.is_(None)
            ).first()
            if product is None:
                raise NotFoundError(f"Product {product_id} not found")
            count.lines.append(
                InventoryCountLine(
                    product_id=product_id,
                    expected_quantity=get_quantity_on_hand(product_id),
                    counted_quantity=counted,
                )
            )
        db.session.add(count)
        db.session.flush()
        return count

    return run_with_retry(_op)


def post_count(*, count_id: int, posted_by: int | None = None) -> InventoryCount:
    """
    Post variances to the ledger.

    The variance is taken against on-hand at posting time (under the product lock),
    so stock movements between count entry and posting are not double counted.
    """
    def _op():
        count = _get_count(count_id, lock=True)
        if count.status != COUNT_STATUS_PENDING:
            raise ConflictError(f"Cannot post count in {count.status} status")

        for line in count.lines:
            lock_product(line.product_id)
            on_hand = get_quantity_on_hand(line.product_id)
            line.variance = line.counted_quantity - on_hand
            if line.variance != 0:
                append_entry(
                    product_id=line.product_id,
                    entry_type=ENTRY_COUNT,
                    quantity_delta=line.variance,
                    reference_type="count",
                    reference_id=count.id,
                    note=f"Count {count.document_number}",
                    created_by=posted_by,
                )

        count.status = COUNT_STATUS_POSTED
        count.posted_by = posted_by
        count.posted_at = utcnow()
        db.session.flush()
        return count

    return run_with_retry(_op)


def cancel_count(*, count_id: int) -> InventoryCount:
    def _op():
        count = _get_count(count_id, lock=True)
        if count.status != COUNT_STATUS_PENDING:
            raise ConflictError(f"Cannot cancel count in {count.status} status")
        count.status = COUNT_STATUS_CANCELLED
        count.cancelled_at = utcnow()
        db.session.flush()
        return count

    return run_with_retry(_op)


def get_count(count_id: int) -> InventoryCount:
    return _get_count(count_id)
