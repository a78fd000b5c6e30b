from __future__ import annotations

from ..extensions import db
from wholesale_erp.time_utils import to_utc_z


class InventoryLedgerEntry(db.Model):
    """
    Append-only stock movement.

    Rows are never updated or deleted. Corrections are new rows with an
    offsetting quantity_delta. On-hand for a product is SUM(quantity_delta).
    quantity_before/quantity_after are informational snapshots taken under
    the product row lock.
    """
    __tablename__ = "inventory_ledger_entries"
    __table_args__ = (
        db.Index("ix_ledger_product_occurred", "product_id", "occurred_at"),
        db.Index("ix_ledger_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    entry_type = db.Column(db.String(32), nullable=False, index=True)
    quantity_delta = db.Column(db.Integer, nullable=False)
    # Landed unit cost for inbound receiving rows (feeds WAC)
    unit_cost_cents = db.Column(db.Integer, nullable=True)

    quantity_before = db.Column(db.Integer, nullable=False)
    quantity_after = db.Column(db.Integer, nullable=False)

    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)

    note = db.Column(db.String(255), nullable=True)
    created_by = db.Column(db.Integer, nullable=True)

    occurred_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "entry_type": self.entry_type,
            "quantity_delta": self.quantity_delta,
            "unit_cost_cents": self.unit_cost_cents,
            "quantity_before": self.quantity_before,
            "quantity_after": self.quantity_after,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "note": self.note,
            "created_by": self.created_by,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
        }


class InventoryAdjustment(db.Model):
    """Manual stock adjustment. quantity is a positive magnitude; direction comes from adjustment_type."""
    __tablename__ = "inventory_adjustments"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_inventory_adjustments_qty"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    adjustment_type = db.Column(db.String(16), nullable=False)
    # increase | decrease; only meaningful (and required) for type=correction
    correction_direction = db.Column(db.String(16), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.Text, nullable=True)

    ledger_entry_id = db.Column(db.Integer, db.ForeignKey("inventory_ledger_entries.id"), nullable=True)
    void_entry_id = db.Column(db.Integer, db.ForeignKey("inventory_ledger_entries.id"), nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    voided_by = db.Column(db.Integer, nullable=True)
    void_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "adjustment_type": self.adjustment_type,
            "correction_direction": self.correction_direction,
            "quantity": self.quantity,
            "reason": self.reason,
            "ledger_entry_id": self.ledger_entry_id,
            "void_entry_id": self.void_entry_id,
            "created_by": self.created_by,
            "voided_at": to_utc_z(self.voided_at),
            "voided_by": self.voided_by,
            "void_reason": self.void_reason,
            "created_at": to_utc_z(self.created_at),
        }


class InventoryCount(db.Model):
    __tablename__ = "inventory_counts"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_number = db.Column(db.String(32), nullable=False, unique=True)

    # PENDING -> POSTED | CANCELLED
    status = db.Column(db.String(16), nullable=False, default="PENDING")
    reason = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    posted_by = db.Column(db.Integer, nullable=True)
    posted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    lines = db.relationship("InventoryCountLine", back_populates="count", cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_number": self.document_number,
            "status": self.status,
            "reason": self.reason,
            "created_by": self.created_by,
            "posted_by": self.posted_by,
            "posted_at": to_utc_z(self.posted_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "created_at": to_utc_z(self.created_at),
            "lines": [line.to_dict() for line in self.lines],
        }


class InventoryCountLine(db.Model):
    __tablename__ = "inventory_count_lines"
    __table_args__ = (
        db.UniqueConstraint("count_id", "product_id", name="uq_count_lines_count_product"),
    )

    id = db.Column(db.Integer, primary_key=True)
    count_id = db.Column(db.Integer, db.ForeignKey("inventory_counts.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    expected_quantity = db.Column(db.Integer, nullable=False)
    counted_quantity = db.Column(db.Integer, nullable=False)
    # Set at post time against the live on-hand
    variance = db.Column(db.Integer, nullable=True)

    count = db.relationship("InventoryCount", back_populates="lines")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "count_id": self.count_id,
            "product_id": self.product_id,
            "expected_quantity": self.expected_quantity,
            "counted_quantity": self.counted_quantity,
            "variance": self.variance,
        }
