from __future__ import annotations

from ..extensions import db
from wholesale_erp.time_utils import to_utc_z


class Transfer(db.Model):
    """
    Stock movement out of the main stock to a warehouse.

    Stock is decremented at creation (status in_transit). Each TransferItem keeps
    the exact ledger delta it applied so cancellation can reverse it precisely.
    """
    __tablename__ = "transfers"
    __table_args__ = (
        db.Index("ix_transfers_status", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transfer_number = db.Column(db.String(32), nullable=False, unique=True)

    from_warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True)
    to_warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)

    # in_transit | completed | cancelled
    status = db.Column(db.String(16), nullable=False, default="in_transit")
    notes = db.Column(db.Text, nullable=True)
    total_cost_cents = db.Column(db.Integer, nullable=False, default=0)

    created_by = db.Column(db.Integer, nullable=True)
    completed_by = db.Column(db.Integer, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by = db.Column(db.Integer, nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    items = db.relationship("TransferItem", back_populates="transfer", cascade="all, delete-orphan")
    from_warehouse = db.relationship("Warehouse", foreign_keys=[from_warehouse_id])
    to_warehouse = db.relationship("Warehouse", foreign_keys=[to_warehouse_id])

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transfer_number": self.transfer_number,
            "from_warehouse_id": self.from_warehouse_id,
            "to_warehouse_id": self.to_warehouse_id,
            "status": self.status,
            "notes": self.notes,
            "total_cost_cents": self.total_cost_cents,
            "created_by": self.created_by,
            "completed_by": self.completed_by,
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_by": self.cancelled_by,
            "cancelled_at": to_utc_z(self.cancelled_at),
            "created_at": to_utc_z(self.created_at),
            "items": [item.to_dict() for item in self.items],
        }


class TransferItem(db.Model):
    __tablename__ = "transfer_items"
    __table_args__ = (
        db.UniqueConstraint("transfer_id", "product_id", name="uq_transfer_items_transfer_product"),
    )

    id = db.Column(db.Integer, primary_key=True)
    transfer_id = db.Column(db.Integer, db.ForeignKey("transfers.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cost_cents = db.Column(db.Integer, nullable=False, default=0)

    # Ledger delta written at creation (negative); cancellation appends -applied_delta
    applied_delta = db.Column(db.Integer, nullable=False, default=0)
    ledger_entry_id = db.Column(db.Integer, db.ForeignKey("inventory_ledger_entries.id"), nullable=True)

    transfer = db.relationship("Transfer", back_populates="items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transfer_id": self.transfer_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "total_cost_cents": self.total_cost_cents,
            "applied_delta": self.applied_delta,
        }


class DocumentSequence(db.Model):
    """Per (document_type, period_key) counter used to allocate human-readable document numbers."""
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", "period_key", name="uq_document_sequences_type_period"),
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False)
    period_key = db.Column(db.String(16), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
