from __future__ import annotations

from ..extensions import db
from wholesale_erp.time_utils import to_utc_z


class PurchaseOrder(db.Model):
    """
    Purchase order header.

    STATUS is derived after every receiving mutation (see purchase_order_service.recompute_status):
    pending -> partially_received -> completed, or -> cancelled.
    """
    __tablename__ = "purchase_orders"
    __table_args__ = (
        db.Index("ix_purchase_orders_status", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    po_number = db.Column(db.String(32), nullable=False, unique=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)

    order_date = db.Column(db.DateTime(timezone=True), nullable=False)
    expected_delivery_date = db.Column(db.DateTime(timezone=True), nullable=True)

    status = db.Column(db.String(32), nullable=False, default="pending")
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    supplier = db.relationship("Supplier")
    items = db.relationship("PurchaseOrderItem", back_populates="purchase_order", cascade="all, delete-orphan")
    receiving_reports = db.relationship("ReceivingReport", back_populates="purchase_order")

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "po_number": self.po_number,
            "supplier_id": self.supplier_id,
            "order_date": to_utc_z(self.order_date),
            "expected_delivery_date": to_utc_z(self.expected_delivery_date),
            "status": self.status,
            "total_cents": self.total_cents,
            "notes": self.notes,
            "created_by": self.created_by,
            "cancelled_at": to_utc_z(self.cancelled_at),
            "completed_at": to_utc_z(self.completed_at),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class PurchaseOrderItem(db.Model):
    __tablename__ = "purchase_order_items"
    __table_args__ = (
        db.UniqueConstraint("purchase_order_id", "product_id", name="uq_po_items_po_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    requested_quantity = db.Column(db.Integer, nullable=False)
    # Derived: SUM of ReceivedItem.received_quantity across the PO's reports
    received_quantity = db.Column(db.Integer, nullable=False, default=0)
    price_cents = db.Column(db.Integer, nullable=False)

    purchase_order = db.relationship("PurchaseOrder", back_populates="items")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_order_id": self.purchase_order_id,
            "product_id": self.product_id,
            "requested_quantity": self.requested_quantity,
            "received_quantity": self.received_quantity,
            "price_cents": self.price_cents,
            "line_total_cents": self.requested_quantity * self.price_cents,
        }


class ReceivingReport(db.Model):
    """
    One receiving event against a purchase order.

    Children (received items, additional costs) are reconciled by id on update.
    Deletion is blocked once the parent PO is completed.
    """
    __tablename__ = "receiving_reports"
    __table_args__ = (
        db.Index("ix_receiving_reports_po", "purchase_order_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False)
    batch_number = db.Column(db.String(32), nullable=False, unique=True)

    received_date = db.Column(db.DateTime(timezone=True), nullable=False)
    received_by = db.Column(db.Integer, nullable=True)

    # unpaid | partial | paid
    payment_status = db.Column(db.String(16), nullable=False, default="unpaid")
    attachment_path = db.Column(db.String(512), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    purchase_order = db.relationship("PurchaseOrder", back_populates="receiving_reports")
    items = db.relationship("ReceivedItem", back_populates="report", cascade="all, delete-orphan",
                            order_by="ReceivedItem.id")
    additional_costs = db.relationship("AdditionalCost", back_populates="report", cascade="all, delete-orphan",
                                       order_by="AdditionalCost.id")

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_children: bool = True) -> dict:
        data = {
            "id": self.id,
            "purchase_order_id": self.purchase_order_id,
            "batch_number": self.batch_number,
            "received_date": to_utc_z(self.received_date),
            "received_by": self.received_by,
            "payment_status": self.payment_status,
            "attachment_path": self.attachment_path,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }
        if include_children:
            data["items"] = [item.to_dict() for item in self.items]
            data["additional_costs"] = [cost.to_dict() for cost in self.additional_costs]
        return data


class ReceivedItem(db.Model):
    """
    Per-product receipt line.

    distribution_price_cents is the landed unit cost: cost price plus this line's
    share of the report's additional costs (minus deductions).
    """
    __tablename__ = "received_items"
    __table_args__ = (
        db.Index("ix_received_items_product", "product_id", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    receiving_report_id = db.Column(db.Integer, db.ForeignKey("receiving_reports.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    received_quantity = db.Column(db.Integer, nullable=False)
    cost_price_cents = db.Column(db.Integer, nullable=False)
    distribution_price_cents = db.Column(db.Integer, nullable=False)

    regular_price_cents = db.Column(db.Integer, nullable=True)
    wholesale_price_cents = db.Column(db.Integer, nullable=True)
    walk_in_price_cents = db.Column(db.Integer, nullable=True)

    sold_quantity = db.Column(db.Integer, nullable=False, default=0)

    report = db.relationship("ReceivingReport", back_populates="items")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "receiving_report_id": self.receiving_report_id,
            "product_id": self.product_id,
            "received_quantity": self.received_quantity,
            "cost_price_cents": self.cost_price_cents,
            "distribution_price_cents": self.distribution_price_cents,
            "regular_price_cents": self.regular_price_cents,
            "wholesale_price_cents": self.wholesale_price_cents,
            "walk_in_price_cents": self.walk_in_price_cents,
            "sold_quantity": self.sold_quantity,
        }


class AdditionalCost(db.Model):
    __tablename__ = "additional_costs"

    id = db.Column(db.Integer, primary_key=True)
    receiving_report_id = db.Column(db.Integer, db.ForeignKey("receiving_reports.id"), nullable=False, index=True)
    cost_type_id = db.Column(db.Integer, db.ForeignKey("additional_cost_types.id"), nullable=False, index=True)
    description = db.Column(db.String(255), nullable=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    is_deduction = db.Column(db.Boolean, nullable=False, default=False)

    report = db.relationship("ReceivingReport", back_populates="additional_costs")
    cost_type = db.relationship("AdditionalCostType")

    @property
    def signed_amount_cents(self) -> int:
        return -self.amount_cents if self.is_deduction else self.amount_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "receiving_report_id": self.receiving_report_id,
            "cost_type_id": self.cost_type_id,
            "description": self.description,
            "amount_cents": self.amount_cents,
            "is_deduction": self.is_deduction,
        }
