from __future__ import annotations

from ..extensions import db
from wholesale_erp.time_utils import to_utc_z


class Sale(db.Model):
    """
    Sale header.

    Money fields are snapshots computed at creation:
      total = subtotal - discount + delivery_fee + cutting_charges
      profit = total - cogs
    Payment state is derived from non-voided SalePayment rows.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_order_date", "order_date"),
        db.Index("ix_sales_customer", "customer_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(32), nullable=False, unique=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True)
    customer_type = db.Column(db.String(16), nullable=False, default="walk_in")
    order_date = db.Column(db.DateTime(timezone=True), nullable=False)

    # completed | cancelled | returned
    status = db.Column(db.String(16), nullable=False, default="completed")
    # unpaid | partial | paid
    payment_status = db.Column(db.String(16), nullable=False, default="unpaid")
    payment_method = db.Column(db.String(32), nullable=True)
    # pending | delivered
    delivery_status = db.Column(db.String(16), nullable=False, default="pending")

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_percent = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    is_discount_approved = db.Column(db.Boolean, nullable=False, default=False)
    approved_by = db.Column(db.Integer, nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    delivery_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    cutting_charges_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    cogs_cents = db.Column(db.Integer, nullable=False, default=0)
    profit_cents = db.Column(db.Integer, nullable=False, default=0)
    amount_paid_cents = db.Column(db.Integer, nullable=False, default=0)

    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.Integer, nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    customer = db.relationship("Customer")
    items = db.relationship("SaleItem", back_populates="sale", cascade="all, delete-orphan", order_by="SaleItem.id")
    payments = db.relationship("SalePayment", back_populates="sale", cascade="all, delete-orphan",
                               order_by="SalePayment.id")

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def balance_due_cents(self) -> int:
        return max(self.total_cents - self.amount_paid_cents, 0)

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "customer_id": self.customer_id,
            "customer_type": self.customer_type,
            "order_date": to_utc_z(self.order_date),
            "status": self.status,
            "payment_status": self.payment_status,
            "payment_method": self.payment_method,
            "delivery_status": self.delivery_status,
            "subtotal_cents": self.subtotal_cents,
            "discount_percent": str(self.discount_percent) if self.discount_percent is not None else None,
            "discount_cents": self.discount_cents,
            "is_discount_approved": self.is_discount_approved,
            "approved_by": self.approved_by,
            "delivery_fee_cents": self.delivery_fee_cents,
            "cutting_charges_cents": self.cutting_charges_cents,
            "total_cents": self.total_cents,
            "cogs_cents": self.cogs_cents,
            "profit_cents": self.profit_cents,
            "amount_paid_cents": self.amount_paid_cents,
            "balance_due_cents": self.balance_due_cents,
            "notes": self.notes,
            "created_by": self.created_by,
            "cancelled_at": to_utc_z(self.cancelled_at),
            "created_at": to_utc_z(self.created_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
            data["payments"] = [p.to_dict() for p in self.payments]
        return data


class SaleItem(db.Model):
    """Sale line. Price and cost fields are snapshots and never change after creation."""
    __tablename__ = "sale_items"

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    returned_quantity = db.Column(db.Integer, nullable=False, default=0)

    price_type = db.Column(db.String(16), nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    # custom | bracket | product_price
    price_source = db.Column(db.String(16), nullable=False)
    price_reference_id = db.Column(db.Integer, nullable=True)

    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    line_total_cents = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    cogs_cents = db.Column(db.Integer, nullable=False, default=0)

    sale = db.relationship("Sale", back_populates="items")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "returned_quantity": self.returned_quantity,
            "price_type": self.price_type,
            "unit_price_cents": self.unit_price_cents,
            "price_source": self.price_source,
            "price_reference_id": self.price_reference_id,
            "discount_cents": self.discount_cents,
            "line_total_cents": self.line_total_cents,
            "unit_cost_cents": self.unit_cost_cents,
            "cogs_cents": self.cogs_cents,
        }


class SalePayment(db.Model):
    __tablename__ = "sale_payments"

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    method = db.Column(db.String(32), nullable=False, default="cash")
    reference = db.Column(db.String(128), nullable=True)

    received_by = db.Column(db.Integer, nullable=True)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    voided_by = db.Column(db.Integer, nullable=True)
    void_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    sale = db.relationship("Sale", back_populates="payments")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "amount_cents": self.amount_cents,
            "method": self.method,
            "reference": self.reference,
            "received_by": self.received_by,
            "voided_at": to_utc_z(self.voided_at),
            "voided_by": self.voided_by,
            "void_reason": self.void_reason,
            "created_at": to_utc_z(self.created_at),
        }


class SaleReturn(db.Model):
    """
    Customer return against a sale.

    LIFECYCLE: PENDING -> APPROVED (restock) -> COMPLETED, or PENDING -> REJECTED.
    """
    __tablename__ = "sale_returns"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    credit_memo_number = db.Column(db.String(32), nullable=False, unique=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="PENDING")
    reason = db.Column(db.Text, nullable=True)
    refund_cents = db.Column(db.Integer, nullable=False, default=0)

    created_by = db.Column(db.Integer, nullable=True)
    approved_by = db.Column(db.Integer, nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_by = db.Column(db.Integer, nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    completed_by = db.Column(db.Integer, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    sale = db.relationship("Sale", backref=db.backref("returns", lazy=True))
    items = db.relationship("SaleReturnItem", back_populates="sale_return", cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "credit_memo_number": self.credit_memo_number,
            "sale_id": self.sale_id,
            "status": self.status,
            "reason": self.reason,
            "refund_cents": self.refund_cents,
            "created_by": self.created_by,
            "approved_by": self.approved_by,
            "approved_at": to_utc_z(self.approved_at),
            "rejected_by": self.rejected_by,
            "rejected_at": to_utc_z(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "completed_by": self.completed_by,
            "completed_at": to_utc_z(self.completed_at),
            "created_at": to_utc_z(self.created_at),
            "items": [item.to_dict() for item in self.items],
        }


class SaleReturnItem(db.Model):
    __tablename__ = "sale_return_items"

    id = db.Column(db.Integer, primary_key=True)
    sale_return_id = db.Column(db.Integer, db.ForeignKey("sale_returns.id"), nullable=False, index=True)
    sale_item_id = db.Column(db.Integer, db.ForeignKey("sale_items.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    # good | damaged | defective
    condition = db.Column(db.String(16), nullable=False, default="good")
    refund_cents = db.Column(db.Integer, nullable=False, default=0)
    restocked = db.Column(db.Boolean, nullable=False, default=False)

    sale_return = db.relationship("SaleReturn", back_populates="items")
    sale_item = db.relationship("SaleItem")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_return_id": self.sale_return_id,
            "sale_item_id": self.sale_item_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "condition": self.condition,
            "refund_cents": self.refund_cents,
            "restocked": self.restocked,
        }


class SalesSummary(db.Model):
    """Pre-computed daily/monthly/yearly rollup. Purely derived; rebuildable at any time."""
    __tablename__ = "sales_summaries"
    __table_args__ = (
        db.UniqueConstraint("period_type", "period_date", name="uq_sales_summaries_period"),
    )

    id = db.Column(db.Integer, primary_key=True)
    period_type = db.Column(db.String(16), nullable=False)
    period_date = db.Column(db.Date, nullable=False)
    year = db.Column(db.Integer, nullable=False)
    month = db.Column(db.Integer, nullable=True)
    day = db.Column(db.Integer, nullable=True)

    total_revenue_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cogs_cents = db.Column(db.Integer, nullable=False, default=0)
    total_profit_cents = db.Column(db.Integer, nullable=False, default=0)

    total_sales_count = db.Column(db.Integer, nullable=False, default=0)
    completed_sales_count = db.Column(db.Integer, nullable=False, default=0)
    cancelled_sales_count = db.Column(db.Integer, nullable=False, default=0)
    returned_sales_count = db.Column(db.Integer, nullable=False, default=0)

    avg_sale_value_cents = db.Column(db.Integer, nullable=False, default=0)
    avg_profit_margin = db.Column(db.Float, nullable=False, default=0.0)

    payment_methods_breakdown = db.Column(db.JSON, nullable=True)
    customer_types_breakdown = db.Column(db.JSON, nullable=True)

    last_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "period_type": self.period_type,
            "period_date": self.period_date.isoformat() if self.period_date else None,
            "year": self.year,
            "month": self.month,
            "day": self.day,
            "total_revenue_cents": self.total_revenue_cents,
            "total_cogs_cents": self.total_cogs_cents,
            "total_profit_cents": self.total_profit_cents,
            "total_sales_count": self.total_sales_count,
            "completed_sales_count": self.completed_sales_count,
            "cancelled_sales_count": self.cancelled_sales_count,
            "returned_sales_count": self.returned_sales_count,
            "avg_sale_value_cents": self.avg_sale_value_cents,
            "avg_profit_margin": self.avg_profit_margin,
            "payment_methods_breakdown": self.payment_methods_breakdown or {},
            "customer_types_breakdown": self.customer_types_breakdown or {},
            "last_updated_at": to_utc_z(self.last_updated_at),
        }
