from __future__ import annotations

from ..extensions import db
from wholesale_erp.time_utils import to_utc_z


class PriceBracket(db.Model):
    """
    A versioned, time-bounded set of quantity-tiered prices for one product.

    LIFECYCLE:
    - draft: is_selected=False, effective_to NULL
    - active: is_selected=True (at most one per product at any instant)
    - superseded: is_selected=False, effective_to set to the successor's effective_from

    Effective range is half-open: [effective_from, effective_to). NULL effective_to is open-ended.
    """
    __tablename__ = "price_brackets"
    __table_args__ = (
        db.Index("ix_price_brackets_product_selected", "product_id", "is_selected"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=True)

    # draft | active | superseded; is_selected mirrors status == "active"
    status = db.Column(db.String(16), nullable=False, default="draft")
    is_selected = db.Column(db.Boolean, nullable=False, default=False)
    effective_from = db.Column(db.DateTime(timezone=True), nullable=False)
    effective_to = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("price_brackets", lazy=True))
    items = db.relationship(
        "BracketItem",
        back_populates="bracket",
        cascade="all, delete-orphan",
        order_by="BracketItem.min_quantity",
    )

    def __repr__(self) -> str:
        return f"<PriceBracket id={self.id} product_id={self.product_id} selected={self.is_selected}>"

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "product_id": self.product_id,
            "name": self.name,
            "status": self.status,
            "is_selected": self.is_selected,
            "effective_from": to_utc_z(self.effective_from),
            "effective_to": to_utc_z(self.effective_to),
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class BracketItem(db.Model):
    """One quantity-range/price/price-type row within a bracket. max_quantity NULL is unbounded."""
    __tablename__ = "bracket_items"
    __table_args__ = (
        db.Index("ix_bracket_items_bracket_type", "bracket_id", "price_type", "min_quantity"),
        db.CheckConstraint("min_quantity >= 1", name="ck_bracket_items_min_qty"),
        db.CheckConstraint("price_cents >= 0", name="ck_bracket_items_price"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    bracket_id = db.Column(db.Integer, db.ForeignKey("price_brackets.id"), nullable=False, index=True)

    min_quantity = db.Column(db.Integer, nullable=False)
    max_quantity = db.Column(db.Integer, nullable=True)
    price_cents = db.Column(db.Integer, nullable=False)
    price_type = db.Column(db.String(16), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    bracket = db.relationship("PriceBracket", back_populates="items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bracket_id": self.bracket_id,
            "min_quantity": self.min_quantity,
            "max_quantity": self.max_quantity,
            "price_cents": self.price_cents,
            "price_type": self.price_type,
            "is_active": self.is_active,
            "sort_order": self.sort_order,
        }


class CustomerCustomPrice(db.Model):
    """
    Per-customer override price range for one product.

    Only valued customers may own rows (service-boundary rule).
    Active rows for the same (customer, product) never overlap in both quantity and date.
    """
    __tablename__ = "customer_custom_prices"
    __table_args__ = (
        db.Index("ix_custom_prices_customer_product", "customer_id", "product_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    min_quantity = db.Column(db.Integer, nullable=False)
    max_quantity = db.Column(db.Integer, nullable=True)
    price_cents = db.Column(db.Integer, nullable=False)

    effective_from = db.Column(db.DateTime(timezone=True), nullable=False)
    effective_to = db.Column(db.DateTime(timezone=True), nullable=True)

    label = db.Column(db.String(128), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    customer = db.relationship("Customer", backref=db.backref("custom_prices", lazy=True))
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "product_id": self.product_id,
            "min_quantity": self.min_quantity,
            "max_quantity": self.max_quantity,
            "price_cents": self.price_cents,
            "effective_from": to_utc_z(self.effective_from),
            "effective_to": to_utc_z(self.effective_to),
            "label": self.label,
            "notes": self.notes,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }


class ProductPrice(db.Model):
    """
    Flat (non-bracket) prices for a product.

    At most one active row per product at any instant. Activating a row closes
    the other active rows' effective_to at its effective_from.
    """
    __tablename__ = "product_prices"
    __table_args__ = (
        db.Index("ix_product_prices_product_active", "product_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    regular_price_cents = db.Column(db.Integer, nullable=False)
    wholesale_price_cents = db.Column(db.Integer, nullable=False)
    walk_in_price_cents = db.Column(db.Integer, nullable=False)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    effective_from = db.Column(db.DateTime(timezone=True), nullable=False)
    effective_to = db.Column(db.DateTime(timezone=True), nullable=True)

    # "manual" or "receiving"
    source = db.Column(db.String(16), nullable=False, default="manual")
    source_reference_id = db.Column(db.Integer, nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("prices", lazy=True))

    def price_for_type(self, price_type: str) -> int:
        return {
            "regular": self.regular_price_cents,
            "wholesale": self.wholesale_price_cents,
            "walk_in": self.walk_in_price_cents,
        }[price_type]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "regular_price_cents": self.regular_price_cents,
            "wholesale_price_cents": self.wholesale_price_cents,
            "walk_in_price_cents": self.walk_in_price_cents,
            "is_active": self.is_active,
            "effective_from": to_utc_z(self.effective_from),
            "effective_to": to_utc_z(self.effective_to),
            "source": self.source,
            "source_reference_id": self.source_reference_id,
            "created_by": self.created_by,
            "deleted_at": to_utc_z(self.deleted_at),
            "created_at": to_utc_z(self.created_at),
        }
