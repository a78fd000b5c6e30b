from __future__ import annotations

from ..extensions import db
from wholesale_erp.time_utils import to_utc_z


class Product(db.Model):
    """
    Product master data.

    QUANTITY DESIGN DECISION:
    Products carry NO stored on-hand quantity. Stock is the running sum of
    InventoryLedgerEntry.quantity_delta for the product, so there is a single
    authoritative source and nothing to drift.

    PRICING MODE:
    use_bracket_pricing selects tiered pricing (PriceBracket) over the flat
    ProductPrice rows. It is maintained by the bracket activation paths only.

    version_id is bumped on every pricing mutation so two concurrent bracket
    activations for the same product cannot both commit.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_category", "category"),
        db.Index("ix_products_active", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(128), nullable=True)
    unit = db.Column(db.String(32), nullable=True)
    description = db.Column(db.Text, nullable=True)

    reorder_level = db.Column(db.Integer, nullable=False, default=0)
    use_bracket_pricing = db.Column(db.Boolean, nullable=False, default=False)
    pricing_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "category": self.category,
            "unit": self.unit,
            "description": self.description,
            "reorder_level": self.reorder_level,
            "use_bracket_pricing": self.use_bracket_pricing,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "deleted_at": to_utc_z(self.deleted_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Customer(db.Model):
    """
    Customer record.

    customer_type drives the default price type of sale lines.
    is_valued_customer unlocks CustomerCustomPrice ownership; the rule is
    enforced in custom_pricing_service, not by the database.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.Index("ix_customers_valued", "is_valued_customer"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    customer_type = db.Column(db.String(16), nullable=False, default="regular")
    phone = db.Column(db.String(64), nullable=True)
    email = db.Column(db.String(255), nullable=True)

    is_valued_customer = db.Column(db.Boolean, nullable=False, default=False)
    valued_since = db.Column(db.DateTime(timezone=True), nullable=True)
    valued_customer_notes = db.Column(db.Text, nullable=True)

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "customer_type": self.customer_type,
            "phone": self.phone,
            "email": self.email,
            "is_valued_customer": self.is_valued_customer,
            "valued_since": to_utc_z(self.valued_since),
            "valued_customer_notes": self.valued_customer_notes,
            "deleted_at": to_utc_z(self.deleted_at),
            "created_at": to_utc_z(self.created_at),
        }


class Supplier(db.Model):
    __tablename__ = "suppliers"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    contact_name = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(64), nullable=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "contact_name": self.contact_name,
            "phone": self.phone,
            "deleted_at": to_utc_z(self.deleted_at),
            "created_at": to_utc_z(self.created_at),
        }


class Warehouse(db.Model):
    __tablename__ = "warehouses"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    address = db.Column(db.Text, nullable=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "address": self.address,
            "deleted_at": to_utc_z(self.deleted_at),
            "created_at": to_utc_z(self.created_at),
        }


class AdditionalCostType(db.Model):
    """Typed surcharges/deductions attached to receiving reports (freight, handling, rebates)."""
    __tablename__ = "additional_cost_types"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False, unique=True)
    description = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
