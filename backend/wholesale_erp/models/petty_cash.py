from __future__ import annotations

from ..extensions import db
from wholesale_erp.time_utils import to_utc_z


class PettyCashFund(db.Model):
    """
    Petty cash float.

    Available balance is derived: amount_cents - SUM(issued - returned) over
    non-cancelled transactions. version_id serializes concurrent issues.
    """
    __tablename__ = "petty_cash_funds"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    reference_number = db.Column(db.String(32), nullable=False, unique=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    description = db.Column(db.Text, nullable=True)

    # pending | approved
    status = db.Column(db.String(16), nullable=False, default="pending")
    created_by = db.Column(db.Integer, nullable=True)
    approved_by = db.Column(db.Integer, nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    transactions = db.relationship("PettyCashTransaction", back_populates="fund", order_by="PettyCashTransaction.id")

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "reference_number": self.reference_number,
            "amount_cents": self.amount_cents,
            "description": self.description,
            "status": self.status,
            "created_by": self.created_by,
            "approved_by": self.approved_by,
            "approved_at": to_utc_z(self.approved_at),
            "created_at": to_utc_z(self.created_at),
        }


class PettyCashTransaction(db.Model):
    """Cash issued to an employee. LIFECYCLE: issued -> settled -> approved, or issued -> cancelled."""
    __tablename__ = "petty_cash_transactions"

    id = db.Column(db.Integer, primary_key=True)
    fund_id = db.Column(db.Integer, db.ForeignKey("petty_cash_funds.id"), nullable=False, index=True)
    employee_id = db.Column(db.Integer, nullable=True)
    purpose = db.Column(db.String(255), nullable=False)

    amount_issued_cents = db.Column(db.Integer, nullable=False)
    amount_spent_cents = db.Column(db.Integer, nullable=False, default=0)
    amount_returned_cents = db.Column(db.Integer, nullable=False, default=0)
    receipt_path = db.Column(db.String(512), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="issued")
    issued_by = db.Column(db.Integer, nullable=True)
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_by = db.Column(db.Integer, nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    fund = db.relationship("PettyCashFund", back_populates="transactions")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "fund_id": self.fund_id,
            "employee_id": self.employee_id,
            "purpose": self.purpose,
            "amount_issued_cents": self.amount_issued_cents,
            "amount_spent_cents": self.amount_spent_cents,
            "amount_returned_cents": self.amount_returned_cents,
            "receipt_path": self.receipt_path,
            "status": self.status,
            "issued_by": self.issued_by,
            "settled_at": to_utc_z(self.settled_at),
            "approved_by": self.approved_by,
            "approved_at": to_utc_z(self.approved_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "created_at": to_utc_z(self.created_at),
        }
