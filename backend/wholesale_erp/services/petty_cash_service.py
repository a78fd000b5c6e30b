# Overview: Petty cash funds and the cash issued against them.

"""
Fund: pending -> approved. Cash can only be issued from an approved fund.

Transaction: issued -> settled -> approved, or issued -> cancelled.
- settle: amount_spent + amount_returned must equal amount_issued
- available balance = fund amount - sum(issued - returned) over non-cancelled transactions
"""

from __future__ import annotations

import logging

from sqlalchemy import func

from ..extensions import db
from ..models import PettyCashFund, PettyCashTransaction
from ..time_utils import utcnow
from ..validation import ConflictError, FieldErrors, NotFoundError, ValidationError, coerce_cents, coerce_int
from .concurrency import lock_for_update, run_with_retry
from .document_service import next_document_number

logger = logging.getLogger(__name__)

FUND_STATUS_PENDING = "pending"
FUND_STATUS_APPROVED = "approved"

TXN_STATUS_ISSUED = "issued"
TXN_STATUS_SETTLED = "settled"
TXN_STATUS_APPROVED = "approved"
TXN_STATUS_CANCELLED = "cancelled"


def _get_fund(fund_id: int, *, lock: bool = False) -> PettyCashFund:
    query = db.session.query(PettyCashFund).filter_by(id=fund_id)
    if lock:
        query = lock_for_update(query)
    fund = query.first()
    if fund is None:
        raise NotFoundError(f"Petty cash fund {fund_id} not found")
    return fund


def _get_transaction(transaction_id: int) -> PettyCashTransaction:
    txn = db.session.query(PettyCashTransaction).filter_by(id=transaction_id).first()
    if txn is None:
        raise NotFoundError(f"Petty cash transaction {transaction_id} not found")
    return txn


def get_fund(fund_id: int) -> PettyCashFund:
    return _get_fund(fund_id)


def list_funds(*, status: str | None = None) -> list[PettyCashFund]:
    query = db.session.query(PettyCashFund)
    if status:
        query = query.filter(PettyCashFund.status == status)
    return query.order_by(PettyCashFund.id.desc()).all()


def list_transactions(*, fund_id: int | None = None, status: str | None = None) -> list[PettyCashTransaction]:
    query = db.session.query(PettyCashTransaction)
    if fund_id is not None:
        query = query.filter(PettyCashTransaction.fund_id == fund_id)
    if status:
        query = query.filter(PettyCashTransaction.status == status)
    return query.order_by(PettyCashTransaction.id.desc()).all()


def get_available_balance(fund_id: int) -> int:
    fund = _get_fund(fund_id)
    if fund.status != FUND_STATUS_APPROVED:
        return 0
    outstanding = (
        db.session.query(
            func.coalesce(
                func.sum(PettyCashTransaction.amount_issued_cents - PettyCashTransaction.amount_returned_cents), 0
            )
        )
        .filter(
            PettyCashTransaction.fund_id == fund.id,
            PettyCashTransaction.status != TXN_STATUS_CANCELLED,
        )
        .scalar()
    )
    return fund.amount_cents - int(outstanding or 0)


def create_fund(*, amount_cents, description: str | None = None, created_by: int | None = None) -> PettyCashFund:
    def _op():
        errors = FieldErrors()
        amount = coerce_cents(amount_cents, "amount_cents", errors, minimum=1)
        errors.raise_if_any()
        fund = PettyCashFund(
            reference_number=next_document_number(document_type="PETTY_CASH_FUND"),
            amount_cents=amount,
            description=description,
            status=FUND_STATUS_PENDING,
            created_by=created_by,
        )
        db.session.add(fund)
        db.session.flush()
        return fund

    return run_with_retry(_op)


def approve_fund(*, fund_id: int, approved_by: int | None = None) -> PettyCashFund:
    def _op():
        fund = _get_fund(fund_id, lock=True)
        if fund.status != FUND_STATUS_PENDING:
            raise ConflictError(f"Cannot approve fund in {fund.status} status")
        fund.status = FUND_STATUS_APPROVED
        fund.approved_by = approved_by
        fund.approved_at = utcnow()
        db.session.flush()
        logger.info("Petty cash fund %s approved", fund.reference_number)
        return fund

    return run_with_retry(_op)


def issue_cash(
    *,
    fund_id: int,
    amount_cents,
    purpose: str,
    employee_id: int | None = None,
    issued_by: int | None = None,
) -> PettyCashTransaction:
    """Issue cash to an employee. The fund row is locked so concurrent issues cannot overdraw it."""
    def _op():
        errors = FieldErrors()
        amount = coerce_cents(amount_cents, "amount_cents", errors, minimum=1)
        if not purpose or not str(purpose).strip():
            errors.add("purpose", "is required")
        emp = coerce_int(employee_id, "employee_id", errors, minimum=1, required=False)
        errors.raise_if_any()

        fund = _get_fund(fund_id, lock=True)
        if fund.status != FUND_STATUS_APPROVED:
            raise ConflictError(f"Cannot issue cash from a {fund.status} fund")
        available = get_available_balance(fund.id)
        if amount > available:
            raise ConflictError(f"Insufficient fund balance: available {available}, requested {amount}")

        txn = PettyCashTransaction(
            fund_id=fund.id,
            employee_id=emp,
            purpose=str(purpose).strip()[:255],
            amount_issued_cents=amount,
            amount_spent_cents=0,
            amount_returned_cents=0,
            status=TXN_STATUS_ISSUED,
            issued_by=issued_by,
        )
        db.session.add(txn)
        db.session.flush()
        return txn

    return run_with_retry(_op)


def settle_transaction(
    *,
    transaction_id: int,
    amount_spent_cents,
    amount_returned_cents,
    receipt_path: str | None = None,
) -> PettyCashTransaction:
    def _op():
        errors = FieldErrors()
        spent = coerce_cents(amount_spent_cents, "amount_spent_cents", errors)
        returned = coerce_cents(amount_returned_cents, "amount_returned_cents", errors)
        errors.raise_if_any()

        txn = _get_transaction(transaction_id)
        _get_fund(txn.fund_id, lock=True)
        if txn.status != TXN_STATUS_ISSUED:
            raise ConflictError(f"Cannot settle transaction in {txn.status} status")
        if spent + returned != txn.amount_issued_cents:
            raise ValidationError(
                {"amount_spent_cents": [f"spent + returned must equal the issued amount ({txn.amount_issued_cents})"]}
            )
        txn.amount_spent_cents = spent
        txn.amount_returned_cents = returned
        txn.receipt_path = receipt_path
        txn.status = TXN_STATUS_SETTLED
        txn.settled_at = utcnow()
        db.session.flush()
        return txn

    return run_with_retry(_op)


def approve_transaction(*, transaction_id: int, approved_by: int | None = None) -> PettyCashTransaction:
    def _op():
        txn = _get_transaction(transaction_id)
        if txn.status != TXN_STATUS_SETTLED:
            raise ConflictError(f"Cannot approve transaction in {txn.status} status")
        txn.status = TXN_STATUS_APPROVED
        txn.approved_by = approved_by
        txn.approved_at = utcnow()
        db.session.flush()
        return txn

    return run_with_retry(_op)


def cancel_transaction(*, transaction_id: int) -> PettyCashTransaction:
    def _op():
        txn = _get_transaction(transaction_id)
        _get_fund(txn.fund_id, lock=True)
        if txn.status != TXN_STATUS_ISSUED:
            raise ConflictError(f"Cannot cancel transaction in {txn.status} status")
        txn.status = TXN_STATUS_CANCELLED
        txn.cancelled_at = utcnow()
        db.session.flush()
        return txn

    return run_with_retry(_op)
