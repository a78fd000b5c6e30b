# backend/wholesale_erp/routes/petty_cash.py
"""
Petty cash API: funds and cash issue/settle/approve transactions.
"""
from flask import Blueprint, g, jsonify, request

from ..decorators import json_body, json_errors, require_actor
from ..services import petty_cash_service
from ..services.concurrency import commit_session

petty_cash_bp = Blueprint("petty_cash", __name__, url_prefix="/api/petty-cash")


def _fund_payload(fund) -> dict:
    data = fund.to_dict()
    data["available_balance_cents"] = petty_cash_service.get_available_balance(fund.id)
    return data


@petty_cash_bp.get("/funds")
@json_errors("list petty cash funds")
def list_funds():
    rows = petty_cash_service.list_funds(status=request.args.get("status"))
    return jsonify({"funds": [_fund_payload(f) for f in rows]}), 200


@petty_cash_bp.post("/funds")
@require_actor
@json_errors("create petty cash fund")
def create_fund():
    data = json_body()
    fund = petty_cash_service.create_fund(
        amount_cents=data.get("amount_cents"), description=data.get("description"), created_by=g.actor_id
    )
    commit_session()
    return jsonify(_fund_payload(fund)), 201


@petty_cash_bp.get("/funds/<int:fund_id>")
@json_errors("load petty cash fund")
def get_fund(fund_id: int):
    return jsonify(_fund_payload(petty_cash_service.get_fund(fund_id))), 200


@petty_cash_bp.post("/funds/<int:fund_id>/approve")
@require_actor
@json_errors("approve petty cash fund")
def approve_fund(fund_id: int):
    fund = petty_cash_service.approve_fund(fund_id=fund_id, approved_by=g.actor_id)
    commit_session()
    return jsonify(_fund_payload(fund)), 200


@petty_cash_bp.get("/transactions")
@json_errors("list petty cash transactions")
def list_transactions():
    rows = petty_cash_service.list_transactions(
        fund_id=request.args.get("fund_id", type=int), status=request.args.get("status")
    )
    return jsonify({"transactions": [t.to_dict() for t in rows]}), 200


@petty_cash_bp.post("/funds/<int:fund_id>/issue")
@require_actor
@json_errors("issue petty cash")
def issue_cash(fund_id: int):
    """
    Request body:
    {"amount_cents": int, "purpose": str, "employee_id": int (optional)}

    Returns:
        201: Cash issued
        400: Invalid request
        404: Fund not found
        409: Fund not approved or insufficient balance
    """
    data = json_body()
    txn = petty_cash_service.issue_cash(
        fund_id=fund_id,
        amount_cents=data.get("amount_cents"),
        purpose=data.get("purpose"),
        employee_id=data.get("employee_id"),
        issued_by=g.actor_id,
    )
    commit_session()
    return jsonify(txn.to_dict()), 201


@petty_cash_bp.post("/transactions/<int:transaction_id>/settle")
@json_errors("settle petty cash transaction")
def settle_transaction(transaction_id: int):
    data = json_body()
    txn = petty_cash_service.settle_transaction(
        transaction_id=transaction_id,
        amount_spent_cents=data.get("amount_spent_cents"),
        amount_returned_cents=data.get("amount_returned_cents"),
        receipt_path=data.get("receipt_path"),
    )
    commit_session()
    return jsonify(txn.to_dict()), 200


@petty_cash_bp.post("/transactions/<int:transaction_id>/approve")
@require_actor
@json_errors("approve petty cash transaction")
def approve_transaction(transaction_id: int):
    txn = petty_cash_service.approve_transaction(transaction_id=transaction_id, approved_by=g.actor_id)
    commit_session()
    return jsonify(txn.to_dict()), 200


@petty_cash_bp.post("/transactions/<int:transaction_id>/cancel")
@json_errors("cancel petty cash transaction")
def cancel_transaction(transaction_id: int):
    txn = petty_cash_service.cancel_transaction(transaction_id=transaction_id)
    commit_session()
    return jsonify(txn.to_dict()), 200
