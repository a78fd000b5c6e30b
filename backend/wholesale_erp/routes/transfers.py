# backend/wholesale_erp/routes/transfers.py
"""
Stock transfer API routes.
"""
from flask import Blueprint, g, jsonify, request

from ..decorators import json_body, json_errors, require_actor
from ..services import transfer_service
from ..services.concurrency import commit_session

transfers_bp = Blueprint("transfers", __name__, url_prefix="/api/transfers")


@transfers_bp.post("")
@require_actor
@json_errors("create transfer")
def create_transfer():
    """
    Request body:
    {
        "to_warehouse_id": int,
        "from_warehouse_id": int (optional, main stock when omitted),
        "notes": str (optional),
        "items": [{"product_id": int, "quantity": int}]
    }

    Returns:
        201: Transfer created (stock already decremented)
        400: Invalid request
        404: Warehouse or product not found
        409: Insufficient stock
    """
    transfer = transfer_service.create_transfer(data=json_body(), created_by=g.actor_id)
    commit_session()
    return jsonify(transfer.to_dict()), 201


@transfers_bp.get("")
@json_errors("list transfers")
def list_transfers():
    rows, total = transfer_service.list_transfers(
        status=request.args.get("status"),
        to_warehouse_id=request.args.get("to_warehouse_id", type=int),
        limit=request.args.get("limit", 100, type=int),
        offset=request.args.get("offset", 0, type=int),
    )
    return jsonify({"transfers": [t.to_dict() for t in rows], "total": total}), 200


@transfers_bp.get("/<int:transfer_id>")
@json_errors("load transfer")
def get_transfer(transfer_id: int):
    return jsonify(transfer_service.get_transfer(transfer_id).to_dict()), 200


@transfers_bp.post("/<int:transfer_id>/complete")
@require_actor
@json_errors("complete transfer")
def complete_transfer(transfer_id: int):
    transfer = transfer_service.complete_transfer(transfer_id=transfer_id, completed_by=g.actor_id)
    commit_session()
    return jsonify(transfer.to_dict()), 200


@transfers_bp.post("/<int:transfer_id>/cancel")
@require_actor
@json_errors("cancel transfer")
def cancel_transfer(transfer_id: int):
    transfer = transfer_service.cancel_transfer(transfer_id=transfer_id, cancelled_by=g.actor_id)
    commit_session()
    return jsonify(transfer.to_dict()), 200
