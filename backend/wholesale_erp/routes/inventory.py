# backend/wholesale_erp/routes/inventory.py
"""
Inventory API: stock levels, ledger history, adjustments and physical counts.
"""
from flask import Blueprint, g, jsonify, request

from ..decorators import datetime_arg, json_body, json_errors, require_actor
from ..services import count_service, inventory_service, ledger_service
from ..services.concurrency import commit_session

inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.get("/stock")
@json_errors("list stock levels")
def list_stock_levels():
    rows = inventory_service.list_stock_levels(status=request.args.get("status"))
    return jsonify({"stock": rows}), 200


@inventory_bp.get("/stock/low")
@json_errors("list low stock")
def list_low_stock():
    return jsonify({"stock": inventory_service.list_low_stock()}), 200


@inventory_bp.get("/stock/<int:product_id>")
@json_errors("load stock level")
def get_stock_level(product_id: int):
    return jsonify(inventory_service.get_stock_level(product_id)), 200


@inventory_bp.get("/ledger")
@json_errors("list ledger entries")
def list_ledger_entries():
    rows, total = ledger_service.list_entries(
        product_id=request.args.get("product_id", type=int),
        entry_type=request.args.get("entry_type"),
        reference_type=request.args.get("reference_type"),
        reference_id=request.args.get("reference_id", type=int),
        start=datetime_arg("start"),
        end=datetime_arg("end"),
        limit=request.args.get("limit", 100, type=int),
        offset=request.args.get("offset", 0, type=int),
    )
    return jsonify({"entries": [r.to_dict() for r in rows], "total": total}), 200


@inventory_bp.get("/adjustments")
@json_errors("list adjustments")
def list_adjustments():
    rows = inventory_service.list_adjustments(
        product_id=request.args.get("product_id", type=int),
        include_voided=request.args.get("include_voided", "true").lower() == "true",
    )
    return jsonify({"adjustments": [r.to_dict() for r in rows]}), 200


@inventory_bp.post("/adjustments")
@require_actor
@json_errors("create adjustment")
def create_adjustment():
    """
    Request body:
    {
        "product_id": int,
        "adjustment_type": "addition" | "reduction" | "damage" | "loss" | "return" | "correction",
        "quantity": int > 0,
        "direction": "increase" | "decrease" (correction only),
        "reason": str (optional)
    }
    """
    data = json_body()
    adjustment = inventory_service.create_adjustment(
        product_id=data.get("product_id"),
        adjustment_type=data.get("adjustment_type"),
        quantity=data.get("quantity"),
        reason=data.get("reason"),
        created_by=g.actor_id,
        direction=data.get("direction"),
    )
    commit_session()
    return jsonify(adjustment.to_dict()), 201


@inventory_bp.post("/adjustments/<int:adjustment_id>/void")
@require_actor
@json_errors("void adjustment")
def void_adjustment(adjustment_id: int):
    adjustment = inventory_service.void_adjustment(
        adjustment_id=adjustment_id, voided_by=g.actor_id, reason=json_body().get("reason")
    )
    commit_session()
    return jsonify(adjustment.to_dict()), 200


@inventory_bp.post("/counts")
@require_actor
@json_errors("create count")
def create_count():
    data = json_body()
    count = count_service.create_count(lines=data.get("lines"), created_by=g.actor_id, reason=data.get("reason"))
    commit_session()
    return jsonify(count.to_dict()), 201


@inventory_bp.get("/counts/<int:count_id>")
@json_errors("load count")
def get_count(count_id: int):
    return jsonify(count_service.get_count(count_id).to_dict()), 200


@inventory_bp.post("/counts/<int:count_id>/post")
@require_actor
@json_errors("post count")
def post_count(count_id: int):
    count = count_service.post_count(count_id=count_id, posted_by=g.actor_id)
    commit_session()
    return jsonify(count.to_dict()), 200


@inventory_bp.post("/counts/<int:count_id>/cancel")
@json_errors("cancel count")
def cancel_count(count_id: int):
    count = count_service.cancel_count(count_id=count_id)
    commit_session()
    return jsonify(count.to_dict()), 200
