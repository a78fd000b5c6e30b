# backend/wholesale_erp/routes/purchasing.py
"""
Purchasing API: purchase orders, additional cost types and receiving reports.
"""
from flask import Blueprint, g, jsonify, request

from ..decorators import datetime_arg, json_body, json_errors, require_actor
from ..services import cost_type_service, purchase_order_service, receiving_service
from ..services.concurrency import commit_session

purchasing_bp = Blueprint("purchasing", __name__, url_prefix="/api")


def _page_args() -> dict:
    return {
        "limit": request.args.get("limit", 100, type=int),
        "offset": request.args.get("offset", 0, type=int),
    }


# -----------------------------------------------------------------------------
# Purchase orders
# -----------------------------------------------------------------------------


@purchasing_bp.get("/purchase-orders")
@json_errors("list purchase orders")
def list_purchase_orders():
    rows, total = purchase_order_service.list_purchase_orders(
        status=request.args.get("status"),
        supplier_id=request.args.get("supplier_id", type=int),
        **_page_args(),
    )
    return jsonify({"purchase_orders": [po.to_dict(include_items=False) for po in rows], "total": total}), 200


@purchasing_bp.get("/purchase-orders/stats")
@json_errors("load purchase order stats")
def purchase_order_stats():
    return jsonify(purchase_order_service.purchase_order_stats()), 200


@purchasing_bp.post("/purchase-orders")
@require_actor
@json_errors("create purchase order")
def create_purchase_order():
    """
    Request body:
    {
        "supplier_id": int,
        "order_date": iso datetime (optional),
        "expected_delivery_date": iso datetime (optional),
        "notes": str (optional),
        "items": [{"product_id": int, "requested_quantity": int, "price_cents": int}]
    }
    """
    po = purchase_order_service.create_purchase_order(data=json_body(), created_by=g.actor_id)
    commit_session()
    return jsonify(po.to_dict()), 201


@purchasing_bp.get("/purchase-orders/<int:purchase_order_id>")
@json_errors("load purchase order")
def get_purchase_order(purchase_order_id: int):
    po = purchase_order_service.get_purchase_order(purchase_order_id)
    data = po.to_dict()
    data["receiving_reports"] = [r.to_dict(include_children=False) for r in po.receiving_reports]
    return jsonify(data), 200


@purchasing_bp.put("/purchase-orders/<int:purchase_order_id>")
@json_errors("update purchase order")
def update_purchase_order(purchase_order_id: int):
    po = purchase_order_service.update_purchase_order(purchase_order_id=purchase_order_id, data=json_body())
    commit_session()
    return jsonify(po.to_dict()), 200


@purchasing_bp.post("/purchase-orders/<int:purchase_order_id>/cancel")
@json_errors("cancel purchase order")
def cancel_purchase_order(purchase_order_id: int):
    po = purchase_order_service.cancel_purchase_order(purchase_order_id=purchase_order_id)
    commit_session()
    return jsonify(po.to_dict()), 200


# -----------------------------------------------------------------------------
# Additional cost types
# -----------------------------------------------------------------------------


@purchasing_bp.get("/cost-types")
@json_errors("list cost types")
def list_cost_types():
    rows = cost_type_service.list_cost_types(
        active_only=request.args.get("active_only", "false").lower() == "true"
    )
    return jsonify({"cost_types": [r.to_dict() for r in rows]}), 200


@purchasing_bp.post("/cost-types")
@json_errors("create cost type")
def create_cost_type():
    row = cost_type_service.create_cost_type(data=json_body())
    commit_session()
    return jsonify(row.to_dict()), 201


@purchasing_bp.put("/cost-types/<int:cost_type_id>")
@json_errors("update cost type")
def update_cost_type(cost_type_id: int):
    row = cost_type_service.update_cost_type(cost_type_id=cost_type_id, data=json_body())
    commit_session()
    return jsonify(row.to_dict()), 200


@purchasing_bp.delete("/cost-types/<int:cost_type_id>")
@json_errors("delete cost type")
def delete_cost_type(cost_type_id: int):
    cost_type_service.delete_cost_type(cost_type_id=cost_type_id)
    commit_session()
    return "", 204


# -----------------------------------------------------------------------------
# Receiving reports
# -----------------------------------------------------------------------------


@purchasing_bp.get("/receiving-reports")
@json_errors("list receiving reports")
def list_receiving_reports():
    rows, total = receiving_service.list_receiving_reports(
        purchase_order_id=request.args.get("purchase_order_id", type=int),
        payment_status=request.args.get("payment_status"),
        start=datetime_arg("start"),
        end=datetime_arg("end"),
        **_page_args(),
    )
    return jsonify({"receiving_reports": [r.to_dict(include_children=False) for r in rows], "total": total}), 200


@purchasing_bp.get("/receiving-reports/stats")
@json_errors("load receiving stats")
def receiving_stats():
    return jsonify(receiving_service.receiving_stats()), 200


@purchasing_bp.post("/purchase-orders/<int:purchase_order_id>/receiving-reports")
@require_actor
@json_errors("create receiving report")
def create_receiving_report(purchase_order_id: int):
    """
    Request body:
    {
        "received_date": iso datetime (optional),
        "payment_status": "unpaid" | "partial" | "paid" (optional),
        "attachment_path": str (optional),
        "items": [{"product_id", "received_quantity", "cost_price_cents",
                   "regular_price_cents", "wholesale_price_cents", "walk_in_price_cents"}],
        "additional_costs": [{"cost_type_id", "amount_cents", "is_deduction", "description"}]
    }
    """
    report = receiving_service.create_receiving_report(
        purchase_order_id=purchase_order_id, data=json_body(), received_by=g.actor_id
    )
    commit_session()
    return jsonify(report.to_dict()), 201


@purchasing_bp.get("/receiving-reports/<int:report_id>")
@json_errors("load receiving report")
def get_receiving_report(report_id: int):
    return jsonify(receiving_service.get_receiving_report(report_id).to_dict()), 200


@purchasing_bp.put("/receiving-reports/<int:report_id>")
@require_actor
@json_errors("update receiving report")
def update_receiving_report(report_id: int):
    report = receiving_service.update_receiving_report(report_id=report_id, data=json_body(), updated_by=g.actor_id)
    commit_session()
    return jsonify(report.to_dict()), 200


@purchasing_bp.delete("/receiving-reports/<int:report_id>")
@require_actor
@json_errors("delete receiving report")
def delete_receiving_report(report_id: int):
    receiving_service.delete_receiving_report(report_id=report_id, deleted_by=g.actor_id)
    commit_session()
    return "", 204


@purchasing_bp.post("/receiving-reports/<int:report_id>/payment-status")
@json_errors("update payment status")
def update_payment_status(report_id: int):
    report = receiving_service.update_payment_status(
        report_id=report_id, payment_status=json_body().get("payment_status")
    )
    commit_session()
    return jsonify(report.to_dict(include_children=False)), 200
