# backend/wholesale_erp/routes/sales.py
"""
Sales API: invoices, payments, discount approval, cancellation and returns.
"""
from flask import Blueprint, g, jsonify, request

from ..decorators import datetime_arg, json_body, json_errors, require_actor
from ..services import return_service, sales_service
from ..services.concurrency import commit_session

sales_bp = Blueprint("sales", __name__, url_prefix="/api")


@sales_bp.get("/sales")
@json_errors("list sales")
def list_sales():
    rows, total = sales_service.list_sales(
        status=request.args.get("status"),
        payment_status=request.args.get("payment_status"),
        customer_id=request.args.get("customer_id", type=int),
        start=datetime_arg("start"),
        end=datetime_arg("end"),
        limit=request.args.get("limit", 100, type=int),
        offset=request.args.get("offset", 0, type=int),
    )
    return jsonify({"sales": [s.to_dict(include_items=False) for s in rows], "total": total}), 200


@sales_bp.post("/sales")
@require_actor
@json_errors("create sale")
def create_sale():
    """
    Request body:
    {
        "customer_id": int (optional, walk-in when omitted),
        "customer_type": "walk_in" | "regular" | "wholesale" (optional),
        "order_date": iso datetime (optional),
        "discount_percent": number 0-100 (optional),
        "delivery_fee_cents": int, "cutting_charges_cents": int (optional),
        "amount_received_cents": int (optional initial payment),
        "payment_method": str (optional),
        "items": [{"product_id", "quantity", "price_type", "discount_cents"}]
    }

    Returns:
        201: Sale created, stock decremented, price resolved per line
        400: Invalid request
        404: Product or customer not found
        409: Insufficient stock
    """
    sale = sales_service.create_sale(data=json_body(), created_by=g.actor_id)
    commit_session()
    return jsonify(sale.to_dict()), 201


@sales_bp.get("/sales/<int:sale_id>")
@json_errors("load sale")
def get_sale(sale_id: int):
    return jsonify(sales_service.get_sale(sale_id).to_dict()), 200


@sales_bp.post("/sales/<int:sale_id>/approve-discount")
@require_actor
@json_errors("approve discount")
def approve_discount(sale_id: int):
    sale = sales_service.approve_discount(sale_id=sale_id, approved_by=g.actor_id)
    commit_session()
    return jsonify(sale.to_dict()), 200


@sales_bp.post("/sales/<int:sale_id>/payments")
@require_actor
@json_errors("record payment")
def record_payment(sale_id: int):
    data = json_body()
    payment = sales_service.record_payment(
        sale_id=sale_id,
        amount_cents=data.get("amount_cents"),
        method=data.get("method", "cash"),
        reference=data.get("reference"),
        received_by=g.actor_id,
    )
    commit_session()
    return jsonify({"payment": payment.to_dict(), "sale": payment.sale.to_dict(include_items=False)}), 201


@sales_bp.post("/payments/<int:payment_id>/void")
@require_actor
@json_errors("void payment")
def void_payment(payment_id: int):
    sale = sales_service.void_payment(
        payment_id=payment_id, voided_by=g.actor_id, reason=json_body().get("reason")
    )
    commit_session()
    return jsonify(sale.to_dict()), 200


@sales_bp.post("/sales/<int:sale_id>/cancel")
@require_actor
@json_errors("cancel sale")
def cancel_sale(sale_id: int):
    sale = sales_service.cancel_sale(sale_id=sale_id, cancelled_by=g.actor_id)
    commit_session()
    return jsonify(sale.to_dict()), 200


# -----------------------------------------------------------------------------
# Returns
# -----------------------------------------------------------------------------


@sales_bp.get("/returns")
@json_errors("list returns")
def list_returns():
    rows = return_service.list_returns(
        sale_id=request.args.get("sale_id", type=int),
        status=request.args.get("status"),
    )
    return jsonify({"returns": [r.to_dict() for r in rows]}), 200


@sales_bp.post("/sales/<int:sale_id>/returns")
@require_actor
@json_errors("create return")
def create_return(sale_id: int):
    data = json_body()
    sale_return = return_service.create_return(
        sale_id=sale_id, items=data.get("items"), reason=data.get("reason"), created_by=g.actor_id
    )
    commit_session()
    return jsonify(sale_return.to_dict()), 201


@sales_bp.get("/returns/<int:return_id>")
@json_errors("load return")
def get_return(return_id: int):
    return jsonify(return_service.get_return(return_id).to_dict()), 200


@sales_bp.post("/returns/<int:return_id>/approve")
@require_actor
@json_errors("approve return")
def approve_return(return_id: int):
    sale_return = return_service.approve_return(return_id=return_id, approved_by=g.actor_id)
    commit_session()
    return jsonify(sale_return.to_dict()), 200


@sales_bp.post("/returns/<int:return_id>/reject")
@require_actor
@json_errors("reject return")
def reject_return(return_id: int):
    sale_return = return_service.reject_return(
        return_id=return_id, rejected_by=g.actor_id, reason=json_body().get("reason")
    )
    commit_session()
    return jsonify(sale_return.to_dict()), 200


@sales_bp.post("/returns/<int:return_id>/complete")
@require_actor
@json_errors("complete return")
def complete_return(return_id: int):
    sale_return = return_service.complete_return(return_id=return_id, completed_by=g.actor_id)
    commit_session()
    return jsonify(sale_return.to_dict()), 200
