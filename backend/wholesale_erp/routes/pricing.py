# backend/wholesale_erp/routes/pricing.py
"""
Pricing API: bracket pricing, customer custom pricing and flat product prices.
"""
from flask import Blueprint, g, jsonify, request

from ..decorators import datetime_arg, json_body, json_errors, require_actor
from ..services import bracket_service, custom_pricing_service, product_price_service
from ..services.concurrency import commit_session
from ..validation import PRICE_TYPE_REGULAR, ValidationError

pricing_bp = Blueprint("pricing", __name__, url_prefix="/api")


def _quantities_arg():
    raw = request.args.get("quantities")
    if not raw:
        return None
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError as exc:
        raise ValidationError({"quantities": ["must be a comma separated list of integers"]}) from exc


# -----------------------------------------------------------------------------
# Brackets
# -----------------------------------------------------------------------------


@pricing_bp.get("/products/<int:product_id>/brackets")
@json_errors("list brackets")
def list_brackets(product_id: int):
    brackets = bracket_service.list_brackets(product_id)
    return jsonify({"brackets": [b.to_dict() for b in brackets]}), 200


@pricing_bp.post("/products/<int:product_id>/brackets")
@require_actor
@json_errors("create bracket")
def create_bracket(product_id: int):
    """
    Request body:
    {
        "name": str,
        "effective_from": iso datetime (optional),
        "effective_to": iso datetime (optional),
        "is_selected": bool (optional, activates at effective_from),
        "items": [{"min_quantity", "max_quantity", "price_cents", "price_type"}]
    }
    """
    bracket = bracket_service.create_bracket_with_items(
        product_id=product_id, data=json_body(), created_by=g.actor_id
    )
    commit_session()
    return jsonify(bracket.to_dict()), 201


@pricing_bp.get("/brackets/<int:bracket_id>")
@json_errors("load bracket")
def get_bracket(bracket_id: int):
    return jsonify(bracket_service.get_bracket(bracket_id).to_dict()), 200


@pricing_bp.put("/brackets/<int:bracket_id>")
@json_errors("update bracket")
def update_bracket(bracket_id: int):
    bracket = bracket_service.update_bracket_with_items(bracket_id=bracket_id, data=json_body())
    commit_session()
    return jsonify(bracket.to_dict()), 200


@pricing_bp.post("/brackets/<int:bracket_id>/activate")
@json_errors("activate bracket")
def activate_bracket(bracket_id: int):
    bracket = bracket_service.activate_bracket(
        bracket_id=bracket_id, effective_from=json_body().get("effective_from")
    )
    commit_session()
    return jsonify(bracket.to_dict()), 200


@pricing_bp.post("/products/<int:product_id>/brackets/deactivate")
@json_errors("deactivate bracket pricing")
def deactivate_bracket_pricing(product_id: int):
    product = bracket_service.deactivate_bracket_pricing(product_id=product_id)
    commit_session()
    return jsonify(product.to_dict()), 200


@pricing_bp.delete("/brackets/<int:bracket_id>")
@json_errors("delete bracket")
def delete_bracket(bracket_id: int):
    bracket_service.delete_bracket(bracket_id=bracket_id)
    commit_session()
    return "", 204


@pricing_bp.post("/brackets/<int:bracket_id>/clone")
@require_actor
@json_errors("clone bracket")
def clone_bracket(bracket_id: int):
    bracket = bracket_service.clone_bracket(bracket_id=bracket_id, overrides=json_body(), created_by=g.actor_id)
    commit_session()
    return jsonify(bracket.to_dict()), 201


@pricing_bp.post("/products/<int:product_id>/brackets/import")
@require_actor
@json_errors("import brackets")
def import_brackets(product_id: int):
    """
    Multipart upload ("file") or raw text/csv body.

    Returns 200 with per-row results even when some rows fail.
    """
    upload = request.files.get("file")
    if upload is not None:
        text = upload.read().decode("utf-8-sig")
    else:
        text = request.get_data(as_text=True)
    if not text.strip():
        raise ValidationError({"file": ["CSV content is required"]})

    bracket_id = request.args.get("bracket_id", type=int)
    rows = bracket_service.parse_bracket_csv(text)
    result = bracket_service.import_brackets_from_csv(
        product_id=product_id, rows=rows, bracket_id=bracket_id, created_by=g.actor_id
    )
    commit_session()
    return jsonify(result), 200


@pricing_bp.get("/products/<int:product_id>/price")
@json_errors("calculate price")
def calculate_price(product_id: int):
    quantity = request.args.get("quantity", type=int)
    if quantity is None:
        raise ValidationError({"quantity": ["is required"]})
    result = bracket_service.calculate_price_for_quantity(
        product_id=product_id,
        quantity=quantity,
        price_type=request.args.get("price_type", PRICE_TYPE_REGULAR),
        as_of=datetime_arg("as_of"),
        customer_id=request.args.get("customer_id", type=int),
    )
    return jsonify(result), 200


@pricing_bp.get("/products/<int:product_id>/pricing-breakdown")
@json_errors("load pricing breakdown")
def pricing_breakdown(product_id: int):
    result = bracket_service.get_pricing_breakdown(
        product_id=product_id,
        price_type=request.args.get("price_type", PRICE_TYPE_REGULAR),
        quantities=_quantities_arg(),
        as_of=datetime_arg("as_of"),
    )
    return jsonify(result), 200


@pricing_bp.get("/products/<int:product_id>/pricing-suggestions")
@json_errors("load pricing suggestions")
def pricing_suggestions(product_id: int):
    result = bracket_service.get_optimal_pricing_suggestions(
        product_id=product_id,
        target_margin=request.args.get("target_margin", bracket_service.DEFAULT_TARGET_MARGIN),
        quantities=_quantities_arg(),
    )
    return jsonify(result), 200


# -----------------------------------------------------------------------------
# Custom pricing
# -----------------------------------------------------------------------------


@pricing_bp.post("/customers/<int:customer_id>/valued")
@json_errors("mark valued customer")
def mark_valued(customer_id: int):
    customer = custom_pricing_service.mark_valued_customer(
        customer_id=customer_id, notes=json_body().get("notes")
    )
    commit_session()
    return jsonify(customer.to_dict()), 200


@pricing_bp.delete("/customers/<int:customer_id>/valued")
@json_errors("remove valued status")
def remove_valued(customer_id: int):
    customer = custom_pricing_service.remove_valued_status(customer_id=customer_id)
    commit_session()
    return jsonify(customer.to_dict()), 200


@pricing_bp.get("/customers/<int:customer_id>/custom-prices")
@json_errors("list custom prices")
def list_custom_prices(customer_id: int):
    product_id = request.args.get("product_id", type=int)
    if product_id is not None:
        rows = custom_pricing_service.get_custom_pricing_for_product(customer_id=customer_id, product_id=product_id)
    else:
        rows = custom_pricing_service.list_custom_prices(
            customer_id=customer_id,
            include_inactive=request.args.get("include_inactive", "false").lower() == "true",
        )
    return jsonify({"custom_prices": [r.to_dict() for r in rows]}), 200


@pricing_bp.post("/customers/<int:customer_id>/custom-prices")
@require_actor
@json_errors("set custom prices")
def set_custom_prices(customer_id: int):
    rows = custom_pricing_service.set_custom_prices_for_customer(
        customer_id=customer_id, prices=json_body().get("prices"), created_by=g.actor_id
    )
    commit_session()
    return jsonify({"custom_prices": [r.to_dict() for r in rows]}), 201


@pricing_bp.delete("/custom-prices/<int:price_id>")
@json_errors("deactivate custom price")
def deactivate_custom_price(price_id: int):
    row = custom_pricing_service.deactivate_custom_price(price_id=price_id)
    commit_session()
    return jsonify(row.to_dict()), 200


# -----------------------------------------------------------------------------
# Flat product prices
# -----------------------------------------------------------------------------


@pricing_bp.get("/products/<int:product_id>/prices")
@json_errors("list product prices")
def list_product_prices(product_id: int):
    rows = product_price_service.list_product_prices(
        product_id=product_id, trashed=request.args.get("trashed", "false").lower() == "true"
    )
    return jsonify({"prices": [r.to_dict() for r in rows]}), 200


@pricing_bp.get("/products/<int:product_id>/prices/current")
@json_errors("load current price")
def current_product_price(product_id: int):
    row = product_price_service.get_current_price(product_id=product_id, as_of=datetime_arg("as_of"))
    return jsonify(row.to_dict()), 200


@pricing_bp.post("/products/<int:product_id>/prices")
@require_actor
@json_errors("create product price")
def create_product_price(product_id: int):
    row = product_price_service.create_product_price(product_id=product_id, data=json_body(), created_by=g.actor_id)
    commit_session()
    return jsonify(row.to_dict()), 201


@pricing_bp.put("/prices/<int:price_id>")
@json_errors("update product price")
def update_product_price(price_id: int):
    row = product_price_service.update_product_price(price_id=price_id, data=json_body())
    commit_session()
    return jsonify(row.to_dict()), 200


@pricing_bp.post("/prices/<int:price_id>/activate")
@json_errors("activate product price")
def activate_product_price(price_id: int):
    row = product_price_service.set_active_price(price_id=price_id)
    commit_session()
    return jsonify(row.to_dict()), 200


@pricing_bp.delete("/prices/<int:price_id>")
@json_errors("delete product price")
def delete_product_price(price_id: int):
    row = product_price_service.delete_product_price(price_id=price_id)
    commit_session()
    return jsonify(row.to_dict()), 200


@pricing_bp.post("/prices/<int:price_id>/restore")
@json_errors("restore product price")
def restore_product_price(price_id: int):
    row = product_price_service.restore_product_price(price_id=price_id)
    commit_session()
    return jsonify(row.to_dict()), 200
