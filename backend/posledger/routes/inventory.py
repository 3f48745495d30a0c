# Overview: Flask API routes for products, stock adjustments, the stock ledger and purchases.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_admin, require_auth
from ..errors import PosError
from ..money import quantity_str
from ..services import products_service, purchase_service, stock_ledger
from ..services.purchase_service import PurchaseRequest
from ..services.requests import parse_bool


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


# =============================================================================
# PRODUCTS
# =============================================================================

@inventory_bp.get("/products")
@require_auth
def list_products_route():
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    products = products_service.list_products(
        include_inactive=include_inactive,
        search=request.args.get("search"),
    )
    return jsonify({"products": [p.to_dict() for p in products]}), 200


@inventory_bp.get("/products/<int:product_id>")
@require_auth
def get_product_route(product_id: int):
    try:
        return jsonify({"product": products_service.get_product(product_id).to_dict()}), 200
    except PosError as e:
        return jsonify(e.to_dict()), e.status_code


@inventory_bp.post("/products")
@require_auth
@require_admin
def create_product_route():
    try:
        data = request.get_json(silent=True) or {}
        product = products_service.create_product(data, g.actor)
        return jsonify({"product": product.to_dict()}), 201

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create product")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.put("/products/<int:product_id>")
@require_auth
@require_admin
def update_product_route(product_id: int):
    """Body may carry row_version; stock_qty is rejected (use /adjustments)."""
    try:
        data = dict(request.get_json(silent=True) or {})
        row_version = data.pop("row_version", None)
        product = products_service.update_product(
            product_id,
            data,
            g.actor,
            expected_row_version=int(row_version) if row_version is not None else None,
        )
        return jsonify({"product": product.to_dict()}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update product")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/products/<int:product_id>/price-changes")
@require_auth
def list_price_changes_route(product_id: int):
    changes = products_service.list_price_changes(product_id)
    return jsonify({"price_changes": [c.to_dict() for c in changes]}), 200


@inventory_bp.get("/products/<int:product_id>/stock")
@require_auth
def stock_level_route(product_id: int):
    """Cached on-hand next to the ledger sum; the two must agree."""
    try:
        product = products_service.get_product(product_id)
        return jsonify({
            "product_id": product.id,
            "stock_qty": quantity_str(product.stock_qty),
            "ledger_qty": quantity_str(stock_ledger.get_ledger_quantity(product.id)),
        }), 200
    except PosError as e:
        return jsonify(e.to_dict()), e.status_code


# =============================================================================
# STOCK ADJUSTMENTS & LEDGER
# =============================================================================

@inventory_bp.post("/adjustments")
@require_auth
@require_admin
def adjust_stock_route():
    """Body: {"product_id": 1, "change_qty": "-2", "reason": "Damaged", "allow_negative": false}"""
    try:
        data = request.get_json(silent=True) or {}
        if data.get("product_id") is None:
            return jsonify({"error": "product_id required"}), 400
        adjustment = products_service.adjust_stock(
            int(data["product_id"]),
            data.get("change_qty"),
            data.get("reason"),
            g.actor,
            allow_negative=parse_bool(data.get("allow_negative", False), "allow_negative"),
        )
        return jsonify({"adjustment": adjustment.to_dict()}), 201

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/adjustments")
@require_auth
def list_adjustments_route():
    adjustments = products_service.list_adjustments(request.args.get("product_id", type=int))
    return jsonify({"adjustments": [a.to_dict() for a in adjustments]}), 200


@inventory_bp.get("/ledger")
@require_auth
def list_ledger_route():
    transactions = stock_ledger.list_transactions(
        product_id=request.args.get("product_id", type=int),
        ref_id=request.args.get("ref_id", type=int),
        transaction_type=request.args.get("type"),
        limit=request.args.get("limit", 200, type=int),
    )
    return jsonify({"transactions": [t.to_dict() for t in transactions]}), 200


# =============================================================================
# PURCHASES
# =============================================================================

@inventory_bp.post("/purchases")
@require_auth
@require_admin
def create_purchase_route():
    try:
        data = request.get_json(silent=True) or {}
        purchase = purchase_service.create_purchase(PurchaseRequest.from_dict(data), g.actor)
        return jsonify({"purchase": purchase.to_dict()}), 201

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create purchase")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/purchases")
@require_auth
def list_purchases_route():
    include_deleted = request.args.get("include_deleted", "false").lower() == "true"
    purchases = purchase_service.list_purchases(include_deleted=include_deleted)
    return jsonify({"purchases": [p.to_dict() for p in purchases]}), 200


@inventory_bp.get("/purchases/<int:purchase_id>")
@require_auth
def get_purchase_route(purchase_id: int):
    try:
        return jsonify({"purchase": purchase_service.get_purchase(purchase_id).to_dict()}), 200
    except PosError as e:
        return jsonify(e.to_dict()), e.status_code


@inventory_bp.delete("/purchases/<int:purchase_id>")
@require_auth
@require_admin
def delete_purchase_route(purchase_id: int):
    """Soft-delete a purchase and reverse its stock."""
    try:
        if not purchase_service.delete_purchase(purchase_id, g.actor):
            return jsonify({"error": "Purchase not found"}), 404
        return jsonify({"message": "Purchase deleted", "purchase_id": purchase_id}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to delete purchase")
        return jsonify({"error": "Internal server error"}), 500
