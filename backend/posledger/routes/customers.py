# Overview: Flask API routes for customers and account statements.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth
from ..errors import PosError
from ..services import customer_service


customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


@customers_bp.get("/")
@require_auth
def list_customers_route():
    customers = customer_service.list_customers(request.args.get("search"))
    return jsonify({"customers": [c.to_dict() for c in customers]}), 200


@customers_bp.post("/")
@require_auth
def create_customer_route():
    try:
        customer = customer_service.create_customer(request.get_json(silent=True) or {}, g.actor)
        return jsonify({"customer": customer.to_dict()}), 201

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create customer")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.get("/<int:customer_id>")
@require_auth
def get_customer_route(customer_id: int):
    try:
        return jsonify({"customer": customer_service.get_customer(customer_id).to_dict()}), 200
    except PosError as e:
        return jsonify(e.to_dict()), e.status_code


@customers_bp.put("/<int:customer_id>")
@require_auth
def update_customer_route(customer_id: int):
    """Profile fields only; balances are derived and rejected here."""
    try:
        data = dict(request.get_json(silent=True) or {})
        row_version = data.pop("row_version", None)
        customer = customer_service.update_customer(
            customer_id,
            data,
            g.actor,
            expected_row_version=int(row_version) if row_version is not None else None,
        )
        return jsonify({"customer": customer.to_dict()}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update customer")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.get("/<int:customer_id>/statement")
@require_auth
def statement_route(customer_id: int):
    try:
        return jsonify(customer_service.get_statement(customer_id)), 200
    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
