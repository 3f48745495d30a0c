# Overview: Flask API routes for invoices; parses input and returns JSON responses.

"""Sales API routes (create, edit, delete, versions, locking)"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_admin, require_auth
from ..errors import PosError, ValidationError
from ..services import sales_service, versioning_service
from ..services.requests import SaleRequest
from ..time_utils import to_utc_z


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


def _expected_row_version(data: dict) -> int | None:
    raw = data.get("row_version")
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError("row_version must be an integer")


@sales_bp.post("/")
@require_auth
def create_sale_route():
    """
    Create a finalized invoice (or a draft when is_finalized is false).

    A repeated external_reference returns the original invoice with 200.
    """
    try:
        data = request.get_json(silent=True) or {}
        sale_request = SaleRequest.from_dict(data)
        replayed = (
            sale_request.external_reference is not None
            and sales_service.find_by_external_reference(sale_request.external_reference) is not None
        )

        sale = sales_service.create_sale(sale_request, g.actor)
        return jsonify({"sale": sale.to_dict()}), 200 if replayed else 201

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/override")
@require_auth
@require_admin
def create_sale_override_route():
    """Admin-only create that may take stock below zero. Requires override_reason."""
    try:
        data = request.get_json(silent=True) or {}
        sale = sales_service.create_sale_with_override(
            SaleRequest.from_dict(data),
            data.get("override_reason"),
            g.actor,
        )
        return jsonify({"sale": sale.to_dict()}), 201

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create override sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/")
@require_auth
def list_sales_route():
    try:
        customer_id = request.args.get("customer_id", type=int)
        sales, total = sales_service.list_sales(
            page=request.args.get("page", 1, type=int),
            page_size=request.args.get("page_size", 50, type=int),
            search=request.args.get("search"),
            customer_id=customer_id,
        )
        return jsonify({
            "sales": [s.to_dict(include_items=False) for s in sales],
            "total": total,
        }), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code


@sales_bp.get("/deleted")
@require_auth
@require_admin
def list_deleted_sales_route():
    sales = sales_service.list_deleted_sales()
    return jsonify({"sales": [s.to_dict(include_items=False) for s in sales]}), 200


@sales_bp.get("/<int:sale_id>")
@require_auth
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(sale_id)
        body = sale.to_dict()
        body["can_edit"] = sales_service.can_edit(sale, g.actor)
        body["lock_expires_at"] = to_utc_z(sales_service.lock_expires_at(sale))
        return jsonify({"sale": body}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code


@sales_bp.put("/<int:sale_id>")
@require_auth
def update_sale_route(sale_id: int):
    """
    Edit an invoice.

    Body is the full sale shape plus edit_reason (required for non-admins)
    and row_version (the value the client last read). A field left out of
    the body keeps its current value for customer_id.
    """
    try:
        data = request.get_json(silent=True) or {}
        sale_request = SaleRequest.from_dict(data)
        if "customer_id" not in data:
            sale_request.customer_id = sales_service.get_sale(sale_id).customer_id

        sale = sales_service.update_sale(
            sale_id,
            sale_request,
            g.actor,
            edit_reason=data.get("edit_reason"),
            expected_row_version=_expected_row_version(data),
        )
        return jsonify({"sale": sale.to_dict()}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/finalize")
@require_auth
def finalize_sale_route(sale_id: int):
    """Finalize a draft: moves stock and appends a new invoice version."""
    try:
        sale = sales_service.finalize_sale(sale_id, g.actor)
        return jsonify({"sale": sale.to_dict()}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to finalize sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.delete("/<int:sale_id>")
@require_auth
@require_admin
def delete_sale_route(sale_id: int):
    try:
        if not sales_service.delete_sale(sale_id, g.actor):
            return jsonify({"error": "Sale not found"}), 404
        return jsonify({"message": "Sale deleted", "sale_id": sale_id}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to delete sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/unlock")
@require_auth
@require_admin
def unlock_sale_route(sale_id: int):
    try:
        data = request.get_json(silent=True) or {}
        if not sales_service.unlock_invoice(sale_id, g.actor, data.get("reason")):
            return jsonify({"error": "Sale not found"}), 404
        return jsonify({"message": "Invoice unlocked", "sale_id": sale_id}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code


# =============================================================================
# VERSION HISTORY
# =============================================================================

@sales_bp.get("/<int:sale_id>/versions")
@require_auth
def list_versions_route(sale_id: int):
    try:
        sales_service.get_sale(sale_id, include_deleted=True)
        versions = versioning_service.list_versions(sale_id)
        return jsonify({"versions": [v.to_dict() for v in versions]}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code


@sales_bp.get("/<int:sale_id>/versions/<int:version_number>")
@require_auth
def get_version_route(sale_id: int, version_number: int):
    try:
        version = versioning_service.get_version(sale_id, version_number)
        return jsonify({"version": version.to_dict(include_data=True)}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code


@sales_bp.post("/<int:sale_id>/versions/<int:version_number>/restore")
@require_auth
@require_admin
def restore_version_route(sale_id: int, version_number: int):
    """Re-apply an earlier version; the result is appended as a new version."""
    try:
        data = request.get_json(silent=True) or {}
        sale = versioning_service.restore(sale_id, version_number, g.actor, reason=data.get("reason"))
        return jsonify({"sale": sale.to_dict()}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to restore invoice version")
        return jsonify({"error": "Internal server error"}), 500
