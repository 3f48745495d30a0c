# Overview: Flask API routes for payments; parses input and returns JSON responses.

"""
Payment API Routes

Create/allocate honour the Idempotency-Key header: a repeated key returns
the stored response unchanged (same status, same bytes) instead of recording
a second payment. Replays carry an Idempotent-Replay: true header.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_admin, require_auth
from ..errors import PosError, ValidationError
from ..money import to_decimal
from ..services import payment_service
from ..services.requests import AllocationRequest, PaymentRequest
from ..time_utils import parse_iso_datetime


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _idempotency_key():
    return request.headers.get("Idempotency-Key") or (request.get_json(silent=True) or {}).get("idempotency_key")


def _payment_response(response, status: int = 201):
    resp = jsonify(response.to_dict())
    resp.status_code = status
    if response.idempotent_replay:
        resp.headers["Idempotent-Replay"] = "true"
    return resp


@payments_bp.post("/")
@require_auth
def create_payment_route():
    """
    Record a payment against an invoice (sale_id) or on account (customer_id only).

    Body: {"amount": "10.00", "mode": "CASH", "sale_id": 1, "reference": "..."}
    Header: Idempotency-Key (optional)
    """
    try:
        data = request.get_json(silent=True) or {}
        response = payment_service.create_payment(
            PaymentRequest.from_dict(data),
            g.actor,
            idempotency_key=_idempotency_key(),
        )
        return _payment_response(response)

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/allocate")
@require_auth
def allocate_payment_route():
    """Split one customer payment across invoices (explicit or oldest first)."""
    try:
        data = request.get_json(silent=True) or {}
        response = payment_service.allocate_payment(
            AllocationRequest.from_dict(data),
            g.actor,
            idempotency_key=_idempotency_key(),
        )
        return _payment_response(response)

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to allocate payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/")
@require_auth
def list_payments_route():
    payments = payment_service.list_payments(
        sale_id=request.args.get("sale_id", type=int),
        customer_id=request.args.get("customer_id", type=int),
        status=request.args.get("status"),
    )
    return jsonify({"payments": [p.to_dict() for p in payments]}), 200


@payments_bp.get("/<int:payment_id>")
@require_auth
def get_payment_route(payment_id: int):
    try:
        return jsonify({"payment": payment_service.get_payment(payment_id).to_dict()}), 200
    except PosError as e:
        return jsonify(e.to_dict()), e.status_code


@payments_bp.patch("/<int:payment_id>/status")
@require_auth
@require_admin
def update_payment_status_route(payment_id: int):
    """Body: {"status": "CLEARED" | "RETURNED" | "VOID"}"""
    try:
        data = request.get_json(silent=True) or {}
        if not payment_service.update_payment_status(payment_id, data.get("status"), g.actor):
            return jsonify({"error": "Payment not found"}), 404
        return jsonify({"payment": payment_service.get_payment(payment_id).to_dict()}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update payment status")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.put("/<int:payment_id>")
@require_auth
@require_admin
def update_payment_route(payment_id: int):
    try:
        data = request.get_json(silent=True) or {}
        row_version = data.get("row_version")
        if row_version is not None and not isinstance(row_version, int):
            raise ValidationError("row_version must be an integer")
        payment_date = data.get("payment_date")
        if payment_date:
            try:
                payment_date = parse_iso_datetime(payment_date)
            except ValueError:
                raise ValidationError("payment_date must be an ISO-8601 date")

        payment = payment_service.update_payment(
            payment_id,
            g.actor,
            amount=to_decimal(data["amount"], "amount") if data.get("amount") is not None else None,
            mode=data.get("mode"),
            reference=data.get("reference"),
            payment_date=payment_date or None,
            expected_row_version=row_version,
        )
        return jsonify({"payment": payment.to_dict()}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.delete("/<int:payment_id>")
@require_auth
@require_admin
def delete_payment_route(payment_id: int):
    try:
        if not payment_service.delete_payment(payment_id, g.actor):
            return jsonify({"error": "Payment not found"}), 404
        return jsonify({"message": "Payment deleted", "payment_id": payment_id}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to delete payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/outstanding/<int:customer_id>")
@require_auth
def outstanding_invoices_route(customer_id: int):
    sales = payment_service.get_outstanding_invoices(customer_id)
    return jsonify({"invoices": [s.to_dict(include_items=False) for s in sales]}), 200


@payments_bp.get("/invoice/<int:sale_id>")
@require_auth
def invoice_amount_route(sale_id: int):
    try:
        return jsonify(payment_service.get_invoice_amount(sale_id)), 200
    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
