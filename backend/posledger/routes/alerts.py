# Overview: Flask API routes for alerts and on-demand reconciliation.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_admin, require_auth
from ..errors import PosError
from ..services import audit_service, reconciliation_service
from ..services.requests import parse_bool


alerts_bp = Blueprint("alerts", __name__, url_prefix="/api/alerts")


@alerts_bp.get("/")
@require_auth
@require_admin
def list_alerts_route():
    unresolved = request.args.get("unresolved", "false").lower() == "true"
    alerts = reconciliation_service.list_alerts(unresolved_only=unresolved)
    return jsonify({"alerts": [a.to_dict() for a in alerts]}), 200


@alerts_bp.post("/<int:alert_id>/read")
@require_auth
@require_admin
def mark_read_route(alert_id: int):
    try:
        return jsonify({"alert": reconciliation_service.mark_read(alert_id).to_dict()}), 200
    except PosError as e:
        return jsonify(e.to_dict()), e.status_code


@alerts_bp.post("/<int:alert_id>/resolve")
@require_auth
@require_admin
def resolve_route(alert_id: int):
    try:
        return jsonify({"alert": reconciliation_service.resolve_alert(alert_id, g.actor).to_dict()}), 200
    except PosError as e:
        return jsonify(e.to_dict()), e.status_code


@alerts_bp.post("/reconcile")
@require_auth
@require_admin
def reconcile_route():
    """
    Recompute balances and stock from source rows and alert on drift.

    Body: {"fix": true} rewrites drifted cached balances.
    """
    try:
        data = request.get_json(silent=True) or {}
        report = reconciliation_service.run_reconciliation(fix=parse_bool(data.get("fix", False), "fix"), actor=g.actor)
        return jsonify(report.to_dict()), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Reconciliation failed")
        return jsonify({"error": "Internal server error"}), 500


@alerts_bp.get("/audit")
@require_auth
@require_admin
def audit_log_route():
    """Recent audit entries, newest first. Optional ?action= filter."""
    limit = min(request.args.get("limit", 200, type=int), 1000)
    entries = audit_service.list_audit_logs(action=request.args.get("action"), limit=limit)
    return jsonify({"entries": [e.to_dict() for e in entries]}), 200
