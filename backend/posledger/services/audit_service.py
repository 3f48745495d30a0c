# Overview: Appends audit log rows within the caller's transaction.

from __future__ import annotations

import json

from ..extensions import db
from ..models import AuditLog
from ..time_utils import utcnow


def record_audit(actor_id: int | None, action: str, details: dict | None = None) -> AuditLog:
    entry = AuditLog(
        user_id=actor_id,
        action=action,
        details=json.dumps(details, default=str, sort_keys=True) if details is not None else None,
        created_at=utcnow(),
    )
    db.session.add(entry)
    return entry


def list_audit_logs(action: str | None = None, limit: int = 200) -> list[AuditLog]:
    query = db.session.query(AuditLog)
    if action:
        query = query.filter(AuditLog.action == action)
    return query.order_by(AuditLog.id.desc()).limit(limit).all()
