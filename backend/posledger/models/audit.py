from __future__ import annotations

import json

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class AuditLog(db.Model):
    """Append-only record of privileged or financially relevant actions."""
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_action_created", "action", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    action = db.Column(db.String(64), nullable=False)
    details = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action,
            "details": json.loads(self.details) if self.details else None,
            "created_at": to_utc_z(self.created_at),
        }


class Alert(db.Model):
    """
    Operator-facing alert (balance drift, negative stock, deleted invoice...).

    dedupe_key lets the reconciliation job avoid re-raising a finding that
    is still open.
    """
    __tablename__ = "alerts"
    __table_args__ = (
        db.Index("ix_alerts_resolved_created", "is_resolved", "created_at"),
        db.Index("ix_alerts_dedupe_key", "dedupe_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(32), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    severity = db.Column(db.String(16), nullable=False, default="INFO")  # INFO, WARNING, ERROR, CRITICAL
    dedupe_key = db.Column(db.String(128), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)

    is_read = db.Column(db.Boolean, nullable=False, default=False)
    is_resolved = db.Column(db.Boolean, nullable=False, default=False)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "severity": self.severity,
            "metadata": json.loads(self.metadata_json) if self.metadata_json else None,
            "is_read": self.is_read,
            "is_resolved": self.is_resolved,
            "resolved_at": to_utc_z(self.resolved_at) if self.resolved_at else None,
            "resolved_by": self.resolved_by,
            "created_at": to_utc_z(self.created_at),
        }
