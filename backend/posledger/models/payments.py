from __future__ import annotations

import json

from ..extensions import db
from ..money import money_str
from ..time_utils import to_utc_z, utcnow


class Payment(db.Model):
    """
    Payment received from a customer.

    WHY separate from Sale: one invoice may be settled by several payments
    (cash now, cheque later), and a payment may be a general account credit
    with no invoice at all (sale_id NULL).

    STATUS:
    - PENDING: cheque/credit not yet cleared; does not count as paid
    - CLEARED: counts towards Sale.paid_amount and Customer.total_payments
    - RETURNED: bounced cheque (terminal)
    - VOID: cancelled, e.g. invoice deleted (terminal)
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.Index("ix_payments_sale_status", "sale_id", "status"),
        db.Index("ix_payments_customer_status", "customer_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True)

    amount = db.Column(db.Numeric(18, 2), nullable=False)
    mode = db.Column(db.String(16), nullable=False)  # CASH, CHEQUE, ONLINE, CREDIT
    reference = db.Column(db.String(128), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="PENDING")
    payment_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True, onupdate=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "customer_id": self.customer_id,
            "amount": money_str(self.amount),
            "mode": self.mode,
            "reference": self.reference,
            "status": self.status,
            "payment_date": to_utc_z(self.payment_date),
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at) if self.updated_at else None,
            "row_version": self.version_id,
        }


class PaymentIdempotency(db.Model):
    """
    Write-once record of a payment request keyed by the client's Idempotency-Key.

    WHY primary key on the key: the database, not the application, decides
    the winner when two identical requests race. The loser reads the
    winner's response_snapshot and returns it verbatim.
    """
    __tablename__ = "payment_idempotency"

    idempotency_key = db.Column(db.String(128), primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    response_snapshot = db.Column(db.Text, nullable=False)

    @property
    def response(self) -> dict:
        return json.loads(self.response_snapshot)
