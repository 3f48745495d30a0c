from __future__ import annotations

from ..extensions import db
from ..money import money_str
from ..time_utils import to_utc_z, utcnow


class Customer(db.Model):
    """
    Credit customer with cached account totals.

    WHY cached: statements and the customer list need balances without
    summing every invoice. The cache is written only by
    services.balance_service and can always be rebuilt from sales and
    cleared payments:

        pending_balance = total_sales - total_payments

    `balance` mirrors pending_balance for older clients that read it.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.Index("ix_customers_name", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    trn = db.Column(db.String(32), nullable=True)
    address = db.Column(db.Text, nullable=True)
    credit_limit = db.Column(db.Numeric(18, 2), nullable=False, default=0)

    total_sales = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    total_payments = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    pending_balance = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    balance = db.Column(db.Numeric(18, 2), nullable=False, default=0)

    last_activity = db.Column(db.DateTime(timezone=True), nullable=True)
    last_payment_date = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "trn": self.trn,
            "address": self.address,
            "credit_limit": money_str(self.credit_limit),
            "total_sales": money_str(self.total_sales),
            "total_payments": money_str(self.total_payments),
            "pending_balance": money_str(self.pending_balance),
            "balance": money_str(self.balance),
            "last_activity": to_utc_z(self.last_activity) if self.last_activity else None,
            "last_payment_date": to_utc_z(self.last_payment_date) if self.last_payment_date else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "row_version": self.version_id,
        }
