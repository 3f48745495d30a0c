# Overview: Customer master data and account statements; balances themselves belong to balance_service.

from __future__ import annotations

from ..errors import ConcurrencyConflict, NotFoundError, ValidationError
from ..extensions import db
from ..models import Customer, Payment, Sale
from ..money import money, to_decimal
from ..permissions import Actor
from ..time_utils import utcnow
from . import balance_service
from .audit_service import record_audit
from .concurrency import run_with_retry


PROFILE_FIELDS = {"name", "phone", "email", "trn", "address", "credit_limit"}


def _clean(data: dict, *, creating: bool) -> dict:
    unknown = set(data) - PROFILE_FIELDS
    if unknown:
        # total_sales, pending_balance and friends are derived, never written
        raise ValidationError(f"Fields cannot be set: {', '.join(sorted(unknown))}")
    cleaned = {}
    for key in ("name", "phone", "email", "trn", "address"):
        if key in data:
            value = data[key]
            cleaned[key] = str(value).strip() if value is not None and str(value).strip() else None
    if "credit_limit" in data:
        limit = money(to_decimal(data["credit_limit"], "credit_limit"))
        if limit < 0:
            raise ValidationError("credit_limit cannot be negative")
        cleaned["credit_limit"] = limit
    if (creating or "name" in cleaned) and not cleaned.get("name"):
        raise ValidationError("name is required")
    return cleaned


def create_customer(data: dict, actor: Actor) -> Customer:
    fields = _clean(data, creating=True)

    def _op():
        customer = Customer(**fields)
        db.session.add(customer)
        db.session.flush()
        record_audit(actor.user_id, "CUSTOMER_CREATED", {"customer_id": customer.id, "name": customer.name})
        db.session.commit()
        return customer

    return run_with_retry(_op)


def update_customer(customer_id: int, data: dict, actor: Actor, expected_row_version: int | None = None) -> Customer:
    fields = _clean(data, creating=False)

    def _op():
        customer = db.session.get(Customer, customer_id)
        if not customer:
            raise NotFoundError(f"Customer {customer_id} not found", {"customer_id": customer_id})
        if expected_row_version is not None and customer.version_id != expected_row_version:
            raise ConcurrencyConflict(
                "Customer was modified by another user. Reload and try again.",
                {"customer_id": customer.id, "row_version": customer.version_id},
            )
        for key, value in fields.items():
            setattr(customer, key, value)
        customer.updated_at = utcnow()
        record_audit(actor.user_id, "CUSTOMER_UPDATED", {"customer_id": customer.id, "fields": sorted(fields)})
        db.session.commit()
        return customer

    return run_with_retry(_op)


def get_customer(customer_id: int) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if not customer:
        raise NotFoundError(f"Customer {customer_id} not found", {"customer_id": customer_id})
    return customer


def list_customers(search: str | None = None) -> list[Customer]:
    query = db.session.query(Customer)
    if search:
        like = f"%{search.strip()}%"
        query = query.filter(Customer.name.like(like) | Customer.phone.like(like))
    return query.order_by(Customer.name.asc()).all()


def get_statement(customer_id: int) -> dict:
    """
    Account statement: live invoices and payments with a freshly recomputed
    balance alongside the cached one.
    """
    customer = get_customer(customer_id)
    sales = (
        db.session.query(Sale)
        .filter(Sale.customer_id == customer_id, Sale.is_deleted.is_(False))
        .order_by(Sale.invoice_date.asc(), Sale.id.asc())
        .all()
    )
    payments = (
        db.session.query(Payment)
        .filter(Payment.customer_id == customer_id)
        .order_by(Payment.payment_date.asc(), Payment.id.asc())
        .all()
    )
    consistent, totals = balance_service.verify_customer_balance(customer_id)
    return {
        "customer": customer.to_dict(),
        "sales": [sale.to_dict(include_items=False) for sale in sales],
        "payments": [payment.to_dict() for payment in payments],
        "recomputed": totals.to_dict(),
        "consistent": consistent,
    }
