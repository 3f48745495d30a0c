# Overview: Derives sale payment state and customer totals from live rows; sole writer of those caches.

"""
Balance Aggregator

WHY: Customer.total_sales / total_payments / pending_balance and
Sale.paid_amount / payment_status are caches. Incremental updates
(balance += amount) drift the first time a write is retried or partially
applied, so every write path recomputes them from the source rows:

    total_sales     = SUM(grand_total) of the customer's non-deleted sales
    total_payments  = SUM(amount) of the customer's CLEARED payments
    pending_balance = total_sales - total_payments
    sale.paid_amount = SUM(amount) of the sale's CLEARED payments (capped at grand_total)

DESIGN:
- recompute_* functions are read-only; they return values.
- store_* functions are the only code that assigns the cached fields.
  They run inside the caller's transaction and never commit.
- verify_* compare the cache with a fresh recompute (used by reconciliation).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func

from ..errors import NotFoundError
from ..extensions import db
from ..models import Customer, Payment, Sale
from ..money import ZERO, money, within_tolerance
from ..time_utils import utcnow


# =============================================================================
# PAYMENT STATUS (CONSTANTS)
# =============================================================================

SALE_STATUS_PENDING = "PENDING"
SALE_STATUS_PARTIAL = "PARTIAL"
SALE_STATUS_PAID = "PAID"

PAYMENT_CLEARED = "CLEARED"


@dataclass(frozen=True)
class CustomerTotals:
    customer_id: int
    total_sales: Decimal
    total_payments: Decimal
    pending_balance: Decimal

    def to_dict(self) -> dict:
        return {
            "customer_id": self.customer_id,
            "total_sales": str(self.total_sales),
            "total_payments": str(self.total_payments),
            "pending_balance": str(self.pending_balance),
        }


@dataclass(frozen=True)
class SalePaymentState:
    sale_id: int
    paid_amount: Decimal
    status: str
    last_payment_date: datetime | None
    # Cleared money beyond the grand total (customer credit)
    overpaid_amount: Decimal = ZERO


def derive_payment_status(paid_amount, grand_total) -> str:
    paid = money(paid_amount)
    total = money(grand_total)
    if paid > 0 and paid >= total:
        return SALE_STATUS_PAID
    if paid > 0:
        return SALE_STATUS_PARTIAL
    if total <= 0:
        # Zero-value invoice has nothing to collect
        return SALE_STATUS_PAID
    return SALE_STATUS_PENDING


# =============================================================================
# RECOMPUTE (READ-ONLY)
# =============================================================================

def recompute_sale_payment_state(sale_id: int) -> SalePaymentState:
    sale = db.session.get(Sale, sale_id)
    if not sale:
        raise NotFoundError(f"Sale {sale_id} not found", {"sale_id": sale_id})

    cleared, last_date = (
        db.session.query(
            func.coalesce(func.sum(Payment.amount), 0),
            func.max(Payment.payment_date),
        )
        .filter(Payment.sale_id == sale_id, Payment.status == PAYMENT_CLEARED)
        .one()
    )
    cleared = money(cleared)
    grand_total = money(sale.grand_total)

    # Deleted sales carry nothing; their payments are voided on delete
    if sale.is_deleted:
        grand_total = ZERO

    paid = min(cleared, grand_total) if grand_total > 0 else ZERO
    overpaid = cleared - paid
    return SalePaymentState(
        sale_id=sale_id,
        paid_amount=paid,
        status=derive_payment_status(paid, grand_total) if not sale.is_deleted else sale.payment_status,
        last_payment_date=last_date,
        overpaid_amount=overpaid,
    )


def recompute_customer_balance(customer_id: int) -> CustomerTotals:
    if not db.session.get(Customer, customer_id):
        raise NotFoundError(f"Customer {customer_id} not found", {"customer_id": customer_id})

    total_sales = (
        db.session.query(func.coalesce(func.sum(Sale.grand_total), 0))
        .filter(Sale.customer_id == customer_id, Sale.is_deleted.is_(False))
        .scalar()
    )
    total_payments = (
        db.session.query(func.coalesce(func.sum(Payment.amount), 0))
        .filter(Payment.customer_id == customer_id, Payment.status == PAYMENT_CLEARED)
        .scalar()
    )
    total_sales = money(total_sales)
    total_payments = money(total_payments)
    return CustomerTotals(
        customer_id=customer_id,
        total_sales=total_sales,
        total_payments=total_payments,
        pending_balance=total_sales - total_payments,
    )


# =============================================================================
# STORE (CALLER'S TRANSACTION)
# =============================================================================

def store_sale_payment_state(sale: Sale, state: SalePaymentState | None = None) -> SalePaymentState:
    """Write paid_amount / payment_status / last_payment_date onto the sale."""
    db.session.flush()
    if state is None:
        state = recompute_sale_payment_state(sale.id)
    sale.paid_amount = state.paid_amount
    sale.payment_status = state.status
    sale.last_payment_date = state.last_payment_date
    return state


def store_customer_totals(customer_id: int | None) -> CustomerTotals | None:
    """Recompute and write a customer's cached totals. No-op for walk-in (None)."""
    if customer_id is None:
        return None
    db.session.flush()
    totals = recompute_customer_balance(customer_id)
    customer = db.session.get(Customer, customer_id)

    customer.total_sales = totals.total_sales
    customer.total_payments = totals.total_payments
    customer.pending_balance = totals.pending_balance
    customer.balance = totals.pending_balance
    customer.last_activity = utcnow()

    last_payment = (
        db.session.query(func.max(Payment.payment_date))
        .filter(Payment.customer_id == customer_id, Payment.status == PAYMENT_CLEARED)
        .scalar()
    )
    customer.last_payment_date = last_payment
    return totals


# =============================================================================
# VERIFY
# =============================================================================

def verify_customer_balance(customer_id: int) -> tuple[bool, CustomerTotals]:
    """Return (consistent, recomputed totals)."""
    customer = db.session.get(Customer, customer_id)
    if not customer:
        raise NotFoundError(f"Customer {customer_id} not found", {"customer_id": customer_id})
    totals = recompute_customer_balance(customer_id)
    consistent = (
        within_tolerance(customer.total_sales, totals.total_sales)
        and within_tolerance(customer.total_payments, totals.total_payments)
        and within_tolerance(customer.pending_balance, totals.pending_balance)
    )
    return consistent, totals


def verify_sale_payment_state(sale_id: int) -> tuple[bool, SalePaymentState]:
    sale = db.session.get(Sale, sale_id)
    if not sale:
        raise NotFoundError(f"Sale {sale_id} not found", {"sale_id": sale_id})
    state = recompute_sale_payment_state(sale_id)
    consistent = within_tolerance(sale.paid_amount, state.paid_amount) and (
        sale.payment_status == state.status
    )
    return consistent, state
