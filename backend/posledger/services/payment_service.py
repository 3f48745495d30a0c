# Overview: Payment Transaction Manager: record, allocate, clear/return/void, edit and delete payments.

"""
Payment Processing Service

WHY: Customers settle invoices in cash, online transfer, cheque or on
credit, often across several payments, and sometimes pay on account
without naming an invoice.

DESIGN PRINCIPLES:
- Payments are separate from sales (many-to-one relationship)
- Only CLEARED payments count as paid; a cheque is PENDING until it clears
- Every write recomputes Sale.paid_amount and the customer's totals through
  balance_service in the same transaction (no incremental balance math)
- Idempotency-Key is checked before any mutation and recorded in the same
  transaction as the payment (see idempotency_service)
- VOID and RETURNED are terminal
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from ..errors import ConcurrencyConflict, IdempotencyKeyCollision, NotFoundError, ValidationError
from ..extensions import db
from ..models import Customer, Payment, Sale
from ..money import ZERO, money, money_str
from ..permissions import Actor, require_admin
from .. import settings
from ..time_utils import utcnow
from . import balance_service, idempotency_service
from .audit_service import record_audit
from .concurrency import begin_write, lock_for_update, run_with_retry
from .reconciliation_service import ALERT_PAYMENT_RETURNED, SEVERITY_WARNING, create_alert
from .requests import AllocationRequest, PaymentInput, PaymentRequest


# =============================================================================
# PAYMENT MODES (CONSTANTS)
# =============================================================================

MODE_CASH = "CASH"
MODE_CHEQUE = "CHEQUE"
MODE_ONLINE = "ONLINE"
MODE_CREDIT = "CREDIT"

VALID_MODES = [MODE_CASH, MODE_CHEQUE, MODE_ONLINE, MODE_CREDIT]

# Money that is in hand the moment it is recorded
IMMEDIATELY_CLEARED_MODES = {MODE_CASH, MODE_ONLINE}


# =============================================================================
# PAYMENT STATUS (CONSTANTS)
# =============================================================================

STATUS_PENDING = "PENDING"
STATUS_CLEARED = "CLEARED"
STATUS_RETURNED = "RETURNED"
STATUS_VOID = "VOID"

VALID_STATUSES = [STATUS_PENDING, STATUS_CLEARED, STATUS_RETURNED, STATUS_VOID]

# Statuses that still claim part of an invoice's balance
LIVE_STATUSES = [STATUS_PENDING, STATUS_CLEARED]

ALLOWED_TRANSITIONS = {
    STATUS_PENDING: {STATUS_CLEARED, STATUS_VOID, STATUS_RETURNED},
    STATUS_CLEARED: {STATUS_RETURNED, STATUS_VOID},
    STATUS_RETURNED: set(),
    STATUS_VOID: set(),
}


@dataclass
class PaymentResponse:
    """Response body plus whether it was replayed from an earlier request.

    The body is identical for the original and every replay; the flag only
    drives the Idempotent-Replay response header.
    """
    body: dict
    idempotent_replay: bool = False

    def to_dict(self) -> dict:
        return self.body


def status_for_mode(mode: str) -> str:
    return STATUS_CLEARED if mode in IMMEDIATELY_CLEARED_MODES else STATUS_PENDING


def validate_payment_input(amount: Decimal, mode: str) -> None:
    if mode not in VALID_MODES:
        raise ValidationError(f"Invalid payment mode: {mode}. Must be one of {VALID_MODES}")
    if amount <= 0:
        raise ValidationError("Payment amount must be positive", {"amount": str(amount)})
    limit = settings.max_payment_amount()
    if amount > limit:
        raise ValidationError(
            f"Payment amount exceeds the maximum of {limit}",
            {"amount": str(amount), "max": str(limit)},
        )


# =============================================================================
# INVOICE BALANCE HELPERS
# =============================================================================

def _claimed_amount(sale_id: int, exclude_payment_id: int | None = None) -> Decimal:
    """Cleared plus pending payments against a sale."""
    query = db.session.query(func.coalesce(func.sum(Payment.amount), 0)).filter(
        Payment.sale_id == sale_id,
        Payment.status.in_(LIVE_STATUSES),
    )
    if exclude_payment_id is not None:
        query = query.filter(Payment.id != exclude_payment_id)
    return money(query.scalar())


def outstanding_for(sale: Sale, exclude_payment_id: int | None = None) -> Decimal:
    """
    Amount that may still be paid against an invoice.

    Pending cheques reserve their share so an invoice cannot be collected
    twice while a cheque is in the bank.
    """
    db.session.flush()
    return money(sale.grand_total) - _claimed_amount(sale.id, exclude_payment_id)


def record_sale_payment(sale: Sale, payment: PaymentInput, actor: Actor) -> Payment:
    """
    Add one payment against a sale inside the caller's transaction.

    The payment inherits the sale's customer. Caller is responsible for
    recomputing balances and committing.
    """
    validate_payment_input(payment.amount, payment.mode)

    outstanding = outstanding_for(sale)
    if outstanding <= 0:
        raise ValidationError(
            f"Invoice {sale.invoice_no} is already fully paid",
            {"sale_id": sale.id, "invoice_no": sale.invoice_no},
        )
    if payment.amount > outstanding:
        raise ValidationError(
            f"Payment {payment.amount} exceeds outstanding amount {outstanding} on invoice {sale.invoice_no}",
            {"sale_id": sale.id, "outstanding": str(outstanding), "amount": str(payment.amount)},
        )

    now = utcnow()
    record = Payment(
        sale_id=sale.id,
        customer_id=sale.customer_id,
        amount=money(payment.amount),
        mode=payment.mode,
        reference=payment.reference,
        status=status_for_mode(payment.mode),
        payment_date=payment.payment_date or now,
        created_by=actor.user_id,
        created_at=now,
    )
    db.session.add(record)
    db.session.flush()
    return record


def _sale_summary(sale: Sale | None) -> dict | None:
    if sale is None:
        return None
    return {
        "id": sale.id,
        "invoice_no": sale.invoice_no,
        "grand_total": money_str(sale.grand_total),
        "paid_amount": money_str(sale.paid_amount),
        "payment_status": sale.payment_status,
        "outstanding": money_str(money(sale.grand_total) - money(sale.paid_amount)),
        "row_version": sale.version_id,
    }


def _load_live_sale(sale_id: int) -> Sale:
    sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
    if not sale:
        raise NotFoundError(f"Sale {sale_id} not found", {"sale_id": sale_id})
    if sale.is_deleted:
        raise ValidationError(f"Invoice {sale.invoice_no} has been deleted", {"sale_id": sale_id})
    return sale


def _load_customer(customer_id: int) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if not customer:
        raise NotFoundError(f"Customer {customer_id} not found", {"customer_id": customer_id})
    return customer


def _replay_after_collision(key: str) -> PaymentResponse:
    stored = idempotency_service.fetch_response(key)
    if stored is None:
        raise IdempotencyKeyCollision(key)
    current_app.logger.info("Concurrent duplicate payment request resolved by key %s", key)
    return PaymentResponse(stored, idempotent_replay=True)


# =============================================================================
# PAYMENT CREATION
# =============================================================================

def create_payment(
    request: PaymentRequest,
    actor: Actor,
    idempotency_key: str | None = None,
) -> PaymentResponse:
    """
    Record a payment against an invoice or on a customer's account.

    WHY: Core payment operation. Validates, writes the payment, recomputes
    the invoice and customer balances, and stores the idempotent response,
    all in one transaction.

    Args:
        request: amount, mode, and sale_id and/or customer_id
        actor: user recording the payment
        idempotency_key: optional client key; a repeat returns the stored response

    Returns:
        PaymentResponse (idempotent_replay=True when served from a prior request)

    Raises:
        ValidationError: bad amount/mode, customer mismatch, overpayment, paid invoice
        NotFoundError: sale or customer missing
    """
    key = idempotency_service.normalize_key(idempotency_key)
    validate_payment_input(request.amount, request.mode)
    if request.sale_id is None and request.customer_id is None:
        raise ValidationError("sale_id or customer_id is required")

    def _op():
        begin_write()
        replay = idempotency_service.check(key)
        if replay.existing:
            db.session.rollback()
            return PaymentResponse(replay.response, idempotent_replay=True)

        sale = None
        if request.sale_id is not None:
            sale = _load_live_sale(request.sale_id)
            if request.customer_id is not None and request.customer_id != sale.customer_id:
                raise ValidationError(
                    "Customer does not match the invoice",
                    {"sale_id": sale.id, "invoice_customer_id": sale.customer_id, "customer_id": request.customer_id},
                )
            payment = record_sale_payment(
                sale,
                PaymentInput(request.amount, request.mode, request.reference, request.payment_date),
                actor,
            )
            balance_service.store_sale_payment_state(sale)
        else:
            _load_customer(request.customer_id)
            now = utcnow()
            payment = Payment(
                sale_id=None,
                customer_id=request.customer_id,
                amount=money(request.amount),
                mode=request.mode,
                reference=request.reference,
                status=status_for_mode(request.mode),
                payment_date=request.payment_date or now,
                created_by=actor.user_id,
                created_at=now,
            )
            db.session.add(payment)

        totals = balance_service.store_customer_totals(payment.customer_id)
        db.session.flush()

        record_audit(actor.user_id, "PAYMENT_CREATED", {
            "payment_id": payment.id,
            "sale_id": payment.sale_id,
            "customer_id": payment.customer_id,
            "amount": str(payment.amount),
            "mode": payment.mode,
            "status": payment.status,
        })

        body = {
            "payment": payment.to_dict(),
            "sale": _sale_summary(sale),
            "customer": totals.to_dict() if totals else None,
        }
        if key:
            body = idempotency_service.record(key, payment.id, actor.user_id, body)

        db.session.commit()
        return PaymentResponse(body)

    try:
        return run_with_retry(_op)
    except IdempotencyKeyCollision:
        if not key:
            raise
        return _replay_after_collision(key)


def allocate_payment(
    request: AllocationRequest,
    actor: Actor,
    idempotency_key: str | None = None,
) -> PaymentResponse:
    """
    Split one customer payment across invoices.

    With explicit allocations, invoices are paid in the order given (an
    allocation without an amount takes as much as it can). Otherwise the
    customer's outstanding invoices are paid oldest first. Each allocation
    is min(requested, remaining, outstanding); one Payment row is written
    per invoice touched.

    Money left over is rejected unless allow_unallocated, in which case it
    is recorded as an on-account payment (sale_id NULL).
    """
    key = idempotency_service.normalize_key(idempotency_key)
    validate_payment_input(request.amount, request.mode)

    explicit_total = sum((line.amount for line in request.allocations if line.amount is not None), ZERO)
    if explicit_total > request.amount:
        raise ValidationError(
            "Allocations exceed the payment amount",
            {"amount": str(request.amount), "allocated": str(explicit_total)},
        )
    sale_ids = [line.sale_id for line in request.allocations]
    if len(sale_ids) != len(set(sale_ids)):
        raise ValidationError("Each invoice may appear only once in allocations")

    def _op():
        begin_write()
        replay = idempotency_service.check(key)
        if replay.existing:
            db.session.rollback()
            return PaymentResponse(replay.response, idempotent_replay=True)

        _load_customer(request.customer_id)

        if request.allocations:
            targets = []
            for line in request.allocations:
                sale = _load_live_sale(line.sale_id)
                if sale.customer_id != request.customer_id:
                    raise ValidationError(
                        f"Invoice {sale.invoice_no} belongs to another customer",
                        {"sale_id": sale.id},
                    )
                targets.append((sale, line.amount))
        else:
            targets = [(sale, None) for sale in get_outstanding_invoices(request.customer_id)]

        remaining = money(request.amount)
        payments = []
        allocations = []
        for sale, requested in targets:
            if remaining <= 0:
                break
            outstanding = outstanding_for(sale)
            if requested is not None and requested > outstanding:
                raise ValidationError(
                    f"Allocation {requested} exceeds outstanding amount {outstanding} on invoice {sale.invoice_no}",
                    {"sale_id": sale.id, "outstanding": str(outstanding)},
                )
            if outstanding <= 0:
                continue
            portion = min(x for x in (requested, remaining, outstanding) if x is not None)
            if portion <= 0:
                continue
            payment = record_sale_payment(
                sale,
                PaymentInput(portion, request.mode, request.reference, request.payment_date),
                actor,
            )
            balance_service.store_sale_payment_state(sale)
            payments.append(payment)
            allocations.append({"sale_id": sale.id, "invoice_no": sale.invoice_no, "amount": str(portion)})
            remaining -= portion

        if remaining > 0:
            if not request.allow_unallocated:
                raise ValidationError(
                    "Payment exceeds the customer's outstanding invoices",
                    {"unallocated": str(remaining)},
                )
            now = utcnow()
            credit = Payment(
                sale_id=None,
                customer_id=request.customer_id,
                amount=remaining,
                mode=request.mode,
                reference=request.reference,
                status=status_for_mode(request.mode),
                payment_date=request.payment_date or now,
                created_by=actor.user_id,
                created_at=now,
            )
            db.session.add(credit)
            payments.append(credit)

        totals = balance_service.store_customer_totals(request.customer_id)
        db.session.flush()

        record_audit(actor.user_id, "PAYMENT_ALLOCATED", {
            "customer_id": request.customer_id,
            "amount": str(request.amount),
            "payment_ids": [p.id for p in payments],
            "allocations": allocations,
        })

        body = {
            "payments": [p.to_dict() for p in payments],
            "allocations": allocations,
            "unallocated": str(remaining),
            "customer": totals.to_dict() if totals else None,
        }
        if key:
            body = idempotency_service.record(key, payments[0].id if payments else None, actor.user_id, body)

        db.session.commit()
        return PaymentResponse(body)

    try:
        return run_with_retry(_op)
    except IdempotencyKeyCollision:
        if not key:
            raise
        return _replay_after_collision(key)


# =============================================================================
# PAYMENT MAINTENANCE (ADMIN)
# =============================================================================

def _recompute_after_change(payment: Payment) -> None:
    if payment.sale_id is not None:
        sale = db.session.get(Sale, payment.sale_id)
        if sale is not None:
            balance_service.store_sale_payment_state(sale)
    balance_service.store_customer_totals(payment.customer_id)


def update_payment_status(payment_id: int, new_status: str, actor: Actor) -> bool:
    """
    Move a payment through its lifecycle (e.g. cheque clears or bounces).

    Returns False if the payment does not exist.

    Raises:
        AuthorizationError: actor is not an admin
        ValidationError: unknown status or a transition out of VOID/RETURNED
    """
    require_admin(actor, "change payment status")
    new_status = (new_status or "").upper()
    if new_status not in VALID_STATUSES:
        raise ValidationError(f"Invalid payment status: {new_status}. Must be one of {VALID_STATUSES}")

    def _op():
        begin_write()
        payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
        if not payment:
            db.session.rollback()
            return False
        old_status = payment.status
        if old_status == new_status:
            db.session.rollback()
            return True
        if new_status not in ALLOWED_TRANSITIONS.get(old_status, set()):
            raise ValidationError(
                f"Cannot change payment status from {old_status} to {new_status}",
                {"payment_id": payment.id, "from": old_status, "to": new_status},
            )

        payment.status = new_status
        payment.updated_at = utcnow()
        _recompute_after_change(payment)

        record_audit(actor.user_id, "PAYMENT_STATUS_CHANGED", {
            "payment_id": payment.id,
            "from": old_status,
            "to": new_status,
            "amount": str(payment.amount),
        })
        if new_status == STATUS_RETURNED:
            create_alert(
                ALERT_PAYMENT_RETURNED,
                "Payment returned",
                f"Payment {payment.id} of {money_str(payment.amount)} ({payment.mode}) was returned",
                SEVERITY_WARNING,
                {"payment_id": payment.id, "sale_id": payment.sale_id, "customer_id": payment.customer_id},
            )
        db.session.commit()
        return True

    return run_with_retry(_op)


def update_payment(
    payment_id: int,
    actor: Actor,
    *,
    amount: Decimal | None = None,
    mode: str | None = None,
    reference: str | None = None,
    payment_date=None,
    expected_row_version: int | None = None,
) -> Payment:
    """
    Edit a live payment's amount, mode, reference or date.

    Balances are recomputed from scratch afterwards, which both reverses the
    old effect and applies the new one. Changing the mode re-derives the
    status (CASH/ONLINE clear immediately, CHEQUE/CREDIT go back to PENDING).
    """
    require_admin(actor, "edit payments")
    if mode is not None:
        mode = mode.upper()

    def _op():
        begin_write()
        payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
        if not payment:
            raise NotFoundError(f"Payment {payment_id} not found", {"payment_id": payment_id})
        if expected_row_version is not None and payment.version_id != expected_row_version:
            raise ConcurrencyConflict(
                "Payment was modified by another user. Reload and try again.",
                {"payment_id": payment.id, "row_version": payment.version_id},
            )
        if payment.status not in LIVE_STATUSES:
            raise ValidationError(
                f"Cannot edit a {payment.status} payment",
                {"payment_id": payment.id, "status": payment.status},
            )

        new_amount = money(amount) if amount is not None else money(payment.amount)
        new_mode = mode or payment.mode
        validate_payment_input(new_amount, new_mode)

        if payment.sale_id is not None:
            sale = db.session.get(Sale, payment.sale_id)
            outstanding = outstanding_for(sale, exclude_payment_id=payment.id)
            if new_amount > outstanding:
                raise ValidationError(
                    f"Payment {new_amount} exceeds outstanding amount {outstanding} on invoice {sale.invoice_no}",
                    {"sale_id": sale.id, "outstanding": str(outstanding)},
                )

        before = payment.to_dict()
        payment.amount = new_amount
        if new_mode != payment.mode:
            payment.mode = new_mode
            payment.status = status_for_mode(new_mode)
        if reference is not None:
            payment.reference = reference or None
        if payment_date is not None:
            payment.payment_date = payment_date
        payment.updated_at = utcnow()

        _recompute_after_change(payment)
        record_audit(actor.user_id, "PAYMENT_UPDATED", {"before": before, "payment_id": payment.id})

        db.session.commit()
        return payment

    return run_with_retry(_op)


def delete_payment(payment_id: int, actor: Actor) -> bool:
    """
    Remove a payment entirely (data-entry mistakes).

    Returns False if it does not exist. Keys that replayed this payment are
    dropped with it so the client can submit again.
    """
    require_admin(actor, "delete payments")

    def _op():
        begin_write()
        payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
        if not payment:
            db.session.rollback()
            return False

        snapshot = payment.to_dict()
        sale_id, customer_id = payment.sale_id, payment.customer_id
        idempotency_service.forget_payment(payment.id)
        db.session.delete(payment)
        db.session.flush()

        if sale_id is not None:
            sale = db.session.get(Sale, sale_id)
            if sale is not None:
                balance_service.store_sale_payment_state(sale)
        balance_service.store_customer_totals(customer_id)

        record_audit(actor.user_id, "PAYMENT_DELETED", snapshot)
        db.session.commit()
        return True

    return run_with_retry(_op)


# =============================================================================
# READS
# =============================================================================

def get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if not payment:
        raise NotFoundError(f"Payment {payment_id} not found", {"payment_id": payment_id})
    return payment


def list_payments(
    *,
    sale_id: int | None = None,
    customer_id: int | None = None,
    status: str | None = None,
    limit: int = 200,
) -> list[Payment]:
    query = db.session.query(Payment)
    if sale_id is not None:
        query = query.filter(Payment.sale_id == sale_id)
    if customer_id is not None:
        query = query.filter(Payment.customer_id == customer_id)
    if status:
        query = query.filter(Payment.status == status.upper())
    return query.order_by(Payment.id.asc()).limit(limit).all()


def get_outstanding_invoices(customer_id: int) -> list[Sale]:
    """Customer's live invoices that still owe money, oldest first."""
    sales = (
        db.session.query(Sale)
        .filter(Sale.customer_id == customer_id, Sale.is_deleted.is_(False))
        .order_by(Sale.invoice_date.asc(), Sale.id.asc())
        .all()
    )
    return [sale for sale in sales if money(sale.paid_amount) < money(sale.grand_total)]


def get_invoice_amount(sale_id: int) -> dict:
    sale = db.session.get(Sale, sale_id)
    if not sale or sale.is_deleted:
        raise NotFoundError(f"Sale {sale_id} not found", {"sale_id": sale_id})
    pending = (
        db.session.query(func.coalesce(func.sum(Payment.amount), 0))
        .filter(Payment.sale_id == sale.id, Payment.status == STATUS_PENDING)
        .scalar()
    )
    paid = money(sale.paid_amount)
    return {
        "sale_id": sale.id,
        "invoice_no": sale.invoice_no,
        "customer_id": sale.customer_id,
        "grand_total": money_str(sale.grand_total),
        "paid_amount": money_str(paid),
        "pending_amount": money_str(pending),
        "outstanding": money_str(money(sale.grand_total) - paid),
        "payment_status": sale.payment_status,
    }
