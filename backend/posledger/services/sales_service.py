# Overview: Sale Transaction Manager: create, edit, delete, lock/unlock and finalize invoices atomically.

"""
Sales Service

WHY: An invoice touches four things that must agree: its own items and
totals, product stock, the customer's balance, and the version history.
Every operation here changes all of them in one database transaction or
none of them.

ORDER OF WORK inside each transaction:
    validate -> lock/load -> stock (ledger) -> sale + items -> payments
    -> balances (recomputed) -> version snapshot + audit -> commit

CONCURRENCY:
- Sale.version_id is the optimistic-concurrency token (row_version in
  the API). Callers may pass expected_row_version to fail fast; either way
  the final UPDATE is a compare-and-swap and a concurrent commit surfaces
  as ConcurrencyConflict.
- Stock moves go through stock_ledger, which locks and version-checks the
  product rows (products are visited in id order to keep lock ordering
  stable).
- Auto-allocated invoice numbers that collide at commit are retried with a
  fresh number (50ms, 100ms, 200ms ... backoff).

LOCK WINDOW: invoices older than EDIT_LOCK_HOURS (measured from the
original created_at, never reset by edits) or explicitly locked can only be
edited by admins.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal

from flask import current_app

from ..errors import (
    ConcurrencyConflict,
    DuplicateExternalReference,
    DuplicateInvoiceNumber,
    InvoiceLocked,
    NotFoundError,
    ValidationError,
)
from ..extensions import db
from ..models import Customer, Payment, Product, Sale, SaleItem
from ..money import ZERO, money, quantity
from ..permissions import Actor, require_admin
from .. import settings
from ..time_utils import as_naive_utc, to_utc_z, utcnow
from . import balance_service, invoice_numbers, payment_service, stock_ledger, versioning_service
from .audit_service import record_audit
from .concurrency import begin_write, lock_for_update, run_with_retry
from .reconciliation_service import (
    ALERT_DUPLICATE_INVOICE,
    ALERT_INVOICE_DELETED,
    ALERT_OVERRIDE_SALE,
    SEVERITY_ERROR,
    SEVERITY_WARNING,
    create_alert,
    raise_alert,
)
from .requests import PaymentInput, SaleItemInput, SaleRequest


# =============================================================================
# CONSTANTS
# =============================================================================

INVOICE_RETRY_ATTEMPTS = 5
INVOICE_RETRY_BACKOFF = 0.05


@dataclass(frozen=True)
class PricedLine:
    item: SaleItemInput
    line_subtotal: Decimal
    vat_amount: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class SaleTotals:
    lines: list[PricedLine]
    subtotal: Decimal
    vat_total: Decimal
    discount: Decimal
    grand_total: Decimal


# =============================================================================
# PRICING & VALIDATION
# =============================================================================

def calculate_totals(items: list[SaleItemInput], discount: Decimal, vat_rate: Decimal | None = None) -> SaleTotals:
    """
    Price an invoice.

    Per line: subtotal = qty * unit_price - line discount,
    VAT = round(subtotal * rate, 2) half-up, total = subtotal + VAT.
    Invoice: grand_total = sum(subtotals) + sum(VAT) - invoice discount.
    """
    rate = settings.vat_rate() if vat_rate is None else vat_rate
    lines = []
    for item in items:
        line_subtotal = money(item.qty * item.unit_price) - money(item.discount)
        vat_amount = money(line_subtotal * rate)
        lines.append(PricedLine(item, line_subtotal, vat_amount, line_subtotal + vat_amount))

    subtotal = sum((line.line_subtotal for line in lines), ZERO)
    vat_total = sum((line.vat_amount for line in lines), ZERO)
    discount = money(discount)
    grand_total = money(subtotal + vat_total - discount)
    if grand_total < 0:
        raise ValidationError(
            "Discount cannot exceed the invoice total",
            {"discount": str(discount), "total_before_discount": str(subtotal + vat_total)},
        )
    return SaleTotals(lines, subtotal, vat_total, discount, grand_total)


def validate_sale_request(request: SaleRequest) -> None:
    """Fail fast on malformed input, before any transaction is opened."""
    if not request.items:
        raise ValidationError("At least one item is required")

    max_qty = settings.max_item_qty()
    for index, item in enumerate(request.items):
        where = {"item_index": index, "product_id": item.product_id}
        if item.product_id <= 0:
            raise ValidationError("Invalid product id", where)
        if item.qty <= 0:
            raise ValidationError("Quantity must be greater than zero", where)
        if item.qty > max_qty:
            raise ValidationError(f"Quantity cannot exceed {max_qty}", where)
        if item.unit_price < 0:
            raise ValidationError("Unit price cannot be negative", where)
        if item.discount < 0:
            raise ValidationError("Item discount cannot be negative", where)
        if item.discount > money(item.qty * item.unit_price):
            raise ValidationError("Item discount cannot exceed the line amount", where)

    if request.discount < 0:
        raise ValidationError("Discount cannot be negative")

    for payment in request.payments:
        payment_service.validate_payment_input(payment.amount, payment.mode)


def _qty_by_product(items) -> dict[int, Decimal]:
    totals: dict[int, Decimal] = {}
    for item in items:
        totals[item.product_id] = totals.get(item.product_id, ZERO) + quantity(item.qty)
    return totals


def _load_products(items: list[SaleItemInput], allow_inactive: set[int] | None = None) -> dict[int, Product]:
    allow_inactive = allow_inactive or set()
    product_ids = sorted({item.product_id for item in items})
    products = {
        product.id: product
        for product in db.session.query(Product).filter(Product.id.in_(product_ids)).all()
    }
    for product_id in product_ids:
        product = products.get(product_id)
        if not product:
            raise NotFoundError(f"Product {product_id} not found", {"product_id": product_id})
        if not product.is_active and product_id not in allow_inactive:
            raise ValidationError(f"Product {product.name} is inactive", {"product_id": product_id})
    return products


def _apply_stock(
    sale: Sale,
    deltas: dict[int, Decimal],
    actor: Actor,
    reason: str,
    allow_negative: bool = False,
) -> None:
    for product_id in sorted(deltas):
        delta = deltas[product_id]
        if delta == 0:
            continue
        stock_ledger.apply_stock_change(
            product_id,
            delta,
            stock_ledger.TX_SALE,
            ref_id=sale.id,
            reason=reason,
            actor_id=actor.user_id,
            allow_negative=allow_negative,
        )


def _build_items(totals: SaleTotals) -> list[SaleItem]:
    return [
        SaleItem(
            product_id=line.item.product_id,
            unit_type=line.item.unit_type,
            qty=quantity(line.item.qty),
            unit_price=money(line.item.unit_price),
            discount=money(line.item.discount),
            vat_amount=line.vat_amount,
            line_total=line.line_total,
        )
        for line in totals.lines
    ]


def _settle_walk_in(sale: Sale, actor: Actor) -> None:
    """Walk-in customers pay at the counter: record cash for whatever is still owed."""
    outstanding = payment_service.outstanding_for(sale)
    if outstanding > 0:
        payment_service.record_sale_payment(
            sale,
            PaymentInput(amount=outstanding, mode=payment_service.MODE_CASH, reference="Walk-in sale"),
            actor,
        )


def _ensure_customer(customer_id: int | None) -> None:
    if customer_id is not None and not db.session.get(Customer, customer_id):
        raise NotFoundError(f"Customer {customer_id} not found", {"customer_id": customer_id})


def find_by_external_reference(reference: str) -> Sale | None:
    return (
        db.session.query(Sale)
        .filter(Sale.external_reference == reference, Sale.is_deleted.is_(False))
        .first()
    )


# =============================================================================
# LOCKING RULES
# =============================================================================

def lock_expires_at(sale: Sale):
    return as_naive_utc(sale.created_at) + settings.edit_lock_window()


def is_locked(sale: Sale, now=None) -> bool:
    now = now or utcnow()
    return bool(sale.is_locked) or now >= lock_expires_at(sale)


def can_edit(sale: Sale, actor: Actor) -> bool:
    if sale.is_deleted:
        return False
    return actor.is_admin or not is_locked(sale)


def _assert_editable(sale: Sale, actor: Actor) -> None:
    if actor.is_admin or not is_locked(sale):
        return
    raise InvoiceLocked(
        f"Invoice {sale.invoice_no} is locked for editing",
        {
            "sale_id": sale.id,
            "is_locked": bool(sale.is_locked),
            "locked_at": to_utc_z(sale.locked_at) if sale.locked_at else None,
            "lock_expires_at": to_utc_z(lock_expires_at(sale)),
        },
    )


# =============================================================================
# CREATE
# =============================================================================

def create_sale(request: SaleRequest, actor: Actor) -> Sale:
    """
    Create an invoice, move stock, record payments and version 1.

    If external_reference matches a live sale, that sale is returned
    unchanged (safe to retry from integrations).

    Raises:
        ValidationError, NotFoundError: bad input / unknown product or customer
        InsufficientStock: a finalized line would drive stock negative
        DuplicateInvoiceNumber: manual invoice number already in use
    """
    return _create_sale(request, actor, override_reason=None)


def create_sale_with_override(request: SaleRequest, reason: str, actor: Actor) -> Sale:
    """
    Admin-only create that may take stock below zero.

    The override reason is stored on the sale and every ledger row written
    is flagged is_override when it leaves stock negative.
    """
    require_admin(actor, "create sales with a stock override")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Override reason is required")
    sale = _create_sale(request, actor, override_reason=reason)
    current_app.logger.warning(
        "Stock override sale %s created by %s: %s", sale.invoice_no, actor.display_name, reason,
    )
    return sale


def _create_sale(request: SaleRequest, actor: Actor, override_reason: str | None) -> Sale:
    validate_sale_request(request)
    manual_number = request.invoice_no is not None

    def _op():
        begin_write()
        if request.external_reference:
            existing = find_by_external_reference(request.external_reference)
            if existing:
                db.session.rollback()
                return db.session.get(Sale, existing.id)

        _ensure_customer(request.customer_id)
        _load_products(request.items)

        if manual_number:
            invoice_no = invoice_numbers.validate_manual_invoice_number(request.invoice_no)
        else:
            invoice_no = invoice_numbers.next_invoice_number()

        totals = calculate_totals(request.items, request.discount)
        now = utcnow()
        sale = Sale(
            invoice_no=invoice_no,
            external_reference=request.external_reference,
            invoice_date=request.invoice_date or now,
            customer_id=request.customer_id,
            subtotal=totals.subtotal,
            vat_total=totals.vat_total,
            discount=totals.discount,
            grand_total=totals.grand_total,
            paid_amount=ZERO,
            payment_status=balance_service.SALE_STATUS_PENDING,
            notes=request.notes,
            is_finalized=request.is_finalized,
            version=1,
            override_reason=override_reason,
            created_by=actor.user_id,
            created_at=now,
        )
        sale.items = _build_items(totals)
        db.session.add(sale)
        db.session.flush()

        if request.is_finalized:
            deltas = {pid: -qty for pid, qty in _qty_by_product(request.items).items()}
            _apply_stock(
                sale,
                deltas,
                actor,
                reason=f"Invoice {invoice_no}" + (f" (override: {override_reason})" if override_reason else ""),
                allow_negative=override_reason is not None,
            )

        for payment in request.payments:
            payment_service.record_sale_payment(sale, payment, actor)
        if sale.customer_id is None and not request.payments:
            _settle_walk_in(sale, actor)

        balance_service.store_sale_payment_state(sale)
        balance_service.store_customer_totals(sale.customer_id)
        db.session.flush()

        versioning_service.snapshot(
            sale.id,
            1,
            actor.user_id,
            "Created",
            versioning_service.build_snapshot(sale),
        )
        record_audit(actor.user_id, "SALE_CREATED", {
            "sale_id": sale.id,
            "invoice_no": sale.invoice_no,
            "grand_total": str(sale.grand_total),
            "customer_id": sale.customer_id,
            "override_reason": override_reason,
        })
        if override_reason:
            create_alert(
                ALERT_OVERRIDE_SALE,
                "Stock override sale",
                f"Invoice {invoice_no} was created with a stock override by {actor.display_name}: {override_reason}",
                SEVERITY_WARNING,
                {"sale_id": sale.id, "invoice_no": invoice_no},
            )

        db.session.commit()
        return sale

    attempts = 1 if manual_number else INVOICE_RETRY_ATTEMPTS
    for attempt in range(attempts):
        try:
            return run_with_retry(_op)
        except DuplicateInvoiceNumber as exc:
            if manual_number or attempt >= attempts - 1:
                raise_alert(
                    ALERT_DUPLICATE_INVOICE,
                    "Duplicate invoice number rejected",
                    f"{exc.message} (attempted by {actor.display_name})",
                    SEVERITY_ERROR,
                    {"invoice_no": request.invoice_no, **exc.details},
                )
                raise
            current_app.logger.warning(
                "Invoice number collision, retrying (attempt %s of %s)", attempt + 1, attempts,
            )
            time.sleep(INVOICE_RETRY_BACKOFF * (2 ** attempt))
        except DuplicateExternalReference:
            # Lost the race to an identical integration request: return the winner
            existing = find_by_external_reference(request.external_reference)
            if existing:
                return existing
            raise


# =============================================================================
# UPDATE
# =============================================================================

def update_sale(
    sale_id: int,
    request: SaleRequest,
    actor: Actor,
    edit_reason: str | None = None,
    expected_row_version: int | None = None,
) -> Sale:
    """
    Replace an invoice's items and header fields.

    Stock moves by the per-product difference between old and new
    quantities (finalized sales only). Totals are re-priced, a new version
    is appended with a diff summary, and balances are recomputed for the
    old and new customer. If the new total falls below what has already
    been paid, the excess stays as customer credit and is audited.

    Raises:
        NotFoundError: sale missing or deleted
        ConcurrencyConflict: expected_row_version is stale, or another edit committed first
        InvoiceLocked: locked invoice and actor is not an admin
        ValidationError: bad input, or a non-admin edit without a reason
        InsufficientStock: new quantities exceed available stock
    """
    validate_sale_request(request)
    reason = (edit_reason or "").strip() or None
    if not actor.is_admin and not reason:
        raise ValidationError("Edit reason is required")

    def _op():
        begin_write()
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if not sale or sale.is_deleted:
            raise NotFoundError(f"Sale {sale_id} not found", {"sale_id": sale_id})

        if expected_row_version is not None and sale.version_id != expected_row_version:
            raise ConcurrencyConflict(
                f"Invoice {sale.invoice_no} was modified by another user. Reload and try again.",
                {
                    "sale_id": sale.id,
                    "row_version": sale.version_id,
                    "version": sale.version,
                    "last_modified_by": sale.last_modified_by,
                    "last_modified_at": to_utc_z(sale.last_modified_at) if sale.last_modified_at else None,
                },
            )

        _assert_editable(sale, actor)

        if request.customer_id != sale.customer_id:
            _ensure_customer(request.customer_id)

        old_state = versioning_service.build_snapshot(sale)
        old_customer_id = sale.customer_id
        old_qty = _qty_by_product(sale.items)
        new_qty = _qty_by_product(request.items)
        _load_products(request.items, allow_inactive=set(old_qty))

        totals = calculate_totals(request.items, request.discount)

        if sale.is_finalized:
            deltas = {
                pid: old_qty.get(pid, ZERO) - new_qty.get(pid, ZERO)
                for pid in set(old_qty) | set(new_qty)
            }
            _apply_stock(sale, deltas, actor, reason=f"Invoice {sale.invoice_no} edited")

        now = utcnow()
        sale.items = _build_items(totals)
        sale.subtotal = totals.subtotal
        sale.vat_total = totals.vat_total
        sale.discount = totals.discount
        sale.grand_total = totals.grand_total
        sale.customer_id = request.customer_id
        if request.invoice_date is not None:
            sale.invoice_date = request.invoice_date
        sale.notes = request.notes
        sale.version = sale.version + 1
        sale.edit_reason = reason
        sale.last_modified_by = actor.user_id
        sale.last_modified_at = now

        if old_customer_id != sale.customer_id:
            # Payments follow the invoice to its new customer
            for payment in db.session.query(Payment).filter_by(sale_id=sale.id).all():
                payment.customer_id = sale.customer_id
                payment.updated_at = now

        for payment in request.payments:
            payment_service.record_sale_payment(sale, payment, actor)
        if sale.customer_id is None and not request.payments:
            _settle_walk_in(sale, actor)

        state = balance_service.store_sale_payment_state(sale)
        if state.overpaid_amount > 0:
            record_audit(actor.user_id, "SALE_OVERPAID", {
                "sale_id": sale.id,
                "invoice_no": sale.invoice_no,
                "grand_total": str(sale.grand_total),
                "credit": str(state.overpaid_amount),
            })
        balance_service.store_customer_totals(sale.customer_id)
        if old_customer_id != sale.customer_id:
            balance_service.store_customer_totals(old_customer_id)

        # Compare-and-swap on version_id happens here
        db.session.flush()

        new_state = versioning_service.build_snapshot(sale)
        versioning_service.snapshot(
            sale.id,
            sale.version,
            actor.user_id,
            reason,
            new_state,
            versioning_service.diff_summary(old_state, new_state, actor.display_name, sale.version),
        )
        record_audit(actor.user_id, "SALE_UPDATED", {
            "sale_id": sale.id,
            "invoice_no": sale.invoice_no,
            "version": sale.version,
            "reason": reason,
            "old_grand_total": old_state["grand_total"],
            "new_grand_total": new_state["grand_total"],
        })

        db.session.commit()
        return sale

    return run_with_retry(_op)


def finalize_sale(sale_id: int, actor: Actor) -> Sale:
    """Turn a draft into a finalized invoice, taking its stock."""
    def _op():
        begin_write()
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if not sale or sale.is_deleted:
            raise NotFoundError(f"Sale {sale_id} not found", {"sale_id": sale_id})
        if sale.is_finalized:
            raise ValidationError(f"Invoice {sale.invoice_no} is already finalized", {"sale_id": sale.id})
        _assert_editable(sale, actor)

        old_state = versioning_service.build_snapshot(sale)
        deltas = {pid: -qty for pid, qty in _qty_by_product(sale.items).items()}
        _apply_stock(sale, deltas, actor, reason=f"Invoice {sale.invoice_no} finalized")

        sale.is_finalized = True
        sale.version = sale.version + 1
        sale.last_modified_by = actor.user_id
        sale.last_modified_at = utcnow()
        db.session.flush()

        new_state = versioning_service.build_snapshot(sale)
        versioning_service.snapshot(
            sale.id,
            sale.version,
            actor.user_id,
            "Finalized",
            new_state,
            versioning_service.diff_summary(old_state, new_state, actor.display_name, sale.version),
        )
        record_audit(actor.user_id, "SALE_FINALIZED", {
            "sale_id": sale.id,
            "invoice_no": sale.invoice_no,
            "version": sale.version,
        })
        db.session.commit()
        return sale

    return run_with_retry(_op)


# =============================================================================
# DELETE / LOCK
# =============================================================================

def delete_sale(sale_id: int, actor: Actor) -> bool:
    """
    Soft-delete an invoice (admin only).

    Finalized stock is returned to the shelf, live payments are voided, and
    balances are recomputed. Returns False if the sale is missing or was
    already deleted, so repeating a delete changes nothing.
    """
    require_admin(actor, "delete invoices")

    def _op():
        begin_write()
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if not sale or sale.is_deleted:
            db.session.rollback()
            return False

        if sale.is_finalized:
            deltas = {pid: qty for pid, qty in _qty_by_product(sale.items).items()}
            _apply_stock(sale, deltas, actor, reason=f"Invoice {sale.invoice_no} deleted")

        now = utcnow()
        voided = []
        payments = (
            db.session.query(Payment)
            .filter(Payment.sale_id == sale.id, Payment.status.in_(payment_service.LIVE_STATUSES))
            .all()
        )
        for payment in payments:
            payment.status = payment_service.STATUS_VOID
            payment.updated_at = now
            voided.append(payment.id)

        sale.is_deleted = True
        sale.deleted_by = actor.user_id
        sale.deleted_at = now
        sale.last_modified_by = actor.user_id
        sale.last_modified_at = now

        balance_service.store_sale_payment_state(sale)
        balance_service.store_customer_totals(sale.customer_id)

        create_alert(
            ALERT_INVOICE_DELETED,
            "Invoice deleted",
            f"Invoice {sale.invoice_no} ({sale.grand_total}) was deleted by {actor.display_name}",
            SEVERITY_WARNING,
            {"sale_id": sale.id, "invoice_no": sale.invoice_no, "voided_payment_ids": voided},
        )
        record_audit(actor.user_id, "SALE_DELETED", {
            "sale_id": sale.id,
            "invoice_no": sale.invoice_no,
            "grand_total": str(sale.grand_total),
            "stock_restored": bool(sale.is_finalized),
            "voided_payment_ids": voided,
        })
        db.session.commit()
        return True

    return run_with_retry(_op)


def unlock_invoice(sale_id: int, actor: Actor, reason: str) -> bool:
    """
    Clear an invoice's lock (admin only). No financial effect.

    Note the age-based lock still applies to non-admins once the window has
    passed; unlocking clears the explicit lock flag.
    """
    require_admin(actor, "unlock invoices")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Unlock reason is required")

    def _op():
        begin_write()
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if not sale or sale.is_deleted:
            db.session.rollback()
            return False
        was_locked_at = sale.locked_at
        sale.is_locked = False
        sale.locked_at = None
        record_audit(actor.user_id, "INVOICE_UNLOCKED", {
            "sale_id": sale.id,
            "invoice_no": sale.invoice_no,
            "reason": reason,
            "locked_at": to_utc_z(was_locked_at) if was_locked_at else None,
        })
        db.session.commit()
        return True

    return run_with_retry(_op)


def lock_expired_invoices(now=None) -> int:
    """Flag every live invoice past the edit window as locked. Returns the count."""
    def _op():
        begin_write()
        current = now or utcnow()
        cutoff = current - settings.edit_lock_window()
        sales = (
            db.session.query(Sale)
            .filter(
                Sale.is_deleted.is_(False),
                Sale.is_locked.is_(False),
                Sale.created_at <= cutoff,
            )
            .all()
        )
        for sale in sales:
            sale.is_locked = True
            sale.locked_at = current
        if sales:
            record_audit(None, "INVOICES_LOCKED", {"count": len(sales), "sale_ids": [s.id for s in sales]})
        db.session.commit()
        return len(sales)

    count = run_with_retry(_op)
    current_app.logger.info("Locked %s invoice(s) past the edit window", count)
    return count


# =============================================================================
# READS
# =============================================================================

def get_sale(sale_id: int, include_deleted: bool = False) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if not sale or (sale.is_deleted and not include_deleted):
        raise NotFoundError(f"Sale {sale_id} not found", {"sale_id": sale_id})
    return sale


def list_sales(
    *,
    page: int = 1,
    page_size: int = 50,
    search: str | None = None,
    customer_id: int | None = None,
) -> tuple[list[Sale], int]:
    """Live invoices, newest first. Returns (page of sales, total count)."""
    page = max(int(page or 1), 1)
    page_size = min(max(int(page_size or 50), 1), 200)

    query = db.session.query(Sale).filter(Sale.is_deleted.is_(False))
    if customer_id is not None:
        query = query.filter(Sale.customer_id == customer_id)
    if search:
        like = f"%{search.strip()}%"
        query = query.filter(Sale.invoice_no.like(like) | Sale.notes.like(like))

    total = query.count()
    sales = (
        query.order_by(Sale.invoice_date.desc(), Sale.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return sales, total


def list_deleted_sales(limit: int = 200) -> list[Sale]:
    return (
        db.session.query(Sale)
        .filter(Sale.is_deleted.is_(True))
        .order_by(Sale.deleted_at.desc(), Sale.id.desc())
        .limit(limit)
        .all()
    )
