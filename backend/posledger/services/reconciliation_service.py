# Overview: Operator alerts and the reconciliation sweep that checks cached totals against source rows.

"""
Alert / Reconciliation Service

WHY: Every write path keeps caches consistent, but data also arrives via
imports, manual SQL and bugs. The sweep recomputes what the caches should
say and raises an alert for each disagreement:

- BALANCE_MISMATCH: customer totals differ from sales and cleared payments
- PAYMENT_STATE_MISMATCH: sale paid_amount/status differ from its payments
- STOCK_NEGATIVE: on-hand below zero (admin overrides leave these behind)
- STOCK_MISMATCH: Product.stock_qty differs from the ledger sum
- DUPLICATE_INVOICE: two live sales share an invoice number
- LOW_STOCK: on-hand at or below the reorder level

With fix=True, balance caches are rewritten through balance_service. Stock
is never "fixed" here; an admin posts an ADJUSTMENT so the ledger stays
the authority.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import func

from ..errors import NotFoundError
from ..extensions import db
from ..models import Alert, Customer, Product, Sale
from ..money import quantity, quantity_str
from ..permissions import Actor, SYSTEM_ACTOR
from ..time_utils import utcnow
from . import balance_service, stock_ledger
from .audit_service import record_audit
from .concurrency import run_with_retry


# =============================================================================
# ALERT TYPES & SEVERITY (CONSTANTS)
# =============================================================================

ALERT_BALANCE_MISMATCH = "BALANCE_MISMATCH"
ALERT_PAYMENT_STATE_MISMATCH = "PAYMENT_STATE_MISMATCH"
ALERT_STOCK_NEGATIVE = "STOCK_NEGATIVE"
ALERT_STOCK_MISMATCH = "STOCK_MISMATCH"
ALERT_LOW_STOCK = "LOW_STOCK"
ALERT_DUPLICATE_INVOICE = "DUPLICATE_INVOICE"
ALERT_INVOICE_DELETED = "INVOICE_DELETED"
ALERT_OVERRIDE_SALE = "OVERRIDE_SALE"
ALERT_PAYMENT_RETURNED = "PAYMENT_RETURNED"

SEVERITY_INFO = "INFO"
SEVERITY_WARNING = "WARNING"
SEVERITY_ERROR = "ERROR"
SEVERITY_CRITICAL = "CRITICAL"

VALID_SEVERITIES = [SEVERITY_INFO, SEVERITY_WARNING, SEVERITY_ERROR, SEVERITY_CRITICAL]


@dataclass
class ReconciliationReport:
    findings: list[dict] = field(default_factory=list)
    alerts_created: int = 0
    fixed: int = 0
    checked_customers: int = 0
    checked_sales: int = 0
    checked_products: int = 0

    @property
    def is_clean(self) -> bool:
        return not self.findings

    def to_dict(self) -> dict:
        return {
            "findings": self.findings,
            "alerts_created": self.alerts_created,
            "fixed": self.fixed,
            "checked_customers": self.checked_customers,
            "checked_sales": self.checked_sales,
            "checked_products": self.checked_products,
            "is_clean": self.is_clean,
        }


# =============================================================================
# ALERTS
# =============================================================================

def create_alert(
    alert_type: str,
    title: str,
    message: str,
    severity: str = SEVERITY_INFO,
    metadata: dict | None = None,
    dedupe_key: str | None = None,
) -> tuple[Alert, bool]:
    """
    Add an alert inside the caller's transaction.

    If dedupe_key matches an unresolved alert, that alert is returned
    instead of a new one. Returns (alert, created).
    """
    if severity not in VALID_SEVERITIES:
        severity = SEVERITY_INFO

    if dedupe_key:
        existing = (
            db.session.query(Alert)
            .filter(Alert.dedupe_key == dedupe_key, Alert.is_resolved.is_(False))
            .first()
        )
        if existing:
            return existing, False

    alert = Alert(
        type=alert_type,
        title=title,
        message=message,
        severity=severity,
        dedupe_key=dedupe_key,
        metadata_json=json.dumps(metadata, default=str, sort_keys=True) if metadata else None,
        created_at=utcnow(),
    )
    db.session.add(alert)
    return alert, True


def raise_alert(
    alert_type: str,
    title: str,
    message: str,
    severity: str = SEVERITY_INFO,
    metadata: dict | None = None,
) -> Alert:
    """Create and commit an alert on its own (after the main transaction rolled back)."""
    def _op():
        alert, _ = create_alert(alert_type, title, message, severity, metadata)
        db.session.commit()
        return alert

    return run_with_retry(_op)


def list_alerts(unresolved_only: bool = False, limit: int = 200) -> list[Alert]:
    query = db.session.query(Alert)
    if unresolved_only:
        query = query.filter(Alert.is_resolved.is_(False))
    return query.order_by(Alert.id.desc()).limit(limit).all()


def mark_read(alert_id: int) -> Alert:
    def _op():
        alert = db.session.get(Alert, alert_id)
        if not alert:
            raise NotFoundError(f"Alert {alert_id} not found", {"alert_id": alert_id})
        alert.is_read = True
        db.session.commit()
        return alert

    return run_with_retry(_op)


def resolve_alert(alert_id: int, actor: Actor) -> Alert:
    def _op():
        alert = db.session.get(Alert, alert_id)
        if not alert:
            raise NotFoundError(f"Alert {alert_id} not found", {"alert_id": alert_id})
        if not alert.is_resolved:
            alert.is_resolved = True
            alert.is_read = True
            alert.resolved_at = utcnow()
            alert.resolved_by = actor.user_id
            record_audit(actor.user_id, "ALERT_RESOLVED", {"alert_id": alert.id, "type": alert.type})
        db.session.commit()
        return alert

    return run_with_retry(_op)


# =============================================================================
# RECONCILIATION
# =============================================================================

def _finding(report: ReconciliationReport, alert_type: str, severity: str, title: str, message: str,
             metadata: dict, dedupe_key: str) -> None:
    report.findings.append({"type": alert_type, "severity": severity, "message": message, **metadata})
    _, created = create_alert(alert_type, title, message, severity, metadata, dedupe_key=dedupe_key)
    if created:
        report.alerts_created += 1


def _check_customers(report: ReconciliationReport, fix: bool) -> None:
    for (customer_id,) in db.session.query(Customer.id).order_by(Customer.id).all():
        report.checked_customers += 1
        customer = db.session.get(Customer, customer_id)
        consistent, totals = balance_service.verify_customer_balance(customer_id)
        if consistent:
            continue
        message = (
            f"Customer {customer.name} balance {customer.pending_balance} "
            f"but sales/payments imply {totals.pending_balance}"
        )
        _finding(
            report,
            ALERT_BALANCE_MISMATCH,
            SEVERITY_ERROR,
            "Customer balance mismatch",
            message,
            {
                "customer_id": customer_id,
                "stored_balance": str(customer.pending_balance),
                "expected_balance": str(totals.pending_balance),
            },
            dedupe_key=f"{ALERT_BALANCE_MISMATCH}:customer:{customer_id}",
        )
        if fix:
            balance_service.store_customer_totals(customer_id)
            report.fixed += 1


def _check_sales(report: ReconciliationReport, fix: bool) -> None:
    sale_ids = [
        row[0]
        for row in db.session.query(Sale.id).filter(Sale.is_deleted.is_(False)).order_by(Sale.id).all()
    ]
    for sale_id in sale_ids:
        report.checked_sales += 1
        consistent, state = balance_service.verify_sale_payment_state(sale_id)
        if consistent:
            continue
        sale = db.session.get(Sale, sale_id)
        _finding(
            report,
            ALERT_PAYMENT_STATE_MISMATCH,
            SEVERITY_WARNING,
            "Invoice payment state mismatch",
            f"Invoice {sale.invoice_no} shows paid {sale.paid_amount} ({sale.payment_status}) "
            f"but cleared payments total {state.paid_amount} ({state.status})",
            {"sale_id": sale_id, "invoice_no": sale.invoice_no},
            dedupe_key=f"{ALERT_PAYMENT_STATE_MISMATCH}:sale:{sale_id}",
        )
        if fix:
            balance_service.store_sale_payment_state(sale, state)
            report.fixed += 1

    duplicates = (
        db.session.query(Sale.invoice_no, func.count(Sale.id))
        .filter(Sale.is_deleted.is_(False))
        .group_by(Sale.invoice_no)
        .having(func.count(Sale.id) > 1)
        .all()
    )
    for invoice_no, count in duplicates:
        _finding(
            report,
            ALERT_DUPLICATE_INVOICE,
            SEVERITY_CRITICAL,
            "Duplicate invoice number",
            f"Invoice number {invoice_no} is used by {count} live invoices",
            {"invoice_no": invoice_no, "count": count},
            dedupe_key=f"{ALERT_DUPLICATE_INVOICE}:{invoice_no}",
        )


def _check_products(report: ReconciliationReport) -> None:
    for product in db.session.query(Product).order_by(Product.id).all():
        report.checked_products += 1
        stock = quantity(product.stock_qty)
        ledger = stock_ledger.get_ledger_quantity(product.id)

        if stock < 0:
            _finding(
                report,
                ALERT_STOCK_NEGATIVE,
                SEVERITY_WARNING,
                "Negative stock",
                f"{product.name} has negative stock ({quantity_str(stock)})",
                {"product_id": product.id, "stock_qty": quantity_str(stock)},
                dedupe_key=f"{ALERT_STOCK_NEGATIVE}:product:{product.id}",
            )
        if stock != ledger:
            _finding(
                report,
                ALERT_STOCK_MISMATCH,
                SEVERITY_ERROR,
                "Stock does not match ledger",
                f"{product.name} shows {quantity_str(stock)} on hand but the ledger sums to {quantity_str(ledger)}",
                {
                    "product_id": product.id,
                    "stock_qty": quantity_str(stock),
                    "ledger_qty": quantity_str(ledger),
                },
                dedupe_key=f"{ALERT_STOCK_MISMATCH}:product:{product.id}",
            )
        reorder = quantity(product.reorder_level)
        if product.is_active and reorder > 0 and 0 <= stock <= reorder:
            _finding(
                report,
                ALERT_LOW_STOCK,
                SEVERITY_INFO,
                "Low stock",
                f"{product.name} is at {quantity_str(stock)} (reorder level {quantity_str(reorder)})",
                {"product_id": product.id, "stock_qty": quantity_str(stock)},
                dedupe_key=f"{ALERT_LOW_STOCK}:product:{product.id}",
            )


def run_reconciliation(fix: bool = False, actor: Actor = SYSTEM_ACTOR) -> ReconciliationReport:
    """
    Sweep customers, sales and products; raise alerts for every inconsistency.

    Returns a ReconciliationReport. Commits the alerts (and fixes, if asked).
    """
    def _op():
        report = ReconciliationReport()
        _check_customers(report, fix)
        _check_sales(report, fix)
        _check_products(report)

        record_audit(
            actor.user_id,
            "RECONCILIATION_RUN",
            {"findings": len(report.findings), "fixed": report.fixed, "fix": fix},
        )
        db.session.commit()
        return report

    report = run_with_retry(_op)
    if report.findings:
        current_app.logger.warning(
            "Reconciliation found %s issue(s), created %s alert(s), fixed %s",
            len(report.findings), report.alerts_created, report.fixed,
        )
    else:
        current_app.logger.info("Reconciliation clean")
    return report
