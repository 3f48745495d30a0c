# Overview: Append-only invoice snapshots, diff summaries and restore-to-version.

"""
Invoice Versioning Store

WHY: An edited invoice must keep every prior state recoverable. Each create
or edit appends one InvoiceVersion holding the full post-edit state, so the
newest version always matches the live Sale row.

NUMBERING: version 1 is written when the sale is created; each edit writes
Sale.version + 1. (sale_id, version_number) is unique in the database, so
two editors racing for the same number cannot both succeed; the loser's
flush fails and the whole edit rolls back as ConcurrencyConflict.

RESTORE never rewrites history: it replays the target snapshot through the
normal edit path, producing a new version (and re-deriving stock and
balances on the way).
"""

from __future__ import annotations

import json

from sqlalchemy.exc import IntegrityError

from ..errors import ConcurrencyConflict, NotFoundError, VersionNotFound
from ..extensions import db
from ..models import InvoiceVersion, Sale
from ..money import money, money_str, quantity, quantity_str
from ..time_utils import parse_iso_datetime, to_utc_z, utcnow


def build_snapshot(sale: Sale) -> dict:
    """Full, JSON-ready state of a sale and its items."""
    return {
        "sale_id": sale.id,
        "invoice_no": sale.invoice_no,
        "invoice_date": to_utc_z(sale.invoice_date),
        "customer_id": sale.customer_id,
        "subtotal": money_str(sale.subtotal),
        "vat_total": money_str(sale.vat_total),
        "discount": money_str(sale.discount),
        "grand_total": money_str(sale.grand_total),
        "paid_amount": money_str(sale.paid_amount),
        "payment_status": sale.payment_status,
        "notes": sale.notes,
        "is_finalized": sale.is_finalized,
        "version": sale.version,
        "items": [
            {
                "product_id": item.product_id,
                "unit_type": item.unit_type,
                "qty": quantity_str(item.qty),
                "unit_price": money_str(item.unit_price),
                "discount": money_str(item.discount),
                "vat_amount": money_str(item.vat_amount),
                "line_total": money_str(item.line_total),
            }
            for item in sale.items
        ],
    }


def diff_summary(old_state: dict, new_state: dict, editor: str, version_number: int) -> str:
    """
    Human-readable change summary, e.g.

        Edited by alice - Version 3. Changes: GrandTotal: 31.50 → 52.50, Items: 1 → 2
    """
    changes = []
    if old_state.get("is_finalized") != new_state.get("is_finalized"):
        changes.append("Status: " + ("Finalized" if new_state.get("is_finalized") else "Draft"))
    if old_state.get("grand_total") != new_state.get("grand_total"):
        changes.append(f"GrandTotal: {old_state.get('grand_total')} → {new_state.get('grand_total')}")
    if old_state.get("discount") != new_state.get("discount"):
        changes.append(f"Discount: {old_state.get('discount')} → {new_state.get('discount')}")
    old_items = old_state.get("items") or []
    new_items = new_state.get("items") or []
    if len(old_items) != len(new_items):
        changes.append(f"Items: {len(old_items)} → {len(new_items)}")
    elif _item_key(old_items) != _item_key(new_items):
        changes.append("Items modified")
    if old_state.get("customer_id") != new_state.get("customer_id"):
        changes.append("Customer changed")
    if old_state.get("notes") != new_state.get("notes"):
        changes.append("Notes changed")

    summary = f"Edited by {editor} - Version {version_number}."
    if changes:
        summary += " Changes: " + ", ".join(changes)
    return summary


def _item_key(items: list[dict]) -> list[tuple]:
    return [(i.get("product_id"), i.get("qty"), i.get("unit_price"), i.get("discount")) for i in items]


def snapshot(
    sale_id: int,
    version_number: int,
    editor_id: int | None,
    reason: str | None,
    full_state: dict,
    diff: str | None = None,
) -> int:
    """
    Append one version row inside the caller's transaction.

    Raises ConcurrencyConflict if (sale_id, version_number) already exists.
    """
    version = InvoiceVersion(
        sale_id=sale_id,
        version_number=version_number,
        data_json=json.dumps(full_state, sort_keys=True),
        diff_summary=diff,
        edit_reason=reason,
        created_by=editor_id,
        created_at=utcnow(),
    )
    try:
        with db.session.begin_nested():
            db.session.add(version)
    except IntegrityError as exc:
        raise ConcurrencyConflict(
            f"Version {version_number} of sale {sale_id} was already written",
            {"sale_id": sale_id, "version_number": version_number},
        ) from exc
    return version.id


def list_versions(sale_id: int) -> list[InvoiceVersion]:
    if not db.session.get(Sale, sale_id):
        raise NotFoundError(f"Sale {sale_id} not found", {"sale_id": sale_id})
    return (
        db.session.query(InvoiceVersion)
        .filter_by(sale_id=sale_id)
        .order_by(InvoiceVersion.version_number.asc())
        .all()
    )


def get_version(sale_id: int, version_number: int) -> InvoiceVersion:
    version = (
        db.session.query(InvoiceVersion)
        .filter_by(sale_id=sale_id, version_number=version_number)
        .first()
    )
    if not version:
        raise VersionNotFound(
            f"Version {version_number} not found for sale {sale_id}",
            {"sale_id": sale_id, "version_number": version_number},
        )
    return version


def restore(sale_id: int, target_version_number: int, actor, reason: str | None = None) -> Sale:
    """
    Re-apply a prior snapshot as a new edit.

    Items, discount, customer, notes and invoice date come from the target
    version; totals, VAT, stock and balances are re-derived by the edit
    path. The result is version N+1, not a rewrite of version N.
    The finalized flag is not rolled back: stock taken by finalizing stays
    taken, and restoring a draft-era version re-prices a finalized invoice.
    """
    # Local import: sales_service depends on this module for snapshots
    from .requests import SaleItemInput, SaleRequest
    from .sales_service import update_sale

    target = get_version(sale_id, target_version_number)
    state = target.data

    request = SaleRequest(
        items=[
            SaleItemInput(
                product_id=item["product_id"],
                qty=quantity(item["qty"]),
                unit_price=money(item["unit_price"]),
                unit_type=item.get("unit_type") or "CRTN",
                discount=money(item.get("discount") or 0),
            )
            for item in state.get("items", [])
        ],
        customer_id=state.get("customer_id"),
        invoice_date=parse_iso_datetime(state.get("invoice_date")),
        discount=money(state.get("discount") or 0),
        notes=state.get("notes"),
    )
    edit_reason = reason or f"Restored from version {target_version_number}"
    return update_sale(sale_id, request, actor, edit_reason=edit_reason)
