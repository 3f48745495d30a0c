# Overview: Supplier purchases: receive stock through the ledger and reverse it on delete.

"""
Purchase Service

WHY: Purchases are the main source of stock. Receiving goods posts a
PURCHASE ledger row per line in the same transaction as the purchase
document, and refreshes the product's cost price to the latest cost.

Deleting a purchase posts PURCHASE_RETURN rows for the same quantities.
If the goods have already been sold the reversal would take stock
negative, so the delete is refused with InsufficientStock.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from ..errors import DuplicateInvoiceNumber, NotFoundError, ValidationError
from ..extensions import db
from ..models import Product, Purchase, PurchaseItem
from ..money import ZERO, money, quantity, to_decimal
from ..permissions import Actor, require_admin
from .. import settings
from ..time_utils import parse_iso_datetime, utcnow
from . import stock_ledger
from .audit_service import record_audit
from .concurrency import begin_write, run_with_retry
from .requests import parse_bool


@dataclass
class PurchaseItemInput:
    product_id: int
    qty: Decimal
    unit_cost: Decimal
    unit_type: str = "CRTN"


@dataclass
class PurchaseRequest:
    supplier_name: str
    invoice_no: str
    items: list[PurchaseItemInput]
    purchase_date: datetime | None = None
    notes: str | None = None
    apply_vat: bool = True
    update_cost_price: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "PurchaseRequest":
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        items = []
        for raw in data.get("items") or []:
            if not isinstance(raw, dict) or raw.get("product_id") in (None, ""):
                raise ValidationError("product_id is required for every item")
            try:
                product_id = int(raw["product_id"])
            except (TypeError, ValueError):
                raise ValidationError("product_id must be an integer")
            items.append(PurchaseItemInput(
                product_id=product_id,
                qty=quantity(to_decimal(raw.get("qty"), "qty")),
                unit_cost=money(to_decimal(raw.get("unit_cost"), "unit_cost")),
                unit_type=(str(raw.get("unit_type") or "CRTN")).strip().upper(),
            ))
        try:
            purchase_date = parse_iso_datetime(data.get("purchase_date"))
        except ValueError:
            raise ValidationError("purchase_date must be an ISO-8601 date")
        return cls(
            supplier_name=(data.get("supplier_name") or "").strip(),
            invoice_no=str(data.get("invoice_no") or "").strip(),
            items=items,
            purchase_date=purchase_date,
            notes=data.get("notes"),
            apply_vat=parse_bool(data.get("apply_vat", True), "apply_vat"),
            update_cost_price=parse_bool(data.get("update_cost_price", True), "update_cost_price"),
        )


def _validate(request: PurchaseRequest) -> None:
    if not request.supplier_name:
        raise ValidationError("supplier_name is required")
    if not request.invoice_no:
        raise ValidationError("invoice_no is required")
    if not request.items:
        raise ValidationError("At least one item is required")
    for index, item in enumerate(request.items):
        if item.qty <= 0:
            raise ValidationError("Quantity must be greater than zero", {"item_index": index})
        if item.unit_cost < 0:
            raise ValidationError("Unit cost cannot be negative", {"item_index": index})


def create_purchase(request: PurchaseRequest, actor: Actor) -> Purchase:
    _validate(request)

    def _op():
        begin_write()
        existing = (
            db.session.query(Purchase.id)
            .filter_by(supplier_name=request.supplier_name, invoice_no=request.invoice_no)
            .first()
        )
        if existing:
            raise DuplicateInvoiceNumber(
                f"Purchase invoice {request.invoice_no} from {request.supplier_name} already recorded",
                {"purchase_id": existing[0]},
            )

        rate = settings.vat_rate() if request.apply_vat else ZERO
        now = utcnow()
        purchase = Purchase(
            supplier_name=request.supplier_name,
            invoice_no=request.invoice_no,
            purchase_date=request.purchase_date or now,
            notes=request.notes,
            created_by=actor.user_id,
            created_at=now,
        )
        subtotal = ZERO
        for item in request.items:
            product = db.session.get(Product, item.product_id)
            if not product:
                raise NotFoundError(f"Product {item.product_id} not found", {"product_id": item.product_id})
            line_total = money(item.qty * item.unit_cost)
            subtotal += line_total
            purchase.items.append(PurchaseItem(
                product_id=item.product_id,
                unit_type=item.unit_type,
                qty=item.qty,
                unit_cost=item.unit_cost,
                line_total=line_total,
            ))
            if request.update_cost_price:
                product.cost_price = item.unit_cost

        purchase.subtotal = subtotal
        purchase.vat_total = money(subtotal * rate)
        purchase.total_amount = subtotal + purchase.vat_total
        db.session.add(purchase)
        db.session.flush()

        for item in sorted(request.items, key=lambda i: i.product_id):
            stock_ledger.apply_stock_change(
                item.product_id,
                item.qty,
                stock_ledger.TX_PURCHASE,
                ref_id=purchase.id,
                reason=f"Purchase {request.invoice_no} from {request.supplier_name}",
                actor_id=actor.user_id,
            )

        record_audit(actor.user_id, "PURCHASE_CREATED", {
            "purchase_id": purchase.id,
            "supplier_name": purchase.supplier_name,
            "invoice_no": purchase.invoice_no,
            "total_amount": str(purchase.total_amount),
        })
        db.session.commit()
        return purchase

    return run_with_retry(_op)


def delete_purchase(purchase_id: int, actor: Actor) -> bool:
    """Soft-delete a purchase and take its stock back out. False if missing or already deleted."""
    require_admin(actor, "delete purchases")

    def _op():
        begin_write()
        purchase = db.session.get(Purchase, purchase_id)
        if not purchase or purchase.is_deleted:
            db.session.rollback()
            return False

        for item in sorted(purchase.items, key=lambda i: i.product_id):
            stock_ledger.apply_stock_change(
                item.product_id,
                -quantity(item.qty),
                stock_ledger.TX_PURCHASE_RETURN,
                ref_id=purchase.id,
                reason=f"Purchase {purchase.invoice_no} deleted",
                actor_id=actor.user_id,
            )

        now = utcnow()
        purchase.is_deleted = True
        purchase.deleted_by = actor.user_id
        purchase.deleted_at = now
        record_audit(actor.user_id, "PURCHASE_DELETED", {
            "purchase_id": purchase.id,
            "invoice_no": purchase.invoice_no,
            "total_amount": str(purchase.total_amount),
        })
        db.session.commit()
        return True

    return run_with_retry(_op)


def get_purchase(purchase_id: int) -> Purchase:
    purchase = db.session.get(Purchase, purchase_id)
    if not purchase:
        raise NotFoundError(f"Purchase {purchase_id} not found", {"purchase_id": purchase_id})
    return purchase


def list_purchases(include_deleted: bool = False) -> list[Purchase]:
    query = db.session.query(Purchase)
    if not include_deleted:
        query = query.filter(Purchase.is_deleted.is_(False))
    return query.order_by(Purchase.purchase_date.desc(), Purchase.id.desc()).all()
