# Overview: Product master data, manual stock adjustments and the selling-price change log.

from __future__ import annotations

from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import ConcurrencyConflict, NotFoundError, ValidationError
from ..extensions import db
from ..models import InventoryTransaction, PriceChangeLog, Product, StockAdjustment
from ..money import ZERO, money, quantity, to_decimal
from ..permissions import Actor, require_admin
from ..time_utils import utcnow
from . import stock_ledger
from .audit_service import record_audit
from .concurrency import begin_write, lock_for_update, run_with_retry
from .requests import parse_bool


# Fields a client may set directly. stock_qty is deliberately absent:
# stock only moves through the ledger.
WRITABLE_FIELDS = {"sku", "name", "unit_type", "cost_price", "sell_price", "reorder_level", "is_active"}


def _clean(data: dict, *, creating: bool) -> dict:
    unknown = set(data) - WRITABLE_FIELDS - {"stock_qty", "price_change_reason"}
    if unknown:
        raise ValidationError(f"Unknown product fields: {', '.join(sorted(unknown))}")
    if not creating and "stock_qty" in data:
        raise ValidationError("stock_qty cannot be edited directly; post a stock adjustment")

    cleaned = {}
    for key in ("sku", "name", "unit_type"):
        if key in data:
            value = (str(data[key]).strip() if data[key] is not None else "")
            if not value:
                raise ValidationError(f"{key} is required")
            cleaned[key] = value.upper() if key == "unit_type" else value
    for key in ("cost_price", "sell_price"):
        if key in data:
            value = money(to_decimal(data[key], key))
            if value < 0:
                raise ValidationError(f"{key} cannot be negative")
            cleaned[key] = value
    if "reorder_level" in data:
        value = quantity(to_decimal(data["reorder_level"], "reorder_level"))
        if value < 0:
            raise ValidationError("reorder_level cannot be negative")
        cleaned["reorder_level"] = value
    if "is_active" in data:
        cleaned["is_active"] = parse_bool(data["is_active"], "is_active")

    if creating:
        for key in ("sku", "name"):
            if key not in cleaned:
                raise ValidationError(f"{key} is required")
    return cleaned


def create_product(data: dict, actor: Actor) -> Product:
    """
    Create a product. An opening stock_qty is posted to the ledger as an
    ADJUSTMENT so the ledger and the cached quantity agree from day one.
    """
    fields = _clean(data, creating=True)
    opening = quantity(to_decimal(data.get("stock_qty", 0), "stock_qty"))
    if opening < 0:
        raise ValidationError("Opening stock cannot be negative")

    def _op():
        begin_write()
        if db.session.query(Product.id).filter_by(sku=fields["sku"]).first():
            raise ValidationError(f"SKU {fields['sku']} already exists", {"sku": fields["sku"]})
        product = Product(stock_qty=ZERO, **fields)
        db.session.add(product)
        db.session.flush()
        if opening > 0:
            stock_ledger.apply_stock_change(
                product.id,
                opening,
                stock_ledger.TX_ADJUSTMENT,
                reason="Opening stock",
                actor_id=actor.user_id,
            )
        record_audit(actor.user_id, "PRODUCT_CREATED", {"product_id": product.id, "sku": product.sku})
        db.session.commit()
        return product

    try:
        return run_with_retry(_op)
    except IntegrityError:
        raise ValidationError(f"SKU {fields['sku']} already exists", {"sku": fields["sku"]})


def update_product(
    product_id: int,
    data: dict,
    actor: Actor,
    expected_row_version: int | None = None,
) -> Product:
    """Edit product master data; a selling-price change is logged to price_change_logs."""
    fields = _clean(data, creating=False)
    price_reason = data.get("price_change_reason")

    def _op():
        begin_write()
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if not product:
            raise NotFoundError(f"Product {product_id} not found", {"product_id": product_id})
        if expected_row_version is not None and product.version_id != expected_row_version:
            raise ConcurrencyConflict(
                "Product was modified by another user. Reload and try again.",
                {"product_id": product.id, "row_version": product.version_id},
            )
        if "sku" in fields and fields["sku"] != product.sku:
            if db.session.query(Product.id).filter(Product.sku == fields["sku"], Product.id != product.id).first():
                raise ValidationError(f"SKU {fields['sku']} already exists", {"sku": fields["sku"]})

        old_price = money(product.sell_price)
        for key, value in fields.items():
            setattr(product, key, value)
        product.updated_at = utcnow()

        new_price = money(product.sell_price)
        if "sell_price" in fields and new_price != old_price:
            db.session.add(PriceChangeLog(
                product_id=product.id,
                old_price=old_price,
                new_price=new_price,
                percent_change=percent_change(old_price, new_price),
                reason=price_reason,
                changed_by=actor.user_id,
                changed_at=utcnow(),
            ))
        db.session.commit()
        return product

    return run_with_retry(_op)


def percent_change(old_price: Decimal, new_price: Decimal) -> Decimal | None:
    if old_price == 0:
        return None
    return money((new_price - old_price) / old_price * 100)


def adjust_stock(
    product_id: int,
    change_qty,
    reason: str,
    actor: Actor,
    allow_negative: bool = False,
) -> StockAdjustment:
    """
    Manual stock correction (admin only): damage, counts, opening errors.

    Writes the ledger row and a StockAdjustment with before/after quantities.
    """
    require_admin(actor, "adjust stock")
    delta = quantity(to_decimal(change_qty, "change_qty"))
    if delta == 0:
        raise ValidationError("change_qty cannot be zero")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Adjustment reason is required")

    def _op():
        begin_write()
        change = stock_ledger.apply_stock_change(
            product_id,
            delta,
            stock_ledger.TX_ADJUSTMENT,
            reason=reason,
            actor_id=actor.user_id,
            allow_negative=allow_negative,
        )
        adjustment = StockAdjustment(
            product_id=product_id,
            change_qty=delta,
            qty_before=change.previous_qty,
            qty_after=change.new_qty,
            reason=reason,
            inventory_transaction_id=change.transaction_id,
            created_by=actor.user_id,
            created_at=utcnow(),
        )
        db.session.add(adjustment)
        db.session.flush()
        # Point the ledger row back at the adjustment document
        db.session.get(InventoryTransaction, change.transaction_id).ref_id = adjustment.id
        record_audit(actor.user_id, "STOCK_ADJUSTED", {
            "product_id": product_id,
            "change_qty": str(delta),
            "qty_after": str(change.new_qty),
            "reason": reason,
        })
        db.session.commit()
        return adjustment

    adjustment = run_with_retry(_op)
    current_app.logger.info("Stock adjusted for product %s by %s: %s", product_id, delta, reason)
    return adjustment


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFoundError(f"Product {product_id} not found", {"product_id": product_id})
    return product


def list_products(*, include_inactive: bool = False, search: str | None = None) -> list[Product]:
    query = db.session.query(Product)
    if not include_inactive:
        query = query.filter(Product.is_active.is_(True))
    if search:
        like = f"%{search.strip()}%"
        query = query.filter(Product.name.like(like) | Product.sku.like(like))
    return query.order_by(Product.name.asc()).all()


def list_price_changes(product_id: int) -> list[PriceChangeLog]:
    return (
        db.session.query(PriceChangeLog)
        .filter_by(product_id=product_id)
        .order_by(PriceChangeLog.id.asc())
        .all()
    )


def list_adjustments(product_id: int | None = None) -> list[StockAdjustment]:
    query = db.session.query(StockAdjustment)
    if product_id is not None:
        query = query.filter_by(product_id=product_id)
    return query.order_by(StockAdjustment.id.asc()).all()
