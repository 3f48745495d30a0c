# Overview: The only writer of Product.stock_qty; every change appends an inventory transaction.

"""
Stock Ledger

WHY: Stock is a cached number (Product.stock_qty) backed by an append-only
ledger (InventoryTransaction). If anything other than this module wrote
stock_qty, the cache and the ledger would drift and reconciliation could
no longer tell which one is right.

CONTRACT:
- apply_stock_change() never commits; it joins the caller's transaction so
  that the stock move and the invoice/purchase it belongs to commit or roll
  back together.
- The product row is locked (FOR UPDATE where supported) and its version_id
  is compared at flush, so two concurrent decrements cannot both read the
  same starting quantity.
- A change that would leave stock below zero raises InsufficientStock
  unless the caller passes allow_negative (admin override sales).
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import func

from ..errors import NotFoundError, ValidationError, InsufficientStock
from ..extensions import db
from ..models import InventoryTransaction, Product
from ..money import quantity
from ..time_utils import utcnow
from .concurrency import lock_for_update


# =============================================================================
# TRANSACTION TYPES (CONSTANTS)
# =============================================================================

TX_PURCHASE = "PURCHASE"
TX_SALE = "SALE"
TX_ADJUSTMENT = "ADJUSTMENT"
TX_RETURN = "RETURN"
TX_PURCHASE_RETURN = "PURCHASE_RETURN"

VALID_TRANSACTION_TYPES = [
    TX_PURCHASE,
    TX_SALE,
    TX_ADJUSTMENT,
    TX_RETURN,
    TX_PURCHASE_RETURN,
]


@dataclass(frozen=True)
class StockChange:
    product_id: int
    previous_qty: Decimal
    new_qty: Decimal
    transaction_id: int | None


# =============================================================================
# WRITES
# =============================================================================

def apply_stock_change(
    product_id: int,
    delta_qty,
    transaction_type: str,
    ref_id: int | None = None,
    reason: str | None = None,
    *,
    actor_id: int | None = None,
    allow_negative: bool = False,
) -> StockChange:
    """
    Move stock for one product and append the ledger row.

    Args:
        product_id: Product to change
        delta_qty: Signed quantity (negative removes stock)
        transaction_type: One of VALID_TRANSACTION_TYPES
        ref_id: Sale / purchase / adjustment id the move belongs to
        reason: Free text stored on the ledger row
        actor_id: User responsible
        allow_negative: Permit stock below zero (override); the ledger row is flagged

    Returns:
        StockChange with the new quantity and the ledger row id
        (transaction_id is None for a zero delta, which writes nothing)

    Raises:
        NotFoundError: product missing
        InsufficientStock: result would be negative and allow_negative is False
    """
    if transaction_type not in VALID_TRANSACTION_TYPES:
        raise ValidationError(f"Invalid stock transaction type: {transaction_type}")

    delta = quantity(delta_qty)

    product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
    if not product:
        raise NotFoundError(f"Product {product_id} not found", {"product_id": product_id})

    current = quantity(product.stock_qty)
    if delta == 0:
        return StockChange(product_id, current, current, None)

    new_qty = current + delta
    if new_qty < 0 and not allow_negative:
        raise InsufficientStock(
            product_id=product.id,
            available=current,
            requested=-delta,
            product_name=product.name,
        )

    product.stock_qty = new_qty
    product.updated_at = utcnow()

    tx = InventoryTransaction(
        product_id=product.id,
        change_qty=delta,
        transaction_type=transaction_type,
        ref_id=ref_id,
        reason=reason,
        is_override=bool(allow_negative and new_qty < 0),
        created_by=actor_id,
        created_at=utcnow(),
    )
    db.session.add(tx)
    # Flush now so the version_id compare-and-swap on the product fires
    # inside the caller's unit of work, before any further writes
    db.session.flush()

    return StockChange(product.id, current, new_qty, tx.id)


# =============================================================================
# READS
# =============================================================================

def get_stock_level(product_id: int) -> Decimal:
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFoundError(f"Product {product_id} not found", {"product_id": product_id})
    return quantity(product.stock_qty)


def get_ledger_quantity(product_id: int) -> Decimal:
    """Stock as implied by the ledger alone (sum of all deltas)."""
    total = (
        db.session.query(func.coalesce(func.sum(InventoryTransaction.change_qty), 0))
        .filter(InventoryTransaction.product_id == product_id)
        .scalar()
    )
    return quantity(total)


def list_transactions(
    *,
    product_id: int | None = None,
    ref_id: int | None = None,
    transaction_type: str | None = None,
    limit: int = 200,
) -> list[InventoryTransaction]:
    query = db.session.query(InventoryTransaction)
    if product_id is not None:
        query = query.filter(InventoryTransaction.product_id == product_id)
    if ref_id is not None:
        query = query.filter(InventoryTransaction.ref_id == ref_id)
    if transaction_type is not None:
        query = query.filter(InventoryTransaction.transaction_type == transaction_type)
    return query.order_by(InventoryTransaction.id.asc()).limit(limit).all()
