from __future__ import annotations

from ..extensions import db
from ..money import money_str, quantity_str
from ..time_utils import to_utc_z, utcnow


class Product(db.Model):
    """
    Product master data with the cached on-hand quantity.

    WHY stock_qty lives here: reads (billing screens, reorder checks) need
    O(1) stock. The inventory_transactions table is the audit trail; only
    services.stock_ledger writes stock_qty, and it writes a ledger row in
    the same transaction every time.

    Products are never hard-deleted once referenced; is_active=False hides
    them from billing.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_active_name", "is_active", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)

    # Selling unit, e.g. CRTN, PCS, KG
    unit_type = db.Column(db.String(16), nullable=False, default="CRTN")

    cost_price = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    sell_price = db.Column(db.Numeric(18, 2), nullable=False, default=0)

    # Fractional units are allowed (KG, litres)
    stock_qty = db.Column(db.Numeric(18, 3), nullable=False, default=0)
    reorder_level = db.Column(db.Numeric(18, 3), nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r} stock={self.stock_qty}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "unit_type": self.unit_type,
            "cost_price": money_str(self.cost_price),
            "sell_price": money_str(self.sell_price),
            "stock_qty": quantity_str(self.stock_qty),
            "reorder_level": quantity_str(self.reorder_level),
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "row_version": self.version_id,
        }


class InventoryTransaction(db.Model):
    """
    Append-only stock ledger.

    WHY: Every change to Product.stock_qty has exactly one row here, so the
    sum of change_qty per product must equal the cached stock_qty.
    Reconciliation checks that identity.

    TRANSACTION TYPES:
    - PURCHASE: goods received (positive)
    - SALE: goods sold (negative) or restored on invoice edit/delete (positive)
    - ADJUSTMENT: manual correction by an admin
    - RETURN: customer return (positive)
    - PURCHASE_RETURN: goods sent back to supplier / purchase deleted (negative)
    """
    __tablename__ = "inventory_transactions"
    __table_args__ = (
        db.Index("ix_inventory_tx_product_created", "product_id", "created_at"),
        db.Index("ix_inventory_tx_type_ref", "transaction_type", "ref_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    # Signed: positive adds stock, negative removes it
    change_qty = db.Column(db.Numeric(18, 3), nullable=False)
    transaction_type = db.Column(db.String(24), nullable=False)

    # Sale id / purchase id / adjustment id depending on type
    ref_id = db.Column(db.Integer, nullable=True)
    reason = db.Column(db.String(255), nullable=True)

    # Set when an admin pushed stock below zero
    is_override = db.Column(db.Boolean, nullable=False, default=False)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "change_qty": quantity_str(self.change_qty),
            "transaction_type": self.transaction_type,
            "ref_id": self.ref_id,
            "reason": self.reason,
            "is_override": self.is_override,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }


class StockAdjustment(db.Model):
    """Manual stock correction with before/after snapshot (append-only)."""
    __tablename__ = "stock_adjustments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    change_qty = db.Column(db.Numeric(18, 3), nullable=False)
    qty_before = db.Column(db.Numeric(18, 3), nullable=False)
    qty_after = db.Column(db.Numeric(18, 3), nullable=False)
    reason = db.Column(db.String(255), nullable=False)
    inventory_transaction_id = db.Column(db.Integer, db.ForeignKey("inventory_transactions.id"), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "change_qty": quantity_str(self.change_qty),
            "qty_before": quantity_str(self.qty_before),
            "qty_after": quantity_str(self.qty_after),
            "reason": self.reason,
            "inventory_transaction_id": self.inventory_transaction_id,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }


class PriceChangeLog(db.Model):
    """Append-only history of selling price changes."""
    __tablename__ = "price_change_logs"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    old_price = db.Column(db.Numeric(18, 2), nullable=False)
    new_price = db.Column(db.Numeric(18, 2), nullable=False)
    # Null when old_price was zero
    percent_change = db.Column(db.Numeric(9, 2), nullable=True)
    reason = db.Column(db.String(255), nullable=True)
    changed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    changed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "old_price": money_str(self.old_price),
            "new_price": money_str(self.new_price),
            "percent_change": money_str(self.percent_change),
            "reason": self.reason,
            "changed_by": self.changed_by,
            "changed_at": to_utc_z(self.changed_at),
        }


class Purchase(db.Model):
    """
    Supplier purchase (goods received).

    Each line posts a PURCHASE row to the stock ledger. Deleting a purchase
    is a soft delete that posts the reversing PURCHASE_RETURN rows.
    """
    __tablename__ = "purchases"
    __table_args__ = (
        db.UniqueConstraint("supplier_name", "invoice_no", name="uq_purchases_supplier_invoice"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    supplier_name = db.Column(db.String(255), nullable=False)
    invoice_no = db.Column(db.String(64), nullable=False)
    purchase_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    subtotal = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    vat_total = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    notes = db.Column(db.Text, nullable=True)

    is_deleted = db.Column(db.Boolean, nullable=False, default=False)
    deleted_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    items = db.relationship(
        "PurchaseItem",
        backref="purchase",
        lazy=True,
        order_by="PurchaseItem.id",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "supplier_name": self.supplier_name,
            "invoice_no": self.invoice_no,
            "purchase_date": to_utc_z(self.purchase_date),
            "subtotal": money_str(self.subtotal),
            "vat_total": money_str(self.vat_total),
            "total_amount": money_str(self.total_amount),
            "notes": self.notes,
            "is_deleted": self.is_deleted,
            "deleted_at": to_utc_z(self.deleted_at) if self.deleted_at else None,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "items": [item.to_dict() for item in self.items],
        }


class PurchaseItem(db.Model):
    __tablename__ = "purchase_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    purchase_id = db.Column(db.Integer, db.ForeignKey("purchases.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    unit_type = db.Column(db.String(16), nullable=False, default="CRTN")
    qty = db.Column(db.Numeric(18, 3), nullable=False)
    unit_cost = db.Column(db.Numeric(18, 2), nullable=False)
    line_total = db.Column(db.Numeric(18, 2), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "unit_type": self.unit_type,
            "qty": quantity_str(self.qty),
            "unit_cost": money_str(self.unit_cost),
            "line_total": money_str(self.line_total),
        }
