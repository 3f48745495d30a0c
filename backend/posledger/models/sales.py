from __future__ import annotations

import json

from ..extensions import db
from ..money import money_str, quantity_str
from ..time_utils import to_utc_z, utcnow


class Sale(db.Model):
    """
    Sales invoice.

    WHY the cached totals: subtotal/vat_total/grand_total are derived from
    the items on every write and stored so that balance queries never
    re-price history. paid_amount and payment_status are owned by the
    balance aggregator (services.balance_service).

    LIFECYCLE:
    - is_finalized=False: draft, no stock effect
    - is_finalized=True: items have decremented stock
    - locked (explicitly or by age): only admins may edit
    - is_deleted=True: terminal; stock restored, payments voided

    UNIQUENESS: invoice_no is unique among live (non-deleted) sales only, so
    a deleted invoice number may be reissued. external_reference is unique
    whenever present.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index(
            "uq_sales_invoice_no_live",
            "invoice_no",
            unique=True,
            sqlite_where=db.text("is_deleted = 0"),
            postgresql_where=db.text("is_deleted = false"),
        ),
        db.Index(
            "uq_sales_external_reference",
            "external_reference",
            unique=True,
            sqlite_where=db.text("external_reference IS NOT NULL"),
            postgresql_where=db.text("external_reference IS NOT NULL"),
        ),
        db.Index("ix_sales_customer_deleted", "customer_id", "is_deleted"),
        db.Index("ix_sales_created_at", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_no = db.Column(db.String(32), nullable=False)
    external_reference = db.Column(db.String(128), nullable=True)
    invoice_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    # Null customer = walk-in (cash) customer
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True)

    subtotal = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    vat_total = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    discount = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    grand_total = db.Column(db.Numeric(18, 2), nullable=False, default=0)

    # Owned by balance_service
    paid_amount = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    payment_status = db.Column(db.String(16), nullable=False, default="PENDING")  # PENDING, PARTIAL, PAID
    last_payment_date = db.Column(db.DateTime(timezone=True), nullable=True)

    notes = db.Column(db.Text, nullable=True)

    is_finalized = db.Column(db.Boolean, nullable=False, default=True)

    is_locked = db.Column(db.Boolean, nullable=False, default=False)
    locked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Edit counter; matches the latest InvoiceVersion.version_number
    version = db.Column(db.Integer, nullable=False, default=1)
    edit_reason = db.Column(db.String(255), nullable=True)
    override_reason = db.Column(db.String(255), nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_modified_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    last_modified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    is_deleted = db.Column(db.Boolean, nullable=False, default=False)
    deleted_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "SaleItem",
        backref="sale",
        lazy=True,
        order_by="SaleItem.id",
        cascade="all, delete-orphan",
    )
    customer = db.relationship("Customer")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "invoice_no": self.invoice_no,
            "external_reference": self.external_reference,
            "invoice_date": to_utc_z(self.invoice_date),
            "customer_id": self.customer_id,
            "subtotal": money_str(self.subtotal),
            "vat_total": money_str(self.vat_total),
            "discount": money_str(self.discount),
            "grand_total": money_str(self.grand_total),
            "paid_amount": money_str(self.paid_amount),
            "payment_status": self.payment_status,
            "last_payment_date": to_utc_z(self.last_payment_date) if self.last_payment_date else None,
            "notes": self.notes,
            "is_finalized": self.is_finalized,
            "is_locked": self.is_locked,
            "locked_at": to_utc_z(self.locked_at) if self.locked_at else None,
            "version": self.version,
            "edit_reason": self.edit_reason,
            "override_reason": self.override_reason,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "last_modified_by": self.last_modified_by,
            "last_modified_at": to_utc_z(self.last_modified_at) if self.last_modified_at else None,
            "is_deleted": self.is_deleted,
            "deleted_by": self.deleted_by,
            "deleted_at": to_utc_z(self.deleted_at) if self.deleted_at else None,
            "row_version": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class SaleItem(db.Model):
    """Line item on an invoice. Replaced wholesale on every edit."""
    __tablename__ = "sale_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    unit_type = db.Column(db.String(16), nullable=False, default="CRTN")
    qty = db.Column(db.Numeric(18, 3), nullable=False)
    unit_price = db.Column(db.Numeric(18, 2), nullable=False)
    discount = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    vat_amount = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    line_total = db.Column(db.Numeric(18, 2), nullable=False)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "unit_type": self.unit_type,
            "qty": quantity_str(self.qty),
            "unit_price": money_str(self.unit_price),
            "discount": money_str(self.discount),
            "vat_amount": money_str(self.vat_amount),
            "line_total": money_str(self.line_total),
        }


class InvoiceVersion(db.Model):
    """
    Immutable snapshot of an invoice after each create/edit.

    WHY: Invoices are legal documents; edits must leave the prior state
    recoverable. Rows are append-only. (sale_id, version_number) is unique
    so two concurrent editors cannot both write version N.
    """
    __tablename__ = "invoice_versions"
    __table_args__ = (
        db.UniqueConstraint("sale_id", "version_number", name="uq_invoice_versions_sale_version"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    version_number = db.Column(db.Integer, nullable=False)
    data_json = db.Column(db.Text, nullable=False)
    diff_summary = db.Column(db.Text, nullable=True)
    edit_reason = db.Column(db.String(255), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def data(self) -> dict:
        return json.loads(self.data_json)

    def to_dict(self, include_data: bool = False) -> dict:
        result = {
            "id": self.id,
            "sale_id": self.sale_id,
            "version_number": self.version_number,
            "diff_summary": self.diff_summary,
            "edit_reason": self.edit_reason,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
        if include_data:
            result["data"] = self.data
        return result


class DocumentSequence(db.Model):
    """
    Next-number counter per document type (e.g. INVOICE).

    WHY: Atomic UPDATE ... SET next_number = next_number + 1 gives gap-tolerant,
    duplicate-free numbering without application locks.
    """
    __tablename__ = "document_sequences"

    document_type = db.Column(db.String(32), primary_key=True)
    next_number = db.Column(db.Integer, nullable=False)
