"""
Sale transaction manager tests.

Verifies:
- Totals, VAT and stock for a finalized invoice
- Atomic rollback on stock shortfall
- external_reference and manual invoice number rules
- Edit rules (reason, lock window, admin override) and version history
- Soft delete restores stock and voids payments exactly once
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import text

from posledger.errors import (
    AuthorizationError,
    ConcurrencyConflict,
    DuplicateInvoiceNumber,
    InsufficientStock,
    InvoiceLocked,
    ValidationError,
)
from posledger.extensions import db
from posledger.models import Alert, InventoryTransaction, InvoiceVersion, Payment, Product, Sale
from posledger.services import sales_service, stock_ledger
from posledger.services.requests import SaleItemInput, SaleRequest
from posledger.time_utils import utcnow

from conftest import sale_request


def _stock(product_id):
    return db.session.get(Product, product_id).stock_qty


# =============================================================================
# PRICING
# =============================================================================


class TestCalculateTotals:
    def test_worked_example(self, app):
        items = [SaleItemInput(product_id=1, qty=Decimal("3"), unit_price=Decimal("10.00"))]
        totals = sales_service.calculate_totals(items, Decimal("0"), vat_rate=Decimal("0.05"))
        assert totals.subtotal == Decimal("30.00")
        assert totals.vat_total == Decimal("1.50")
        assert totals.grand_total == Decimal("31.50")

    def test_vat_rounds_half_up_per_line(self, app):
        items = [
            SaleItemInput(product_id=1, qty=Decimal("1"), unit_price=Decimal("0.10")),
            SaleItemInput(product_id=2, qty=Decimal("1"), unit_price=Decimal("0.10")),
        ]
        totals = sales_service.calculate_totals(items, Decimal("0"), vat_rate=Decimal("0.05"))
        # 0.005 rounds to 0.01 on each line
        assert totals.vat_total == Decimal("0.02")
        assert totals.grand_total == Decimal("0.22")

    def test_line_discount_reduces_taxable_amount(self, app):
        items = [SaleItemInput(product_id=1, qty=Decimal("2"), unit_price=Decimal("50.00"), discount=Decimal("10.00"))]
        totals = sales_service.calculate_totals(items, Decimal("5.00"), vat_rate=Decimal("0.05"))
        assert totals.subtotal == Decimal("90.00")
        assert totals.vat_total == Decimal("4.50")
        assert totals.grand_total == Decimal("89.50")

    def test_discount_larger_than_total_rejected(self, app):
        items = [SaleItemInput(product_id=1, qty=Decimal("1"), unit_price=Decimal("10.00"))]
        with pytest.raises(ValidationError):
            sales_service.calculate_totals(items, Decimal("11.00"), vat_rate=Decimal("0.05"))


# =============================================================================
# CREATE
# =============================================================================


class TestCreateSale:
    def test_finalized_sale_moves_stock_and_writes_version_one(self, product, customer, staff):
        sale = sales_service.create_sale(sale_request(product.id, customer_id=customer.id), staff)

        assert sale.invoice_no == "2000"
        assert sale.grand_total == Decimal("31.50")
        assert sale.vat_total == Decimal("1.50")
        assert sale.payment_status == "PENDING"
        assert sale.version == 1
        assert _stock(product.id) == Decimal("97.000")

        ledger = stock_ledger.list_transactions(ref_id=sale.id, transaction_type=stock_ledger.TX_SALE)
        assert [t.change_qty for t in ledger] == [Decimal("-3.000")]

        versions = db.session.query(InvoiceVersion).filter_by(sale_id=sale.id).all()
        assert [v.version_number for v in versions] == [1]
        assert versions[0].data["grand_total"] == "31.50"

        assert db.session.get(type(customer), customer.id).pending_balance == Decimal("31.50")

    def test_invoice_numbers_increase(self, product, customer, staff):
        first = sales_service.create_sale(sale_request(product.id, customer_id=customer.id), staff)
        second = sales_service.create_sale(sale_request(product.id, customer_id=customer.id), staff)
        assert (first.invoice_no, second.invoice_no) == ("2000", "2001")

    def test_insufficient_stock_rolls_back_everything(self, product, second_product, customer, staff):
        request = SaleRequest(
            items=[
                SaleItemInput(product_id=product.id, qty=Decimal("5"), unit_price=Decimal("10.00")),
                SaleItemInput(product_id=second_product.id, qty=Decimal("51"), unit_price=Decimal("20.00")),
            ],
            customer_id=customer.id,
        )
        with pytest.raises(InsufficientStock):
            sales_service.create_sale(request, staff)

        assert db.session.query(Sale).count() == 0
        assert _stock(product.id) == Decimal("100.000")
        assert _stock(second_product.id) == Decimal("50.000")
        assert db.session.query(InventoryTransaction).filter_by(transaction_type="SALE").count() == 0

    def test_walk_in_sale_is_settled_in_cash(self, product, staff):
        sale = sales_service.create_sale(sale_request(product.id), staff)

        assert sale.customer_id is None
        assert sale.payment_status == "PAID"
        assert sale.paid_amount == Decimal("31.50")
        payments = db.session.query(Payment).filter_by(sale_id=sale.id).all()
        assert [(p.mode, p.status, p.amount) for p in payments] == [("CASH", "CLEARED", Decimal("31.50"))]

    def test_inline_partial_payment(self, product, customer, staff):
        sale = sales_service.create_sale(
            sale_request(product.id, customer_id=customer.id, payments=[("10.00", "CASH")]),
            staff,
        )
        assert sale.paid_amount == Decimal("10.00")
        assert sale.payment_status == "PARTIAL"

    def test_draft_does_not_move_stock_until_finalized(self, product, customer, staff):
        sale = sales_service.create_sale(
            sale_request(product.id, customer_id=customer.id, is_finalized=False),
            staff,
        )
        assert _stock(product.id) == Decimal("100.000")

        sales_service.finalize_sale(sale.id, staff)
        assert _stock(product.id) == Decimal("97.000")

        with pytest.raises(ValidationError):
            sales_service.finalize_sale(sale.id, staff)

    def test_finalizing_a_draft_appends_a_version(self, product, customer, staff):
        draft = sales_service.create_sale(
            sale_request(product.id, customer_id=customer.id, is_finalized=False),
            staff,
        )
        sale = sales_service.finalize_sale(draft.id, staff)

        assert sale.version == 2
        versions = db.session.query(InvoiceVersion).filter_by(sale_id=sale.id).order_by(InvoiceVersion.version_number).all()
        assert [v.version_number for v in versions] == [1, 2]
        assert versions[0].data["is_finalized"] is False
        assert versions[1].data["is_finalized"] is True
        assert versions[1].data["version"] == 2
        assert versions[1].edit_reason == "Finalized"
        assert versions[1].diff_summary == "Edited by clerk - Version 2. Changes: Status: Finalized"

    def test_external_reference_returns_existing_sale(self, product, customer, staff):
        first = sales_service.create_sale(
            sale_request(product.id, customer_id=customer.id, external_reference="SHOP-991"),
            staff,
        )
        again = sales_service.create_sale(
            sale_request(product.id, qty="7", customer_id=customer.id, external_reference="SHOP-991"),
            staff,
        )

        assert again.id == first.id
        assert db.session.query(Sale).count() == 1
        assert _stock(product.id) == Decimal("97.000")

    def test_manual_invoice_number(self, product, customer, staff):
        sale = sales_service.create_sale(
            sale_request(product.id, customer_id=customer.id, invoice_no="5000"),
            staff,
        )
        assert sale.invoice_no == "5000"

    def test_duplicate_manual_invoice_number_rejected_and_alerted(self, product, customer, staff):
        sales_service.create_sale(sale_request(product.id, customer_id=customer.id, invoice_no="5000"), staff)

        with pytest.raises(DuplicateInvoiceNumber):
            sales_service.create_sale(sale_request(product.id, customer_id=customer.id, invoice_no="5000"), staff)

        assert db.session.query(Sale).count() == 1
        assert _stock(product.id) == Decimal("97.000")
        assert db.session.query(Alert).filter_by(type="DUPLICATE_INVOICE").count() == 1

    def test_auto_numbering_skips_manually_used_number(self, product, customer, staff):
        sales_service.create_sale(sale_request(product.id, customer_id=customer.id, invoice_no="2000"), staff)
        sale = sales_service.create_sale(sale_request(product.id, customer_id=customer.id), staff)
        assert sale.invoice_no == "2001"

    def test_malformed_manual_invoice_number(self, product, customer, staff):
        with pytest.raises(ValidationError):
            sales_service.create_sale(sale_request(product.id, customer_id=customer.id, invoice_no="12a"), staff)

    def test_validation_happens_before_any_write(self, product, staff):
        with pytest.raises(ValidationError):
            sales_service.create_sale(SaleRequest(items=[]), staff)
        with pytest.raises(ValidationError):
            sales_service.create_sale(sale_request(product.id, qty="0"), staff)
        assert db.session.query(Sale).count() == 0

    def test_override_requires_admin_and_reason(self, product, customer, staff, admin):
        request = sale_request(product.id, qty="120", customer_id=customer.id)
        with pytest.raises(AuthorizationError):
            sales_service.create_sale_with_override(request, "Stock count pending", staff)
        with pytest.raises(ValidationError):
            sales_service.create_sale_with_override(request, "  ", admin)

        sale = sales_service.create_sale_with_override(request, "Stock count pending", admin)
        assert sale.override_reason == "Stock count pending"
        assert _stock(product.id) == Decimal("-20.000")
        assert db.session.query(Alert).filter_by(type="OVERRIDE_SALE").count() == 1


# =============================================================================
# UPDATE
# =============================================================================


class TestUpdateSale:
    def test_edit_adjusts_stock_by_difference_and_appends_version(self, product, customer, staff):
        sale = sales_service.create_sale(sale_request(product.id, customer_id=customer.id), staff)

        updated = sales_service.update_sale(
            sale.id,
            sale_request(product.id, qty="5", customer_id=customer.id),
            staff,
            edit_reason="Customer took two more",
        )

        assert updated.version == 2
        assert updated.grand_total == Decimal("52.50")
        assert _stock(product.id) == Decimal("95.000")
        assert db.session.get(type(customer), customer.id).pending_balance == Decimal("52.50")

        version = db.session.query(InvoiceVersion).filter_by(sale_id=sale.id, version_number=2).one()
        assert version.edit_reason == "Customer took two more"
        assert "GrandTotal: 31.50 → 52.50" in version.diff_summary
        assert version.diff_summary.startswith("Edited by clerk - Version 2.")

    def test_staff_edit_requires_reason(self, product, customer, staff):
        sale = sales_service.create_sale(sale_request(product.id, customer_id=customer.id), staff)
        with pytest.raises(ValidationError):
            sales_service.update_sale(sale.id, sale_request(product.id, customer_id=customer.id), staff)

    def test_admin_may_edit_without_reason(self, product, customer, staff, admin):
        sale = sales_service.create_sale(sale_request(product.id, customer_id=customer.id), staff)
        updated = sales_service.update_sale(sale.id, sale_request(product.id, qty="1", customer_id=customer.id), admin)
        assert updated.version == 2

    def test_edit_refreshes_sale_read_before_a_concurrent_write(self, product, customer, staff):
        sale = sales_service.create_sale(sale_request(product.id, customer_id=customer.id), staff)
        read_version = sale.version_id
        db.session.execute(text("UPDATE sales SET version_id = version_id + 1 WHERE id = :id"), {"id": sale.id})

        updated = sales_service.update_sale(
            sale.id, sale_request(product.id, qty="4", customer_id=customer.id), staff, edit_reason="Extra carton",
        )
        assert updated.version == 2
        assert updated.version_id > read_version + 1

    def test_lock_window_blocks_staff_but_not_admin(self, product, customer, staff, admin):
        sale = sales_service.create_sale(sale_request(product.id, customer_id=customer.id), staff)
        sale.created_at = utcnow() - timedelta(hours=49)
        db.session.commit()

        with pytest.raises(InvoiceLocked):
            sales_service.update_sale(
                sale.id, sale_request(product.id, qty="4", customer_id=customer.id), staff, edit_reason="late fix",
            )
        assert _stock(product.id) == Decimal("97.000")

        updated = sales_service.update_sale(
            sale.id, sale_request(product.id, qty="4", customer_id=customer.id), admin, edit_reason="late fix",
        )
        assert updated.version == 2

    def test_explicit_lock_and_unlock(self, product, customer, staff, admin):
        sale = sales_service.create_sale(sale_request(product.id, customer_id=customer.id), staff)
        sale.created_at = utcnow() - timedelta(hours=72)
        db.session.commit()

        assert sales_service.lock_expired_invoices() == 1
        assert db.session.get(Sale, sale.id).is_locked is True
        assert sales_service.can_edit(db.session.get(Sale, sale.id), staff) is False

        with pytest.raises(AuthorizationError):
            sales_service.unlock_invoice(sale.id, staff, "please")
        assert sales_service.unlock_invoice(sale.id, admin, "Correcting VAT") is True
        assert db.session.get(Sale, sale.id).is_locked is False

    def test_stale_row_version_rejected(self, product, customer, staff):
        sale = sales_service.create_sale(sale_request(product.id, customer_id=customer.id), staff)
        read_version = sale.version_id
        sales_service.update_sale(
            sale.id, sale_request(product.id, qty="4", customer_id=customer.id), staff,
            edit_reason="first", expected_row_version=read_version,
        )

        with pytest.raises(ConcurrencyConflict) as exc_info:
            sales_service.update_sale(
                sale.id, sale_request(product.id, qty="9", customer_id=customer.id), staff,
                edit_reason="second", expected_row_version=read_version,
            )
        assert exc_info.value.details["row_version"] > read_version
        assert _stock(product.id) == Decimal("96.000")

    def test_edit_below_paid_amount_leaves_credit(self, product, customer, staff):
        sale = sales_service.create_sale(
            sale_request(product.id, customer_id=customer.id, payments=[("31.50", "CASH")]),
            staff,
        )
        updated = sales_service.update_sale(
            sale.id, sale_request(product.id, qty="1", customer_id=customer.id), staff, edit_reason="returned two",
        )
        assert updated.grand_total == Decimal("10.50")
        assert updated.paid_amount == Decimal("10.50")
        assert updated.payment_status == "PAID"
        # Customer has 21.00 credit
        assert db.session.get(type(customer), customer.id).pending_balance == Decimal("-21.00")

    def test_edit_insufficient_stock_changes_nothing(self, product, customer, staff):
        sale = sales_service.create_sale(sale_request(product.id, customer_id=customer.id), staff)
        with pytest.raises(InsufficientStock):
            sales_service.update_sale(
                sale.id, sale_request(product.id, qty="104", customer_id=customer.id), staff, edit_reason="bulk",
            )
        reloaded = db.session.get(Sale, sale.id)
        assert reloaded.version == 1
        assert reloaded.grand_total == Decimal("31.50")
        assert _stock(product.id) == Decimal("97.000")


# =============================================================================
# DELETE
# =============================================================================


class TestDeleteSale:
    def test_delete_restores_stock_voids_payments_once(self, product, customer, staff, admin):
        sale = sales_service.create_sale(
            sale_request(product.id, customer_id=customer.id, payments=[("10.00", "CASH")]),
            staff,
        )
        assert _stock(product.id) == Decimal("97.000")

        assert sales_service.delete_sale(sale.id, admin) is True
        assert _stock(product.id) == Decimal("100.000")
        assert db.session.query(Payment).filter_by(sale_id=sale.id).one().status == "VOID"
        refreshed = db.session.get(type(customer), customer.id)
        assert refreshed.total_sales == Decimal("0.00")
        assert refreshed.pending_balance == Decimal("0.00")
        assert db.session.query(Alert).filter_by(type="INVOICE_DELETED").count() == 1

        # Repeating the delete is a no-op
        assert sales_service.delete_sale(sale.id, admin) is False
        assert _stock(product.id) == Decimal("100.000")

    def test_staff_cannot_delete(self, product, customer, staff):
        sale = sales_service.create_sale(sale_request(product.id, customer_id=customer.id), staff)
        with pytest.raises(AuthorizationError):
            sales_service.delete_sale(sale.id, staff)

    def test_deleted_invoice_number_can_be_reused(self, product, customer, staff, admin):
        sale = sales_service.create_sale(sale_request(product.id, customer_id=customer.id, invoice_no="3000"), staff)
        sales_service.delete_sale(sale.id, admin)
        again = sales_service.create_sale(sale_request(product.id, customer_id=customer.id, invoice_no="3000"), staff)
        assert again.invoice_no == "3000"
        assert [s.id for s in sales_service.list_deleted_sales()] == [sale.id]

    def test_list_sales_pagination(self, product, customer, staff):
        for _ in range(3):
            sales_service.create_sale(sale_request(product.id, qty="1", customer_id=customer.id), staff)
        sales, total = sales_service.list_sales(page=1, page_size=2)
        assert total == 3
        assert len(sales) == 2
