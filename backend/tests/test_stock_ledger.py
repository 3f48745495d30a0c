"""
Stock ledger tests.

Verifies:
- Every stock change writes exactly one ledger row
- Cached stock always equals the ledger sum
- Shortfalls raise InsufficientStock and change nothing
"""

from decimal import Decimal

import pytest
from sqlalchemy import text

from posledger.errors import InsufficientStock, NotFoundError, ValidationError
from posledger.extensions import db
from posledger.models import InventoryTransaction, Product
from posledger.services import stock_ledger


def test_opening_stock_is_posted_to_ledger(product):
    rows = stock_ledger.list_transactions(product_id=product.id)
    assert len(rows) == 1
    assert rows[0].transaction_type == stock_ledger.TX_ADJUSTMENT
    assert stock_ledger.get_stock_level(product.id) == Decimal("100.000")
    assert stock_ledger.get_ledger_quantity(product.id) == Decimal("100.000")


def test_decrement_appends_row_and_updates_cache(product, admin):
    change = stock_ledger.apply_stock_change(
        product.id, Decimal("-3"), stock_ledger.TX_SALE, ref_id=42, actor_id=admin.user_id,
    )
    db.session.commit()

    assert change.previous_qty == Decimal("100.000")
    assert change.new_qty == Decimal("97.000")
    assert stock_ledger.get_stock_level(product.id) == Decimal("97.000")
    assert stock_ledger.get_ledger_quantity(product.id) == Decimal("97.000")

    tx = db.session.get(InventoryTransaction, change.transaction_id)
    assert tx.change_qty == Decimal("-3.000")
    assert tx.ref_id == 42
    assert tx.is_override is False


def test_locked_read_sees_stock_committed_after_earlier_read(product, db_session):
    """A Product cached in the session is refreshed by the locking read."""
    assert db_session.get(Product, product.id).stock_qty == Decimal("100.000")
    db_session.execute(
        text("UPDATE products SET stock_qty = 90, version_id = version_id + 1 WHERE id = :id"),
        {"id": product.id},
    )

    change = stock_ledger.apply_stock_change(product.id, Decimal("-5"), stock_ledger.TX_SALE)
    db_session.commit()

    assert change.previous_qty == Decimal("90.000")
    assert change.new_qty == Decimal("85.000")
    assert stock_ledger.get_stock_level(product.id) == Decimal("85.000")


def test_insufficient_stock_raises_and_leaves_stock_unchanged(product):
    with pytest.raises(InsufficientStock) as exc_info:
        stock_ledger.apply_stock_change(product.id, Decimal("-101"), stock_ledger.TX_SALE)
    db.session.rollback()

    assert exc_info.value.status_code == 409
    assert exc_info.value.details["available"] == "100.000"
    assert stock_ledger.get_stock_level(product.id) == Decimal("100.000")
    assert len(stock_ledger.list_transactions(product_id=product.id)) == 1


def test_allow_negative_flags_override_row(product):
    change = stock_ledger.apply_stock_change(
        product.id, Decimal("-105"), stock_ledger.TX_SALE, allow_negative=True,
    )
    db.session.commit()

    assert change.new_qty == Decimal("-5.000")
    assert db.session.get(InventoryTransaction, change.transaction_id).is_override is True


def test_zero_delta_writes_nothing(product):
    change = stock_ledger.apply_stock_change(product.id, 0, stock_ledger.TX_ADJUSTMENT)
    assert change.transaction_id is None
    assert len(stock_ledger.list_transactions(product_id=product.id)) == 1


def test_fractional_quantities(product):
    stock_ledger.apply_stock_change(product.id, Decimal("-0.25"), stock_ledger.TX_SALE)
    db.session.commit()
    assert stock_ledger.get_stock_level(product.id) == Decimal("99.750")


def test_unknown_product_and_type(db_session):
    with pytest.raises(NotFoundError):
        stock_ledger.apply_stock_change(9999, 1, stock_ledger.TX_PURCHASE)
    with pytest.raises(ValidationError):
        stock_ledger.apply_stock_change(1, 1, "TELEPORT")


def test_list_transactions_filters(product, second_product):
    stock_ledger.apply_stock_change(product.id, 5, stock_ledger.TX_PURCHASE, ref_id=7)
    stock_ledger.apply_stock_change(second_product.id, -1, stock_ledger.TX_SALE, ref_id=7)
    db.session.commit()

    assert len(stock_ledger.list_transactions(ref_id=7)) == 2
    sales = stock_ledger.list_transactions(transaction_type=stock_ledger.TX_SALE)
    assert [t.product_id for t in sales] == [second_product.id]
    assert db.session.get(Product, product.id).stock_qty == Decimal("105.000")
