"""
Invoice version history tests.

Verifies:
- Gap-free version numbers, newest version equals the live invoice
- Restore replays a prior version as a new version
- (sale_id, version_number) uniqueness guards concurrent edits
"""

from decimal import Decimal

import pytest

from posledger.errors import AuthorizationError, ConcurrencyConflict, NotFoundError, VersionNotFound
from posledger.extensions import db
from posledger.models import Customer, Product
from posledger.services import sales_service, versioning_service
from posledger.services.concurrency import begin_write

from conftest import sale_request


@pytest.fixture
def edited_sale(product, customer, staff):
    """Version 1: 3 units (31.50). Version 2: 5 units (52.50)."""
    sale = sales_service.create_sale(sale_request(product.id, customer_id=customer.id), staff)
    sales_service.update_sale(
        sale.id, sale_request(product.id, qty="5", customer_id=customer.id), staff, edit_reason="two more",
    )
    return sale


def test_versions_are_numbered_without_gaps(edited_sale, product, customer, staff):
    sales_service.update_sale(
        edited_sale.id, sale_request(product.id, qty="6", customer_id=customer.id), staff, edit_reason="one more",
    )
    versions = versioning_service.list_versions(edited_sale.id)
    assert [v.version_number for v in versions] == [1, 2, 3]
    assert versions[-1].data["grand_total"] == "63.00"
    assert versions[0].diff_summary is None
    assert versions[0].edit_reason == "Created"


def test_latest_version_matches_live_sale(edited_sale):
    latest = versioning_service.list_versions(edited_sale.id)[-1]
    live = versioning_service.build_snapshot(sales_service.get_sale(edited_sale.id))
    assert latest.data == live


def test_get_missing_version(edited_sale):
    with pytest.raises(VersionNotFound) as exc_info:
        versioning_service.get_version(edited_sale.id, 9)
    assert exc_info.value.status_code == 404


def test_restore_creates_new_version(edited_sale, product, customer, admin):
    restored = versioning_service.restore(edited_sale.id, 1, admin)

    assert restored.version == 3
    assert restored.grand_total == Decimal("31.50")
    assert restored.edit_reason == "Restored from version 1"
    assert db.session.get(Product, product.id).stock_qty == Decimal("97.000")
    assert db.session.get(Customer, customer.id).pending_balance == Decimal("31.50")
    assert [v.version_number for v in versioning_service.list_versions(edited_sale.id)] == [1, 2, 3]


def test_staff_restore_gets_default_reason(edited_sale, staff):
    # Staff edits need a reason; restore supplies one
    restored = versioning_service.restore(edited_sale.id, 1, staff)
    assert restored.version == 3
    assert restored.edit_reason == "Restored from version 1"


def test_restore_missing_version(edited_sale, admin):
    with pytest.raises(VersionNotFound):
        versioning_service.restore(edited_sale.id, 7, admin)


def test_duplicate_version_number_is_a_conflict(edited_sale):
    begin_write()
    with pytest.raises(ConcurrencyConflict):
        versioning_service.snapshot(edited_sale.id, 2, None, "racing edit", {"items": []})
    db.session.rollback()


def test_diff_summary_format():
    old = {"grand_total": "31.50", "discount": "0.00", "items": [{"product_id": 1, "qty": "3"}], "notes": None}
    new = {"grand_total": "52.50", "discount": "0.00", "items": [{"product_id": 1, "qty": "5"}], "notes": None}
    summary = versioning_service.diff_summary(old, new, "alice", 2)
    assert summary == "Edited by alice - Version 2. Changes: GrandTotal: 31.50 → 52.50, Items modified"


def test_deleted_sale_cannot_be_restored(edited_sale, admin, staff):
    sales_service.delete_sale(edited_sale.id, admin)
    with pytest.raises(NotFoundError):
        versioning_service.restore(edited_sale.id, 1, staff)
    with pytest.raises(AuthorizationError):
        sales_service.delete_sale(edited_sale.id, staff)
