"""
Payment transaction manager tests.

Verifies:
- Invoice payment status derivation (PENDING -> PARTIAL -> PAID)
- Overpayment and customer mismatch are rejected without side effects
- Cheques are PENDING until cleared; returned cheques reopen the invoice
- Multi-invoice allocation (explicit and oldest first)
- Admin-only status changes, edits and deletes
"""

from decimal import Decimal

import pytest

from posledger.errors import AuthorizationError, ConcurrencyConflict, NotFoundError, ValidationError
from posledger.extensions import db
from posledger.models import Alert, Customer, Payment, Sale
from posledger.services import payment_service, sales_service
from posledger.services.requests import AllocationLine, AllocationRequest, PaymentRequest

from conftest import sale_request


def _invoice(product, customer, actor, qty="3"):
    return sales_service.create_sale(sale_request(product.id, qty=qty, customer_id=customer.id), actor)


def _pay(actor, amount, mode="CASH", sale_id=None, customer_id=None, key=None):
    return payment_service.create_payment(
        PaymentRequest(amount=Decimal(amount), mode=mode, sale_id=sale_id, customer_id=customer_id),
        actor,
        idempotency_key=key,
    )


@pytest.fixture
def invoice(product, customer, staff):
    """Credit invoice for 31.50."""
    return _invoice(product, customer, staff)


class TestCreatePayment:
    def test_partial_then_full_payment(self, invoice, customer, staff):
        response = _pay(staff, "10.00", sale_id=invoice.id)
        assert response.idempotent_replay is False
        assert response.body["sale"]["payment_status"] == "PARTIAL"
        assert response.body["sale"]["outstanding"] == "21.50"

        response = _pay(staff, "21.50", sale_id=invoice.id)
        sale = db.session.get(Sale, invoice.id)
        assert sale.paid_amount == Decimal("31.50")
        assert sale.payment_status == "PAID"
        assert sale.last_payment_date is not None

        refreshed = db.session.get(Customer, customer.id)
        assert refreshed.total_payments == Decimal("31.50")
        assert refreshed.pending_balance == Decimal("0.00")
        assert response.body["customer"]["pending_balance"] == "0.00"

    def test_payment_inherits_invoice_customer(self, invoice, customer, staff):
        response = _pay(staff, "5.00", sale_id=invoice.id)
        assert response.body["payment"]["customer_id"] == customer.id

    def test_overpayment_rejected(self, invoice, staff):
        with pytest.raises(ValidationError) as exc_info:
            _pay(staff, "31.51", sale_id=invoice.id)
        assert exc_info.value.details["outstanding"] == "31.50"
        assert db.session.query(Payment).count() == 0

    def test_fully_paid_invoice_rejects_more(self, invoice, staff):
        _pay(staff, "31.50", sale_id=invoice.id)
        with pytest.raises(ValidationError):
            _pay(staff, "1.00", sale_id=invoice.id)

    def test_customer_mismatch_rejected(self, invoice, staff):
        other = Customer(name="Somebody Else")
        db.session.add(other)
        db.session.commit()

        with pytest.raises(ValidationError):
            _pay(staff, "5.00", sale_id=invoice.id, customer_id=other.id)
        assert db.session.query(Payment).count() == 0

    @pytest.mark.parametrize("amount,mode", [("0", "CASH"), ("-5", "CASH"), ("5", "BITCOIN"), ("10000000.01", "CASH")])
    def test_invalid_amount_or_mode(self, invoice, staff, amount, mode):
        with pytest.raises(ValidationError):
            _pay(staff, amount, mode=mode, sale_id=invoice.id)

    def test_sale_or_customer_required(self, db_session, staff):
        with pytest.raises(ValidationError):
            _pay(staff, "5.00")

    def test_unknown_sale(self, db_session, staff):
        with pytest.raises(NotFoundError):
            _pay(staff, "5.00", sale_id=999)

    def test_deleted_sale_rejects_payment(self, invoice, staff, admin):
        sales_service.delete_sale(invoice.id, admin)
        with pytest.raises(ValidationError):
            _pay(staff, "5.00", sale_id=invoice.id)

    def test_on_account_payment_reduces_balance(self, invoice, customer, staff):
        response = _pay(staff, "20.00", customer_id=customer.id)
        assert response.body["payment"]["sale_id"] is None
        assert response.body["sale"] is None
        assert db.session.get(Customer, customer.id).pending_balance == Decimal("11.50")
        # Invoice itself is untouched
        assert db.session.get(Sale, invoice.id).payment_status == "PENDING"


class TestChequeLifecycle:
    def test_cheque_pending_until_cleared(self, invoice, customer, staff, admin):
        response = _pay(staff, "31.50", mode="CHEQUE", sale_id=invoice.id)
        payment_id = response.body["payment"]["id"]
        assert response.body["payment"]["status"] == "PENDING"
        assert db.session.get(Sale, invoice.id).payment_status == "PENDING"

        # Pending cheque reserves the balance
        with pytest.raises(ValidationError):
            _pay(staff, "1.00", sale_id=invoice.id)

        assert payment_service.update_payment_status(payment_id, "CLEARED", admin) is True
        assert db.session.get(Sale, invoice.id).payment_status == "PAID"
        assert db.session.get(Customer, customer.id).pending_balance == Decimal("0.00")

    def test_returned_cheque_reopens_invoice_and_alerts(self, invoice, customer, staff, admin):
        payment_id = _pay(staff, "31.50", mode="CHEQUE", sale_id=invoice.id).body["payment"]["id"]
        payment_service.update_payment_status(payment_id, "CLEARED", admin)
        payment_service.update_payment_status(payment_id, "RETURNED", admin)

        sale = db.session.get(Sale, invoice.id)
        assert sale.paid_amount == Decimal("0.00")
        assert sale.payment_status == "PENDING"
        assert db.session.get(Customer, customer.id).pending_balance == Decimal("31.50")
        assert db.session.query(Alert).filter_by(type="PAYMENT_RETURNED").count() == 1

    def test_terminal_statuses_cannot_change(self, invoice, staff, admin):
        payment_id = _pay(staff, "10.00", sale_id=invoice.id).body["payment"]["id"]
        payment_service.update_payment_status(payment_id, "VOID", admin)
        with pytest.raises(ValidationError):
            payment_service.update_payment_status(payment_id, "CLEARED", admin)

    def test_status_change_requires_admin(self, invoice, staff):
        payment_id = _pay(staff, "10.00", mode="CHEQUE", sale_id=invoice.id).body["payment"]["id"]
        with pytest.raises(AuthorizationError):
            payment_service.update_payment_status(payment_id, "CLEARED", staff)

    def test_missing_payment_returns_false(self, db_session, admin):
        assert payment_service.update_payment_status(12345, "VOID", admin) is False


class TestAllocation:
    def test_oldest_first(self, product, customer, staff):
        first = _invoice(product, customer, staff)            # 31.50
        second = _invoice(product, customer, staff, qty="2")  # 21.00

        response = payment_service.allocate_payment(
            AllocationRequest(customer_id=customer.id, amount=Decimal("40.00"), mode="ONLINE"),
            staff,
        )

        assert [a["sale_id"] for a in response.body["allocations"]] == [first.id, second.id]
        assert [a["amount"] for a in response.body["allocations"]] == ["31.50", "8.50"]
        assert db.session.get(Sale, first.id).payment_status == "PAID"
        assert db.session.get(Sale, second.id).payment_status == "PARTIAL"
        assert db.session.get(Customer, customer.id).pending_balance == Decimal("12.50")

    def test_explicit_allocations(self, product, customer, staff):
        first = _invoice(product, customer, staff)
        second = _invoice(product, customer, staff, qty="2")

        response = payment_service.allocate_payment(
            AllocationRequest(
                customer_id=customer.id,
                amount=Decimal("25.00"),
                mode="CASH",
                allocations=[AllocationLine(second.id, Decimal("21.00")), AllocationLine(first.id)],
            ),
            staff,
        )
        assert [(a["sale_id"], a["amount"]) for a in response.body["allocations"]] == [
            (second.id, "21.00"),
            (first.id, "4.00"),
        ]

    def test_excess_rejected_unless_allowed(self, invoice, customer, staff):
        request = AllocationRequest(customer_id=customer.id, amount=Decimal("50.00"), mode="CASH")
        with pytest.raises(ValidationError):
            payment_service.allocate_payment(request, staff)
        assert db.session.query(Payment).count() == 0

        request.allow_unallocated = True
        response = payment_service.allocate_payment(request, staff)
        assert response.body["unallocated"] == "18.50"
        assert db.session.query(Payment).filter(Payment.sale_id.is_(None)).count() == 1
        assert db.session.get(Customer, customer.id).pending_balance == Decimal("-18.50")

    def test_invoice_of_other_customer_rejected(self, product, customer, staff):
        other = Customer(name="Other Shop")
        db.session.add(other)
        db.session.commit()
        foreign = _invoice(product, other, staff)

        with pytest.raises(ValidationError):
            payment_service.allocate_payment(
                AllocationRequest(
                    customer_id=customer.id,
                    amount=Decimal("10.00"),
                    mode="CASH",
                    allocations=[AllocationLine(foreign.id, Decimal("10.00"))],
                ),
                staff,
            )


class TestPaymentMaintenance:
    def test_edit_amount_recomputes_balances(self, invoice, customer, staff, admin):
        payment_id = _pay(staff, "10.00", sale_id=invoice.id).body["payment"]["id"]
        payment_service.update_payment(payment_id, admin, amount=Decimal("31.50"))

        assert db.session.get(Sale, invoice.id).payment_status == "PAID"
        assert db.session.get(Customer, customer.id).pending_balance == Decimal("0.00")

    def test_edit_beyond_outstanding_rejected(self, invoice, staff, admin):
        payment_id = _pay(staff, "10.00", sale_id=invoice.id).body["payment"]["id"]
        with pytest.raises(ValidationError):
            payment_service.update_payment(payment_id, admin, amount=Decimal("40.00"))

    def test_edit_with_stale_row_version(self, invoice, staff, admin):
        payment = _pay(staff, "10.00", sale_id=invoice.id).body["payment"]
        payment_service.update_payment(payment["id"], admin, reference="first edit")
        with pytest.raises(ConcurrencyConflict):
            payment_service.update_payment(
                payment["id"], admin, reference="second edit", expected_row_version=payment["row_version"],
            )

    def test_changing_mode_to_cheque_makes_it_pending(self, invoice, staff, admin):
        payment_id = _pay(staff, "31.50", sale_id=invoice.id).body["payment"]["id"]
        updated = payment_service.update_payment(payment_id, admin, mode="cheque")
        assert updated.status == "PENDING"
        assert db.session.get(Sale, invoice.id).payment_status == "PENDING"

    def test_delete_payment(self, invoice, customer, staff, admin):
        payment_id = _pay(staff, "31.50", sale_id=invoice.id, key="till-1-0001").body["payment"]["id"]

        with pytest.raises(AuthorizationError):
            payment_service.delete_payment(payment_id, staff)
        assert payment_service.delete_payment(payment_id, admin) is True
        assert payment_service.delete_payment(payment_id, admin) is False

        assert db.session.get(Sale, invoice.id).payment_status == "PENDING"
        assert db.session.get(Customer, customer.id).pending_balance == Decimal("31.50")

    def test_outstanding_and_invoice_amount(self, product, customer, staff):
        first = _invoice(product, customer, staff)
        second = _invoice(product, customer, staff, qty="1")
        _pay(staff, "31.50", sale_id=first.id)
        _pay(staff, "5.00", mode="CHEQUE", sale_id=second.id)

        assert [s.id for s in payment_service.get_outstanding_invoices(customer.id)] == [second.id]
        summary = payment_service.get_invoice_amount(second.id)
        assert summary["grand_total"] == "10.50"
        assert summary["pending_amount"] == "5.00"
        assert summary["outstanding"] == "10.50"
