"""
Concurrency tests.

Uses a file-backed SQLite database so that worker threads get their own
connections and really contend for the write lock.
"""

import os
import shutil
import tempfile
import threading
import unittest
from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError

from posledger import create_app
from posledger.errors import (
    ConcurrencyConflict,
    DuplicateExternalReference,
    DuplicateInvoiceNumber,
    ValidationError,
)
from posledger.extensions import db
from posledger.models import Customer, Payment, Product, Sale
from posledger.permissions import ROLE_ADMIN
from posledger.services import auth_service, payment_service, products_service, sales_service, stock_ledger
from posledger.services.concurrency import run_with_retry, translate_integrity_error
from posledger.services.requests import PaymentRequest, SaleItemInput, SaleRequest


def _run_threads(count, target):
    errors = []

    def _wrapped(index):
        try:
            target(index)
        except Exception as exc:  # collected and asserted on by the test
            errors.append(exc)

    threads = [threading.Thread(target=_wrapped, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return errors


class ConcurrencyTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.tmpdir = tempfile.mkdtemp(prefix="posledger-")
        cls.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{os.path.join(cls.tmpdir, 'concurrency.sqlite3')}",
            "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        })
        cls.ctx = cls.app.app_context()
        cls.ctx.push()
        db.create_all()
        user = auth_service.create_user("owner", "Password123", ROLE_ADMIN)
        cls.actor = auth_service.actor_for(user)

    @classmethod
    def tearDownClass(cls):
        db.session.remove()
        db.drop_all()
        db.engine.dispose()
        cls.ctx.pop()
        shutil.rmtree(cls.tmpdir, ignore_errors=True)

    def setUp(self):
        for table in reversed(db.metadata.sorted_tables):
            if table.name != "users":
                db.session.execute(table.delete())
        db.session.commit()
        self.product = products_service.create_product(
            {"sku": "COLA-24", "name": "Cola 24x330ml", "sell_price": "10.00", "stock_qty": "100"},
            self.actor,
        )
        self.product_id = self.product.id
        customer = Customer(name="Corner Shop")
        db.session.add(customer)
        db.session.commit()
        self.customer_id = customer.id

    # ---------------------------------------------------------------------
    # run_with_retry
    # ---------------------------------------------------------------------

    def test_stale_write_becomes_conflict(self):
        def _op():
            product = db.session.get(Product, self.product_id)
            # Another writer commits between our read and our write
            db.session.execute(
                text("UPDATE products SET version_id = version_id + 1 WHERE id = :id"),
                {"id": self.product_id},
            )
            product.name = "Renamed"
            db.session.flush()

        with self.assertRaises(ConcurrencyConflict):
            run_with_retry(_op)

        db.session.expire_all()
        self.assertEqual(db.session.get(Product, self.product_id).name, "Cola 24x330ml")

    def test_busy_database_is_retried(self):
        calls = []

        def _op():
            calls.append(1)
            if len(calls) < 3:
                raise OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))
            return "done"

        self.assertEqual(run_with_retry(_op, attempts=3, backoff_base=0), "done")
        self.assertEqual(len(calls), 3)

    def test_busy_database_gives_up(self):
        def _op():
            raise OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))

        with self.assertRaises(OperationalError):
            run_with_retry(_op, attempts=2, backoff_base=0)

    def test_integrity_errors_are_translated(self):
        invoice = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: sales.invoice_no"))
        reference = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: sales.external_reference"))
        other = IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed: sales.customer_id"))

        self.assertIsInstance(translate_integrity_error(invoice), DuplicateInvoiceNumber)
        self.assertIsInstance(translate_integrity_error(reference), DuplicateExternalReference)
        self.assertIsNone(translate_integrity_error(other))

    # ---------------------------------------------------------------------
    # Threads
    # ---------------------------------------------------------------------

    def test_parallel_sales_get_unique_numbers_and_exact_stock(self):
        workers, per_worker = 4, 3
        invoice_numbers = []
        lock = threading.Lock()

        def _sell(_index):
            with self.app.app_context():
                for _ in range(per_worker):
                    sale = sales_service.create_sale(
                        SaleRequest(items=[SaleItemInput(self.product_id, Decimal("1"), Decimal("10.00"))]),
                        self.actor,
                    )
                    with lock:
                        invoice_numbers.append(sale.invoice_no)
                db.session.remove()

        errors = _run_threads(workers, _sell)

        self.assertEqual(errors, [])
        self.assertEqual(len(invoice_numbers), workers * per_worker)
        self.assertEqual(len(set(invoice_numbers)), workers * per_worker)

        db.session.expire_all()
        expected = Decimal("100") - workers * per_worker
        self.assertEqual(stock_ledger.get_stock_level(self.product_id), expected)
        self.assertEqual(stock_ledger.get_ledger_quantity(self.product_id), expected)

    def test_parallel_sales_never_oversell(self):
        # 100 on hand, 6 workers each want 20: exactly 5 can succeed
        errors = _run_threads(6, lambda _i: self._sell_in_context("20"))

        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].status_code, 409)
        db.session.expire_all()
        self.assertEqual(stock_ledger.get_stock_level(self.product_id), Decimal("0.000"))
        self.assertEqual(db.session.query(Sale).count(), 5)

    def test_parallel_payments_with_same_key_create_one_payment(self):
        sale = self._sell_in_context("3")
        sale_id = sale["id"]
        responses = []
        lock = threading.Lock()

        def _pay(_index):
            with self.app.app_context():
                response = payment_service.create_payment(
                    PaymentRequest(amount=Decimal("31.50"), mode="CASH", sale_id=sale_id),
                    self.actor,
                    idempotency_key="till-3-000042",
                )
                with lock:
                    responses.append(response)
                db.session.remove()

        errors = _run_threads(3, _pay)

        self.assertEqual(errors, [])
        self.assertEqual(db.session.query(Payment).count(), 1)
        self.assertEqual(sorted(r.idempotent_replay for r in responses), [False, True, True])
        self.assertEqual(len({r.body["payment"]["id"] for r in responses}), 1)

    def test_parallel_full_payments_without_key_cannot_overpay(self):
        sale_id = self._sell_in_context("3")["id"]

        def _pay(_index):
            with self.app.app_context():
                try:
                    payment_service.create_payment(
                        PaymentRequest(amount=Decimal("31.50"), mode="CASH", sale_id=sale_id),
                        self.actor,
                    )
                finally:
                    db.session.remove()

        errors = _run_threads(3, _pay)

        self.assertEqual(len(errors), 2)
        self.assertTrue(all(isinstance(e, ValidationError) for e in errors))
        db.session.expire_all()
        self.assertEqual(db.session.get(Sale, sale_id).payment_status, "PAID")

    def _sell_in_context(self, qty):
        """Credit sale in its own app context; returns a plain dict."""
        with self.app.app_context():
            try:
                sale = sales_service.create_sale(
                    SaleRequest(
                        items=[SaleItemInput(self.product_id, Decimal(qty), Decimal("10.00"))],
                        customer_id=self.customer_id,
                    ),
                    self.actor,
                )
                return {"id": sale.id, "invoice_no": sale.invoice_no}
            finally:
                db.session.remove()


if __name__ == "__main__":
    unittest.main()
