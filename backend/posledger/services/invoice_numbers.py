# Overview: Allocates invoice numbers from the document_sequences table.

from __future__ import annotations

import re

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import DuplicateInvoiceNumber, ValidationError
from ..extensions import db
from ..models import DocumentSequence, Sale
from .. import settings


INVOICE_SEQUENCE = "INVOICE"

# Manual invoice numbers: digits only, at least four of them
MANUAL_INVOICE_PATTERN = re.compile(r"^\d{4,}$")


def format_invoice_number(number: int) -> str:
    return f"{number:04d}"


def _allocate(document_type: str, start: int) -> int:
    """
    Atomically take the next number for a sequence.

    Uses UPDATE ... SET next_number = next_number + 1 so concurrent callers
    never read the same value. The first caller creates the row inside a
    savepoint; if another transaction created it first, fall back to the
    UPDATE path.
    """
    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == document_type)
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if not result.rowcount:
        try:
            with db.session.begin_nested():
                db.session.add(DocumentSequence(document_type=document_type, next_number=start + 1))
            return start
        except IntegrityError:
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise

    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type)
        .scalar()
    )
    return current - 1


def _invoice_in_use(invoice_no: str, exclude_sale_id: int | None = None) -> bool:
    query = db.session.query(Sale.id).filter(Sale.invoice_no == invoice_no, Sale.is_deleted.is_(False))
    if exclude_sale_id is not None:
        query = query.filter(Sale.id != exclude_sale_id)
    return query.first() is not None


def next_invoice_number() -> str:
    """
    Allocate the next free invoice number (joins the caller's transaction).

    Numbers taken manually are skipped so the allocator never hands out a
    number that a live invoice already carries.
    """
    start = settings.invoice_number_start()
    while True:
        candidate = format_invoice_number(_allocate(INVOICE_SEQUENCE, start))
        if not _invoice_in_use(candidate):
            return candidate


def validate_manual_invoice_number(invoice_no: str, exclude_sale_id: int | None = None) -> str:
    """
    Check a user-supplied invoice number.

    Raises ValidationError for a malformed number and DuplicateInvoiceNumber
    if a live invoice already uses it.
    """
    value = (invoice_no or "").strip()
    if not MANUAL_INVOICE_PATTERN.match(value):
        raise ValidationError("Invoice number must be at least 4 digits", {"invoice_no": value})
    if int(value) < settings.invoice_number_start():
        raise ValidationError(
            f"Invoice number must be {settings.invoice_number_start()} or higher",
            {"invoice_no": value},
        )
    if _invoice_in_use(value, exclude_sale_id=exclude_sale_id):
        raise DuplicateInvoiceNumber(f"Invoice number {value} already exists", {"invoice_no": value})
    return value
