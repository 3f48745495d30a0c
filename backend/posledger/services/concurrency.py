# Overview: Transaction helpers: row locks, retry on lock contention, and storage-error translation.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import (
    ConcurrencyConflict,
    DuplicateExternalReference,
    DuplicateInvoiceNumber,
    IdempotencyKeyCollision,
    PosError,
)
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    On SQLite, writers are serialized by begin_write() instead.

    populate_existing() overwrites objects already in the identity map with
    the locked row, so a value read before the lock was granted is never
    carried into the write. Autoflush runs first, so pending changes in
    this session are written before they are reloaded.
    """
    return query.populate_existing().with_for_update()


def begin_write() -> None:
    """
    Take the database write lock up front on SQLite.

    WHY: SQLite upgrades a read transaction to a write transaction lazily,
    which lets two writers read the same stock level before either writes.
    BEGIN IMMEDIATE makes the second writer wait instead.
    """
    if db.engine.dialect.name != "sqlite":
        return
    raw = db.session.connection().connection.driver_connection
    # Already writing in this transaction (nested call or pending flush)
    if raw.in_transaction:
        return
    db.session.execute(text("BEGIN IMMEDIATE"))


def translate_integrity_error(exc: IntegrityError) -> PosError | None:
    """Map a unique-constraint violation to its domain error (None if unrecognised)."""
    message = str(exc.orig) if exc.orig is not None else str(exc)
    if "invoice_no" in message:
        return DuplicateInvoiceNumber("Invoice number already exists", {"constraint": "invoice_no"})
    if "external_reference" in message:
        return DuplicateExternalReference(
            "A sale with this external reference already exists",
            {"constraint": "external_reference"},
        )
    if "invoice_versions" in message:
        return ConcurrencyConflict(
            "Invoice was edited concurrently (version already written)",
            {"constraint": "invoice_versions.version_number"},
        )
    if "idempotency" in message:
        return IdempotencyKeyCollision("")
    return None


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB unit of work, rolling back on any failure.

    Retries on OperationalError (locks, busy database) with exponential
    backoff. A StaleDataError means someone else committed first; that is
    surfaced as ConcurrencyConflict rather than retried, so the caller can
    re-read and decide. Unique-constraint failures become the matching
    domain error.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except OperationalError as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            current_app.logger.warning("Database busy, retrying (attempt %s): %s", attempt + 1, exc)
            time.sleep(backoff_base * (2 ** attempt))
        except StaleDataError as exc:
            db.session.rollback()
            raise ConcurrencyConflict(
                "Record was modified by another user. Reload and try again.",
                {"reason": str(exc)},
            ) from exc
        except IntegrityError as exc:
            db.session.rollback()
            translated = translate_integrity_error(exc)
            if translated is None:
                raise
            raise translated from exc
        except Exception:
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc
