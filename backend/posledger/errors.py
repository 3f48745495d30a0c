# Overview: Domain exception taxonomy; every error carries an HTTP status and a details dict.

"""
Domain errors raised by the service layer.

WHY: Routes must be able to tell a bad request from a stale write from a
stock shortfall without parsing messages. Each error names its HTTP status
so a single handler can render any of them.

Storage exceptions (IntegrityError, StaleDataError) never escape the
service layer; services.concurrency translates them into these types.
"""

from __future__ import annotations

from typing import Any


class PosError(Exception):
    """Base for all domain errors."""

    status_code = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "details": self.details}


class ValidationError(PosError, ValueError):
    """400-level input problem."""

    status_code = 400


class AuthorizationError(PosError):
    """Actor lacks the role required for the operation."""

    status_code = 403


class NotFoundError(PosError):
    status_code = 404


class VersionNotFound(NotFoundError):
    """Requested invoice version does not exist for the sale."""


class ConcurrencyConflict(PosError):
    """
    Row changed since the caller read it (lost update prevented).

    details usually carry the current row_version and who changed it last.
    """

    status_code = 409


class StockConstraintViolation(PosError):
    status_code = 409


class InsufficientStock(StockConstraintViolation):
    """Stock change would drive on-hand below zero."""

    def __init__(self, product_id: int, available, requested, product_name: str | None = None):
        name = product_name or f"product {product_id}"
        super().__init__(
            f"Insufficient stock for {name}: available {available}, requested {requested}",
            {
                "product_id": product_id,
                "available": str(available),
                "requested": str(requested),
            },
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class InvoiceLocked(PosError):
    """Invoice is past its edit window (or explicitly locked) and actor is not an admin."""

    status_code = 423


class DuplicateInvoiceNumber(PosError):
    status_code = 409


class DuplicateExternalReference(PosError):
    status_code = 409


class IdempotencyKeyCollision(PosError):
    """Another request stored the same idempotency key first."""

    status_code = 409

    def __init__(self, key: str):
        super().__init__("Idempotency key already used", {"idempotency_key": key})
        self.key = key
