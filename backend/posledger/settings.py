# Overview: Typed accessors for billing settings held on the Flask config.

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from flask import current_app


def vat_rate() -> Decimal:
    """VAT as a fraction (5 -> 0.05)."""
    return Decimal(str(current_app.config.get("VAT_PERCENT", 5))) / Decimal("100")


def edit_lock_window() -> timedelta:
    return timedelta(hours=int(current_app.config.get("EDIT_LOCK_HOURS", 48)))


def invoice_number_start() -> int:
    return int(current_app.config.get("INVOICE_NUMBER_START", 2000))


def max_payment_amount() -> Decimal:
    return Decimal(str(current_app.config.get("MAX_PAYMENT_AMOUNT", "10000000")))


def max_item_qty() -> Decimal:
    return Decimal(str(current_app.config.get("MAX_ITEM_QTY", "100000")))


def session_ttl() -> timedelta:
    return timedelta(hours=int(current_app.config.get("SESSION_TTL_HOURS", 24)))
