# backend/posledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/posledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///posledger.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Billing
    VAT_PERCENT = int(os.environ.get("VAT_PERCENT", "5"))
    INVOICE_NUMBER_START = int(os.environ.get("INVOICE_NUMBER_START", "2000"))

    # Invoices older than this are locked for non-admin edits
    EDIT_LOCK_HOURS = int(os.environ.get("EDIT_LOCK_HOURS", "48"))

    # Sanity caps on user input
    MAX_PAYMENT_AMOUNT = os.environ.get("MAX_PAYMENT_AMOUNT", "10000000")
    MAX_ITEM_QTY = os.environ.get("MAX_ITEM_QTY", "100000")

    SESSION_TTL_HOURS = int(os.environ.get("SESSION_TTL_HOURS", "24"))

    CORS_ALLOWED_ORIGINS = {
        origin.strip()
        for origin in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ).split(",")
        if origin.strip()
    }
