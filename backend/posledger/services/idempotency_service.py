# Overview: Idempotency-Key handling for payment creation (check, record, replay).

"""
Idempotency Guard

WHY: Payment requests are retried by flaky clients and impatient users.
The same Idempotency-Key must produce exactly one Payment and the same
response every time.

PROTOCOL (inside the payment transaction):
1. check(key) before any mutation; a stored response is returned as-is.
2. Create the payment.
3. record(key, ...) inserts the write-once row in a SAVEPOINT. If another
   request stored the key first, the insert violates the primary key and
   IdempotencyKeyCollision is raised; the caller rolls back its payment and
   replays the winner's response via fetch_response(key).

Step 3 in the same transaction as step 2 is what makes the guarantee hold:
either both the payment and the key row commit, or neither does.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import IdempotencyKeyCollision, ValidationError
from ..extensions import db
from ..models import PaymentIdempotency
from ..time_utils import utcnow


MAX_KEY_LENGTH = 128


@dataclass(frozen=True)
class IdempotencyCheck:
    existing: bool
    response: dict | None = None


def normalize_key(raw: str | None) -> str | None:
    """Trim the header value; blank means 'no idempotency requested'."""
    if raw is None:
        return None
    key = raw.strip()
    if not key:
        return None
    if len(key) > MAX_KEY_LENGTH:
        raise ValidationError(
            f"Idempotency-Key must be at most {MAX_KEY_LENGTH} characters",
            {"length": len(key)},
        )
    return key


def fetch_response(key: str) -> dict | None:
    row = db.session.get(PaymentIdempotency, key)
    return row.response if row else None


def check(key: str | None) -> IdempotencyCheck:
    if key is None:
        return IdempotencyCheck(existing=False)
    response = fetch_response(key)
    if response is None:
        return IdempotencyCheck(existing=False)
    current_app.logger.info("Idempotent replay for key %s", key)
    return IdempotencyCheck(existing=True, response=response)


def record(key: str, payment_id: int | None, actor_id: int | None, response: dict) -> dict:
    """
    Store the response for key inside the caller's transaction.

    Returns the stored form of the response so the first caller sends
    exactly what a replay will send.
    Raises IdempotencyKeyCollision if the key already exists.
    """
    snapshot = json.dumps(response, sort_keys=True)
    row = PaymentIdempotency(
        idempotency_key=key,
        payment_id=payment_id,
        created_by=actor_id,
        created_at=utcnow(),
        response_snapshot=snapshot,
    )
    try:
        with db.session.begin_nested():
            db.session.add(row)
    except IntegrityError as exc:
        raise IdempotencyKeyCollision(key) from exc
    return json.loads(snapshot)


def forget_payment(payment_id: int) -> int:
    """Drop keys pointing at a deleted payment so a client may legitimately retry."""
    return (
        db.session.query(PaymentIdempotency)
        .filter(PaymentIdempotency.payment_id == payment_id)
        .delete(synchronize_session=False)
    )
