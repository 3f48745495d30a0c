# Overview: Roles and the Actor passed explicitly into every service operation.

"""
Role model.

WHY: Services never look at Flask's request globals. Routes resolve the
authenticated user into an Actor and pass it down, so the same code runs
from HTTP, the CLI and tests.

Two roles only:
- ADMIN: may override stock, delete invoices, unlock and edit locked
  invoices, change payment status, adjust stock.
- STAFF: day-to-day billing; edits require a reason.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import AuthorizationError


ROLE_ADMIN = "ADMIN"
ROLE_STAFF = "STAFF"

VALID_ROLES = [ROLE_ADMIN, ROLE_STAFF]


@dataclass(frozen=True)
class Actor:
    user_id: int | None
    role: str = ROLE_STAFF
    username: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def display_name(self) -> str:
        return self.username or (f"user {self.user_id}" if self.user_id else "system")


# Used by CLI jobs (lock sweep, reconciliation)
SYSTEM_ACTOR = Actor(user_id=None, role=ROLE_ADMIN, username="system")


def require_admin(actor: Actor, action: str) -> None:
    if actor is None or not actor.is_admin:
        raise AuthorizationError(
            f"Only admins can {action}",
            {"required_role": ROLE_ADMIN, "action": action},
        )
