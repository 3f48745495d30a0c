# Overview: User accounts and password verification (bcrypt).

"""
Authentication Service

WHY: Every invoice edit and payment must be attributable to a person.
Passwords are hashed with bcrypt; session tokens live in session_service.

SECURITY NOTES:
- bcrypt cost factor 12
- Minimum 8 characters, at least one letter and one digit
"""

import re

import bcrypt

from ..errors import ValidationError
from ..extensions import db
from ..models import User
from ..permissions import Actor, ROLE_STAFF, VALID_ROLES
from ..time_utils import utcnow


class PasswordValidationError(ValidationError):
    """Raised when password doesn't meet strength requirements."""


def validate_password_strength(password: str) -> None:
    if len(password or "") < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")
    if not re.search(r"[A-Za-z]", password):
        raise PasswordValidationError("Password must contain at least one letter")
    if not re.search(r"\d", password):
        raise PasswordValidationError("Password must contain at least one digit")


def hash_password(password: str) -> str:
    """Hash password using bcrypt with cost factor 12 (strength-checked first)."""
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash in the database
        return False


def create_user(username: str, password: str, role: str = ROLE_STAFF) -> User:
    username = (username or "").strip()
    if not username:
        raise ValidationError("username is required")
    role = (role or ROLE_STAFF).upper()
    if role not in VALID_ROLES:
        raise ValidationError(f"Invalid role: {role}. Must be one of {VALID_ROLES}")
    if db.session.query(User.id).filter_by(username=username).first():
        raise ValidationError(f"User {username} already exists", {"username": username})

    user = User(username=username, password_hash=hash_password(password), role=role, is_active=True)
    db.session.add(user)
    db.session.commit()
    return user


def authenticate(username: str, password: str) -> User | None:
    """Return the user for valid credentials, else None (no hint which part was wrong)."""
    user = db.session.query(User).filter_by(username=(username or "").strip()).first()
    if not user or not user.is_active:
        return None
    if not verify_password(password or "", user.password_hash):
        return None
    user.last_login_at = utcnow()
    db.session.commit()
    return user


def actor_for(user: User) -> Actor:
    return Actor(user_id=user.id, role=user.role, username=user.username)
