# Overview: Request decorators for API routes (authentication and admin gate).

from functools import wraps

from flask import g, jsonify, request

from .permissions import ROLE_ADMIN
from .services import session_service
from .services.auth_service import actor_for


def _is_authenticated() -> bool:
    return hasattr(g, "current_user") and hasattr(g, "actor")


def require_auth(f):
    """
    Require a valid bearer token.

    Sets on Flask g:
    - g.current_user: the authenticated User
    - g.actor: the Actor passed into service calls

    Returns 401 for a missing, invalid or expired token, or a deactivated user.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]
        user = session_service.validate_session(token)
        if not user:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.current_user = user
        g.actor = actor_for(user)
        g.session_token = token
        return f(*args, **kwargs)

    return decorated_function


def require_admin(f):
    """Require the ADMIN role. Must be stacked under @require_auth."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _is_authenticated():
            return jsonify({"error": "Authentication required"}), 401
        if not g.actor.is_admin:
            return jsonify({
                "error": "Permission denied",
                "required_role": ROLE_ADMIN,
            }), 403
        return f(*args, **kwargs)

    return decorated_function
