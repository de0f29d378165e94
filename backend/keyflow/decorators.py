# Overview: Request decorators for API routes; session authentication and role checks.

from functools import wraps
from flask import request, jsonify, g

from .services import session_service


def _bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


def require_auth(f):
    """
    Require a valid session token.

    Sets the following Flask g attributes:
    - g.current_account: The authenticated Account object
    - g.session_token: The plaintext bearer token (for logout)

    Returns 401 if the header is missing, the token is invalid, expired or
    revoked, or the account is no longer active.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = _bearer_token()
        if not token:
            return jsonify({"error": "Authentication required", "code": "unauthenticated"}), 401

        context = session_service.validate_session(token)
        if not context:
            return jsonify({"error": "Invalid or expired token", "code": "unauthenticated"}), 401

        g.current_account = context.account
        g.session_token = token
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """
    Require the authenticated account to hold one of `roles`.

    Must be stacked under @require_auth.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            account = getattr(g, "current_account", None)
            if account is None:
                return jsonify({"error": "Authentication required", "code": "unauthenticated"}), 401
            if account.role not in roles:
                return jsonify({
                    "error": "Access denied",
                    "code": "access_denied",
                    "required_roles": list(roles),
                }), 403
            return f(*args, **kwargs)

        return decorated_function
    return decorator
