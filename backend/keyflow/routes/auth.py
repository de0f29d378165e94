# Overview: Flask API routes for auth operations; login and logout.

# backend/keyflow/routes/auth.py
"""
Authentication API routes

Accounts are never self-registered: they are created by the account one
level up (POST /api/accounts) or bootstrapped from the CLI.
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..services import auth_service
from ..services import session_service
from ..decorators import require_auth


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/login")
def login_route():
    """
    Authenticate an account and create a session token.

    Token must be included in Authorization header for protected routes.
    """
    try:
        data = request.get_json(silent=True) or {}
        email = data.get("email")
        password = data.get("password")

        if not all([email, password]):
            return jsonify({"error": "email and password required", "code": "invalid_argument"}), 400

        account = auth_service.authenticate(email, password)
        if not account:
            return jsonify({"error": "Invalid credentials", "code": "unauthenticated"}), 401

        session, token = session_service.create_session(
            account_id=account.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )

        return jsonify({
            "account": account.to_dict(),
            "token": token,
            "session": session.to_dict(),
            "message": "Login successful"
        }), 200

    except Exception:
        current_app.logger.exception("Failed to login account")
        return jsonify({"error": "Internal server error", "code": "internal"}), 500


@auth_bp.post("/logout")
@require_auth
def logout_route():
    try:
        session_service.revoke_session(g.session_token, reason="User logout")
        return jsonify({"message": "Logged out"}), 200
    except Exception:
        current_app.logger.exception("Failed to logout account")
        return jsonify({"error": "Internal server error", "code": "internal"}), 500
