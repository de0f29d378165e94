# Overview: Flask API routes for the account hierarchy.

from flask import Blueprint, request, jsonify, current_app, g

from ..extensions import db
from ..errors import KeyflowError
from ..decorators import require_auth, require_role
from ..models.accounts import ROLE_RETAILER
from ..services import account_service


accounts_bp = Blueprint("accounts", __name__, url_prefix="/api/accounts")


def _internal_error(message: str):
    current_app.logger.exception(message)
    db.session.rollback()
    return jsonify({"error": "Internal server error", "code": "internal"}), 500


@accounts_bp.post("")
@require_auth
def create_account_route():
    """
    Create an account one level below the caller.

    Request body:
    {
        "role": str,
        "name": str,
        "email": str,
        "phone": str (optional),
        "address": str (optional),
        "password": str (optional, generated when omitted)
    }

    Returns:
        201: account (+ generated_password when one was generated)
        400 / 403 / 409
    """
    data = request.get_json(silent=True) or {}
    try:
        account, generated = account_service.create_account(
            g.current_account.id,
            data.get("role"),
            {field: data.get(field) for field in account_service.PROFILE_FIELDS},
            password=data.get("password"),
        )
        body = {"account": account.to_dict()}
        if generated:
            body["generated_password"] = generated
        return jsonify(body), 201
    except KeyflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        return _internal_error("Failed to create account")


@accounts_bp.post("/parents")
@require_auth
@require_role(ROLE_RETAILER)
def create_parent_route():
    """
    Create a parent under the calling retailer and hand it one key.

    Request body: name, email, phone?, address?, password?, key? (token)
    """
    data = request.get_json(silent=True) or {}
    try:
        parent, generated, key = account_service.create_parent(
            g.current_account.id,
            {field: data.get(field) for field in account_service.PROFILE_FIELDS},
            key_token=data.get("key"),
            password=data.get("password"),
        )
        body = {"account": parent.to_dict(), "key": key.token}
        if generated:
            body["generated_password"] = generated
        return jsonify(body), 201
    except KeyflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        return _internal_error("Failed to create parent")


@accounts_bp.get("/me")
@require_auth
def me_route():
    return jsonify({"account": g.current_account.to_dict()}), 200


@accounts_bp.get("/subordinates")
@require_auth
def subordinates_route():
    try:
        accounts = account_service.list_subordinates(g.current_account.id, request.args.get("role"))
        return jsonify({"accounts": [a.to_dict() for a in accounts]}), 200
    except KeyflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        return _internal_error("Failed to list subordinates")


@accounts_bp.delete("/<int:account_id>")
@require_auth
def remove_account_route(account_id: int):
    """
    Remove an account; its keys return to their generating admins.

    Returns:
        200: removal summary
        403: caller is neither the creator nor an admin, or target is an admin
        404: unknown account
    """
    try:
        summary = account_service.remove_account(g.current_account.id, account_id)
        return jsonify(summary), 200
    except KeyflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        return _internal_error("Failed to remove account")


@accounts_bp.patch("/<int:account_id>/status")
@require_auth
def set_status_route(account_id: int):
    """
    Activate, deactivate or block an account.

    Request body: {"status": "active" | "inactive" | "blocked"}
    """
    data = request.get_json(silent=True) or {}
    try:
        account = account_service.set_status(g.current_account.id, account_id, data.get("status"))
        return jsonify({"success": True, "account": account.to_dict()}), 200
    except KeyflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        return _internal_error("Failed to change account status")
