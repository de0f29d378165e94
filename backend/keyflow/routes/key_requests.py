# Overview: Flask API routes for parent key requests and retailer approvals.

from flask import Blueprint, request, jsonify, current_app, g

from ..extensions import db
from ..errors import KeyflowError
from ..decorators import require_auth, require_role
from ..models.accounts import ROLE_PARENT, ROLE_RETAILER
from ..services import request_service


key_requests_bp = Blueprint("key_requests", __name__, url_prefix="/api/key-requests")


def _internal_error(message: str):
    current_app.logger.exception(message)
    db.session.rollback()
    return jsonify({"error": "Internal server error", "code": "internal"}), 500


@key_requests_bp.post("")
@require_auth
@require_role(ROLE_PARENT)
def create_request_route():
    """
    Request one key.

    Request body:
    {
        "retailer": int (optional, defaults to the creating retailer),
        "message": str (optional)
    }
    """
    data = request.get_json(silent=True) or {}
    retailer_id = data.get("retailer")
    if retailer_id is not None and (isinstance(retailer_id, bool) or not isinstance(retailer_id, int)):
        return jsonify({"error": "retailer must be an account id", "code": "invalid_argument"}), 400

    try:
        req = request_service.create_request(g.current_account.id, data.get("message"), retailer_id=retailer_id)
        return jsonify({"id": req.id, "request": req.to_dict()}), 201
    except KeyflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        return _internal_error("Failed to create key request")


@key_requests_bp.get("")
@require_auth
@require_role(ROLE_PARENT, ROLE_RETAILER)
def list_requests_route():
    status = request.args.get("status")
    account = g.current_account
    if account.role == ROLE_RETAILER:
        items = request_service.list_requests_for_retailer(account.id, status=status)
    else:
        items = request_service.list_requests_for_parent(account.id, status=status)
    return jsonify({"requests": [r.to_dict() for r in items]}), 200


@key_requests_bp.patch("/<int:request_id>/approve")
@require_auth
@require_role(ROLE_RETAILER)
def approve_request_route(request_id: int):
    """
    Approve a pending request, optionally naming the key to hand over.

    Returns:
        200: approved request
        403: addressed to another retailer
        404: unknown request / key
        409: already resolved (conflict), key not claimable (invalid_state)
             or no keys left (insufficient_inventory)
    """
    data = request.get_json(silent=True) or {}
    try:
        req = request_service.approve_request(g.current_account.id, request_id, key_token=data.get("key"))
        return jsonify({"success": True, "request": req.to_dict()}), 200
    except KeyflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        return _internal_error("Failed to approve key request")


@key_requests_bp.patch("/<int:request_id>/deny")
@require_auth
@require_role(ROLE_RETAILER)
def deny_request_route(request_id: int):
    data = request.get_json(silent=True) or {}
    try:
        req = request_service.deny_request(g.current_account.id, request_id, data.get("message"))
        return jsonify({"success": True, "request": req.to_dict()}), 200
    except KeyflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        return _internal_error("Failed to deny key request")
