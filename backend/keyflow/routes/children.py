# Overview: Flask API routes for child activation.

from flask import Blueprint, request, jsonify, current_app, g

from ..extensions import db
from ..errors import KeyflowError
from ..decorators import require_auth, require_role
from ..models.accounts import ROLE_PARENT
from ..services import activation_service


children_bp = Blueprint("children", __name__, url_prefix="/api/children")


@children_bp.post("")
@require_auth
@require_role(ROLE_PARENT)
def activate_child_route():
    """
    Activate a child with one of the caller's keys.

    Request body:
    {
        "name": str,
        "age": int,
        "device_imei": str (optional)
    }

    Returns:
        201: {child_id, key, valid_until, child}
        409: no available key, or device already registered
    """
    data = request.get_json(silent=True) or {}
    try:
        result = activation_service.activate(g.current_account.id, data)
        return jsonify(result.to_dict()), 201
    except KeyflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to activate child")
        db.session.rollback()
        return jsonify({"error": "Internal server error", "code": "internal"}), 500


@children_bp.get("")
@require_auth
@require_role(ROLE_PARENT)
def list_children_route():
    children = g.current_account.children
    return jsonify({"children": [c.to_dict() for c in children]}), 200
