# Overview: Flask API routes for key generation, transfer and lookups.

from flask import Blueprint, request, jsonify, current_app, g

from ..extensions import db
from ..errors import KeyflowError
from ..decorators import require_auth, require_role
from ..models.accounts import ROLE_ADMIN
from ..services import key_service
from ..services import transfer_service


keys_bp = Blueprint("keys", __name__, url_prefix="/api/keys")

MAX_POOL_PAGE = 1000


@keys_bp.post("/generate")
@require_auth
@require_role(ROLE_ADMIN)
def generate_keys_route():
    """
    Mint new keys into the calling admin's pool.

    Request body:
    {
        "count": int,
        "key_length": int (optional, DEFAULT_KEY_LENGTH)
    }
    """
    data = request.get_json(silent=True) or {}
    try:
        keys = key_service.generate_keys(g.current_account.id, data.get("count"), data.get("key_length"))
        current_app.logger.info("Admin %s generated %s keys", g.current_account.id, len(keys))
        return jsonify({
            "success": True,
            "count": len(keys),
            "keys": [k.token for k in keys],
        }), 201
    except KeyflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to generate keys")
        db.session.rollback()
        return jsonify({"error": "Internal server error", "code": "internal"}), 500


@keys_bp.post("/transfer")
@require_auth
def transfer_keys_route():
    """
    Bulk transfer to a direct subordinate.

    Request body:
    {
        "to": int (recipient account id),
        "count": int,
        "notes": str (optional)
    }

    Returns:
        200: {success, transferred, keys, log}
        400: bad count
        403: recipient not adjacent / not a direct subordinate
        404: unknown recipient
        409: insufficient inventory
    """
    data = request.get_json(silent=True) or {}
    to_id = data.get("to")
    if isinstance(to_id, bool) or not isinstance(to_id, int):
        return jsonify({"error": "to must be an account id", "code": "invalid_argument"}), 400

    try:
        result = transfer_service.transfer_keys(
            g.current_account.id,
            to_id,
            data.get("count"),
            notes=data.get("notes"),
        )
    except KeyflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to transfer keys")
        db.session.rollback()
        return jsonify({"error": "Internal server error", "code": "internal"}), 500

    current_app.logger.info(
        "Transferred %s keys from account %s to %s", result.count, result.from_account_id, result.to_account_id
    )
    return jsonify(result.to_dict()), 200


@keys_bp.get("/info")
def key_info_route():
    """Public lookup of one key by token (?key=)."""
    try:
        return jsonify(key_service.get_key_info(request.args.get("key", "").strip())), 200
    except KeyflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to look up key")
        return jsonify({"error": "Internal server error", "code": "internal"}), 500


@keys_bp.get("/pool")
@require_auth
def pool_route():
    limit = request.args.get("limit", type=int)
    if limit is not None:
        limit = max(1, min(limit, MAX_POOL_PAGE))
    keys = key_service.list_pool(g.current_account.id, limit=limit)
    return jsonify({"count": len(keys), "keys": [k.to_dict() for k in keys]}), 200


@keys_bp.get("/status")
@require_auth
def status_route():
    try:
        return jsonify(key_service.key_status(g.current_account.id)), 200
    except KeyflowError as e:
        return jsonify(e.to_dict()), e.status_code


@keys_bp.get("/inventory")
@require_auth
@require_role(ROLE_ADMIN)
def inventory_route():
    return jsonify(key_service.inventory_summary()), 200
