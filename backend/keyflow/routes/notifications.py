# Overview: Flask API routes for the account inbox.

from flask import Blueprint, request, jsonify, g

from ..errors import KeyflowError
from ..decorators import require_auth
from ..services import notification_service


notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.get("")
@require_auth
def list_notifications_route():
    unread_only = request.args.get("unread", "").lower() in {"1", "true", "yes"}
    items = notification_service.list_notifications(g.current_account.id, unread_only=unread_only)
    return jsonify({"notifications": [n.to_dict() for n in items]}), 200


@notifications_bp.post("/<int:notification_id>/read")
@require_auth
def mark_read_route(notification_id: int):
    try:
        item = notification_service.mark_read(g.current_account.id, notification_id)
        return jsonify(item.to_dict()), 200
    except KeyflowError as e:
        return jsonify(e.to_dict()), e.status_code
