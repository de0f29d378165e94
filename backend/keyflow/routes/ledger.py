# Overview: Flask API routes for the key transfer log; listing, CSV export and reconciliation.

from flask import Blueprint, Response, request, jsonify, g

from ..errors import KeyflowError
from ..decorators import require_auth
from ..services import ledger_service

"""
Transfer log is read-only over HTTP. Entries are only ever appended by the
key services inside their own transactions.
"""

ledger_bp = Blueprint("ledger", __name__, url_prefix="/api/ledger")


@ledger_bp.get("/logs")
@require_auth
def list_logs_route():
    limit = request.args.get("limit", default=100, type=int)
    limit = max(1, min(limit, 500))
    try:
        entries = ledger_service.list_transfer_logs(
            g.current_account.id,
            direction=request.args.get("direction"),
            limit=limit,
        )
    except KeyflowError as e:
        return jsonify(e.to_dict()), e.status_code
    return jsonify({"logs": [entry.to_dict() for entry in entries]}), 200


@ledger_bp.get("/export")
@require_auth
def export_logs_route():
    try:
        body = ledger_service.export_transfer_logs_csv(
            g.current_account.id,
            direction=request.args.get("direction"),
        )
    except KeyflowError as e:
        return jsonify(e.to_dict()), e.status_code
    return Response(
        body,
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename=key-transfers-{g.current_account.id}.csv"},
    )


@ledger_bp.get("/reconcile")
@require_auth
def reconcile_route():
    return jsonify(ledger_service.reconcile_account(g.current_account.id)), 200
