# backend/keyflow/routes/system.py
"""
System health endpoint.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Account, Key
from keyflow.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        account_count = db.session.query(Account).count()
        key_count = db.session.query(Key).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "accounts": account_count,
                "keys": key_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: database reachable
    - 503: database unhealthy
    """
    database_health = check_database_health()
    http_status = 200 if database_health["status"] == "healthy" else 503
    return {
        "status": database_health["status"],
        "timestamp": utcnow().isoformat() + "Z",
        "checks": {"database": database_health},
    }, http_status
