# backend/stockledger/routes/system.py
"""
System health endpoint.

Checks database connectivity and the count session store.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import CurrentStock, Store, StockMovement
from ..services.count_session_service import get_session_store
from ..time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__, url_prefix="/api/system")

# Outside the "count-session:" key space, so no session can ever occupy it
HEALTH_CHECK_KEY = "health-check"


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        store_count = db.session.query(Store).count()
        movement_count = db.session.query(StockMovement).count()
        stock_rows = db.session.query(CurrentStock).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "stores": store_count,
                "movements": movement_count,
                "current_stock_rows": stock_rows,
            }
        }
    except Exception:
        db.session.rollback()
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_session_store_health() -> dict:
    """
    Read a key that is never written from the configured count session store.

    Read-only: proves the backend answers without creating or deleting rows.
    """
    start_time = time.time()
    try:
        store = get_session_store()
        missing = store.get(HEALTH_CHECK_KEY) is None

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy" if missing else "degraded",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"backend": current_app.config.get("COUNT_SESSION_BACKEND", "sql")},
        }
    except Exception:
        db.session.rollback()
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Count session store health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Count session store error"
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: All systems healthy (or degraded but operational)
    - 503: One or more systems unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    session_store_health = check_session_store_health()

    all_checks = [database_health, session_store_health]
    unhealthy_count = sum(1 for check in all_checks if check["status"] == "unhealthy")
    degraded_count = sum(1 for check in all_checks if check["status"] == "degraded")

    if unhealthy_count > 0:
        overall_status = "unhealthy"
        http_status = 503
    elif degraded_count > 0:
        overall_status = "degraded"
        http_status = 200
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "count_session_store": session_store_health,
        }
    }

    return response, http_status
