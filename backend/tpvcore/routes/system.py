# backend/tpvcore/routes/system.py
"""
System health and version endpoints.

Health covers what terminals depend on: the database, the session
liveness bookkeeping and the fiscal ledger heads.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Organization, Device, DeviceSession, LedgerHead
from ..services.session_service import ZOMBIE_THRESHOLD
from tpvcore.time_utils import utcnow

system_bp = Blueprint("system", __name__)

API_VERSION = "1.0.0"


def _timed_check(name: str, gather) -> dict:
    """Run gather() and wrap its details with status and latency."""
    start_time = time.time()
    try:
        details = gather()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": details,
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("%s health check failed", name)
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": f"{name} error",
        }


def check_database_health() -> dict:
    def gather():
        return {
            "organizations": db.session.query(Organization).count(),
            "devices": db.session.query(Device).count(),
        }
    return _timed_check("Database", gather)


def check_session_health() -> dict:
    """Degraded when stale OPEN sessions are piling up (sweeper not running)."""
    def gather():
        now = utcnow()
        open_sessions = db.session.query(DeviceSession).filter(DeviceSession.status == "OPEN").count()
        zombies = db.session.query(DeviceSession).filter(
            DeviceSession.status == "OPEN",
            DeviceSession.last_heartbeat_at < now - ZOMBIE_THRESHOLD,
        ).count()
        return {"open_sessions": open_sessions, "zombies_pending_sweep": zombies}

    result = _timed_check("Session service", gather)
    if result["status"] == "healthy" and result["details"]["zombies_pending_sweep"] > 0:
        result["status"] = "degraded"
    return result


def check_ledger_health() -> dict:
    def gather():
        heads = db.session.query(LedgerHead).count()
        records = db.session.query(db.func.coalesce(db.func.sum(LedgerHead.record_count), 0)).scalar()
        return {"ledgers": heads, "records": int(records or 0)}
    return _timed_check("Fiscal ledger", gather)


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded (still operational)
    - 503: one or more checks unhealthy
    """
    start_time = time.time()

    checks = {
        "database": check_database_health(),
        "session_service": check_session_health(),
        "fiscal_ledger": check_ledger_health(),
    }

    statuses = [check["status"] for check in checks.values()]
    if "unhealthy" in statuses:
        overall_status, http_status = "unhealthy", 503
    elif "degraded" in statuses:
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": checks,
    }

    return response, http_status


@system_bp.get("/version")
def version():
    """
    Version endpoint for deployment debugging.

    Does NOT expose secret keys, database credentials or internal paths.
    """
    import sys

    return {
        "api_version": API_VERSION,
        "environment": "testing" if current_app.config.get("TESTING") else current_app.config.get("ENV", "production"),
        "python_version": sys.version.split()[0],
        "timestamp": utcnow().isoformat() + "Z",
    }
