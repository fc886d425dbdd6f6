"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — local database plus store configuration
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from permit_portal.integrations.store_gateway import STORES
from permit_portal.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check: the local project_links database must answer.

    Store configuration is reported but never fails the probe; an
    unconfigured partner only disables that partner.
    """
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Backend stores ───────────────────────────────────────────────
    for system, store in STORES.items():
        checks[f"store:{system}"] = {
            "status": "configured" if store.is_configured else "not_configured",
            "label": store.label,
        }

    checks["app"] = {
        "name": "Permit Portal Sync Core",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
