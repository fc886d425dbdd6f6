"""
Analytics endpoints.

Endpoints:
    GET /api/v1/analytics/portal/<process_model_id>  — portal pre-screening series
    GET /api/v1/analytics/<system>                   — PermitFlow / ReviewWorks series

Both return ``{"points": [AnalyticsPoint, ...]}`` with one point per day.
"""

import logging

from flask import Blueprint, jsonify

from permit_portal.blueprints import translate_store_errors
from permit_portal.services import analytics_service
from permit_portal.utils.errors import E, api_error

logger = logging.getLogger(__name__)

analytics_bp = Blueprint("analytics", __name__, url_prefix="/api/v1/analytics")


@analytics_bp.route("/portal/<int:process_model_id>", methods=["GET"])
@translate_store_errors
def portal_analytics(process_model_id: int):
    points = analytics_service.load_process_analytics(process_model_id)
    return jsonify({"points": points}), 200


@analytics_bp.route("/<system>", methods=["GET"])
def partner_analytics(system: str):
    if system not in ("permitflow", "reviewworks"):
        return api_error(E.NOT_FOUND, f"Unknown partner system '{system}'.")
    return jsonify({"points": analytics_service.load_partner_analytics(system)}), 200
