"""
Partner system endpoints (PermitFlow, ReviewWorks).

Endpoints:
    POST  /api/v1/partners/<system>/authenticate              — password sign-in
    POST  /api/v1/partners/<system>/projects                  — submit a portal project
    PATCH /api/v1/partners/<system>/projects                  — update the mirrored project
    GET   /api/v1/partners/<system>/projects/<id>/status      — existence + latest process
    POST  /api/v1/partners/<system>/processes                 — process summaries by portal project
    GET   /api/v1/partners/links[?system=...]                 — persisted ProjectLink rows

Writes need the ``accessToken`` returned by /authenticate.
"""

import logging

from flask import Blueprint, jsonify, request

from permit_portal.blueprints import json_body, json_object, translate_store_errors
from permit_portal.services import partner_service, project_matcher
from permit_portal.utils.errors import E, api_error

logger = logging.getLogger(__name__)

partners_bp = Blueprint("partners", __name__, url_prefix="/api/v1/partners")


def _unknown_system(system: str):
    if system in partner_service.PARTNER_PROFILES:
        return None
    return api_error(E.NOT_FOUND, f"Unknown partner system '{system}'.")


def _string(data: dict, key: str) -> str | None:
    value = data.get(key)
    return value.strip() if isinstance(value, str) and value.strip() else None


@partners_bp.route("/<system>/authenticate", methods=["POST"])
@translate_store_errors
def authenticate(system: str):
    err = _unknown_system(system)
    if err:
        return err
    data = json_body()
    email = _string(data, "email")
    password = data.get("password") if isinstance(data.get("password"), str) else None
    if not email or not password:
        return api_error(E.VALIDATION_REQUIRED, "email and password are required")
    return jsonify(partner_service.authenticate(system, email, password)), 200


@partners_bp.route("/<system>/projects", methods=["POST"])
@translate_store_errors
def submit_project(system: str):
    err = _unknown_system(system)
    if err:
        return err
    data = json_body()
    access_token = _string(data, "accessToken")
    if not access_token:
        return api_error(E.VALIDATION_REQUIRED, "accessToken is required")

    result = partner_service.submit_project(
        system,
        json_object(data, "formData"),
        access_token,
        _string(data, "userId"),
        _string(data, "userEmail"),
    )
    return jsonify(result), 201


@partners_bp.route("/<system>/projects", methods=["PATCH"])
@translate_store_errors
def update_project(system: str):
    err = _unknown_system(system)
    if err:
        return err
    data = json_body()
    access_token = _string(data, "accessToken")
    if not access_token:
        return api_error(E.VALIDATION_REQUIRED, "accessToken is required")

    partner_service.update_project(system, json_object(data, "formData"), access_token, _string(data, "userId"))
    return jsonify({"updated": True}), 200


@partners_bp.route("/<system>/projects/<project_id>/status", methods=["GET"])
@translate_store_errors
def project_status(system: str, project_id: str):
    err = _unknown_system(system)
    if err:
        return err
    return jsonify(partner_service.load_project_status(system, project_id)), 200


@partners_bp.route("/<system>/processes", methods=["POST"])
@translate_store_errors
def processes_for_projects(system: str):
    """Body: ``{"projects": [{"id", "title"}], "persistLinks": bool}``."""
    err = _unknown_system(system)
    if err:
        return err
    data = json_body()
    projects = [p for p in data.get("projects") or [] if isinstance(p, dict)]
    processes = partner_service.load_processes_for_projects(
        system, projects, persist_links=data.get("persistLinks") is True,
    )
    return jsonify({str(portal_id): summaries for portal_id, summaries in processes.items()}), 200


@partners_bp.route("/links", methods=["GET"])
def list_links():
    system = request.args.get("system")
    if system:
        err = _unknown_system(system)
        if err:
            return err
    links = project_matcher.list_project_links(system)
    return jsonify([link.to_dict() for link in links]), 200
