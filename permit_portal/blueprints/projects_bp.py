"""
Portal project endpoints.

Endpoints:
    POST   /api/v1/projects/snapshot                          — save project + GIS, returns process id
    POST   /api/v1/projects/decision-payloads                 — rebuild, evaluate, store payloads
    POST   /api/v1/projects/evaluate                          — dry-run evaluation
    GET    /api/v1/projects/hierarchy                         — projects with processes and events
    GET    /api/v1/projects/<project_id>/state                — reconstructed portal state
    DELETE /api/v1/projects/<project_id>                      — delete project and related rows
    GET    /api/v1/projects/<project_id>/processes/<pid>/documents  — supporting documents
    POST   /api/v1/projects/<project_id>/processes/<pid>/documents  — upload (multipart)
    POST   /api/v1/projects/<project_id>/processes/<pid>/report     — upload a generated report
    GET    /api/v1/process-models/<model_id>?system=portal    — process information

Request bodies use the form keys the portal UI sends: ``formData``,
``geospatialResults``, ``gisUpload``, ``checklist``.

Layer contract:
    - No store calls here — all work delegated to services.
"""

import logging

from flask import Blueprint, jsonify, request

from permit_portal.blueprints import json_body, json_object, translate_store_errors
from permit_portal.integrations.store_gateway import STORES
from permit_portal.services import (
    document_service,
    portal_state_service,
    process_catalog_service,
    process_service,
)
from permit_portal.utils.errors import E, api_error

logger = logging.getLogger(__name__)

projects_bp = Blueprint("projects", __name__, url_prefix="/api/v1")


def _checklist(data: dict) -> list:
    value = data.get("checklist")
    return value if isinstance(value, list) else []


# ═══════════════════════════════════════════════════════════════
# Save / evaluate
# ═══════════════════════════════════════════════════════════════

@projects_bp.route("/projects/snapshot", methods=["POST"])
@translate_store_errors
def save_snapshot():
    data = json_body()
    form_data = json_object(data, "formData")
    if not form_data:
        return api_error(E.VALIDATION_REQUIRED, "formData is required")

    gis_upload = data.get("gisUpload") if isinstance(data.get("gisUpload"), dict) else None
    process_id = process_service.save_project_snapshot(
        form_data,
        json_object(data, "geospatialResults"),
        gis_upload,
    )
    return jsonify({"processInstanceId": process_id}), 200


@projects_bp.route("/projects/decision-payloads", methods=["POST"])
@translate_store_errors
def submit_decision_payloads():
    data = json_body()
    form_data = json_object(data, "formData")
    if not form_data:
        return api_error(E.VALIDATION_REQUIRED, "formData is required")

    evaluation = process_service.submit_decision_payload(
        form_data,
        json_object(data, "geospatialResults"),
        _checklist(data),
        create_completion_event=data.get("createCompletionEvent", True) is not False,
    )
    return jsonify(evaluation.to_dict()), 200


@projects_bp.route("/projects/evaluate", methods=["POST"])
@translate_store_errors
def evaluate():
    data = json_body()
    evaluation = process_service.evaluate_pre_screening_data(
        json_object(data, "formData"),
        json_object(data, "geospatialResults"),
        _checklist(data),
    )
    return jsonify(evaluation.to_dict()), 200


# ═══════════════════════════════════════════════════════════════
# Read / delete
# ═══════════════════════════════════════════════════════════════

@projects_bp.route("/projects/hierarchy", methods=["GET"])
@translate_store_errors
def hierarchy():
    return jsonify(portal_state_service.fetch_project_hierarchy()), 200


@projects_bp.route("/projects/<int:project_id>/state", methods=["GET"])
@translate_store_errors
def project_state(project_id: int):
    return jsonify(portal_state_service.load_project_portal_state(project_id)), 200


@projects_bp.route("/projects/<int:project_id>", methods=["DELETE"])
@translate_store_errors
def delete_project(project_id: int):
    portal_state_service.delete_project_and_related_data(project_id)
    return jsonify({"deleted": True, "projectId": project_id}), 200


# ═══════════════════════════════════════════════════════════════
# Documents
# ═══════════════════════════════════════════════════════════════

@projects_bp.route("/projects/<int:project_id>/processes/<int:process_id>/documents", methods=["GET"])
@translate_store_errors
def list_documents(project_id: int, process_id: int):
    return jsonify(document_service.list_supporting_documents(process_id)), 200


@projects_bp.route("/projects/<int:project_id>/processes/<int:process_id>/documents", methods=["POST"])
@translate_store_errors
def upload_document(project_id: int, process_id: int):
    """Multipart upload.

    Form fields:
        file (required), title (required), projectTitle (optional).
    """
    upload = request.files.get("file")
    if upload is None:
        return api_error(E.VALIDATION_REQUIRED, "file is required")

    document_service.upload_supporting_document(
        content=upload.read(),
        file_name=upload.filename,
        content_type=upload.mimetype,
        title=request.form.get("title"),
        project_id=project_id,
        project_title=request.form.get("projectTitle"),
        parent_process_id=process_id,
    )
    return jsonify({"uploaded": True}), 201


@projects_bp.route("/projects/<int:project_id>/processes/<int:process_id>/report", methods=["POST"])
@translate_store_errors
def upload_report(project_id: int, process_id: int):
    """Multipart upload of a rendered PDF (``file``), plus projectTitle / generatedAt."""
    upload = request.files.get("file")
    if upload is None:
        return api_error(E.VALIDATION_REQUIRED, "file is required")

    report = document_service.save_project_report_document(
        content=upload.read(),
        project_id=project_id,
        project_title=request.form.get("projectTitle"),
        parent_process_id=process_id,
        generated_at=request.form.get("generatedAt"),
    )
    return jsonify(report), 201


# ═══════════════════════════════════════════════════════════════
# Process catalog
# ═══════════════════════════════════════════════════════════════

@projects_bp.route("/process-models/<int:process_model_id>", methods=["GET"])
@translate_store_errors
def process_information(process_model_id: int):
    system = request.args.get("system", "portal")
    if system not in STORES:
        return api_error(E.VALIDATION_INVALID, f"Unknown system '{system}'.")
    return jsonify(process_catalog_service.load_process_information(process_model_id, system)), 200
