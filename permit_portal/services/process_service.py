"""
Process/Event Orchestrator — saves a project and its pre-screening state.

A save runs strictly in sequence, each step needing ids from the previous:

    upsert project -> find-or-create process instance -> replace payloads
    -> ensure milestone events -> upsert / delete GIS row

There is no transaction across these calls; a failure part-way leaves the
store partially updated and the error surfaces to the caller.

Process instance life-cycle per (project, process model):

    absent -> created -> has-payloads -> initiated -> completed

Milestone events "Pre-screening initiated" and "Pre-screening complete" are
idempotent (existence is checked before insert). "Project initiated" is
recorded on every snapshot save. A case-event insert rejected with HTTP 400
is logged and skipped; every other failure propagates.
"""

from __future__ import annotations

import logging
from typing import Any

from permit_portal.core.exceptions import CreationFailedError, ProjectPersistenceError
from permit_portal.integrations.postgrest import StoreQuery
from permit_portal.integrations.store_gateway import StoreGateway, get_store
from permit_portal.services import gis_service
from permit_portal.services.completion_evaluator import EvaluationResult, evaluate_decision_payloads
from permit_portal.services.payload_builder import (
    DATA_SOURCE_SYSTEM,
    build_decision_payload_records,
    build_evaluation_records,
    build_project_record,
)
from permit_portal.services.process_catalog_service import (
    PRE_SCREENING_PROCESS_MODEL_ID,
    fetch_decision_elements,
)
from permit_portal.utils.helpers import (
    extract_numeric_id,
    normalize_string,
    parse_numeric_id,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

PRE_SCREENING_SUFFIX = "Pre-Screening"

EVENT_PROJECT_INITIATED = "Project initiated"
EVENT_PRE_SCREENING_INITIATED = "Pre-screening initiated"
EVENT_PRE_SCREENING_COMPLETE = "Pre-screening complete"

PROCESS_INSTANCE_COLUMNS = (
    "id",
    "parent_project_id",
    "process_model",
    "last_updated",
    "created_at",
    "title:description",
    "description",
)


# ── Identifier helpers ────────────────────────────────────────────────────

def resolve_numeric_project_id(form_data: dict) -> tuple[str | None, int | None]:
    """``(normalized_id, numeric_id)`` for the form's ``id``.

    ``numeric_id`` is set only for ids that parse to a positive integer.

    Raises:
        ProjectPersistenceError: A non-blank id with no leading digits.
    """
    raw = form_data.get("id")
    normalized = normalize_string(raw) if not isinstance(raw, (int, float)) else str(raw)
    if not normalized:
        return None, None
    parsed = parse_numeric_id(normalized)
    if parsed is None:
        raise ProjectPersistenceError("Project identifier must be numeric to save to Supabase.")
    return normalized, parsed if parsed > 0 else None


def _require_project_id(form_data: dict, message: str) -> int:
    try:
        _, numeric_id = resolve_numeric_project_id(form_data)
    except ProjectPersistenceError:
        numeric_id = None
    if numeric_id is None:
        raise ProjectPersistenceError(message)
    return numeric_id


def build_process_description(project_title: str | None) -> str:
    title = normalize_string(project_title)
    return f"{title} {PRE_SCREENING_SUFFIX}" if title else PRE_SCREENING_SUFFIX


# ── Process instances ─────────────────────────────────────────────────────

def fetch_latest_process_instance(
    project_id: int,
    *,
    process_model_id: int = PRE_SCREENING_PROCESS_MODEL_ID,
    store: StoreGateway | None = None,
) -> dict | None:
    store = store or get_store("portal")
    rows = store.fetch_list(
        "process_instance",
        StoreQuery()
        .select(*PROCESS_INSTANCE_COLUMNS)
        .eq("parent_project_id", project_id)
        .eq("process_model", process_model_id)
        .eq("data_source_system", DATA_SOURCE_SYSTEM)
        .order("last_updated", descending=True, nulls_last=True)
        .order("id", descending=True)
        .limit(1),
        "process instance",
        error_context="Failed to look up process instance",
    )
    for row in rows:
        if extract_numeric_id(row) is not None:
            return row
    return None


def find_or_create_process_instance(
    project_id: int,
    project_title: str | None,
    *,
    process_model_id: int = PRE_SCREENING_PROCESS_MODEL_ID,
    store: StoreGateway | None = None,
) -> int:
    """Reuse the latest-updated process instance, or create one.

    An existing instance gets its description and timestamps patched.

    Returns:
        The process instance id.
    """
    store = store or get_store("portal")
    timestamp = utc_now_iso()
    payload = {
        "description": build_process_description(project_title),
        "process_model": process_model_id,
        "parent_project_id": project_id,
        "data_source_system": DATA_SOURCE_SYSTEM,
        "last_updated": timestamp,
        "retrieved_timestamp": timestamp,
    }

    existing = fetch_latest_process_instance(project_id, process_model_id=process_model_id, store=store)
    if existing is not None:
        process_id = extract_numeric_id(existing)
        store.patch(
            "process_instance",
            StoreQuery().eq("id", process_id),
            payload,
            error_context="Failed to update process instance",
        )
        return process_id

    created = store.create(
        "process_instance",
        payload,
        error_context="Failed to create process instance",
        empty_message="Supabase response did not include a process instance identifier.",
    )
    process_id = extract_numeric_id(created)
    if process_id is None:
        raise CreationFailedError("Supabase response did not include a process instance identifier.")
    logger.info("Created process instance %s for project %s", process_id, project_id,
                extra={"project_id": project_id, "process_id": process_id})
    return process_id


# ── Case events ───────────────────────────────────────────────────────────

def case_event_exists(process_id: int, event_type: str, *, store: StoreGateway | None = None) -> bool:
    store = store or get_store("portal")
    rows = store.fetch_list(
        "case_event",
        StoreQuery().select("id").eq("parent_process_id", process_id).eq("type", event_type).limit(1),
        "case events",
        error_context="Failed to check case events",
    )
    return any(extract_numeric_id(row) is not None for row in rows)


def create_case_event(
    process_id: int,
    event_type: str,
    data: dict | None = None,
    *,
    store: StoreGateway | None = None,
) -> bool:
    """Insert a case event; returns False when the store rejected it with 400."""
    store = store or get_store("portal")
    timestamp = utc_now_iso()
    other = {"process": process_id}
    other.update({key: value for key, value in (data or {}).items() if value is not None})
    payload = {
        "parent_process_id": process_id,
        "type": event_type,
        "data_source_system": DATA_SOURCE_SYSTEM,
        "last_updated": timestamp,
        "retrieved_timestamp": timestamp,
        "other": other,
    }
    try:
        store.insert("case_event", payload, error_context=f'Failed to record "{event_type}" case event')
    except ProjectPersistenceError as exc:
        if exc.status != 400:
            raise
        logger.warning(
            "Case event request returned 400 for process %s. Proceeding without recording the event.",
            process_id,
            extra={"process_id": process_id},
        )
        return False
    return True


def ensure_case_event(
    process_id: int,
    event_type: str,
    data: dict | None = None,
    *,
    store: StoreGateway | None = None,
) -> bool:
    """Create an idempotent milestone event unless one already exists.

    Returns:
        True when a new event was recorded.
    """
    store = store or get_store("portal")
    if case_event_exists(process_id, event_type, store=store):
        return False
    return create_case_event(process_id, event_type, data, store=store)


# ── Decision payloads ─────────────────────────────────────────────────────

def replace_decision_payloads(
    process_id: int,
    records: list[dict],
    *,
    store: StoreGateway | None = None,
) -> None:
    """Delete this portal's payload rows for the instance, then insert *records*.

    Rows written by other data sources are left untouched.
    """
    store = store or get_store("portal")
    store.delete(
        "process_decision_payload",
        StoreQuery().eq("process", process_id).eq("data_source_system", DATA_SOURCE_SYSTEM),
        description="pre-screening data",
        error_context="Failed to remove existing pre-screening data",
        count_exact=False,
    )
    if records:
        store.insert("process_decision_payload", records, error_context="Failed to submit pre-screening data")


# ── Entry points ──────────────────────────────────────────────────────────

def save_project_snapshot(
    form_data: dict,
    geospatial_results: dict | None = None,
    gis_upload: dict | None = None,
    *,
    store: StoreGateway | None = None,
) -> int:
    """Upsert the project row, its process instance and its GIS upload.

    Args:
        form_data: Project form values (snake_case keys).
        geospatial_results: Cached screening results stored in ``other.geospatial``.
        gis_upload: Geometry container from the map; empty uploads delete the GIS row.

    Returns:
        The pre-screening process instance id.

    Raises:
        ProjectPersistenceError: Any failed step.
    """
    store = store or get_store("portal")
    store.require_credentials()

    _, numeric_id = resolve_numeric_project_id(form_data)
    timestamp = utc_now_iso()
    project_record = build_project_record(form_data, geospatial_results or {}, numeric_id)
    project_record.update({
        "data_source_system": DATA_SOURCE_SYSTEM,
        "last_updated": timestamp,
        "retrieved_timestamp": timestamp,
    })

    created = store.create(
        "project",
        project_record,
        upsert=True,
        query=StoreQuery().on_conflict("id"),
        error_context="Supabase request failed",
        empty_message="Supabase response did not include a project identifier.",
    )
    project_id = numeric_id if numeric_id is not None else extract_numeric_id(created)
    if project_id is None:
        raise CreationFailedError("Supabase response did not include a project identifier.")

    project_title = project_record.get("title")
    process_id = find_or_create_process_instance(project_id, project_title, store=store)

    create_case_event(
        process_id,
        EVENT_PROJECT_INITIATED,
        {
            "project_id": project_id,
            "project_title": project_title,
            "project_snapshot": project_record,
        },
        store=store,
    )

    upload = dict(gis_upload or {})
    location_object = form_data.get("location_object")
    if isinstance(location_object, str):
        upload["geoJson"] = location_object
    gis_service.upsert_project_gis_data(
        project_id,
        upload,
        project_title=project_title,
        centroid_lat=form_data.get("location_lat"),
        centroid_lon=form_data.get("location_lon"),
        store=store,
    )

    logger.info("Saved project snapshot %s (process %s)", project_id, process_id,
                extra={"project_id": project_id, "process_id": process_id})
    return process_id


def submit_decision_payload(
    form_data: dict,
    geospatial_results: dict | None,
    checklist: list | None,
    *,
    create_completion_event: bool = True,
    store: StoreGateway | None = None,
) -> EvaluationResult:
    """Rebuild, evaluate and store the seven decision payloads of a project.

    The "Pre-screening complete" event is only recorded when the
    evaluation passes and *create_completion_event* is set.

    Raises:
        ProjectPersistenceError: Missing project id or a failed store call.
    """
    store = store or get_store("portal")
    store.require_credentials()

    project_id = _require_project_id(
        form_data,
        "A numeric project identifier is required to submit pre-screening data. "
        "Save the project snapshot first.",
    )
    project_record = build_project_record(form_data, geospatial_results or {}, project_id)
    process_id = find_or_create_process_instance(project_id, project_record.get("title"), store=store)
    decision_elements = fetch_decision_elements(store=store)

    records = build_decision_payload_records(
        process_id,
        project_record,
        geospatial_results or {},
        checklist or [],
        form_data,
        decision_elements,
    )
    evaluation = evaluate_decision_payloads(records)
    if not records:
        return evaluation

    if evaluation.is_complete:
        for record in records:
            record["result_bool"] = True
            record["result"] = "Complete"

    replace_decision_payloads(process_id, records, store=store)

    event_data: dict[str, Any] = {
        "project_id": project_id,
        "total_payloads": evaluation.total,
        "payloads_with_content": evaluation.completed_titles,
        "payloads_with_content_count": len(evaluation.completed_titles),
    }
    ensure_case_event(process_id, EVENT_PRE_SCREENING_INITIATED, event_data, store=store)
    if create_completion_event and evaluation.is_complete:
        ensure_case_event(process_id, EVENT_PRE_SCREENING_COMPLETE, event_data, store=store)

    logger.info(
        "Submitted pre-screening payloads for project %s: complete=%s failed_check=%s",
        project_id, evaluation.is_complete, evaluation.failed_check,
        extra={"project_id": project_id, "process_id": process_id},
    )
    return evaluation


def evaluate_pre_screening_data(
    form_data: dict,
    geospatial_results: dict | None,
    checklist: list | None,
) -> EvaluationResult:
    """Dry-run evaluation of the current form; nothing is written."""
    project_id = _require_project_id(
        form_data,
        "A numeric project identifier is required to submit pre-screening data. "
        "Save the project snapshot first.",
    )
    project_record = build_project_record(form_data, geospatial_results or {}, project_id)
    records = build_evaluation_records(project_record, geospatial_results or {}, checklist or [], form_data)
    return evaluate_decision_payloads(records)
