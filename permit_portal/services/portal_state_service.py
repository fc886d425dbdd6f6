"""
Portal state loading, project hierarchy and project deletion.

``load_project_portal_state`` rebuilds what the portal UI edits (form data,
geospatial results, permitting checklist, GIS upload) from the stored rows:

    project row -> GIS upload -> latest pre-screening process
      -> decision payloads (applied by element id 1..7)
      -> case events (progress timestamps) -> report + supporting documents

Report and document lookups are best-effort: a failure is logged and the
state is returned without them. Everything else propagates.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

import requests

from permit_portal.core.exceptions import ProjectPersistenceError, RecordNotFoundError
from permit_portal.integrations.postgrest import StoreQuery
from permit_portal.integrations.store_gateway import StoreGateway, get_store
from permit_portal.services import document_service, gis_service
from permit_portal.services.completion_evaluator import extract_payload_data
from permit_portal.services.payload_builder import (
    DATA_SOURCE_SYSTEM,
    DECISION_SLOTS,
    GEOSPATIAL_STATUSES,
    SLOTS_BY_ELEMENT_ID,
)
from permit_portal.services.process_catalog_service import fetch_decision_elements
from permit_portal.services.process_service import (
    EVENT_PRE_SCREENING_COMPLETE,
    EVENT_PRE_SCREENING_INITIATED,
    EVENT_PROJECT_INITIATED,
    fetch_latest_process_instance,
    replace_decision_payloads,
)
from permit_portal.utils.helpers import (
    is_finite_number,
    parse_numeric_id,
    pick_latest_timestamp,
    safe_json_parse,
    safe_stringify_json,
    sort_by_timestamp_desc,
)

logger = logging.getLogger(__name__)

PROJECT_COLUMNS = (
    "id",
    "created_at",
    "title",
    "description",
    "sector",
    "lead_agency",
    "participating_agencies",
    "sponsor",
    "type",
    "funding",
    "location_text",
    "location_lat",
    "location_lon",
    "location_object",
    "sponsor_contact",
    "other",
    "start_date",
    "current_status",
    "parent_project_id",
    "record_owner_agency",
    "data_source_agency",
    "data_source_system",
    "data_record_version",
    "last_updated",
    "retrieved_timestamp",
)

_TEXT_FIELDS = (
    "title",
    "description",
    "sector",
    "lead_agency",
    "participating_agencies",
    "sponsor",
    "funding",
    "location_text",
)

_CONTACT_FIELDS = ("name", "organization", "email", "phone")
_CHECKLIST_SOURCES = ("copilot", "manual", "seed")


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) and value.strip() else None


def _require_project_id(project_id: Any) -> int:
    numeric_id = parse_numeric_id(project_id)
    if numeric_id is None:
        raise ProjectPersistenceError("Project identifier must be numeric.")
    return numeric_id


# ═════════════════════════════════════════════════════════════════════════════
# Record parsers
# ═════════════════════════════════════════════════════════════════════════════

def parse_contact(value: Any) -> dict | None:
    if not isinstance(value, dict):
        return None
    contact = {key: value[key] for key in _CONTACT_FIELDS if _text(value.get(key))}
    return contact or None


def parse_project_other(value: Any) -> dict | None:
    """Stored ``other`` bag -> ``{notes?, geospatial?, invalidLocationObject?}``.

    A non-JSON string is taken as the notes text.
    """
    if not value:
        return None
    if isinstance(value, str):
        if not value.strip():
            return None
        parsed = safe_json_parse(value)
        return parse_project_other(parsed) if parsed is not None else {"notes": value}
    if not isinstance(value, dict):
        return None

    other: dict[str, Any] = {}
    if _text(value.get("notes")):
        other["notes"] = value["notes"]
    geospatial = value.get("geospatial")
    if isinstance(geospatial, dict):
        snapshot: dict[str, Any] = {}
        if _text(geospatial.get("lastRunAt")):
            snapshot["lastRunAt"] = geospatial["lastRunAt"]
        if isinstance(geospatial.get("messages"), list):
            snapshot["messages"] = [entry for entry in geospatial["messages"] if isinstance(entry, str)]
        for name in ("nepassist", "ipac"):
            if name in geospatial:
                snapshot[name] = geospatial[name]
        other["geospatial"] = snapshot
    if _text(value.get("invalidLocationObject")):
        other["invalidLocationObject"] = value["invalidLocationObject"]
    return other or None


def parse_stored_service(value: Any) -> dict | None:
    if not isinstance(value, dict):
        return None
    status = value.get("status")
    service: dict[str, Any] = {"status": status if status in GEOSPATIAL_STATUSES else "idle"}
    if value.get("summary") is not None:
        service["summary"] = value["summary"]
    if _text(value.get("error")):
        service["error"] = value["error"]
    if isinstance(value.get("meta"), dict):
        service["meta"] = value["meta"]
    if "raw" in value:
        service["raw"] = value["raw"]
    return service


def parse_checklist_items(value: Any) -> list[dict]:
    """Stored permit entries -> checklist items; entries without a label are dropped."""
    if not isinstance(value, list):
        return []
    items = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        label = entry.get("label").strip() if isinstance(entry.get("label"), str) else ""
        if not label:
            continue
        item: dict[str, Any] = {"label": label, "completed": bool(entry.get("completed"))}
        if entry.get("source") in _CHECKLIST_SOURCES:
            item["source"] = entry["source"]
        if _text(entry.get("notes")):
            item["notes"] = entry["notes"]
        link = entry.get("link")
        if isinstance(link, dict):
            href = link.get("href").strip() if isinstance(link.get("href"), str) else ""
            link_label = link.get("label").strip() if isinstance(link.get("label"), str) else ""
            if href and link_label:
                item["link"] = {"href": href, "label": link_label}
        items.append(item)
    return items


def join_strings(values: Any) -> str | None:
    if not isinstance(values, list):
        return None
    kept = [value.strip() for value in values if isinstance(value, str) and value.strip()]
    return "\n".join(kept) if kept else None


# ═════════════════════════════════════════════════════════════════════════════
# State appliers
# ═════════════════════════════════════════════════════════════════════════════

def apply_project_record(form_data: dict, geospatial_results: dict, record: dict) -> None:
    """Copy a stored project row (or a project-details snapshot) onto the form."""
    for field in _TEXT_FIELDS:
        if _text(record.get(field)):
            form_data[field] = record[field]
    for field in ("location_lat", "location_lon"):
        if is_finite_number(record.get(field)):
            form_data[field] = record[field]
    location_object = safe_stringify_json(record.get("location_object"))
    if location_object:
        form_data["location_object"] = location_object

    contact = parse_contact(record.get("sponsor_contact"))
    if contact:
        form_data["sponsor_contact"] = {**(form_data.get("sponsor_contact") or {}), **contact}

    other = parse_project_other(record.get("other")) or {}
    if other.get("notes"):
        form_data["other"] = other["notes"]
    if other.get("invalidLocationObject") and not form_data.get("location_object"):
        form_data["location_object"] = other["invalidLocationObject"]

    snapshot = other.get("geospatial")
    if not snapshot:
        return
    if snapshot.get("lastRunAt"):
        geospatial_results["lastRunAt"] = snapshot["lastRunAt"]
    if snapshot.get("messages"):
        geospatial_results["messages"] = snapshot["messages"]
    for name in ("nepassist", "ipac"):
        stored = parse_stored_service(snapshot.get(name))
        if stored:
            geospatial_results[name] = {**geospatial_results.get(name, {}), **stored}


def _apply_screening(name: str, raw_key: str, summary_key: str, summary_types: tuple):
    def apply(evaluation: dict, form_data: dict, geospatial_results: dict, checklist: list) -> None:
        service = dict(geospatial_results.get(name) or {"status": "idle"})
        summary = evaluation.get(summary_key)
        if isinstance(summary, summary_types) and summary:
            service["summary"] = summary
        elif summary_key in evaluation and summary is None:
            service.pop("summary", None)
        if raw_key in evaluation:
            service["raw"] = evaluation[raw_key]
        if service.get("status") == "idle" and (
            isinstance(service.get("summary"), summary_types) or service.get("raw") is not None
        ):
            service["status"] = "success"
        geospatial_results[name] = service
    return apply


def _apply_project_details(evaluation, form_data, geospatial_results, checklist) -> None:
    project = evaluation.get("project")
    if isinstance(project, dict):
        apply_project_record(form_data, geospatial_results, project)


def _apply_permit_notes(evaluation, form_data, geospatial_results, checklist) -> None:
    permits = parse_checklist_items(evaluation.get("permits"))
    if permits:
        checklist[:] = permits
    if _text(evaluation.get("notes")):
        form_data["other"] = evaluation["notes"]


def _apply_categorical_exclusion(evaluation, form_data, geospatial_results, checklist) -> None:
    candidates = join_strings(evaluation.get("ce_candidates"))
    if candidates:
        form_data["nepa_categorical_exclusion_code"] = candidates


def _apply_conditions(evaluation, form_data, geospatial_results, checklist) -> None:
    conditions = join_strings(evaluation.get("conditions"))
    if conditions:
        form_data["nepa_conformance_conditions"] = conditions
    if _text(evaluation.get("notes")):
        form_data["nepa_extraordinary_circumstances"] = evaluation["notes"]


def _apply_resource_notes(evaluation, form_data, geospatial_results, checklist) -> None:
    if _text(evaluation.get("notes")):
        form_data["nepa_extraordinary_circumstances"] = evaluation["notes"]
    elif "notes" in evaluation and evaluation["notes"] is None:
        form_data.pop("nepa_extraordinary_circumstances", None)


PAYLOAD_APPLIERS: dict[str, Callable[[dict, dict, dict, list], None]] = {
    "project_details": _apply_project_details,
    "nepassist": _apply_screening("nepassist", "nepa_assist_raw", "nepa_assist_summary", (list,)),
    "ipac": _apply_screening("ipac", "ipac_raw", "ipac_summary", (dict,)),
    "permit_notes": _apply_permit_notes,
    "categorical_exclusion": _apply_categorical_exclusion,
    "conditions": _apply_conditions,
    "resource_notes": _apply_resource_notes,
}


def resolve_payload_element_id(row: dict, evaluation: dict, title_map: dict[int, str]) -> int | None:
    """Element id of a stored payload.

    The row's ``process_decision_element`` wins; payloads stored without a
    catalog binding fall back to the embedded ``id`` and then to the slot
    title carried in the evaluation data.
    """
    for candidate in (row.get("process_decision_element"), evaluation.get("id")):
        if isinstance(candidate, str) and not candidate.strip().isdigit():
            continue
        element_id = parse_numeric_id(candidate)
        if element_id is not None and element_id in SLOTS_BY_ELEMENT_ID:
            return element_id

    titles = {title: element_id for element_id, title in title_map.items()}
    titles.update({slot.title: slot.element_id for slot in DECISION_SLOTS})
    for candidate in (evaluation.get("id"), evaluation.get("title")):
        if isinstance(candidate, str) and candidate.strip() in titles:
            return titles[candidate.strip()]
    return None


def fetch_decision_element_titles(*, store: StoreGateway) -> dict[int, str]:
    elements = fetch_decision_elements(store=store)
    titles = {}
    for slot in DECISION_SLOTS:
        element = elements.get(slot.element_id)
        if element is None:
            continue
        titles[element["id"]] = (element.get("title") or "").strip() or slot.title
    return titles


# ═════════════════════════════════════════════════════════════════════════════
# Loader
# ═════════════════════════════════════════════════════════════════════════════

def fetch_project_row(project_id: int, *, store: StoreGateway) -> dict | None:
    rows = store.fetch_list(
        "project",
        StoreQuery()
        .select(*PROJECT_COLUMNS)
        .eq("id", project_id)
        .eq("data_source_system", DATA_SOURCE_SYSTEM)
        .limit(1),
        "project",
    )
    return rows[0] if rows else None


def fetch_decision_payload_rows(process_id: int, *, store: StoreGateway) -> list[dict]:
    return store.fetch_list(
        "process_decision_payload",
        StoreQuery()
        .select("process_decision_element", "evaluation_data", "last_updated")
        .eq("data_source_system", DATA_SOURCE_SYSTEM)
        .eq("process", process_id)
        .order("last_updated")
        .limit(1000),
        "decision payloads",
    )


def fetch_process_case_events(process_id: int, *, store: StoreGateway) -> list[dict]:
    """Case events of one process, newest first; failures yield []."""
    try:
        return store.fetch_list(
            "case_event",
            StoreQuery()
            .select("id", "parent_process_id", "type", "last_updated")
            .eq("parent_process_id", process_id)
            .eq("data_source_system", DATA_SOURCE_SYSTEM)
            .order("last_updated", descending=True, nulls_last=True)
            .order("id", descending=True),
            "case events",
        )
    except (ProjectPersistenceError, requests.RequestException) as exc:
        logger.warning("Failed to load case events; continuing without them: %s", exc,
                       extra={"process_id": process_id})
        return []


def load_project_portal_state(project_id: Any, *, store: StoreGateway | None = None) -> dict:
    """Rebuild the portal editing state of one project.

    Returns:
        ``{formData, geospatialResults, permittingChecklist, lastUpdated,
        gisUpload, portalProgress, preScreeningProcessId, projectReport,
        supportingDocuments}``.

    Raises:
        ProjectPersistenceError: Non-numeric id or failed store call.
        RecordNotFoundError: No portal project with that id.
    """
    project_id = _require_project_id(project_id)
    store = store or get_store("portal")
    store.require_credentials()

    project_row = fetch_project_row(project_id, store=store)
    if project_row is None:
        raise RecordNotFoundError(f"Project {project_id} was not found.")

    form_data: dict[str, Any] = {"id": str(project_id), "sponsor_contact": {}}
    geospatial_results: dict[str, Any] = {"nepassist": {"status": "idle"}, "ipac": {"status": "idle"}}
    checklist: list[dict] = []
    apply_project_record(form_data, geospatial_results, project_row)
    last_updated = project_row.get("last_updated") if isinstance(project_row.get("last_updated"), str) else None

    gis_result = gis_service.fetch_project_gis_upload(project_id, store=store)
    gis_upload = gis_result["upload"] if gis_result else {}
    if gis_result and gis_result.get("updatedAt"):
        last_updated = pick_latest_timestamp(last_updated, gis_result["updatedAt"])

    process_record = fetch_latest_process_instance(project_id, store=store)
    process_id = parse_numeric_id(process_record.get("id")) if process_record else None
    if process_record and isinstance(process_record.get("last_updated"), str):
        last_updated = pick_latest_timestamp(last_updated, process_record["last_updated"])

    project_initiated = pre_screening_initiated = pre_screening_completed = last_activity = None
    has_payloads = False
    project_report = None
    supporting_documents: list[dict] = []

    payload_rows = fetch_decision_payload_rows(process_id, store=store) if process_id is not None else []
    if payload_rows:
        has_payloads = True
        title_map = fetch_decision_element_titles(store=store)
        for row in payload_rows:
            if isinstance(row.get("last_updated"), str):
                last_updated = pick_latest_timestamp(last_updated, row["last_updated"])
                last_activity = pick_latest_timestamp(last_activity, row["last_updated"])
            evaluation = extract_payload_data(row)
            if evaluation is None:
                continue
            element_id = resolve_payload_element_id(row, evaluation, title_map)
            if element_id is None:
                logger.debug("Skipping decision payload without a known element: %s",
                             row.get("process_decision_element"))
                continue
            slot = SLOTS_BY_ELEMENT_ID[element_id]
            PAYLOAD_APPLIERS[slot.key](evaluation, form_data, geospatial_results, checklist)

    if process_id is not None:
        for event in fetch_process_case_events(process_id, store=store):
            timestamp = event.get("last_updated") if isinstance(event.get("last_updated"), str) else None
            if timestamp:
                last_updated = pick_latest_timestamp(last_updated, timestamp)
            event_type = event.get("type")
            if event_type == EVENT_PROJECT_INITIATED:
                project_initiated = pick_latest_timestamp(project_initiated, timestamp)
            elif event_type == EVENT_PRE_SCREENING_INITIATED:
                pre_screening_initiated = pick_latest_timestamp(pre_screening_initiated, timestamp)
                last_activity = pick_latest_timestamp(last_activity, timestamp)
            elif event_type == EVENT_PRE_SCREENING_COMPLETE:
                pre_screening_completed = pick_latest_timestamp(pre_screening_completed, timestamp)
                last_activity = pick_latest_timestamp(last_activity, timestamp)

        try:
            project_report = document_service.fetch_latest_project_report(process_id, store=store)
        except (ProjectPersistenceError, requests.RequestException) as exc:
            logger.warning("Failed to load project report metadata: %s", exc, extra={"project_id": project_id})
        try:
            supporting_documents = document_service.list_supporting_documents(process_id, store=store)
        except (ProjectPersistenceError, requests.RequestException) as exc:
            logger.warning("Failed to load supporting documents: %s", exc, extra={"project_id": project_id})

    geospatial_results.setdefault("messages", [])

    return {
        "formData": form_data,
        "geospatialResults": geospatial_results,
        "permittingChecklist": checklist,
        "lastUpdated": last_updated,
        "gisUpload": gis_upload,
        "portalProgress": {
            "projectSnapshot": {"initiatedAt": project_initiated},
            "preScreening": {
                "hasDecisionPayloads": has_payloads,
                "initiatedAt": pre_screening_initiated,
                "completedAt": pre_screening_completed,
                "lastActivityAt": last_activity,
            },
        },
        "preScreeningProcessId": process_id,
        "projectReport": project_report,
        "supportingDocuments": supporting_documents,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Hierarchy
# ═════════════════════════════════════════════════════════════════════════════

def _group_permits_by_process(payloads: list[dict]) -> dict[int, list[dict]]:
    permits_by_process: dict[int, list[dict]] = {}
    for payload in payloads:
        process_id = parse_numeric_id(payload.get("process"))
        evaluation = payload.get("evaluation_data")
        if process_id is None or not isinstance(evaluation, dict) or "permits" not in evaluation:
            continue
        permits = parse_checklist_items(evaluation["permits"])
        if permits:
            permits_by_process[process_id] = permits
    return permits_by_process


def _group_events_by_process(events: list[dict]) -> dict[int, list[dict]]:
    events_by_process: dict[int, list[dict]] = {}
    for row in events:
        process_id = parse_numeric_id(row.get("parent_process_id"))
        event_id = parse_numeric_id(row.get("id"))
        if process_id is None or event_id is None:
            continue
        summary = {
            "id": event_id,
            "eventType": row.get("type") if isinstance(row.get("type"), str) else None,
            "lastUpdated": row.get("last_updated") if isinstance(row.get("last_updated"), str) else None,
        }
        if row.get("other") is not None:
            summary["data"] = row["other"]
        events_by_process.setdefault(process_id, []).append(summary)
    return events_by_process


def _pick_checklist(processes: list[dict], permits_by_process: dict[int, list[dict]]) -> list[dict]:
    for process in processes:
        haystack = f"{process.get('title') or ''} {process.get('description') or ''}".lower()
        if "pre-screening" in haystack:
            return permits_by_process.get(process["id"], [])
    for process in processes:
        if permits_by_process.get(process["id"]):
            return permits_by_process[process["id"]]
    return []


def fetch_project_hierarchy(*, store: StoreGateway | None = None) -> list[dict]:
    """Portal projects with their processes, case events and checklist, newest first."""
    store = store or get_store("portal")
    store.require_credentials()

    projects = store.fetch_list(
        "project",
        StoreQuery()
        .select("id", "title", "description", "last_updated", "location_object")
        .eq("data_source_system", DATA_SOURCE_SYSTEM)
        .order("last_updated", descending=True, nulls_last=True),
        "projects",
    )
    project_ids = [pid for pid in (parse_numeric_id(row.get("id")) for row in projects) if pid is not None]
    if not project_ids:
        return []

    processes = store.fetch_list(
        "process_instance",
        StoreQuery()
        .select("id", "parent_project_id", "title:description", "description",
                "last_updated", "created_at", "data_source_system")
        .in_("parent_project_id", project_ids)
        .eq("data_source_system", DATA_SOURCE_SYSTEM),
        "processes",
    )
    process_ids = [pid for pid in (parse_numeric_id(row.get("id")) for row in processes) if pid is not None]

    payloads: list[dict] = []
    events: list[dict] = []
    if process_ids:
        payloads = store.fetch_list(
            "process_decision_payload",
            StoreQuery()
            .select("process", "evaluation_data", "last_updated")
            .eq("data_source_system", DATA_SOURCE_SYSTEM)
            .in_("process", process_ids)
            .order("last_updated")
            .limit(1000),
            "decision payloads",
        )
        events = store.fetch_list(
            "case_event",
            StoreQuery()
            .select("id", "parent_process_id", "type", "last_updated", "other")
            .in_("parent_process_id", process_ids)
            .eq("data_source_system", DATA_SOURCE_SYSTEM),
            "case events",
        )

    permits_by_process = _group_permits_by_process(payloads)
    events_by_process = _group_events_by_process(events)

    processes_by_project: dict[int, list[dict]] = {}
    for row in processes:
        project_id = parse_numeric_id(row.get("parent_project_id"))
        process_id = parse_numeric_id(row.get("id"))
        if project_id is None or process_id is None:
            continue
        description = row.get("description") if isinstance(row.get("description"), str) else None
        processes_by_project.setdefault(project_id, []).append({
            "id": process_id,
            "title": row.get("title") if isinstance(row.get("title"), str) else description,
            "description": description,
            "lastUpdated": row.get("last_updated") if isinstance(row.get("last_updated"), str) else None,
            "createdTimestamp": row.get("created_at") if isinstance(row.get("created_at"), str) else None,
            "caseEvents": sort_by_timestamp_desc(events_by_process.get(process_id, []), "lastUpdated"),
        })

    hierarchy = []
    for row in projects:
        project_id = parse_numeric_id(row.get("id"))
        if project_id is None:
            continue
        project_processes = sort_by_timestamp_desc(processes_by_project.get(project_id, []), "lastUpdated")
        hierarchy.append({
            "project": {
                "id": project_id,
                "title": row.get("title") if isinstance(row.get("title"), str) else None,
                "description": row.get("description") if isinstance(row.get("description"), str) else None,
                "lastUpdated": row.get("last_updated") if isinstance(row.get("last_updated"), str) else None,
                "geometry": safe_stringify_json(row.get("location_object")),
            },
            "processes": project_processes,
            "permittingChecklist": _pick_checklist(project_processes, permits_by_process),
        })

    return _sort_hierarchy(hierarchy)


def _sort_hierarchy(hierarchy: list[dict]) -> list[dict]:
    keyed = [{"entry": entry, "lastUpdated": entry["project"]["lastUpdated"]} for entry in hierarchy]
    return [item["entry"] for item in sort_by_timestamp_desc(keyed, "lastUpdated")]


# ═════════════════════════════════════════════════════════════════════════════
# Delete cascade
# ═════════════════════════════════════════════════════════════════════════════

def delete_project_and_related_data(project_id: Any, *, store: StoreGateway | None = None) -> None:
    """Remove a portal project with its documents, payloads, events, GIS row and processes.

    Only rows carrying the portal data-source marker are touched.
    """
    project_id = _require_project_id(project_id)
    store = store or get_store("portal")
    store.require_credentials()

    processes = store.fetch_list(
        "process_instance",
        StoreQuery().select("id").eq("parent_project_id", project_id).eq("data_source_system", DATA_SOURCE_SYSTEM),
        "process instances",
    )
    process_ids = [pid for pid in (parse_numeric_id(row.get("id")) for row in processes) if pid is not None]

    for process_id in process_ids:
        scoped = StoreQuery().eq("parent_process_id", process_id).eq("data_source_system", DATA_SOURCE_SYSTEM)
        store.delete("document", scoped, description="documents")
        replace_decision_payloads(process_id, [], store=store)
        store.delete(
            "case_event",
            StoreQuery().eq("parent_process_id", process_id).eq("data_source_system", DATA_SOURCE_SYSTEM),
            description="case events",
        )

    gis_service.delete_project_gis_data(project_id, store=store)
    store.delete(
        "process_instance",
        StoreQuery().eq("parent_project_id", project_id).eq("data_source_system", DATA_SOURCE_SYSTEM),
        description="process instances",
    )
    store.delete(
        "project",
        StoreQuery().eq("id", project_id).eq("data_source_system", DATA_SOURCE_SYSTEM),
        description="project",
    )
    logger.info("Deleted project %s and %d process instance(s)", project_id, len(process_ids),
                extra={"project_id": project_id})
