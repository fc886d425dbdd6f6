"""
Decision Payload Builder — turns form state into decision payload records.

A pre-screening process instance is judged against seven well-known decision
element slots. For every slot, in fixed order, the builder produces one
record:

    {process, process_decision_element, project, data_source_system,
     last_updated, retrieved_timestamp, evaluation_data}

``evaluation_data`` always carries an ``id``/``title`` pair. When the
catalog has no element for the slot, ``id`` falls back to the slot title so
the payload stays self-describing and the loader/evaluator can still tell
which slot it belongs to.

Inputs use the wire shapes of the portal:
    form_data           — dict with snake_case project fields
    geospatial_results  — {"nepassist": {...}, "ipac": {...}, "lastRunAt", "messages"}
    checklist           — [{"label", "completed", "notes", "source", "link"}]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from permit_portal.utils.helpers import (
    empty_to_null,
    is_non_empty_object,
    normalize_number,
    normalize_string,
    parse_delimited_list,
    parse_timestamp,
    safe_json_parse,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

DATA_SOURCE_SYSTEM = "project-portal"

NEPASSIST_LABEL = "Ward Assessment"
IPAC_LABEL = "Ley Line Registry"

GEOSPATIAL_STATUSES = ("idle", "loading", "success", "error")

# Project columns that may appear in the project-details payload
CEQ_PROJECT_FIELDS = (
    "id",
    "created_at",
    "title",
    "description",
    "sector",
    "lead_agency",
    "participating_agencies",
    "location_lat",
    "location_lon",
    "location_object",
    "type",
    "funding",
    "start_date",
    "current_status",
    "sponsor",
    "sponsor_contact",
    "parent_project_id",
    "location_text",
    "other",
    "record_owner_agency",
    "data_source_agency",
    "data_source_system",
    "data_record_version",
    "last_updated",
    "retrieved_timestamp",
)


# ═════════════════════════════════════════════════════════════════════════════
# Slot catalog
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class BuildContext:
    element_id: int | None
    project_record: dict
    geospatial_results: dict
    checklist: list
    form_data: dict


@dataclass(frozen=True)
class DecisionSlot:
    """One of the seven decision element slots of the pre-screening model."""

    element_id: int
    key: str
    title: str
    build: Callable[[BuildContext], dict]


def _with_element_id(ctx: BuildContext, data: dict) -> dict:
    if isinstance(ctx.element_id, int) and not isinstance(ctx.element_id, bool):
        return {"id": ctx.element_id, **data}
    return data


# ── Geospatial helpers ────────────────────────────────────────────────────

def _service(results: dict, name: str) -> dict:
    service = (results or {}).get(name)
    return service if isinstance(service, dict) else {}


def should_include_service(service: dict | None) -> bool:
    """True when a screening service carries any signal worth reporting."""
    if not service:
        return False
    status = service.get("status")
    if status and status != "idle":
        return True
    summary = service.get("summary")
    if summary is not None:
        if isinstance(summary, (list, dict)):
            if summary:
                return True
        else:
            return True
    if service.get("raw") is not None:
        return True
    if service.get("error"):
        return True
    if is_non_empty_object(service.get("meta")):
        return True
    return False


def has_meaningful_geospatial_results(results: dict) -> bool:
    results = results or {}
    if results.get("lastRunAt"):
        return True
    messages = results.get("messages")
    if isinstance(messages, list) and messages:
        return True

    nepassist = _service(results, "nepassist")
    if nepassist.get("status", "idle") != "idle":
        return True
    summary = nepassist.get("summary")
    if isinstance(summary, list) and summary:
        return True
    if nepassist.get("error"):
        return True

    ipac = _service(results, "ipac")
    if ipac.get("status", "idle") != "idle":
        return True
    if ipac.get("summary"):
        return True
    if ipac.get("error"):
        return True
    return False


def sanitize_geospatial_service(service: dict) -> dict:
    """Status/summary/error/meta only; the raw screening response is dropped."""
    sanitized: dict[str, Any] = {"status": service.get("status", "idle")}
    if "summary" in service:
        sanitized["summary"] = service["summary"]
    error = service.get("error")
    if isinstance(error, str) and error:
        sanitized["error"] = error
    if isinstance(service.get("meta"), dict) and service["meta"]:
        sanitized["meta"] = service["meta"]
    return sanitized


def format_service_status(name: str, service: dict) -> str | None:
    status = service.get("status")
    if status == "success":
        return f"{name}: results available"
    if status == "error":
        detail = normalize_string(service.get("error"))
        return f"{name}: {detail}" if detail else f"{name}: error"
    if status == "loading":
        return f"{name}: running"
    return None


def format_last_run(value: str) -> str:
    parsed = parse_timestamp(value)
    return parsed.strftime("%Y-%m-%d %H:%M UTC") if parsed else value


def build_resource_entries(results: dict) -> list[dict]:
    entries = []
    for name, label in (("nepassist", NEPASSIST_LABEL), ("ipac", IPAC_LABEL)):
        service = _service(results, name)
        if not should_include_service(service):
            continue
        entry: dict[str, Any] = {
            "name": label,
            "summary": empty_to_null(service.get("summary")),
            "error": normalize_string(service.get("error")),
        }
        if service.get("status") is not None:
            entry["status"] = service["status"]
        if is_non_empty_object(service.get("meta")):
            entry["meta"] = service["meta"]
        entries.append(entry)
    return entries


def build_resource_summary(results: dict) -> str | None:
    results = results or {}
    sections: list[str] = []
    if results.get("lastRunAt"):
        sections.append(f"Last screening run: {format_last_run(results['lastRunAt'])}")
    for name, label in (("nepassist", NEPASSIST_LABEL), ("ipac", IPAC_LABEL)):
        line = format_service_status(label, _service(results, name))
        if line:
            sections.append(line)
    messages = results.get("messages")
    if isinstance(messages, list) and messages:
        sections.append("\n".join(str(m) for m in messages))
    return "\n\n".join(sections) if sections else None


# ── Project record ────────────────────────────────────────────────────────

def normalize_contact(contact: Any) -> dict | None:
    if not isinstance(contact, dict):
        return None
    normalized = {}
    for field in ("name", "organization", "email", "phone"):
        value = normalize_string(contact.get(field))
        if value:
            normalized[field] = value
    return normalized or None


def parse_location_object(value: Any) -> tuple[Any, str | None]:
    """Return ``(parsed_value, raw_text_if_invalid)`` for a location object string."""
    normalized = normalize_string(value)
    if not normalized:
        return None, None
    parsed = safe_json_parse(normalized)
    if parsed is None and normalized != "null":
        return None, value
    return parsed, None


def build_other_payload(form_data: dict, geospatial_results: dict, invalid_location: str | None) -> dict | None:
    other: dict[str, Any] = {}
    notes = normalize_string(form_data.get("other"))
    if notes:
        other["notes"] = notes

    if has_meaningful_geospatial_results(geospatial_results):
        geospatial: dict[str, Any] = {}
        last_run = normalize_string(geospatial_results.get("lastRunAt"))
        if last_run:
            geospatial["lastRunAt"] = last_run
        messages = geospatial_results.get("messages")
        if isinstance(messages, list) and messages:
            geospatial["messages"] = messages
        geospatial["nepassist"] = sanitize_geospatial_service(_service(geospatial_results, "nepassist"))
        geospatial["ipac"] = sanitize_geospatial_service(_service(geospatial_results, "ipac"))
        other["geospatial"] = geospatial

    if invalid_location:
        other["invalidLocationObject"] = invalid_location

    return other or None


def build_project_record(
    form_data: dict,
    geospatial_results: dict,
    numeric_id: int | None,
) -> dict:
    """Portal ``project`` row built from the form; ``id`` only when numeric."""
    location_value, invalid_location = parse_location_object(form_data.get("location_object"))
    record: dict[str, Any] = {}
    if numeric_id is not None:
        record["id"] = numeric_id
    record.update({
        "title": normalize_string(form_data.get("title")),
        "description": normalize_string(form_data.get("description")),
        "sector": normalize_string(form_data.get("sector")),
        "lead_agency": normalize_string(form_data.get("lead_agency")),
        "participating_agencies": normalize_string(form_data.get("participating_agencies")),
        "sponsor": normalize_string(form_data.get("sponsor")),
        "funding": normalize_string(form_data.get("funding")),
        "location_text": normalize_string(form_data.get("location_text")),
        "location_lat": normalize_number(form_data.get("location_lat")),
        "location_lon": normalize_number(form_data.get("location_lon")),
        "location_object": location_value,
        "sponsor_contact": normalize_contact(form_data.get("sponsor_contact")),
        "other": build_other_payload(form_data, geospatial_results or {}, invalid_location),
    })
    return record


# ── Slot payload builders ─────────────────────────────────────────────────

def _sanitize_other_for_payload(value: Any) -> dict | None:
    if value is None:
        return None
    if isinstance(value, str):
        notes = normalize_string(value)
        return {"notes": notes} if notes else None
    if not isinstance(value, dict):
        return None
    notes = normalize_string(value.get("notes"))
    return {"notes": notes} if notes else None


def pick_ceq_project_details(record: dict) -> dict:
    selected = {}
    for field in CEQ_PROJECT_FIELDS:
        if field not in record:
            continue
        if field == "other":
            selected["other"] = _sanitize_other_for_payload(record["other"])
            continue
        selected[field] = record[field]
    return selected


def build_project_details_payload(ctx: BuildContext) -> dict:
    details = pick_ceq_project_details(ctx.project_record)
    return _with_element_id(ctx, {"project": details or None})


def build_nepassist_payload(ctx: BuildContext) -> dict:
    service = _service(ctx.geospatial_results, "nepassist")
    return _with_element_id(ctx, {
        "nepa_assist_raw": empty_to_null(service.get("raw")),
        "nepa_assist_summary": empty_to_null(service.get("summary")),
    })


def build_ipac_payload(ctx: BuildContext) -> dict:
    service = _service(ctx.geospatial_results, "ipac")
    return _with_element_id(ctx, {
        "ipac_raw": empty_to_null(service.get("raw")),
        "ipac_summary": empty_to_null(service.get("summary")),
    })


def _permit_entry(item: dict) -> dict:
    entry: dict[str, Any] = {}
    if item.get("label") is not None:
        entry["label"] = normalize_string(item["label"]) or item["label"]
    if item.get("completed") is not None:
        entry["completed"] = item["completed"]
    notes = normalize_string(item.get("notes"))
    if notes is not None:
        entry["notes"] = notes
    if item.get("source") is not None:
        entry["source"] = item["source"]
    link = item.get("link")
    if isinstance(link, dict):
        link_entry = {}
        for field in ("href", "label"):
            if link.get(field) is not None:
                link_entry[field] = normalize_string(link[field]) or link[field]
        entry["link"] = link_entry
    return entry


def build_permit_notes_payload(ctx: BuildContext) -> dict:
    permits = [
        entry for entry in (_permit_entry(item) for item in ctx.checklist or [] if isinstance(item, dict))
        if entry
    ]
    return _with_element_id(ctx, {
        "permits": permits or None,
        "notes": normalize_string(ctx.form_data.get("other")),
    })


def build_categorical_rationale(form_data: dict) -> str | None:
    sections: list[str] = []
    extraordinary = normalize_string(form_data.get("nepa_extraordinary_circumstances"))
    if extraordinary:
        sections.append(extraordinary)
    conformance = normalize_string(form_data.get("nepa_conformance_conditions"))
    if conformance and conformance not in sections:
        sections.append(conformance)
    return "\n\n".join(sections) if sections else None


def build_categorical_exclusion_payload(ctx: BuildContext) -> dict:
    candidates = parse_delimited_list(ctx.form_data.get("nepa_categorical_exclusion_code"))
    return _with_element_id(ctx, {
        "ce_candidates": candidates or None,
        "rationale": build_categorical_rationale(ctx.form_data),
    })


def build_conditions_payload(ctx: BuildContext) -> dict:
    conditions = parse_delimited_list(ctx.form_data.get("nepa_conformance_conditions"))
    return _with_element_id(ctx, {"conditions": conditions or None})


def build_resource_notes_payload(ctx: BuildContext) -> dict:
    resources = build_resource_entries(ctx.geospatial_results)
    return _with_element_id(ctx, {
        "resources": resources or None,
        "summary": build_resource_summary(ctx.geospatial_results),
        "notes": normalize_string(ctx.form_data.get("nepa_extraordinary_circumstances")),
    })


DECISION_SLOTS: tuple[DecisionSlot, ...] = (
    DecisionSlot(1, "project_details", "Provide complete project details",
                 build_project_details_payload),
    DecisionSlot(2, "nepassist", "Confirm or upload Ward Assessment results if auto fetch fails",
                 build_nepassist_payload),
    DecisionSlot(3, "ipac", "Confirm or upload Ley Line Registry results if auto fetch fails",
                 build_ipac_payload),
    DecisionSlot(4, "permit_notes", "Provide permit applicability notes",
                 build_permit_notes_payload),
    DecisionSlot(5, "categorical_exclusion", "Enter CE references and rationale",
                 build_categorical_exclusion_payload),
    DecisionSlot(6, "conditions", "List applicable conditions and notes",
                 build_conditions_payload),
    DecisionSlot(7, "resource_notes", "Provide resource-by-resource notes",
                 build_resource_notes_payload),
)

SLOTS_BY_ELEMENT_ID: dict[int, DecisionSlot] = {slot.element_id: slot for slot in DECISION_SLOTS}


# ═════════════════════════════════════════════════════════════════════════════
# Record assembly
# ═════════════════════════════════════════════════════════════════════════════

def add_payload_metadata(slot: DecisionSlot, evaluation_data: dict) -> dict:
    """Stamp the stable ``id``/``title`` pair onto a slot's evaluation data."""
    id_value = evaluation_data.get("id")
    if isinstance(id_value, (int, float)) and not isinstance(id_value, bool):
        resolved_id: Any = id_value
    elif isinstance(id_value, str) and id_value.strip():
        resolved_id = id_value
    else:
        resolved_id = slot.title
    return {
        **evaluation_data,
        "id": resolved_id,
        "title": normalize_string(evaluation_data.get("title")) or slot.title,
    }


def _build_context(slot_element: dict | None, project_record, geospatial_results, checklist, form_data) -> BuildContext:
    element_id = slot_element.get("id") if slot_element else None
    return BuildContext(
        element_id=element_id if isinstance(element_id, int) else None,
        project_record=project_record or {},
        geospatial_results=geospatial_results or {},
        checklist=checklist or [],
        form_data=form_data or {},
    )


def build_decision_payload_records(
    process_instance_id: int,
    project_record: dict,
    geospatial_results: dict,
    checklist: list,
    form_data: dict,
    decision_elements: dict[int, dict] | None = None,
    *,
    timestamp: str | None = None,
) -> list[dict]:
    """Build one decision payload record per slot, in slot order.

    Args:
        process_instance_id: Owning process instance.
        project_record: Output of ``build_project_record``.
        geospatial_results: Cached screening results.
        checklist: Permitting checklist items.
        form_data: Current form values (free-text notes live here).
        decision_elements: Catalog rows keyed by element id; a slot without
            an element gets fallback metadata and a warning.
        timestamp: ``last_updated``/``retrieved_timestamp`` (default now).

    Returns:
        Seven records ready for insertion.
    """
    decision_elements = decision_elements or {}
    timestamp = timestamp or utc_now_iso()
    project_id = normalize_number(project_record.get("id"))

    records = []
    for slot in DECISION_SLOTS:
        element = decision_elements.get(slot.element_id)
        if element is None:
            logger.warning(
                'Decision element "%s" is not configured; using fallback payload metadata.',
                slot.title,
            )
        ctx = _build_context(element, project_record, geospatial_results, checklist, form_data)
        evaluation_data = add_payload_metadata(slot, slot.build(ctx))
        records.append({
            "process": process_instance_id,
            "process_decision_element": element.get("id") if element else None,
            "project": project_id,
            "data_source_system": DATA_SOURCE_SYSTEM,
            "last_updated": timestamp,
            "retrieved_timestamp": timestamp,
            "evaluation_data": evaluation_data,
        })
    return records


def build_evaluation_records(
    project_record: dict,
    geospatial_results: dict,
    checklist: list,
    form_data: dict,
) -> list[dict]:
    """Slot payloads without process/catalog binding, for dry-run evaluation."""
    return [
        {
            "evaluation_data": add_payload_metadata(
                slot,
                slot.build(_build_context(None, project_record, geospatial_results, checklist, form_data)),
            )
        }
        for slot in DECISION_SLOTS
    ]
