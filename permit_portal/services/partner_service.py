"""
Partner systems — PermitFlow and ReviewWorks.

Both partners run the same store dialect but differ in what they expect on
submission, so each is described by a ``PartnerProfile``:

  - the project payload shape (PermitFlow mirrors most portal fields,
    ReviewWorks a reduced set),
  - the process instance created for a new submission,
  - the decision payload and case event rows seeded with it,
  - the process columns read back for status and analytics.

Writes use the partner user's access token obtained via ``authenticate``;
reads use the anon key. The process label shown in the portal is
"Court Registry Decree" for PermitFlow and "Complex Review" for ReviewWorks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

import requests

from permit_portal.core.exceptions import CreationFailedError, ProjectPersistenceError
from permit_portal.integrations.postgrest import StoreQuery
from permit_portal.integrations.store_gateway import StoreGateway, get_store
from permit_portal.services import project_matcher
from permit_portal.services.payload_builder import DATA_SOURCE_SYSTEM, normalize_contact
from permit_portal.utils.helpers import (
    normalize_number,
    normalize_string,
    parse_numeric_id,
    sort_by_timestamp_desc,
    strip_none,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

PARTNER_PROCESS_MODEL_ID = 1

CASE_EVENT_COLUMNS = ("id", "parent_process_id", "name", "type", "status", "last_updated", "other")


# ═════════════════════════════════════════════════════════════════════════════
# Payload builders
# ═════════════════════════════════════════════════════════════════════════════

def _form_numeric_id(form_data: dict) -> int | None:
    raw = form_data.get("id")
    normalized = str(raw) if isinstance(raw, (int, float)) and not isinstance(raw, bool) else normalize_string(raw)
    return parse_numeric_id(normalized) if normalized else None


def _nepa_other(form_data: dict, extra: dict | None = None) -> dict | None:
    other = strip_none({
        **(extra or {}),
        "nepa_categorical_exclusion_code": normalize_string(form_data.get("nepa_categorical_exclusion_code")),
        "nepa_conformance_conditions": normalize_string(form_data.get("nepa_conformance_conditions")),
        "nepa_extraordinary_circumstances": normalize_string(form_data.get("nepa_extraordinary_circumstances")),
        "additional_notes": normalize_string(form_data.get("other")),
    })
    return other or None


def build_permitflow_project_payload(form_data: dict, user_id: str | None = None) -> dict:
    timestamp = utc_now_iso()
    return strip_none({
        "id": _form_numeric_id(form_data),
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
        "location_object": normalize_string(form_data.get("location_object")),
        "sponsor_contact": normalize_contact(form_data.get("sponsor_contact")),
        "other": _nepa_other(form_data),
        "user_id": normalize_string(user_id),
        "current_status": "draft",
        "data_source_system": DATA_SOURCE_SYSTEM,
        "last_updated": timestamp,
        "retrieved_timestamp": timestamp,
    })


def build_reviewworks_project_payload(form_data: dict, user_id: str | None = None) -> dict:
    return strip_none({
        "id": _form_numeric_id(form_data),
        "title": normalize_string(form_data.get("title")),
        "description": normalize_string(form_data.get("description")),
        "sector": normalize_string(form_data.get("sector")),
        "lead_agency": normalize_string(form_data.get("lead_agency")),
        "type": normalize_string(form_data.get("sector")),
        "location_lat": normalize_number(form_data.get("location_lat")),
        "location_lon": normalize_number(form_data.get("location_lon")),
        "location_text": normalize_string(form_data.get("location_text")),
        "current_status": "draft",
        "other": _nepa_other(form_data, {"applicant_user_id": normalize_string(user_id)}),
        "last_updated": utc_now_iso(),
    })


def _permitflow_process(project_id: int, timestamp: str) -> dict:
    return {
        "parent_project_id": project_id,
        "process_model": PARTNER_PROCESS_MODEL_ID,
        "status": "draft",
        "start_date": timestamp.split("T")[0],
    }


def _reviewworks_process(project_id: int, timestamp: str) -> dict:
    return {
        "parent_project_id": project_id,
        "process_model": PARTNER_PROCESS_MODEL_ID,
        "status": "underway",
        "stage": "Step 2: Project Information",
        "start_date": timestamp.split("T")[0],
        "other": {"current_step": 2, "workflow_status": "draft"},
    }


def _project_information(form_data: dict) -> dict:
    return {
        "title": normalize_string(form_data.get("title")),
        "description": normalize_string(form_data.get("description")),
        "sector": normalize_string(form_data.get("sector")),
        "lead_agency": normalize_string(form_data.get("lead_agency")),
        "location_text": normalize_string(form_data.get("location_text")),
    }


def _permitflow_payloads(ctx: "SubmissionContext") -> list[dict]:
    base = {"process": ctx.process_id, "project": ctx.project_id}
    return [
        {**base, "process_decision_element": 1, "evaluation_data": {
            "provider": DATA_SOURCE_SYSTEM,
            "user_id": ctx.user_id,
            "email": ctx.user_email,
            "authenticated_at": ctx.timestamp,
            "external_system_name": "CEQ Project Portal",
        }},
        {**base, "process_decision_element": 2, "evaluation_data": _project_information(ctx.form_data)},
        {**base, "process_decision_element": 3, "evaluation_data": {}},
    ]


def _reviewworks_payloads(ctx: "SubmissionContext") -> list[dict]:
    base = {"process": ctx.process_id, "project": ctx.project_id}
    return [
        {**base, "process_decision_element": 1, "result": "completed", "result_bool": True,
         "evaluation_data": {"user_id": ctx.user_id, "authenticated_at": ctx.timestamp}},
        {**base, "process_decision_element": 2, "evaluation_data": _project_information(ctx.form_data)},
    ]


def _permitflow_events(ctx: "SubmissionContext") -> list[dict]:
    base = {
        "parent_process_id": ctx.process_id,
        "status": "completed",
        "source": DATA_SOURCE_SYSTEM,
        "datetime": ctx.timestamp,
    }
    title = ctx.form_data.get("title") or "Untitled"
    return [
        {**base, "name": "Project Started", "type": "project_started",
         "description": f"Permit application started for project: {title}"},
        {**base, "name": "Form Saved", "type": "form_saved", "description": "User id form data saved"},
        {**base, "name": "Form Saved", "type": "form_saved",
         "description": "Project Information form data saved"},
    ]


def _reviewworks_events(ctx: "SubmissionContext") -> list[dict]:
    title = ctx.form_data.get("title") or "Untitled"
    return [
        {
            "parent_process_id": ctx.process_id,
            "name": "Project Started",
            "description": f"Complex Review application started for project: {title}",
            "type": "task",
            "tier": 1,
            "status": "completed",
            "outcome": "completed",
            "other": {
                "step_number": 1,
                "decision_element_id": 1,
                "task_type": "form",
                "completed_by": ctx.user_id,
                "completed_at": ctx.timestamp,
            },
        },
        {
            "parent_process_id": ctx.process_id,
            "name": "Complete Project Information",
            "description": "Fill out the project information form to proceed",
            "type": "task",
            "tier": 2,
            "status": "pending",
            "assigned_entity": ctx.user_id,
            "other": {
                "step_number": 2,
                "decision_element_id": 2,
                "assigned_user_id": ctx.user_id,
                "assigned_role_id": 1,
                "task_type": "form",
            },
        },
    ]


# ═════════════════════════════════════════════════════════════════════════════
# Profiles
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SubmissionContext:
    form_data: dict
    project_id: int
    process_id: int
    user_id: str | None
    user_email: str | None
    timestamp: str


@dataclass(frozen=True)
class PartnerProfile:
    system: str
    process_label: str
    build_project_payload: Callable[[dict, str | None], dict]
    build_process_payload: Callable[[int, str], dict]
    build_decision_payloads: Callable[[SubmissionContext], list[dict]]
    build_case_events: Callable[[SubmissionContext], list[dict]]
    status_columns: tuple[str, ...]
    process_model_id: int = PARTNER_PROCESS_MODEL_ID


PARTNER_PROFILES: dict[str, PartnerProfile] = {
    "permitflow": PartnerProfile(
        system="permitflow",
        process_label="Court Registry Decree",
        build_project_payload=build_permitflow_project_payload,
        build_process_payload=_permitflow_process,
        build_decision_payloads=_permitflow_payloads,
        build_case_events=_permitflow_events,
        status_columns=("id", "parent_project_id", "description", "last_updated",
                        "created_at", "process_model", "status"),
    ),
    "reviewworks": PartnerProfile(
        system="reviewworks",
        process_label="Complex Review",
        build_project_payload=build_reviewworks_project_payload,
        build_process_payload=_reviewworks_process,
        build_decision_payloads=_reviewworks_payloads,
        build_case_events=_reviewworks_events,
        status_columns=("id", "parent_project_id", "description", "last_updated",
                        "created_at", "process_model", "status", "stage", "other"),
    ),
}


def get_profile(system: str) -> PartnerProfile:
    """Raises KeyError for unknown partner systems."""
    return PARTNER_PROFILES[system]


def _string_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def build_process_summary(row: dict, label: str, events: list[dict] | None = None) -> dict | None:
    process_id = parse_numeric_id(row.get("id"))
    if process_id is None:
        return None
    summary = {
        "id": process_id,
        "title": label,
        "description": _string_or_none(row.get("description")),
        "lastUpdated": _string_or_none(row.get("last_updated")),
        "createdTimestamp": _string_or_none(row.get("created_at")),
        "caseEvents": sort_by_timestamp_desc(events or [], "lastUpdated"),
    }
    for column in ("status", "stage"):
        if isinstance(row.get(column), str):
            summary[column] = row[column]
    return summary


def build_case_event_summary(row: dict) -> dict | None:
    event_id = parse_numeric_id(row.get("id"))
    if event_id is None:
        return None
    summary = {
        "id": event_id,
        "name": _string_or_none(row.get("name")),
        "eventType": _string_or_none(row.get("type")),
        "status": _string_or_none(row.get("status")),
        "lastUpdated": _string_or_none(row.get("last_updated")),
    }
    if row.get("other") is not None:
        summary["data"] = row["other"]
    return summary


# ═════════════════════════════════════════════════════════════════════════════
# Operations
# ═════════════════════════════════════════════════════════════════════════════

def authenticate(system: str, email: str, password: str) -> dict:
    """Password sign-in against a partner store.

    Returns:
        ``{"access_token", "user_id", "expires_in", "refresh_token"}``.
    """
    get_profile(system)
    return get_store(system).authenticate_password(email, password)


def submit_project(
    system: str,
    form_data: dict,
    access_token: str,
    user_id: str | None,
    user_email: str | None = None,
    *,
    store: StoreGateway | None = None,
) -> dict:
    """Mirror a portal project into a partner store.

    The project row is upserted. An existing process instance for the
    partner's process model is reused as is; otherwise a process instance is
    created together with its seed decision payloads and case events.

    Returns:
        ``{"project_id", "process_instance_id"}``.

    Raises:
        ProjectPersistenceError: Unconfigured store or a failed write.
        CreationFailedError: Project or process creation returned no id.
    """
    profile = get_profile(system)
    store = store or get_store(system)
    store.require_credentials()
    label = store.label
    timestamp = utc_now_iso()

    project_row = store.create(
        "project",
        profile.build_project_payload(form_data, user_id),
        upsert=True,
        access_token=access_token,
    )
    project_id = parse_numeric_id(project_row.get("id"))
    if project_id is None:
        raise CreationFailedError(f"{label} project creation did not return a valid ID.")

    existing = store.fetch_list(
        "process_instance",
        StoreQuery()
        .select("id")
        .eq("parent_project_id", project_id)
        .eq("process_model", profile.process_model_id)
        .limit(1),
        "process instance",
        error_context=f"{label} request failed",
        access_token=access_token,
    )
    existing_id = parse_numeric_id(existing[0].get("id")) if existing else None
    if existing_id is not None:
        return {"project_id": project_id, "process_instance_id": existing_id}

    process_row = store.create(
        "process_instance",
        profile.build_process_payload(project_id, timestamp),
        access_token=access_token,
    )
    process_id = parse_numeric_id(process_row.get("id"))
    if process_id is None:
        raise CreationFailedError(f"{label} process instance creation did not return a valid ID.")

    ctx = SubmissionContext(
        form_data=form_data,
        project_id=project_id,
        process_id=process_id,
        user_id=user_id,
        user_email=user_email,
        timestamp=timestamp,
    )
    store.create_batch("process_decision_payload", profile.build_decision_payloads(ctx), access_token=access_token)
    store.create_batch("case_event", profile.build_case_events(ctx), access_token=access_token)

    logger.info("Submitted project %s to %s (process %s)", project_id, label, process_id,
                extra={"system": system, "project_id": project_id, "process_id": process_id})
    return {"project_id": project_id, "process_instance_id": process_id}


def load_project_status(system: str, project_id: Any, *, store: StoreGateway | None = None) -> dict:
    """Existence, title and latest process of a partner project.

    Returns:
        ``{"exists": False, "projectId"}`` or ``{"exists": True, "projectId",
        "title", "lastUpdated", "process"}``.
    """
    profile = get_profile(system)
    store = store or get_store(system)
    store.require_credentials()
    label = store.label

    numeric_id = parse_numeric_id(project_id)
    if numeric_id is None:
        raise ProjectPersistenceError(f"{label} project identifiers must be numeric.")

    projects = store.fetch_list(
        "project",
        StoreQuery().select("id", "title", "last_updated").eq("id", numeric_id),
        "project",
        error_context=f"{label} request failed",
    )
    if not projects:
        return {"exists": False, "projectId": numeric_id}

    processes = store.fetch_list(
        "process_instance",
        StoreQuery()
        .select(*profile.status_columns)
        .eq("parent_project_id", numeric_id)
        .eq("process_model", profile.process_model_id),
        "process instances",
        error_context=f"{label} request failed",
    )
    processes = [row for row in processes if row.get("process_model") == profile.process_model_id]
    process = None
    if processes:
        process = build_process_summary(sort_by_timestamp_desc(processes, "last_updated")[0], profile.process_label)

    project = projects[0]
    return {
        "exists": True,
        "projectId": numeric_id,
        "title": normalize_string(project.get("title")) if isinstance(project.get("title"), str) else None,
        "lastUpdated": _string_or_none(project.get("last_updated")),
        "process": process,
    }


def update_project(
    system: str,
    form_data: dict,
    access_token: str,
    user_id: str | None,
    *,
    store: StoreGateway | None = None,
) -> None:
    """PATCH the partner project row with the current form values."""
    profile = get_profile(system)
    store = store or get_store(system)
    store.require_credentials()
    label = store.label

    numeric_id = _form_numeric_id(form_data)
    if not numeric_id:
        raise ProjectPersistenceError(f"A numeric project identifier is required to update {label}.")

    store.patch(
        "project",
        StoreQuery().eq("id", numeric_id),
        profile.build_project_payload(form_data, user_id),
        error_context=f"{label} update failed",
        access_token=access_token,
    )


def _fetch_processes_for_partner_projects(
    profile: PartnerProfile,
    partner_ids: list[int],
    store: StoreGateway,
) -> dict[int, list[dict]]:
    error_context = f"{store.label} request failed"
    rows = store.fetch_list(
        "process_instance",
        StoreQuery()
        .select("id", "parent_project_id", "description", "last_updated", "created_at", "process_model", "status")
        .in_("parent_project_id", partner_ids)
        .eq("process_model", profile.process_model_id),
        "process instances",
        error_context=error_context,
    )
    rows = [row for row in rows if row.get("process_model") == profile.process_model_id]
    process_ids = [pid for pid in (parse_numeric_id(row.get("id")) for row in rows) if pid is not None]

    events_by_process: dict[int, list[dict]] = {}
    if process_ids:
        events = store.fetch_list(
            "case_event",
            StoreQuery().select(*CASE_EVENT_COLUMNS).in_("parent_process_id", process_ids),
            "case events",
            error_context=error_context,
        )
        for row in events:
            process_id = parse_numeric_id(row.get("parent_process_id"))
            summary = build_case_event_summary(row)
            if process_id is not None and summary is not None:
                events_by_process.setdefault(process_id, []).append(summary)

    by_project: dict[int, list[dict]] = {}
    for row in rows:
        partner_project_id = parse_numeric_id(row.get("parent_project_id"))
        process_id = parse_numeric_id(row.get("id"))
        if partner_project_id is None or process_id is None:
            continue
        summary = build_process_summary(row, profile.process_label, events_by_process.get(process_id))
        by_project.setdefault(partner_project_id, []).append(summary)
    return {pid: sort_by_timestamp_desc(summaries, "lastUpdated") for pid, summaries in by_project.items()}


def load_processes_for_projects(
    system: str,
    projects: list[dict],
    *,
    persist_links: bool = False,
    store: StoreGateway | None = None,
) -> dict[int, list[dict]]:
    """Partner process summaries keyed by portal project id.

    Projects are matched by title; read failures are logged and give an
    empty result. With ``persist_links`` the matches are stored as
    ``ProjectLink`` rows (requires an app context).
    """
    profile = get_profile(system)
    store = store or get_store(system)
    if not store.is_configured:
        return {}

    try:
        matches = project_matcher.match_projects(system, projects, store=store)
    except (ProjectPersistenceError, requests.RequestException) as exc:
        logger.warning("Failed to load %s %s processes: %s", store.label, profile.process_label, exc,
                       extra={"system": system})
        return {}

    if persist_links:
        portal_ids = [pid for pid in (parse_numeric_id(p.get("id")) for p in projects) if pid is not None]
        project_matcher.record_project_links(system, matches, portal_project_ids=portal_ids)

    mapping = project_matcher.match_mapping(matches)
    if not mapping:
        return {}
    try:
        processes = _fetch_processes_for_partner_projects(profile, sorted(set(mapping.values())), store)
    except (ProjectPersistenceError, requests.RequestException) as exc:
        logger.warning("Failed to load %s %s processes: %s", store.label, profile.process_label, exc,
                       extra={"system": system})
        return {}

    return {
        portal_id: processes[partner_id]
        for portal_id, partner_id in mapping.items()
        if processes.get(partner_id)
    }
