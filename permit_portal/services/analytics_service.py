"""
Analytics Aggregator — daily completion counts and cycle times.

An unordered case event log becomes one ``AnalyticsPoint`` per calendar day
between the first and last completion date, inclusive:

    {"date": "2024-03-01", "completionCount": 1, "averageCompletionDays": 5.0,
     "durationSampleSize": 1, "durationTotalDays": 5.0}

Days without completions are still emitted with null count/average and a
sample size of 0 so charts get a continuous axis without zero bars.

Per process the first completion-marker event (timestamp ascending) counts.
What marks completion depends on the process family:

  - portal pre-screening: event type "Pre-screening complete"; the cycle
    starts at the latest "Pre-screening initiated" at or before it
  - PermitFlow: status (else type) in {complete, completed, done}; the cycle
    starts at the process ``created_at``
  - ReviewWorks: as PermitFlow, or ``other.outcome == "approved"``

Averages are rounded half-up to two decimals; duration totals are raw sums.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

import requests

from permit_portal.core.exceptions import ProjectPersistenceError
from permit_portal.integrations.postgrest import StoreQuery
from permit_portal.integrations.store_gateway import StoreGateway, get_store
from permit_portal.services.payload_builder import DATA_SOURCE_SYSTEM
from permit_portal.services.process_service import (
    EVENT_PRE_SCREENING_COMPLETE,
    EVENT_PRE_SCREENING_INITIATED,
)
from permit_portal.utils.helpers import coerce_json_object, parse_numeric_id, parse_timestamp

logger = logging.getLogger(__name__)

COMPLETION_STATUSES = frozenset({"complete", "completed", "done"})
PARTNER_PROCESS_MODEL_ID = 1

_SECONDS_PER_DAY = 86400


def round_half_up(value: float, digits: int = 2) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


# ── Completion markers ────────────────────────────────────────────────────

def status_marks_completion(event: dict) -> bool:
    """Status, falling back to type, is one of complete/completed/done."""
    marker = event.get("status")
    if not isinstance(marker, str) or not marker.strip():
        marker = event.get("type")
    return isinstance(marker, str) and marker.strip().lower() in COMPLETION_STATUSES


def reviewworks_marks_completion(event: dict) -> bool:
    if status_marks_completion(event):
        return True
    other = coerce_json_object(event.get("other")) or {}
    outcome = other.get("outcome")
    return isinstance(outcome, str) and outcome.strip().lower() == "approved"


def pre_screening_marks_completion(event: dict) -> bool:
    return event.get("type") == EVENT_PRE_SCREENING_COMPLETE


COMPLETION_MARKERS: dict[str, Callable[[dict], bool]] = {
    "portal": pre_screening_marks_completion,
    "permitflow": status_marks_completion,
    "reviewworks": reviewworks_marks_completion,
}


# ── Aggregation ───────────────────────────────────────────────────────────

def _event_time(event: dict) -> datetime | None:
    return parse_timestamp(event.get("last_updated"))


def _sort_ascending(events: list[dict]) -> list[dict]:
    """Oldest first; events without a parseable timestamp go last."""
    return sorted(
        events,
        key=lambda event: (_event_time(event) is None, _event_time(event) or datetime.min),
    )


def _cycle_start(
    process_id: int,
    events: list[dict],
    completed_at: datetime,
    created_at_by_process: dict[int, Any] | None,
    start_event_type: str | None,
) -> datetime | None:
    if start_event_type:
        for event in reversed(events):
            if event.get("type") != start_event_type:
                continue
            started = _event_time(event)
            if started is not None and started <= completed_at:
                return started
        return None
    if created_at_by_process:
        return parse_timestamp(created_at_by_process.get(process_id))
    return None


def _empty_point(day: str) -> dict:
    return {
        "date": day,
        "completionCount": None,
        "averageCompletionDays": None,
        "durationSampleSize": 0,
        "durationTotalDays": None,
    }


def aggregate_completion_series(
    process_ids: Iterable[int],
    case_events: list[dict],
    *,
    is_completion: Callable[[dict], bool] = status_marks_completion,
    created_at_by_process: dict[int, Any] | None = None,
    start_event_type: str | None = None,
) -> list[dict]:
    """Gap-filled daily completion series.

    Args:
        process_ids: Processes to consider; events of other processes are ignored.
        case_events: Rows with ``parent_process_id``, ``type``, ``status``,
            ``last_updated`` and optionally ``other``.
        is_completion: Marker predicate for the process family.
        created_at_by_process: process id -> creation timestamp, the cycle
            start when ``start_event_type`` is not given.
        start_event_type: Event type whose latest occurrence at or before
            the completion starts the cycle.

    Returns:
        One point per day from the first to the last completion date, or []
        when nothing completed.
    """
    wanted = set(process_ids)
    events_by_process: dict[int, list[dict]] = {}
    for event in case_events:
        process_id = parse_numeric_id(event.get("parent_process_id"))
        if process_id is not None and process_id in wanted:
            events_by_process.setdefault(process_id, []).append(event)

    counts: dict[str, int] = {}
    duration_sums: dict[str, float] = {}
    duration_counts: dict[str, int] = {}

    for process_id, events in events_by_process.items():
        ordered = _sort_ascending(events)
        for event in ordered:
            if not is_completion(event):
                continue
            completed_at = _event_time(event)
            if completed_at is None:
                continue
            day = completed_at.date().isoformat()
            counts[day] = counts.get(day, 0) + 1

            started = _cycle_start(
                process_id, ordered, completed_at, created_at_by_process, start_event_type,
            )
            if started is not None and started <= completed_at:
                elapsed = (completed_at - started).total_seconds() / _SECONDS_PER_DAY
                duration_sums[day] = duration_sums.get(day, 0.0) + elapsed
                duration_counts[day] = duration_counts.get(day, 0) + 1
            break

    if not counts:
        return []

    first = datetime.fromisoformat(min(counts)).date()
    last = datetime.fromisoformat(max(counts)).date()
    points = []
    current = first
    while current <= last:
        day = current.isoformat()
        count = counts.get(day)
        if not count:
            points.append(_empty_point(day))
        else:
            samples = duration_counts.get(day, 0)
            total = duration_sums.get(day)
            points.append({
                "date": day,
                "completionCount": count,
                "averageCompletionDays": round_half_up(total / samples) if samples else None,
                "durationSampleSize": samples,
                "durationTotalDays": total if samples else None,
            })
        current += timedelta(days=1)
    return points


# ── Loaders ───────────────────────────────────────────────────────────────

def load_process_analytics(process_model_id: int, *, store: StoreGateway | None = None) -> list[dict]:
    """Portal pre-screening series for one process model.

    Raises:
        ProjectPersistenceError: Unconfigured store or failed read.
    """
    store = store or get_store("portal")
    store.require_credentials()

    processes = store.fetch_list(
        "process_instance",
        StoreQuery()
        .select("id", "created_at", "last_updated", "process_model", "data_source_system")
        .eq("process_model", process_model_id)
        .eq("data_source_system", DATA_SOURCE_SYSTEM),
        "process instances for analytics",
    )
    process_ids = [pid for pid in (parse_numeric_id(row.get("id")) for row in processes) if pid is not None]
    if not process_ids:
        return []

    events = store.fetch_list(
        "case_event",
        StoreQuery()
        .select("id", "parent_process_id", "type", "last_updated")
        .in_("parent_process_id", process_ids)
        .eq("data_source_system", DATA_SOURCE_SYSTEM),
        "case events for analytics",
    )
    return aggregate_completion_series(
        process_ids,
        events,
        is_completion=pre_screening_marks_completion,
        start_event_type=EVENT_PRE_SCREENING_INITIATED,
    )


def load_partner_analytics(system: str, *, store: StoreGateway | None = None) -> list[dict]:
    """Partner completion series; failures are logged and give []."""
    is_completion = COMPLETION_MARKERS[system]
    store = store or get_store(system)
    label = store.label
    if not store.is_configured:
        logger.warning("%s credentials not configured; analytics unavailable", label, extra={"system": system})
        return []

    event_columns = ["id", "parent_process_id", "name", "type", "status", "last_updated"]
    if system == "reviewworks":
        event_columns.append("other")

    try:
        processes = store.fetch_list(
            "process_instance",
            StoreQuery()
            .select("id", "created_at", "last_updated", "process_model", "status")
            .eq("process_model", PARTNER_PROCESS_MODEL_ID),
            "process instances for analytics",
            error_context=f"{label} request failed",
        )
        created_at_by_process = {}
        for row in processes:
            process_id = parse_numeric_id(row.get("id"))
            if process_id is not None:
                created_at_by_process[process_id] = row.get("created_at")
        if not created_at_by_process:
            return []

        events = store.fetch_list(
            "case_event",
            StoreQuery().select(*event_columns).in_("parent_process_id", list(created_at_by_process)),
            "case events for analytics",
            error_context=f"{label} request failed",
        )
    except (ProjectPersistenceError, requests.RequestException) as exc:
        logger.warning("Failed to load %s analytics: %s", label, exc, extra={"system": system})
        return []

    return aggregate_completion_series(
        list(created_at_by_process),
        events,
        is_completion=is_completion,
        created_at_by_process=created_at_by_process,
    )
