"""
Completion Evaluator — decides whether a pre-screening is complete.

Two separate judgements are made over the seven slot payloads:

  1. Slot-level: a slot counts as "completed" (``completed_titles``) when its
     evaluation data holds any meaningful value below the noise keys
     ``id`` and ``process``.
  2. Business-level: ``is_complete`` comes from ``COMPLETION_CHECKS``, an
     ordered list of named checks evaluated with short-circuit. The first
     failing check stops the chain; later checks are never run, so a false
     result says nothing about them. ``failed_check`` names the one that
     failed and ``checks_run`` lists every check that was evaluated.

Payloads are matched to slots by position (record *i* belongs to slot *i*).
``evaluation_data`` may be a dict or a JSON-encoded string; anything else
decodes to "no data". Each slot has its own decoder producing a small typed
value, so the checks work on a closed set of shapes.

Usage:
    result = evaluate_decision_payloads(records)
    result.is_complete, result.failed_check
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable

from permit_portal.services.payload_builder import DECISION_SLOTS
from permit_portal.utils.helpers import coerce_json_object, normalize_string

logger = logging.getLogger(__name__)

_IGNORED_PAYLOAD_KEYS = frozenset({"id", "process"})
_IGNORED_RESOURCE_KEYS = frozenset({"name", "status", "meta"})


# ═════════════════════════════════════════════════════════════════════════════
# Value walkers
# ═════════════════════════════════════════════════════════════════════════════

def has_non_empty_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (int, float)):
        return math.isfinite(value)
    if isinstance(value, list):
        return any(has_non_empty_value(entry) for entry in value)
    if isinstance(value, dict):
        return len(value) > 0
    return True


def contains_meaningful_text(value: Any, ignored_keys: frozenset = frozenset()) -> bool:
    """True when a non-blank string exists anywhere below the non-ignored keys."""
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, list):
        return any(contains_meaningful_text(entry, ignored_keys) for entry in value)
    if isinstance(value, dict):
        return any(
            contains_meaningful_text(entry, ignored_keys)
            for key, entry in value.items()
            if key not in ignored_keys
        )
    return False


def contains_meaningful_value(value: Any, ignored_keys: frozenset = _IGNORED_PAYLOAD_KEYS) -> bool:
    """Non-blank string, finite number, true boolean, or a container holding one."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (int, float)):
        return math.isfinite(value)
    if isinstance(value, list):
        return any(contains_meaningful_value(entry, ignored_keys) for entry in value)
    if isinstance(value, dict):
        return any(
            contains_meaningful_value(entry, ignored_keys)
            for key, entry in value.items()
            if key not in ignored_keys
        )
    return True


def has_meaningful_payload_data(data: Any) -> bool:
    return isinstance(data, dict) and contains_meaningful_value(data)


def extract_payload_data(record: Any) -> dict | None:
    """``evaluation_data`` (or legacy ``data``) of a record as a dict."""
    if not isinstance(record, dict):
        return None
    return coerce_json_object(record.get("evaluation_data")) or coerce_json_object(record.get("data"))


# ═════════════════════════════════════════════════════════════════════════════
# Slot decoders
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ProjectDetails:
    project: Any = None


@dataclass(frozen=True)
class ScreeningResult:
    raw: Any = None
    summary: Any = None


@dataclass(frozen=True)
class PermitNotes:
    notes: Any = None
    permits: Any = None


@dataclass(frozen=True)
class CategoricalExclusion:
    rationale: Any = None
    candidates: Any = None


@dataclass(frozen=True)
class Conditions:
    conditions: Any = None


@dataclass(frozen=True)
class ResourceNotes:
    summary: Any = None
    notes: Any = None
    resources: Any = None


SlotData = ProjectDetails | ScreeningResult | PermitNotes | CategoricalExclusion | Conditions | ResourceNotes

_DECODERS: dict[str, Callable[[dict], SlotData]] = {
    "project_details": lambda d: ProjectDetails(project=d.get("project")),
    "nepassist": lambda d: ScreeningResult(raw=d.get("nepa_assist_raw"), summary=d.get("nepa_assist_summary")),
    "ipac": lambda d: ScreeningResult(raw=d.get("ipac_raw"), summary=d.get("ipac_summary")),
    "permit_notes": lambda d: PermitNotes(notes=d.get("notes"), permits=d.get("permits")),
    "categorical_exclusion": lambda d: CategoricalExclusion(
        rationale=d.get("rationale"), candidates=d.get("ce_candidates"),
    ),
    "conditions": lambda d: Conditions(conditions=d.get("conditions")),
    "resource_notes": lambda d: ResourceNotes(
        summary=d.get("summary"), notes=d.get("notes"), resources=d.get("resources"),
    ),
}


def decode_slot(key: str, data: dict | None) -> SlotData | None:
    """Decode one slot's evaluation data; None when the slot has no data."""
    if data is None:
        return None
    return _DECODERS[key](data)


# ═════════════════════════════════════════════════════════════════════════════
# Completion checks
# ═════════════════════════════════════════════════════════════════════════════

def has_project_details(slot: ProjectDetails | None) -> bool:
    if slot is None:
        return False
    project = slot.project
    if isinstance(project, (dict, list)):
        return len(project) > 0
    return False


def has_screening_results(slot: ScreeningResult | None) -> bool:
    if slot is None:
        return False
    return has_non_empty_value(slot.raw) or has_non_empty_value(slot.summary)


def has_permit_notes_text(slot: PermitNotes | None) -> bool:
    """Free-text notes, or at least one permit entry (its completion flag is irrelevant)."""
    if slot is None:
        return False
    if contains_meaningful_text(slot.notes):
        return True
    return isinstance(slot.permits, list) and len(slot.permits) > 0


def has_categorical_exclusion_text(slot: CategoricalExclusion | None) -> bool:
    if slot is None:
        return False
    if normalize_string(slot.rationale):
        return True
    if not isinstance(slot.candidates, list):
        return False
    return any(normalize_string(candidate) for candidate in slot.candidates)


def has_conditions_text(slot: Conditions | None) -> bool:
    if slot is None or not isinstance(slot.conditions, list):
        return False
    return any(normalize_string(condition) for condition in slot.conditions)


def has_resource_notes_text(slot: ResourceNotes | None) -> bool:
    if slot is None:
        return False
    if contains_meaningful_text(slot.summary) or contains_meaningful_text(slot.notes):
        return True
    if not isinstance(slot.resources, list):
        return False
    return any(contains_meaningful_text(resource, _IGNORED_RESOURCE_KEYS) for resource in slot.resources)


@dataclass(frozen=True)
class CompletionCheck:
    name: str
    slot_key: str
    predicate: Callable[[Any], bool]


# Order is product policy: earlier sections gate later ones
COMPLETION_CHECKS: tuple[CompletionCheck, ...] = (
    CompletionCheck("has_project_details", "project_details", has_project_details),
    CompletionCheck("has_nepassist_results", "nepassist", has_screening_results),
    CompletionCheck("has_ipac_results", "ipac", has_screening_results),
    CompletionCheck("has_permit_notes_text", "permit_notes", has_permit_notes_text),
    CompletionCheck("has_categorical_exclusion_text", "categorical_exclusion", has_categorical_exclusion_text),
    CompletionCheck("has_conditions_text", "conditions", has_conditions_text),
    CompletionCheck("has_resource_notes_text", "resource_notes", has_resource_notes_text),
)


# ═════════════════════════════════════════════════════════════════════════════
# Evaluation
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class EvaluationResult:
    """Outcome of evaluating one set of decision payloads."""

    total: int
    completed_titles: list[str] = field(default_factory=list)
    is_complete: bool = False
    failed_check: str | None = None
    checks_run: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "completedTitles": list(self.completed_titles),
            "isComplete": self.is_complete,
            "failedCheck": self.failed_check,
            "checksRun": list(self.checks_run),
        }


def run_completion_checks(
    slots: dict[str, SlotData | None],
    *,
    sink: logging.Logger | logging.LoggerAdapter | None = None,
) -> tuple[bool, str | None, list[str]]:
    """Run ``COMPLETION_CHECKS`` in order, stopping at the first failure.

    Returns:
        ``(is_complete, failed_check_name, names_of_checks_run)``.
    """
    sink = sink or logger
    checks_run: list[str] = []
    for check in COMPLETION_CHECKS:
        passed = bool(check.predicate(slots.get(check.slot_key)))
        checks_run.append(check.name)
        sink.debug("Completion check %s: %s", check.name, "pass" if passed else "fail",
                   extra={"check": check.name})
        if not passed:
            return False, check.name, checks_run
    return True, None, checks_run


def evaluate_decision_payloads(
    records: list[dict],
    *,
    sink: logging.Logger | logging.LoggerAdapter | None = None,
) -> EvaluationResult:
    """Evaluate decision payload records positioned in slot order.

    Args:
        records: Up to seven records with ``evaluation_data``; missing or
                 undecodable entries leave their slot empty.
        sink: Logger receiving one DEBUG line per check run.
    """
    completed_titles: list[str] = []
    slots: dict[str, SlotData | None] = {}

    for index, slot in enumerate(DECISION_SLOTS):
        record = records[index] if index < len(records) else None
        data = extract_payload_data(record)
        if data is None:
            continue
        slots[slot.key] = decode_slot(slot.key, data)
        if has_meaningful_payload_data(data):
            completed_titles.append(slot.title)

    is_complete, failed_check, checks_run = run_completion_checks(slots, sink=sink)
    return EvaluationResult(
        total=len(DECISION_SLOTS),
        completed_titles=completed_titles,
        is_complete=is_complete,
        failed_check=failed_check,
        checks_run=checks_run,
    )
