"""
Process catalog — process models, legal structures and decision elements.

The catalog is read-only reference data living in each store. The portal
uses it to bind decision payloads to element rows; the HTTP surface exposes
``load_process_information`` for the portal and both partner stores.
"""

from __future__ import annotations

import logging
from typing import Any

from permit_portal.core.exceptions import ProjectPersistenceError, RecordNotFoundError
from permit_portal.integrations.postgrest import StoreQuery
from permit_portal.integrations.store_gateway import StoreGateway, get_store
from permit_portal.utils.helpers import parse_numeric_id

logger = logging.getLogger(__name__)

PRE_SCREENING_PROCESS_MODEL_ID = 1

DECISION_ELEMENT_COLUMNS = (
    "id",
    "created_at",
    "process_model",
    "legal_structure_id",
    "title",
    "description",
    "measure",
    "threshold",
    "spatial",
    "intersect",
    "spatial_reference",
    "form_text",
    "form_response_desc",
    "form_data",
    "evaluation_method",
    "evaluation_dmn",
    "category",
    "process_model_internal_reference_id",
    "parent_decision_element_id",
    "other",
    "expected_evaluation_data",
    "response_data",
    "record_owner_agency",
    "data_source_agency",
    "data_source_system",
    "data_record_version",
    "last_updated",
    "retrieved_timestamp",
)

PROCESS_MODEL_COLUMNS = (
    "id",
    "title",
    "description",
    "notes",
    "screening_description",
    "agency",
    "legal_structure_id",
    "legal_structure_text",
    "last_updated",
)

LEGAL_STRUCTURE_COLUMNS = (
    "id",
    "title",
    "citation",
    "description",
    "issuing_authority",
    "url",
    "effective_date",
)


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _opt_bool(value: Any) -> bool | None:
    return value if isinstance(value, bool) else None


def _opt_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _read_context(store: StoreGateway, description: str) -> str:
    if store.system == "portal":
        return f"Failed to load {description}"
    return f"{store.label} request failed"


# ── Parsers ───────────────────────────────────────────────────────────────

def parse_decision_element(raw: Any) -> dict | None:
    """Catalog row -> camelCase record; rows without a numeric id are dropped."""
    if not isinstance(raw, dict):
        return None
    element_id = parse_numeric_id(raw.get("id"))
    if element_id is None:
        return None
    return {
        "id": element_id,
        "createdAt": _opt_str(raw.get("created_at")),
        "processModelId": parse_numeric_id(raw.get("process_model")),
        "legalStructureId": parse_numeric_id(raw.get("legal_structure_id")),
        "title": _opt_str(raw.get("title")),
        "description": _opt_str(raw.get("description")),
        "measure": _opt_str(raw.get("measure")),
        "threshold": _opt_float(raw.get("threshold")),
        "spatial": _opt_bool(raw.get("spatial")),
        "intersect": _opt_bool(raw.get("intersect")),
        "spatialReference": raw.get("spatial_reference"),
        "formText": _opt_str(raw.get("form_text")),
        "formResponseDescription": _opt_str(raw.get("form_response_desc")),
        "formData": raw.get("form_data"),
        "evaluationMethod": _opt_str(raw.get("evaluation_method")),
        "evaluationDmn": raw.get("evaluation_dmn"),
        "category": _opt_str(raw.get("category")),
        "processModelInternalReferenceId": _opt_str(raw.get("process_model_internal_reference_id")),
        "parentDecisionElementId": parse_numeric_id(raw.get("parent_decision_element_id")),
        "other": raw.get("other"),
        "expectedEvaluationData": raw.get("expected_evaluation_data"),
        "responseData": raw.get("response_data"),
        "recordOwnerAgency": _opt_str(raw.get("record_owner_agency")),
        "dataSourceAgency": _opt_str(raw.get("data_source_agency")),
        "dataSourceSystem": _opt_str(raw.get("data_source_system")),
        "dataRecordVersion": _opt_str(raw.get("data_record_version")),
        "lastUpdated": _opt_str(raw.get("last_updated")),
        "retrievedTimestamp": _opt_str(raw.get("retrieved_timestamp")),
    }


def _parse_process_model(raw: Any) -> dict | None:
    if not isinstance(raw, dict):
        return None
    model_id = parse_numeric_id(raw.get("id"))
    if model_id is None:
        return None
    return {
        "id": model_id,
        "title": _opt_str(raw.get("title")),
        "description": _opt_str(raw.get("description")),
        "notes": _opt_str(raw.get("notes")),
        "screeningDescription": _opt_str(raw.get("screening_description")),
        "agency": _opt_str(raw.get("agency")),
        "legalStructureId": parse_numeric_id(raw.get("legal_structure_id")),
        "legalStructureText": _opt_str(raw.get("legal_structure_text")),
        "lastUpdated": _opt_str(raw.get("last_updated")),
    }


def _parse_legal_structure(raw: Any) -> dict | None:
    if not isinstance(raw, dict):
        return None
    structure_id = parse_numeric_id(raw.get("id"))
    if structure_id is None:
        return None
    return {
        "id": structure_id,
        "title": _opt_str(raw.get("title")),
        "citation": _opt_str(raw.get("citation")),
        "description": _opt_str(raw.get("description")),
        "issuingAuthority": _opt_str(raw.get("issuing_authority")),
        "url": _opt_str(raw.get("url")),
        "effectiveDate": _opt_str(raw.get("effective_date")),
    }


# ── Reads ─────────────────────────────────────────────────────────────────

def fetch_decision_elements(
    process_model_id: int | None = None,
    *,
    store: StoreGateway | None = None,
) -> dict[int, dict]:
    """Decision elements of a process model keyed by element id."""
    store = store or get_store("portal")
    model_id = process_model_id if isinstance(process_model_id, int) else PRE_SCREENING_PROCESS_MODEL_ID
    rows = store.fetch_list(
        "decision_element",
        StoreQuery().select(*DECISION_ELEMENT_COLUMNS).eq("process_model", model_id),
        "decision elements",
        error_context=_read_context(store, "decision elements"),
    )
    elements: dict[int, dict] = {}
    for row in rows:
        record = parse_decision_element(row)
        if record is not None:
            elements[record["id"]] = record
    return elements


def fetch_process_model(process_model_id: int, *, store: StoreGateway) -> dict | None:
    rows = store.fetch_list(
        "process_model",
        StoreQuery().select(*PROCESS_MODEL_COLUMNS).eq("id", process_model_id).limit(1),
        "process model",
        error_context=_read_context(store, "process model"),
    )
    return _parse_process_model(rows[0]) if rows else None


def fetch_legal_structure(legal_structure_id: int, *, store: StoreGateway) -> dict | None:
    rows = store.fetch_list(
        "legal_structure",
        StoreQuery().select(*LEGAL_STRUCTURE_COLUMNS).eq("id", legal_structure_id).limit(1),
        "legal structure",
        error_context=_read_context(store, "legal structure"),
    )
    return _parse_legal_structure(rows[0]) if rows else None


def load_process_information(process_model_id: Any, system: str = "portal") -> dict:
    """Process model, its legal structure and its decision elements (sorted by id).

    Raises:
        ProjectPersistenceError: Non-numeric model id.
        RecordNotFoundError: Model does not exist in the store.
    """
    model_id = parse_numeric_id(process_model_id)
    if model_id is None:
        raise ProjectPersistenceError("Process model identifier must be numeric.")

    store = get_store(system)
    store.require_credentials()

    process_model = fetch_process_model(model_id, store=store)
    if process_model is None:
        raise RecordNotFoundError(f"Process model {model_id} was not found.")

    legal_structure = None
    if process_model["legalStructureId"] is not None:
        legal_structure = fetch_legal_structure(process_model["legalStructureId"], store=store)

    elements = [
        element for element in fetch_decision_elements(model_id, store=store).values()
        if element["processModelId"] is None or element["processModelId"] == model_id
    ]
    elements.sort(key=lambda element: element["id"])

    return {
        "processModel": process_model,
        "legalStructure": legal_structure,
        "decisionElements": elements,
    }
