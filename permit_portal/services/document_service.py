"""
Project documents — supporting uploads and generated project reports.

Files go to the ``permit-documents`` storage bucket under
``project-{id}/process-{pid}/...``; one ``document`` row per file records the
storage key plus file metadata in ``other``. Summaries returned to the UI
carry a synthesized public URL.
"""

from __future__ import annotations

import logging
import math
import re
import secrets
import string
from typing import Any

from permit_portal.core.exceptions import ProjectPersistenceError
from permit_portal.integrations.postgrest import StoreQuery
from permit_portal.integrations.store_gateway import StoreGateway, get_store
from permit_portal.services.payload_builder import DATA_SOURCE_SYSTEM
from permit_portal.utils.helpers import (
    coerce_json_object,
    normalize_string,
    parse_numeric_id,
    parse_timestamp,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

DOCUMENT_STORAGE_BUCKET = "permit-documents"
PROJECT_REPORT_DOCUMENT_TYPE = "project-report"
SUPPORTING_DOCUMENT_TYPE = "supporting-document"

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
_NON_DIGITS_RE = re.compile(r"\D")


def create_safe_file_name(file_name: Any) -> str:
    """Lower-case, dash-separated base name with an alphanumeric extension.

    ``"My Report (final).PDF"`` -> ``"my-report-final.pdf"``; blank -> ``"document"``.
    """
    if not isinstance(file_name, str) or not file_name.strip():
        return "document"
    trimmed = file_name.strip()
    dot = trimmed.rfind(".")
    base, extension = (trimmed[:dot], trimmed[dot + 1:]) if dot > 0 else (trimmed, "")

    sanitized_base = re.sub(r"[^a-z0-9]+", "-", base.lower()).strip("-")
    sanitized_extension = re.sub(r"[^a-z0-9]+", "", extension, flags=re.IGNORECASE).lower()
    final_base = sanitized_base or "document"
    return f"{final_base}.{sanitized_extension}" if sanitized_extension else final_base


def _unique_suffix(length: int = 6) -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))


def _timestamp_digits(timestamp: str) -> str:
    return _NON_DIGITS_RE.sub("", timestamp)


def _require_upload_context(project_id: Any, parent_process_id: Any, project_message: str, process_message: str):
    if parse_numeric_id(project_id) is None:
        raise ProjectPersistenceError(project_message)
    if parse_numeric_id(parent_process_id) is None:
        raise ProjectPersistenceError(process_message)
    return parse_numeric_id(project_id), parse_numeric_id(parent_process_id)


# ── Uploads ───────────────────────────────────────────────────────────────

def upload_supporting_document(
    *,
    content: bytes,
    file_name: str | None,
    content_type: str | None,
    title: str | None,
    project_id: Any,
    project_title: str | None,
    parent_process_id: Any,
    store: StoreGateway | None = None,
) -> None:
    """Store an uploaded file and its ``document`` metadata row.

    Raises:
        ProjectPersistenceError: Missing ids or title, or a failed store call.
    """
    store = store or get_store("portal")
    store.require_credentials()
    project_id, parent_process_id = _require_upload_context(
        project_id,
        parent_process_id,
        "A numeric project identifier is required to upload supporting documents.",
        "Save the project snapshot before uploading documents so the pre-screening process can be identified.",
    )
    sanitized_title = normalize_string(title)
    if not sanitized_title:
        raise ProjectPersistenceError("Document title is required.")

    timestamp = utc_now_iso()
    safe_file_name = create_safe_file_name(file_name)
    object_path = "/".join([
        f"project-{project_id}",
        f"process-{parent_process_id}",
        f"{_timestamp_digits(timestamp)}-{_unique_suffix()}-{safe_file_name}",
    ])
    mime_type = content_type or "application/octet-stream"

    storage_key = store.upload_object(
        DOCUMENT_STORAGE_BUCKET,
        object_path,
        content,
        content_type=mime_type,
        error_context="Failed to upload document file",
    )

    store.insert(
        "document",
        {
            "parent_process_id": parent_process_id,
            "title": sanitized_title,
            "document_type": SUPPORTING_DOCUMENT_TYPE,
            "data_source_system": DATA_SOURCE_SYSTEM,
            "last_updated": timestamp,
            "url": storage_key,
            "other": {
                "storage_bucket": DOCUMENT_STORAGE_BUCKET,
                "storage_object_path": object_path,
                "file_name": file_name,
                "file_size": len(content),
                "mime_type": mime_type,
                "project_id": project_id,
                "project_title": project_title,
                "uploaded_at": timestamp,
            },
        },
        error_context="Failed to save document metadata",
    )
    logger.info("Uploaded supporting document %s", object_path,
                extra={"project_id": project_id, "process_id": parent_process_id})


def save_project_report_document(
    *,
    content: bytes,
    project_id: Any,
    project_title: str | None,
    parent_process_id: Any,
    generated_at: str | None = None,
    store: StoreGateway | None = None,
) -> dict:
    """Upload a generated PDF report.

    Returns:
        ``{"title", "url", "generatedAt"}`` with the public report URL.
    """
    store = store or get_store("portal")
    store.require_credentials()
    project_id, parent_process_id = _require_upload_context(
        project_id,
        parent_process_id,
        "A numeric project identifier is required to generate a project report.",
        "Save the project snapshot before generating a project report.",
    )

    generated = parse_timestamp(generated_at)
    timestamp = (
        generated.isoformat(timespec="milliseconds").replace("+00:00", "Z") if generated else utc_now_iso()
    )
    safe_title = normalize_string(project_title) or f"Project {project_id}"
    document_title = f"{safe_title} — Project report"
    file_name = create_safe_file_name(f"{safe_title} project report.pdf")
    object_path = "/".join([
        f"project-{project_id}",
        f"process-{parent_process_id}",
        f"{_timestamp_digits(timestamp)}-report.pdf",
    ])

    storage_key = store.upload_object(
        DOCUMENT_STORAGE_BUCKET,
        object_path,
        content,
        content_type="application/pdf",
        error_context="Failed to upload report",
    )
    uploaded_at = utc_now_iso()
    store.insert(
        "document",
        {
            "parent_process_id": parent_process_id,
            "title": document_title,
            "document_type": PROJECT_REPORT_DOCUMENT_TYPE,
            "data_source_system": DATA_SOURCE_SYSTEM,
            "last_updated": timestamp,
            "url": storage_key,
            "other": {
                "storage_bucket": DOCUMENT_STORAGE_BUCKET,
                "storage_object_path": object_path,
                "file_name": file_name,
                "file_size": len(content),
                "mime_type": "application/pdf",
                "project_id": project_id,
                "project_title": project_title,
                "report_generated_at": timestamp,
                "uploaded_at": uploaded_at,
            },
        },
        error_context="Failed to record report metadata",
    )
    return {
        "title": document_title,
        "url": store.public_url(DOCUMENT_STORAGE_BUCKET, storage_key),
        "generatedAt": timestamp,
    }


# ── Summaries ─────────────────────────────────────────────────────────────

def _document_other(row: dict) -> dict:
    return coerce_json_object(row.get("other")) or {}


def _non_empty_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _storage_location(row: dict, other: dict) -> tuple[str, str] | None:
    object_path = _non_empty_str(row.get("url")) or _non_empty_str(other.get("storage_object_path"))
    if not object_path:
        return None
    bucket = _non_empty_str(other.get("storage_bucket")) or DOCUMENT_STORAGE_BUCKET
    return bucket, object_path


def _file_size(value: Any) -> int | float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and math.isfinite(value) and value >= 0:
        return value
    if isinstance(value, str) and value.strip():
        parsed = parse_numeric_id(value)
        if parsed is not None and parsed >= 0:
            return parsed
    return None


def build_supporting_document_summary(row: dict, store: StoreGateway) -> dict | None:
    """``document`` row -> UI summary; rows without id or storage path are dropped."""
    document_id = parse_numeric_id(row.get("id"))
    if document_id is None:
        return None
    other = _document_other(row)
    location = _storage_location(row, other)
    if location is None:
        return None

    title = normalize_string(row.get("title")) or normalize_string(other.get("file_name")) or f"Document {document_id}"
    uploaded_at = _non_empty_str(other.get("uploaded_at")) or (
        row.get("last_updated") if isinstance(row.get("last_updated"), str) else None
    )
    summary: dict[str, Any] = {
        "id": document_id,
        "title": title,
        "url": store.public_url(*location),
        "uploadedAt": uploaded_at,
        "fileName": _non_empty_str(other.get("file_name")),
        "fileSize": _file_size(other.get("file_size")),
        "mimeType": _non_empty_str(other.get("mime_type")),
    }
    return summary


def fetch_latest_project_report(parent_process_id: int, *, store: StoreGateway | None = None) -> dict | None:
    store = store or get_store("portal")
    rows = store.fetch_list(
        "document",
        StoreQuery()
        .select("title", "last_updated", "url", "other")
        .eq("parent_process_id", parent_process_id)
        .eq("document_type", PROJECT_REPORT_DOCUMENT_TYPE)
        .eq("data_source_system", DATA_SOURCE_SYSTEM)
        .order("last_updated", descending=True)
        .limit(1),
        "project report",
    )
    if not rows:
        return None
    row = rows[0]
    other = _document_other(row)
    location = _storage_location(row, other)
    if location is None:
        return None
    generated_at = _non_empty_str(other.get("report_generated_at")) or (
        row.get("last_updated") if isinstance(row.get("last_updated"), str) else None
    )
    return {
        "title": _non_empty_str(row.get("title")) or "Project report",
        "url": store.public_url(*location),
        "generatedAt": generated_at,
    }


def list_supporting_documents(parent_process_id: Any, *, store: StoreGateway | None = None) -> list[dict]:
    """Supporting document summaries for a process instance, newest first."""
    process_id = parse_numeric_id(parent_process_id)
    if process_id is None:
        raise ProjectPersistenceError(
            "Save the project snapshot before viewing supporting documents "
            "so the pre-screening process can be identified."
        )
    store = store or get_store("portal")
    store.require_credentials()
    rows = store.fetch_list(
        "document",
        StoreQuery()
        .select("id", "title", "last_updated", "url", "other")
        .eq("parent_process_id", process_id)
        .eq("document_type", SUPPORTING_DOCUMENT_TYPE)
        .eq("data_source_system", DATA_SOURCE_SYSTEM)
        .order("last_updated", descending=True),
        "supporting documents",
    )
    summaries = [build_supporting_document_summary(row, store) for row in rows if isinstance(row, dict)]
    return [summary for summary in summaries if summary is not None]
