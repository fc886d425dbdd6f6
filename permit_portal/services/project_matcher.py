"""
Cross-System Project Matcher — portal projects -> partner projects by title.

The stores share no foreign key; a portal project corresponds to the partner
project with the same title, compared trimmed and case-folded. All titles
go out in one batched ``or=(title.ilike."t1",...)`` query.

  - zero matches -> project skipped
  - one match    -> status ``matched``
  - several      -> first row wins, status ``ambiguous``, one warning listing
                    every candidate id
  - chosen id differs from the portal id -> status ``id_mismatch`` (when not
    already ambiguous) and a warning; the mapping is kept as is

Ambiguity is a data-quality signal, never an error. Results can be persisted
as ``ProjectLink`` rows so the heuristic becomes an auditable fact.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from sqlalchemy import delete, select

from permit_portal.integrations.postgrest import StoreQuery
from permit_portal.integrations.store_gateway import StoreGateway, get_store
from permit_portal.models import db
from permit_portal.models.project_link import ProjectLink
from permit_portal.utils.helpers import normalize_string, parse_numeric_id

logger = logging.getLogger(__name__)


@dataclass
class ProjectMatch:
    """One portal project resolved to a partner project."""

    portal_project_id: int
    partner_project_id: int
    title: str
    candidate_ids: list[int] = field(default_factory=list)
    status: str = "matched"

    def to_dict(self) -> dict:
        return {
            "portal_project_id": self.portal_project_id,
            "partner_project_id": self.partner_project_id,
            "title": self.title,
            "candidate_ids": list(self.candidate_ids),
            "status": self.status,
        }


def normalize_title(value) -> str | None:
    title = normalize_string(value) if isinstance(value, str) else None
    return title.lower() if title else None


def match_projects(
    system: str,
    projects: list[dict],
    *,
    store: StoreGateway | None = None,
    sink: logging.Logger | logging.LoggerAdapter | None = None,
) -> list[ProjectMatch]:
    """Resolve portal projects (``{"id", "title"}``) in a partner store.

    Returns an empty list when the partner store is not configured.

    Raises:
        ProjectPersistenceError: The partner title query failed.
    """
    store = store or get_store(system)
    sink = sink or logger
    if not store.is_configured:
        return []

    entries = []
    for project in projects:
        portal_id = parse_numeric_id(project.get("id"))
        raw_title = project.get("title")
        key = normalize_title(raw_title)
        if portal_id is not None and key:
            entries.append((portal_id, raw_title.strip(), key))
    if not entries:
        return []

    unique_titles = list(dict.fromkeys(title for _, title, _ in entries))
    rows = store.fetch_list(
        "project",
        StoreQuery().select("id", "title").ilike_any("title", unique_titles),
        "projects by title",
        error_context=f"{store.label} request failed",
    )

    rows_by_title: dict[str, list[dict]] = {}
    for row in rows:
        key = normalize_title(row.get("title"))
        if key:
            rows_by_title.setdefault(key, []).append(row)

    matches = []
    for portal_id, title, key in entries:
        candidates = rows_by_title.get(key)
        if not candidates:
            continue
        candidate_ids = [cid for cid in (parse_numeric_id(row.get("id")) for row in candidates) if cid is not None]
        partner_id = parse_numeric_id(candidates[0].get("id"))
        if partner_id is None:
            continue

        status = "matched"
        if len(candidates) > 1:
            status = "ambiguous"
            sink.warning(
                "Multiple %s projects share a title: %r candidate ids=%s",
                store.label, title, candidate_ids,
                extra={"system": system, "project_id": portal_id},
            )
        if partner_id != portal_id:
            if status == "matched":
                status = "id_mismatch"
            sink.warning(
                "%s project id mismatch for title match: %r portal=%s partner=%s",
                store.label, title, portal_id, partner_id,
                extra={"system": system, "project_id": portal_id},
            )
        matches.append(ProjectMatch(
            portal_project_id=portal_id,
            partner_project_id=partner_id,
            title=title,
            candidate_ids=candidate_ids,
            status=status,
        ))
    return matches


def match_mapping(matches: list[ProjectMatch]) -> dict[int, int]:
    """portal id -> partner id."""
    return {match.portal_project_id: match.partner_project_id for match in matches}


# ── ProjectLink persistence ───────────────────────────────────────────────

def record_project_links(
    system: str,
    matches: list[ProjectMatch],
    *,
    portal_project_ids: Iterable[int] | None = None,
) -> list[ProjectLink]:
    """Upsert one ``ProjectLink`` per (system, portal project) and commit.

    Links of *portal_project_ids* that found no match in this run are
    deleted, so stored links always reflect the latest matching.
    """
    links = []
    for match in matches:
        stmt = select(ProjectLink).where(
            ProjectLink.system == system,
            ProjectLink.portal_project_id == match.portal_project_id,
        )
        link = db.session.execute(stmt).scalar_one_or_none()
        if link is None:
            link = ProjectLink(system=system, portal_project_id=match.portal_project_id)
            db.session.add(link)
        link.partner_project_id = match.partner_project_id
        link.title = match.title
        link.status = match.status
        link.candidate_ids = list(match.candidate_ids)
        links.append(link)

    unmatched = set(portal_project_ids or ()) - {match.portal_project_id for match in matches}
    if unmatched:
        db.session.execute(
            delete(ProjectLink).where(
                ProjectLink.system == system,
                ProjectLink.portal_project_id.in_(sorted(unmatched)),
            )
        )
        logger.info("Cleared %s project links of %d unmatched portal project(s)", system, len(unmatched),
                    extra={"system": system})
    db.session.commit()
    return links


def list_project_links(system: str | None = None) -> list[ProjectLink]:
    stmt = select(ProjectLink).order_by(ProjectLink.system, ProjectLink.portal_project_id)
    if system:
        stmt = stmt.where(ProjectLink.system == system)
    return list(db.session.execute(stmt).scalars().all())
