"""Cross-system project link: portal project id -> partner project id."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy import JSON

from permit_portal.models import db

LINK_STATUSES = ("matched", "ambiguous", "id_mismatch")


def _utcnow():
    return datetime.now(timezone.utc)


class ProjectLink(db.Model):
    """Title-matched mapping between a portal project and a partner project.

    One row per (system, portal_project_id). ``status`` records how
    trustworthy the match is: ``ambiguous`` when several partner rows shared
    the title (``candidate_ids`` lists them all), ``id_mismatch`` when the
    chosen partner id differs from the portal id.
    """

    __tablename__ = "project_links"
    __table_args__ = (
        UniqueConstraint("system", "portal_project_id", name="uq_project_link_system_portal"),
    )

    id = Column(Integer, primary_key=True)
    system = Column(String(30), nullable=False, index=True)  # permitflow | reviewworks
    portal_project_id = Column(Integer, nullable=False)
    partner_project_id = Column(Integer, nullable=False)
    title = Column(Text, default="")
    status = Column(String(20), default="matched")  # matched | ambiguous | id_mismatch
    candidate_ids = Column(JSON, default=list)
    matched_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "system": self.system,
            "portal_project_id": self.portal_project_id,
            "partner_project_id": self.partner_project_id,
            "title": self.title,
            "status": self.status,
            "candidate_ids": self.candidate_ids or [],
            "matched_at": self.matched_at.isoformat() if self.matched_at else None,
        }
