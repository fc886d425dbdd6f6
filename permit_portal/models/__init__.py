"""
Local database models.

The backend stores own every project, process and event record; the only
table kept locally is ``project_links``, the audited portal-to-partner
project mapping produced by the matcher.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

from permit_portal.models.project_link import ProjectLink  # noqa: E402,F401
