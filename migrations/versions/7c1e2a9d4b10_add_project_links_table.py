"""add_project_links_table

Create `project_links` table for portal -> partner project title matches.

Revision ID: 7c1e2a9d4b10
Revises:
Create Date: 2026-10-18 09:30:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "7c1e2a9d4b10"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "project_links" not in existing_tables:
        op.create_table(
            "project_links",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("system", sa.String(length=30), nullable=False),
            sa.Column("portal_project_id", sa.Integer(), nullable=False),
            sa.Column("partner_project_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("candidate_ids", sa.JSON(), nullable=True),
            sa.Column("matched_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("system", "portal_project_id", name="uq_project_link_system_portal"),
        )
        op.create_index("ix_project_links_system", "project_links", ["system"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    if "project_links" in set(inspector.get_table_names()):
        op.drop_index("ix_project_links_system", table_name="project_links")
        op.drop_table("project_links")
