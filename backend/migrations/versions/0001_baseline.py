"""Create the redevelopment voting schema.

Societies and their members, redevelopment projects with their embedded
collections, developer proposals, member votes, notifications and audit logs.

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op

from backend.config import Base
from backend.models import models  # noqa: F401

revision = "0001_baseline"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    Base.metadata.create_all(bind=op.get_bind())


def downgrade():
    # Leaves alembic_version alone; it is not part of the application metadata.
    Base.metadata.drop_all(bind=op.get_bind())
