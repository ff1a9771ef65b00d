"""carry request trace id on jobs

Revision ID: 0002_job_trace_id
Revises: 0001_initial
Create Date: 2026-10-25
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_job_trace_id"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("jobs", sa.Column("trace_id", sa.String(64), nullable=True))


def downgrade() -> None:
    op.drop_column("jobs", "trace_id")
