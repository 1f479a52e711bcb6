"""Deployment audit archive.

Revision ID: 001
Revises:
"""

from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "deployment_records",
        sa.Column("deployment_id", sa.String(36), primary_key=True),
        sa.Column("service", sa.String(100), nullable=False, index=True),
        sa.Column("revision_id", sa.String(100), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, index=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("blue_target", sa.String(500), nullable=False),
        sa.Column("green_target", sa.String(500), nullable=False),
        sa.Column("blue_weight", sa.Integer(), nullable=False),
        sa.Column("green_weight", sa.Integer(), nullable=False),
        sa.Column("weight_history", sa.JSON(), nullable=True),
        sa.Column("transitions", sa.JSON(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(), server_default=sa.func.now(), index=True),
    )


def downgrade() -> None:
    op.drop_table("deployment_records")
