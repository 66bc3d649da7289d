"""create job timers, notes and completion checklists

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "job_timers",
        sa.Column("provider_id", sa.String(64), primary_key=True),
        sa.Column("booking_id", sa.String(64), primary_key=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_running", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("pauses", sa.JSON(), nullable=False),
        sa.Column("total_duration_ms", sa.BigInteger(), nullable=True),
    )

    op.create_table(
        "job_notes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.String(64), nullable=False),
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("note", sa.Text(), nullable=False),
        sa.Column("note_type", sa.String(16), nullable=False, server_default="note"),
        sa.Column("visible_to_customer", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_job_notes_booking_created", "job_notes", ["booking_id", "created_at"])

    op.create_table(
        "job_completion_checklists",
        sa.Column("provider_id", sa.String(64), primary_key=True),
        sa.Column("booking_id", sa.String(64), primary_key=True),
        sa.Column("items", sa.JSON(), nullable=False),
        sa.Column("all_required_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("job_completion_checklists")
    op.drop_index("ix_job_notes_booking_created", table_name="job_notes")
    op.drop_table("job_notes")
    op.drop_table("job_timers")
