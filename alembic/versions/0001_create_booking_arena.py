"""create booking arena, inbox and suppressions

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "booking_records",
        sa.Column("booking_id", sa.String(64), primary_key=True),
        sa.Column("customer_phone", sa.String(32), nullable=False),
        sa.Column("position", sa.Integer(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("provider_id", sa.String(64), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_booking_records_customer_phone", "booking_records", ["customer_phone"])
    op.create_index("ix_booking_records_status", "booking_records", ["status"])
    op.create_index("ix_booking_records_provider_id", "booking_records", ["provider_id"])
    op.create_index("ix_booking_records_provider_status", "booking_records", ["provider_id", "status"])

    op.create_table(
        "provider_job_inbox",
        sa.Column("provider_id", sa.String(64), primary_key=True),
        sa.Column("booking_id", sa.String(64), primary_key=True),
        sa.Column("customer_phone", sa.String(32), nullable=False),
        sa.Column("booking_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("service_name", sa.String(200), nullable=False),
        sa.Column("price_snapshot", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("distance_km", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_provider_job_inbox_booking", "provider_job_inbox", ["booking_id"])

    op.create_table(
        "job_suppressions",
        sa.Column("provider_id", sa.String(64), primary_key=True),
        sa.Column("booking_id", sa.String(64), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_job_suppressions_booking", "job_suppressions", ["booking_id"])


def downgrade() -> None:
    op.drop_index("ix_job_suppressions_booking", table_name="job_suppressions")
    op.drop_table("job_suppressions")
    op.drop_index("ix_provider_job_inbox_booking", table_name="provider_job_inbox")
    op.drop_table("provider_job_inbox")
    op.drop_index("ix_booking_records_provider_status", table_name="booking_records")
    op.drop_index("ix_booking_records_provider_id", table_name="booking_records")
    op.drop_index("ix_booking_records_status", table_name="booking_records")
    op.drop_index("ix_booking_records_customer_phone", table_name="booking_records")
    op.drop_table("booking_records")
