"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union
import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    job_status = postgresql.ENUM(
        "uploading", "processing", "pending", "completed", "failed",
        name="jobstatus",
    )
    job_status.create(op.get_bind())

    target_profile = postgresql.ENUM("480p", "720p", "1080p", name="targetprofile")
    target_profile.create(op.get_bind())

    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("owner_id", sa.String(255), nullable=False),
        sa.Column("status", postgresql.ENUM(name="jobstatus", create_type=False), nullable=False, server_default="uploading"),
        sa.Column("original_filename", sa.String(255), nullable=False),
        sa.Column("content_type", sa.String(100), nullable=False),
        sa.Column("source_key", sa.String(512), nullable=False),
        sa.Column("target_profile", postgresql.ENUM(name="targetprofile", create_type=False), nullable=False, server_default="720p"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("output_key", sa.String(512), nullable=True),
        sa.Column("size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_jobs_owner_id", "jobs", ["owner_id"])
    op.create_index("idx_jobs_status", "jobs", ["status"])


def downgrade() -> None:
    op.drop_index("idx_jobs_status", table_name="jobs")
    op.drop_index("idx_jobs_owner_id", table_name="jobs")
    op.drop_table("jobs")
    postgresql.ENUM(name="targetprofile").drop(op.get_bind())
    postgresql.ENUM(name="jobstatus").drop(op.get_bind())
