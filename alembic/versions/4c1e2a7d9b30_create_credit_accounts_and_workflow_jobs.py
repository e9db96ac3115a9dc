"""Create credit accounts and workflow jobs.

Revision ID: 4c1e2a7d9b30
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "4c1e2a7d9b30"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
  """Upgrade schema."""
  op.create_table(
    "credit_accounts",
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("tier", sa.String(), server_default="Free", nullable=False),
    sa.Column("status", sa.String(), server_default="Active", nullable=False),
    sa.Column("last_reset_date", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("monthly_used", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'{}'::jsonb"), nullable=False),
    sa.Column("rollover", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'{}'::jsonb"), nullable=False),
    sa.Column("lifetime_used", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'{}'::jsonb"), nullable=False),
    sa.Column("refunded_receipts", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'[]'::jsonb"), nullable=False),
    sa.Column("last_billing_event_id", sa.String(), nullable=True),
    sa.Column("version", sa.Integer(), server_default="0", nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("user_id"),
  )

  op.create_table(
    "workflow_jobs",
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("workflow_type", sa.String(), nullable=False),
    sa.Column("input_ref", sa.Text(), nullable=False),
    sa.Column("input_metadata", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'{}'::jsonb"), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("progress", sa.Integer(), server_default="0", nullable=False),
    sa.Column("current_step", sa.String(), server_default="starting", nullable=False),
    sa.Column("step_progress", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'{}'::jsonb"), nullable=False),
    sa.Column("credits_reserved", sa.Integer(), server_default="0", nullable=False),
    sa.Column("credit_receipt", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("credits_refunded", sa.Boolean(), server_default="false", nullable=False),
    sa.Column("cancel_requested", sa.Boolean(), server_default="false", nullable=False),
    sa.Column("retry_count", sa.Integer(), server_default="0", nullable=False),
    sa.Column("max_retries", sa.Integer(), server_default="3", nullable=False),
    sa.Column("results", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("error", sa.Text(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    sa.PrimaryKeyConstraint("job_id"),
  )
  op.create_index(op.f("ix_workflow_jobs_user_id"), "workflow_jobs", ["user_id"], unique=False)
  op.create_index(op.f("ix_workflow_jobs_workflow_type"), "workflow_jobs", ["workflow_type"], unique=False)
  op.create_index(op.f("ix_workflow_jobs_status"), "workflow_jobs", ["status"], unique=False)
  op.create_index(op.f("ix_workflow_jobs_expires_at"), "workflow_jobs", ["expires_at"], unique=False)
  op.create_index("ix_workflow_jobs_user_created", "workflow_jobs", ["user_id", "created_at"], unique=False)
  op.create_index("ix_workflow_jobs_processing", "workflow_jobs", ["status"], unique=False, postgresql_where=sa.text("status = 'processing'"))


def downgrade() -> None:
  """Downgrade schema."""
  op.drop_index("ix_workflow_jobs_processing", table_name="workflow_jobs")
  op.drop_index("ix_workflow_jobs_user_created", table_name="workflow_jobs")
  op.drop_index(op.f("ix_workflow_jobs_expires_at"), table_name="workflow_jobs")
  op.drop_index(op.f("ix_workflow_jobs_status"), table_name="workflow_jobs")
  op.drop_index(op.f("ix_workflow_jobs_workflow_type"), table_name="workflow_jobs")
  op.drop_index(op.f("ix_workflow_jobs_user_id"), table_name="workflow_jobs")
  op.drop_table("workflow_jobs")
  op.drop_table("credit_accounts")
