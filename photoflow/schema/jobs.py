from __future__ import annotations

import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from photoflow.core.database import Base


class WorkflowJob(Base):
  __tablename__ = "workflow_jobs"
  __table_args__ = (
    Index("ix_workflow_jobs_user_created", "user_id", "created_at"),
    Index("ix_workflow_jobs_processing", "status", postgresql_where=text("status = 'processing'")),
  )

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  workflow_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
  input_ref: Mapped[str] = mapped_column(Text, nullable=False)
  input_metadata: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
  status: Mapped[str] = mapped_column(String, nullable=False, index=True)
  progress: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
  current_step: Mapped[str] = mapped_column(String, nullable=False, server_default="starting")
  step_progress: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
  credits_reserved: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
  credit_receipt: Mapped[dict | None] = mapped_column(JSONB(none_as_null=True), nullable=True)
  credits_refunded: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false")
  cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false")
  retry_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
  max_retries: Mapped[int] = mapped_column(Integer, nullable=False, server_default="3")
  results: Mapped[dict | None] = mapped_column(JSONB(none_as_null=True), nullable=True)
  error: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  started_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  completed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  expires_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
