"""Postgres-backed repository for workflow jobs using SQLAlchemy."""

from __future__ import annotations

import datetime
from typing import Any

from sqlalchemy import delete, func, select, update

from photoflow.core.database import get_session_factory
from photoflow.jobs.models import JobRecord, JobStatus, StepProgress
from photoflow.schema.jobs import WorkflowJob
from photoflow.storage.jobs_repo import JobsRepository
from photoflow.utils.db_retry import execute_with_retry


class PostgresJobsRepository(JobsRepository):
  """Persist workflow jobs to Postgres."""

  def __init__(self) -> None:
    self._session_factory = get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def create_job(self, record: JobRecord) -> None:
    async with self._session_factory() as session:
      session.add(WorkflowJob(**self._record_values(record)))
      await session.commit()

  async def get_job(self, job_id: str) -> JobRecord | None:
    async def _get() -> JobRecord | None:
      async with self._session_factory() as session:
        row = await session.get(WorkflowJob, job_id)
        return self._model_to_record(row) if row is not None else None

    return await execute_with_retry(operation_name="job_get", func=_get)

  async def update_job(self, record: JobRecord, *, expected_status: JobStatus, expected_retry_count: int | None = None) -> bool:
    conditions = [WorkflowJob.job_id == record.job_id, WorkflowJob.status == expected_status]
    if expected_retry_count is not None:
      conditions.append(WorkflowJob.retry_count == expected_retry_count)
    values = self._record_values(record)
    values.pop("job_id")

    async def _update() -> bool:
      async with self._session_factory() as session:
        # The status guard makes competing terminal writes and retries mutually exclusive.
        result = await session.execute(update(WorkflowJob).where(*conditions).values(**values))
        await session.commit()
        return bool(result.rowcount)

    return await execute_with_retry(operation_name="job_update", func=_update)

  async def delete_job(self, job_id: str) -> bool:
    async with self._session_factory() as session:
      result = await session.execute(delete(WorkflowJob).where(WorkflowJob.job_id == job_id))
      await session.commit()
      return bool(result.rowcount)

  async def list_jobs(self, user_id: str, *, workflow_type: str | None = None, status: JobStatus | None = None, limit: int = 20, offset: int = 0) -> tuple[list[JobRecord], int]:
    conditions = [WorkflowJob.user_id == user_id]
    if workflow_type is not None:
      conditions.append(WorkflowJob.workflow_type == workflow_type)
    if status is not None:
      conditions.append(WorkflowJob.status == status)

    async with self._session_factory() as session:
      total = await session.scalar(select(func.count()).select_from(WorkflowJob).where(*conditions))
      stmt = select(WorkflowJob).where(*conditions).order_by(WorkflowJob.created_at.desc()).limit(limit).offset(offset)
      rows = (await session.execute(stmt)).scalars().all()
      return [self._model_to_record(row) for row in rows], int(total or 0)

  async def find_for_user(self, user_id: str) -> list[JobRecord]:
    async with self._session_factory() as session:
      rows = (await session.execute(select(WorkflowJob).where(WorkflowJob.user_id == user_id))).scalars().all()
      return [self._model_to_record(row) for row in rows]

  async def find_processing(self, limit: int = 100, offset: int = 0) -> list[JobRecord]:
    async with self._session_factory() as session:
      stmt = select(WorkflowJob).where(WorkflowJob.status == "processing").order_by(WorkflowJob.created_at.asc()).limit(limit).offset(offset)
      rows = (await session.execute(stmt)).scalars().all()
      return [self._model_to_record(row) for row in rows]

  async def find_pending_refunds(self, limit: int = 100) -> list[JobRecord]:
    async with self._session_factory() as session:
      stmt = (
        select(WorkflowJob)
        .where(WorkflowJob.status.in_(("failed", "cancelled")), WorkflowJob.credit_receipt.is_not(None), WorkflowJob.credits_refunded.is_(False))
        .order_by(WorkflowJob.updated_at.asc())
        .limit(limit)
      )
      rows = (await session.execute(stmt)).scalars().all()
      return [self._model_to_record(row) for row in rows]

  async def delete_expired(self, now: datetime.datetime) -> int:
    async with self._session_factory() as session:
      # Running jobs are left alone; their task still owns them.
      result = await session.execute(delete(WorkflowJob).where(WorkflowJob.expires_at < now, WorkflowJob.status != "processing"))
      await session.commit()
      return int(result.rowcount or 0)

  def _record_values(self, record: JobRecord) -> dict[str, Any]:
    return {
      "job_id": record.job_id,
      "user_id": record.user_id,
      "workflow_type": record.workflow_type,
      "input_ref": record.input_ref,
      "input_metadata": dict(record.input_metadata),
      "status": record.status,
      "progress": record.progress,
      "current_step": record.current_step,
      "step_progress": {name: entry.as_dict() for name, entry in record.step_progress.items()},
      "credits_reserved": record.credits_reserved,
      "credit_receipt": record.credit_receipt,
      "credits_refunded": record.credits_refunded,
      "cancel_requested": record.cancel_requested,
      "retry_count": record.retry_count,
      "max_retries": record.max_retries,
      "results": record.results,
      "error": record.error,
      "created_at": record.created_at,
      "updated_at": record.updated_at,
      "started_at": record.started_at,
      "completed_at": record.completed_at,
      "expires_at": record.expires_at,
    }

  def _model_to_record(self, row: WorkflowJob) -> JobRecord:
    return JobRecord(
      job_id=row.job_id,
      user_id=row.user_id,
      workflow_type=row.workflow_type,
      input_ref=row.input_ref,
      status=row.status,  # type: ignore[arg-type]
      created_at=row.created_at,
      updated_at=row.updated_at,
      expires_at=row.expires_at,
      progress=row.progress,
      current_step=row.current_step,
      step_progress={name: StepProgress.from_dict(entry) for name, entry in (row.step_progress or {}).items()},
      input_metadata=dict(row.input_metadata or {}),
      credits_reserved=row.credits_reserved,
      credit_receipt=row.credit_receipt,
      credits_refunded=row.credits_refunded,
      cancel_requested=row.cancel_requested,
      retry_count=row.retry_count,
      max_retries=row.max_retries,
      results=row.results,
      error=row.error,
      started_at=row.started_at,
      completed_at=row.completed_at,
    )
