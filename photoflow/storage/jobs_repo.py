"""Storage interfaces for workflow jobs."""

from __future__ import annotations

import copy
import datetime
from typing import Protocol

from photoflow.jobs.models import JobRecord, JobStatus


class JobsRepository(Protocol):
  """Repository contract for job persistence."""

  async def create_job(self, record: JobRecord) -> None:
    """Persist an initial job record."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by identifier."""

  async def update_job(self, record: JobRecord, *, expected_status: JobStatus, expected_retry_count: int | None = None) -> bool:
    """Overwrite the stored job only while it still has ``expected_status``.

    ``expected_retry_count`` narrows the guard to one run of the job. Returns
    False when another writer moved the job first.
    """

  async def delete_job(self, job_id: str) -> bool:
    """Delete a job; return False when it did not exist."""

  async def list_jobs(self, user_id: str, *, workflow_type: str | None = None, status: JobStatus | None = None, limit: int = 20, offset: int = 0) -> tuple[list[JobRecord], int]:
    """Return one page of a user's jobs, newest first, plus the total count."""

  async def find_for_user(self, user_id: str) -> list[JobRecord]:
    """Return every job a user owns."""

  async def find_processing(self, limit: int = 100, offset: int = 0) -> list[JobRecord]:
    """Return jobs still marked processing, oldest first."""

  async def find_pending_refunds(self, limit: int = 100) -> list[JobRecord]:
    """Return finished jobs whose reservation has not been refunded yet."""

  async def delete_expired(self, now: datetime.datetime) -> int:
    """Delete jobs whose expiry horizon has passed; return the count."""


class InMemoryJobsRepository:
  """Process-local job store used by the memory backend and tests.

  Records are copied on the way in and out so callers can't mutate stored state.
  """

  def __init__(self) -> None:
    self._jobs: dict[str, JobRecord] = {}

  async def create_job(self, record: JobRecord) -> None:
    if record.job_id in self._jobs:
      raise ValueError(f"Job {record.job_id} already exists.")
    self._jobs[record.job_id] = copy.deepcopy(record)

  async def get_job(self, job_id: str) -> JobRecord | None:
    record = self._jobs.get(job_id)
    return copy.deepcopy(record) if record is not None else None

  async def update_job(self, record: JobRecord, *, expected_status: JobStatus, expected_retry_count: int | None = None) -> bool:
    stored = self._jobs.get(record.job_id)
    if stored is None or stored.status != expected_status:
      return False
    if expected_retry_count is not None and stored.retry_count != expected_retry_count:
      return False
    self._jobs[record.job_id] = copy.deepcopy(record)
    return True

  async def delete_job(self, job_id: str) -> bool:
    return self._jobs.pop(job_id, None) is not None

  async def list_jobs(self, user_id: str, *, workflow_type: str | None = None, status: JobStatus | None = None, limit: int = 20, offset: int = 0) -> tuple[list[JobRecord], int]:
    matches = [
      record for record in self._jobs.values() if record.user_id == user_id and (workflow_type is None or record.workflow_type == workflow_type) and (status is None or record.status == status)
    ]
    matches.sort(key=lambda record: record.created_at, reverse=True)
    page = matches[offset : offset + limit]
    return [copy.deepcopy(record) for record in page], len(matches)

  async def find_for_user(self, user_id: str) -> list[JobRecord]:
    return [copy.deepcopy(record) for record in self._jobs.values() if record.user_id == user_id]

  async def find_processing(self, limit: int = 100, offset: int = 0) -> list[JobRecord]:
    processing = sorted((record for record in self._jobs.values() if record.status == "processing"), key=lambda record: record.created_at)
    return [copy.deepcopy(record) for record in processing[offset : offset + limit]]

  async def find_pending_refunds(self, limit: int = 100) -> list[JobRecord]:
    pending = [record for record in self._jobs.values() if record.status in {"failed", "cancelled"} and record.credit_receipt and not record.credits_refunded]
    return [copy.deepcopy(record) for record in pending][:limit]

  async def delete_expired(self, now: datetime.datetime) -> int:
    # Running jobs are left alone; their task still owns them.
    expired = [job_id for job_id, record in self._jobs.items() if record.expires_at < now and record.status != "processing"]
    for job_id in expired:
      del self._jobs[job_id]
    return len(expired)
