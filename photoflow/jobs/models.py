"""Domain models and state machine for image-processing workflow jobs."""

from __future__ import annotations

import datetime
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from photoflow.core.errors import InvalidStateTransitionError
from photoflow.utils.ids import generate_job_id

JobStatus = Literal["processing", "completed", "failed", "cancelled"]
StepStatus = Literal["pending", "processing", "completed", "failed"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})


def _utc_now() -> datetime.datetime:
  return datetime.datetime.now(datetime.UTC)


def _iso(value: datetime.datetime | None) -> str | None:
  return value.isoformat() if value is not None else None


def _parse_dt(value: Any) -> datetime.datetime | None:
  if value is None or isinstance(value, datetime.datetime):
    return value
  return datetime.datetime.fromisoformat(str(value))


@dataclass
class StepProgress:
  """Progress of one pipeline step."""

  status: StepStatus = "pending"
  progress: int = 0
  started_at: datetime.datetime | None = None
  completed_at: datetime.datetime | None = None
  error: str | None = None

  def as_dict(self) -> dict[str, Any]:
    return {"status": self.status, "progress": self.progress, "started_at": _iso(self.started_at), "completed_at": _iso(self.completed_at), "error": self.error}

  @classmethod
  def from_dict(cls, raw: Mapping[str, Any]) -> StepProgress:
    return cls(status=raw.get("status", "pending"), progress=int(raw.get("progress", 0)), started_at=_parse_dt(raw.get("started_at")), completed_at=_parse_dt(raw.get("completed_at")), error=raw.get("error"))


@dataclass
class JobRecord:
  """Durable record of one workflow execution.

  Only the task that owns a job calls the mutating methods below, so they
  need no locking. Each method enforces its allowed source status.
  """

  job_id: str
  user_id: str
  workflow_type: str
  input_ref: str
  status: JobStatus
  created_at: datetime.datetime
  updated_at: datetime.datetime
  expires_at: datetime.datetime
  progress: int = 0
  current_step: str = "starting"
  step_progress: dict[str, StepProgress] = field(default_factory=dict)
  input_metadata: dict[str, Any] = field(default_factory=dict)
  credits_reserved: int = 0
  credit_receipt: dict[str, Any] | None = None
  credits_refunded: bool = False
  cancel_requested: bool = False
  retry_count: int = 0
  max_retries: int = 3
  results: dict[str, Any] | None = None
  error: str | None = None
  started_at: datetime.datetime | None = None
  completed_at: datetime.datetime | None = None

  @classmethod
  def create(
    cls,
    *,
    user_id: str,
    workflow_type: str,
    input_ref: str,
    steps: Iterable[str],
    max_retries: int,
    ttl: datetime.timedelta,
    metadata: Mapping[str, Any] | None = None,
    now: datetime.datetime | None = None,
  ) -> JobRecord:
    """Build a new processing job with every workflow step pending."""
    now = now or _utc_now()
    return cls(
      job_id=generate_job_id(),
      user_id=user_id,
      workflow_type=workflow_type,
      input_ref=input_ref,
      status="processing",
      created_at=now,
      updated_at=now,
      expires_at=now + ttl,
      step_progress={name: StepProgress() for name in steps},
      input_metadata=dict(metadata or {}),
      max_retries=max_retries,
      started_at=now,
    )

  @property
  def is_terminal(self) -> bool:
    return self.status in TERMINAL_STATUSES

  @property
  def can_retry(self) -> bool:
    return self.status == "failed" and self.retry_count < self.max_retries

  @property
  def processing_time_seconds(self) -> float | None:
    if self.started_at is None or self.completed_at is None:
      return None
    return (self.completed_at - self.started_at).total_seconds()

  def is_expired(self, now: datetime.datetime | None = None) -> bool:
    return (now or _utc_now()) > self.expires_at

  def _require(self, expected: JobStatus, operation: str) -> None:
    if self.status != expected:
      raise InvalidStateTransitionError(f"Cannot {operation} a job that is {self.status}.", job_id=self.job_id, status=self.status)

  def update_progress(self, step: str, progress: int, step_status: StepStatus, *, error: str | None = None, now: datetime.datetime | None = None) -> None:
    """Record step progress and move the job's overall progress marker."""
    self._require("processing", "update")
    now = now or _utc_now()
    self.current_step = step
    self.progress = max(0, min(100, int(progress)))

    entry = self.step_progress.get(step) or StepProgress()
    # Stamp the start only on the first move into processing.
    if step_status == "processing" and entry.status != "processing":
      entry.started_at = now
      entry.completed_at = None
      entry.error = None
    if step_status in {"completed", "failed"}:
      entry.completed_at = now
    if step_status == "completed":
      entry.progress = 100
    if error is not None:
      entry.error = error
    entry.status = step_status
    self.step_progress[step] = entry
    self.updated_at = now

  def complete(self, results: dict[str, Any], *, now: datetime.datetime | None = None) -> None:
    self._require("processing", "complete")
    now = now or _utc_now()
    self.status = "completed"
    self.progress = 100
    self.results = results
    self.completed_at = now
    self.updated_at = now

  def fail(self, error: str, *, now: datetime.datetime | None = None) -> None:
    self._require("processing", "fail")
    now = now or _utc_now()
    self.status = "failed"
    self.error = error
    self.completed_at = now
    self.updated_at = now

  def retry(self, *, now: datetime.datetime | None = None) -> None:
    """Re-enter processing from a failed state while retries remain."""
    self._require("failed", "retry")
    if self.retry_count >= self.max_retries:
      raise InvalidStateTransitionError("Retry limit reached for this job.", job_id=self.job_id, retry_count=self.retry_count, max_retries=self.max_retries)
    now = now or _utc_now()
    self.retry_count += 1
    self.status = "processing"
    self.progress = 0
    self.current_step = "starting"
    self.error = None
    self.results = None
    self.completed_at = None
    self.started_at = now
    self.cancel_requested = False
    self.credits_refunded = False
    self.step_progress = {name: StepProgress() for name in self.step_progress}
    self.updated_at = now

  def cancel(self, *, now: datetime.datetime | None = None) -> None:
    self._require("processing", "cancel")
    now = now or _utc_now()
    self.status = "cancelled"
    self.completed_at = now
    self.updated_at = now

  def status_view(self) -> dict[str, Any]:
    """Return the polling view of the job."""
    return {
      "job_id": self.job_id,
      "workflow_type": self.workflow_type,
      "status": self.status,
      "progress": self.progress,
      "current_step": self.current_step,
      "step_progress": {name: entry.as_dict() for name, entry in self.step_progress.items()},
      "error": self.error,
      "credits_reserved": self.credits_reserved,
      "retry_count": self.retry_count,
      "max_retries": self.max_retries,
      "can_retry": self.can_retry,
      "cancel_requested": self.cancel_requested,
      "created_at": _iso(self.created_at),
      "completed_at": _iso(self.completed_at),
      "expires_at": _iso(self.expires_at),
      "processing_time_seconds": self.processing_time_seconds,
    }
