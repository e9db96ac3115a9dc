"""Unit tests for job record transitions and derived views."""

from __future__ import annotations

import datetime

import pytest
from conftest import START

from photoflow.core.errors import InvalidStateTransitionError
from photoflow.jobs.models import JobRecord


def _new_job(*, max_retries: int = 3) -> JobRecord:
  return JobRecord.create(user_id="u1", workflow_type="product_enhancement", input_ref="s3://in.png", steps=("detection", "background_removal"), max_retries=max_retries, ttl=datetime.timedelta(days=30), now=START)


def test_new_job_starts_processing_with_pending_steps() -> None:
  job = _new_job()
  assert job.status == "processing"
  assert job.progress == 0
  assert job.current_step == "starting"
  assert {name: entry.status for name, entry in job.step_progress.items()} == {"detection": "pending", "background_removal": "pending"}
  assert job.expires_at == START + datetime.timedelta(days=30)
  assert len(job.job_id) == 32


def test_progress_updates_step_and_overall_marker() -> None:
  job = _new_job()
  job.update_progress("detection", 0, "processing", now=START)
  assert job.step_progress["detection"].started_at == START

  later = START + datetime.timedelta(seconds=5)
  job.update_progress("detection", 50, "completed", now=later)
  entry = job.step_progress["detection"]
  assert entry.status == "completed"
  assert entry.progress == 100
  assert entry.completed_at == later
  assert job.progress == 50
  assert job.current_step == "detection"


def test_progress_is_clamped() -> None:
  job = _new_job()
  job.update_progress("detection", 140, "processing")
  assert job.progress == 100


def test_complete_twice_is_rejected() -> None:
  job = _new_job()
  job.complete({"output_ref": "a"}, now=START + datetime.timedelta(seconds=12))
  assert job.processing_time_seconds == 12.0

  with pytest.raises(InvalidStateTransitionError):
    job.complete({"output_ref": "b"})
  assert job.results == {"output_ref": "a"}


def test_retry_resets_progress_and_counts() -> None:
  job = _new_job()
  job.update_progress("detection", 50, "failed", error="boom")
  job.fail("boom")
  assert job.can_retry is True

  job.retry(now=START)
  assert job.status == "processing"
  assert job.retry_count == 1
  assert job.error is None
  assert job.progress == 0
  assert all(entry.status == "pending" for entry in job.step_progress.values())


def test_retry_limit_is_enforced() -> None:
  job = _new_job(max_retries=1)
  job.fail("first")
  job.retry()
  job.fail("second")
  assert job.can_retry is False
  with pytest.raises(InvalidStateTransitionError):
    job.retry()


@pytest.mark.parametrize("operation", ["complete", "fail", "cancel", "retry"])
def test_terminal_jobs_reject_transitions(operation: str) -> None:
  job = _new_job()
  job.cancel()
  with pytest.raises(InvalidStateTransitionError):
    if operation == "complete":
      job.complete({})
    elif operation == "fail":
      job.fail("late")
    elif operation == "retry":
      job.retry()
    else:
      job.cancel()


def test_expiry_and_status_view() -> None:
  job = _new_job()
  assert job.is_expired(START + datetime.timedelta(days=29)) is False
  assert job.is_expired(START + datetime.timedelta(days=31)) is True

  view = job.status_view()
  assert view["status"] == "processing"
  assert view["can_retry"] is False
  assert view["step_progress"]["detection"]["status"] == "pending"
  assert view["created_at"] == START.isoformat()
