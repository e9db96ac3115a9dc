"""Pipeline orchestrator: runs priced workflows in the background and keeps job and ledger in step."""

from __future__ import annotations

import asyncio
import datetime
import inspect
import logging
import math
from collections.abc import Callable, Mapping
from typing import Any

from starlette.concurrency import run_in_threadpool

from photoflow.core.errors import InsufficientCreditsError, InvalidStateTransitionError, JobNotFoundError, ProviderFailureError, ResultsNotReadyError
from photoflow.credits.ledger import CreditLedger
from photoflow.credits.models import CreditReceipt
from photoflow.jobs.models import JobRecord, JobStatus
from photoflow.jobs.supervisor import JobSupervisor
from photoflow.jobs.workflows import DEFAULT_REGISTRY, StepCall, WorkflowDefinition, WorkflowRegistry
from photoflow.notifications.progress import ProgressEvent, ProgressEventType, ProgressNotifier
from photoflow.providers.base import ProcessingProvider
from photoflow.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Processing was interrupted before completion."
UNEXPECTED_ERROR = "Unexpected processing error."
MAX_HISTORY_PAGE_SIZE = 100
ORPHAN_GRACE = datetime.timedelta(minutes=1)


def _utc_now() -> datetime.datetime:
  return datetime.datetime.now(datetime.UTC)


class _RunSuperseded(Exception):
  """The stored job left the processing run this task was driving."""


class WorkflowOrchestrator:
  """Start, retry, cancel and query workflow jobs.

  Credits are reserved before a job is persisted and every run that ends in
  ``failed`` or ``cancelled`` returns its reservation. Every job write is guarded
  by the stored status and retry count, so a caller holding a stale copy can't
  overwrite a transition that already happened.
  """

  def __init__(
    self,
    *,
    ledger: CreditLedger,
    jobs_repo: JobsRepository,
    provider: ProcessingProvider,
    notifier: ProgressNotifier,
    supervisor: JobSupervisor,
    registry: WorkflowRegistry = DEFAULT_REGISTRY,
    job_ttl: datetime.timedelta = datetime.timedelta(days=30),
    max_retries: int = 3,
    orphan_grace: datetime.timedelta = ORPHAN_GRACE,
    clock: Callable[[], datetime.datetime] = _utc_now,
  ) -> None:
    self._ledger = ledger
    self._jobs = jobs_repo
    self._provider = provider
    self._notifier = notifier
    self._supervisor = supervisor
    self._registry = registry
    self._job_ttl = job_ttl
    self._max_retries = max_retries
    self._orphan_grace = orphan_grace
    self._clock = clock

  @property
  def registry(self) -> WorkflowRegistry:
    return self._registry

  async def start_workflow(self, user_id: str, workflow_type: str, input_ref: str, metadata: Mapping[str, Any] | None = None) -> JobRecord:
    """Reserve credits, persist a processing job and launch its pipeline."""
    definition = self._registry.resolve(workflow_type)
    # Reject before any state exists so a refused start leaves nothing behind.
    if not await self._ledger.can_perform(user_id, definition.action, definition.cost):
      logger.info("Workflow rejected for credits user_id=%s workflow=%s cost=%d", user_id, workflow_type, definition.cost)
      raise InsufficientCreditsError("Not enough credits for this workflow.", workflow_type=workflow_type, action=definition.action.value, required=definition.cost)

    record = JobRecord.create(user_id=user_id, workflow_type=workflow_type, input_ref=input_ref, steps=definition.step_names, max_retries=self._max_retries, ttl=self._job_ttl, metadata=metadata, now=self._clock())
    receipt = await self._ledger.deduct(user_id, definition.action, definition.cost)
    record.credits_reserved = definition.cost
    record.credit_receipt = receipt.as_dict()
    try:
      await self._jobs.create_job(record)
    except Exception:
      # Undo the reservation so a failed start has no side effects.
      logger.error("Failed to persist new job; refunding reservation user_id=%s job_id=%s", user_id, record.job_id, exc_info=True)
      await self._ledger.refund(user_id, receipt)
      raise

    logger.info("Workflow started job_id=%s user_id=%s workflow=%s credits=%d", record.job_id, user_id, workflow_type, definition.cost)
    self._launch(record.job_id)
    return record

  async def retry_workflow(self, job_id: str, user_id: str) -> JobRecord:
    """Re-run a failed job from its first step with a fresh reservation."""
    record = await self._get_owned(job_id, user_id)
    if record.status != "failed":
      raise InvalidStateTransitionError("Only failed jobs can be retried.", job_id=job_id, status=record.status)
    if not record.can_retry:
      raise InvalidStateTransitionError("Retry limit reached for this job.", job_id=job_id, retry_count=record.retry_count, max_retries=record.max_retries)

    if self._supervisor.is_running(job_id):
      raise InvalidStateTransitionError("The previous run is still finishing; retry shortly.", job_id=job_id, status=record.status)
    expected_retry = record.retry_count

    # Settle any refund still owed for the previous run before replacing its receipt.
    if record.credit_receipt and not record.credits_refunded:
      await self._refund(record)
      if not await self._jobs.update_job(record, expected_status="failed", expected_retry_count=expected_retry):
        raise InvalidStateTransitionError("Job was retried concurrently.", job_id=job_id)

    definition = self._registry.resolve(record.workflow_type)
    if not await self._ledger.can_perform(user_id, definition.action, definition.cost):
      raise InsufficientCreditsError("Not enough credits to retry this workflow.", workflow_type=record.workflow_type, action=definition.action.value, required=definition.cost)

    receipt = await self._ledger.deduct(user_id, definition.action, definition.cost)
    record.retry(now=self._clock())
    record.credits_reserved = definition.cost
    record.credit_receipt = receipt.as_dict()
    try:
      claimed = await self._jobs.update_job(record, expected_status="failed", expected_retry_count=expected_retry)
    except Exception:
      logger.error("Failed to persist retried job; refunding reservation job_id=%s", job_id, exc_info=True)
      await self._ledger.refund(user_id, receipt)
      raise
    if not claimed:
      # Another retry or transition won the job; this reservation was never used.
      logger.warning("Retry lost to a concurrent transition; refunding reservation job_id=%s", job_id)
      await self._ledger.refund(user_id, receipt)
      raise InvalidStateTransitionError("Job was retried concurrently.", job_id=job_id)

    logger.info("Workflow retry launched job_id=%s retry=%d/%d", job_id, record.retry_count, record.max_retries)
    self._launch(job_id)
    return record

  async def cancel_workflow(self, job_id: str, user_id: str) -> JobRecord:
    """Request cooperative cancellation of a processing job."""
    record = await self._get_owned(job_id, user_id)
    if record.status != "processing":
      raise InvalidStateTransitionError("Only processing jobs can be cancelled.", job_id=job_id, status=record.status)

    if self._supervisor.request_cancel(job_id):
      # The owning task finishes the cancellation at its next step boundary.
      record.cancel_requested = True
      return record

    # Nothing owns the job (e.g. after a restart or because its run just ended); re-read before finishing it here.
    record = await self._get_owned(job_id, user_id)
    if record.status != "processing":
      raise InvalidStateTransitionError("Only processing jobs can be cancelled.", job_id=job_id, status=record.status)
    logger.info("Cancelling job without a live task job_id=%s", job_id)
    if not await self._finish_cancelled(record):
      raise InvalidStateTransitionError("Job finished before it could be cancelled.", job_id=job_id)
    return record

  async def get_status(self, job_id: str, user_id: str) -> dict[str, Any]:
    record = await self._get_owned(job_id, user_id)
    view = record.status_view()
    view["cancel_requested"] = record.cancel_requested or self._supervisor.is_cancel_requested(job_id)
    return view

  async def get_results(self, job_id: str, user_id: str) -> dict[str, Any]:
    record = await self._get_owned(job_id, user_id)
    if record.status != "completed":
      raise ResultsNotReadyError("Job is not completed yet.", job_id=job_id, status=record.status)
    return {
      "job_id": record.job_id,
      "workflow_type": record.workflow_type,
      "results": record.results,
      "credits_used": record.credits_reserved,
      "processing_time_seconds": record.processing_time_seconds,
      "completed_at": record.completed_at.isoformat() if record.completed_at else None,
    }

  async def delete_job(self, job_id: str, user_id: str) -> bool:
    record = await self._get_owned(job_id, user_id)
    if record.status == "processing":
      raise InvalidStateTransitionError("Cancel the job before deleting it.", job_id=job_id, status=record.status)
    deleted = await self._jobs.delete_job(job_id)
    logger.info("Job deleted job_id=%s user_id=%s", job_id, user_id)
    return deleted

  async def list_history(self, user_id: str, *, workflow_type: str | None = None, status: JobStatus | None = None, page: int = 1, limit: int = 20) -> dict[str, Any]:
    if page < 1:
      raise ValueError("page must be >= 1")
    if limit < 1 or limit > MAX_HISTORY_PAGE_SIZE:
      raise ValueError(f"limit must be between 1 and {MAX_HISTORY_PAGE_SIZE}")
    if workflow_type is not None:
      self._registry.resolve(workflow_type)

    records, total = await self._jobs.list_jobs(user_id, workflow_type=workflow_type, status=status, limit=limit, offset=(page - 1) * limit)
    return {"jobs": [record.status_view() for record in records], "page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if total else 0}

  async def get_user_stats(self, user_id: str) -> dict[str, Any]:
    records = await self._jobs.find_for_user(user_id)
    counts = {status: 0 for status in ("processing", "completed", "failed", "cancelled")}
    for record in records:
      counts[record.status] += 1
    durations = [record.processing_time_seconds for record in records if record.status == "completed" and record.processing_time_seconds is not None]
    # Refunded reservations were never spent.
    credits_used = sum(record.credits_reserved for record in records if not record.credits_refunded and record.status in {"processing", "completed"})
    total = len(records)
    return {
      "total_jobs": total,
      **counts,
      "success_rate": round(counts["completed"] / total * 100, 1) if total else 0.0,
      "average_processing_seconds": round(sum(durations) / len(durations), 2) if durations else None,
      "credits_used": credits_used,
    }

  async def sweep_expired(self, now: datetime.datetime | None = None) -> int:
    """Delete finished jobs past their expiry horizon."""
    removed = await self._jobs.delete_expired(now or self._clock())
    if removed:
      logger.info("Expired jobs removed count=%d", removed)
    return removed

  async def reconcile_refunds(self, limit: int = 100) -> int:
    """Apply refunds owed by finished jobs whose refund did not land."""
    settled = 0
    for record in await self._jobs.find_pending_refunds(limit):
      try:
        await self._refund(record)
        await self._jobs.update_job(record, expected_status=record.status, expected_retry_count=record.retry_count)
      except Exception:
        logger.error("Refund reconciliation failed job_id=%s", record.job_id, exc_info=True)
        continue
      settled += 1
    if settled:
      logger.info("Reconciled pending refunds count=%d", settled)
    return settled

  async def recover_orphaned_jobs(self, limit: int = 100, *, stale_after: datetime.timedelta | None = None) -> int:
    """Fail and refund processing jobs that no live task owns.

    Pages through every processing job ``limit`` rows at a time. With
    ``stale_after`` set, jobs written more recently than that are left for a
    later pass.
    """
    cutoff = self._clock() - stale_after if stale_after is not None else None
    recovered = 0
    skipped = 0
    while True:
      # Recovered jobs leave the processing set, so only skipped ones shift the page.
      batch = await self._jobs.find_processing(limit, offset=skipped)
      for record in batch:
        if self._supervisor.is_running(record.job_id) or (cutoff is not None and record.updated_at > cutoff):
          skipped += 1
          continue
        logger.warning("Recovering orphaned job job_id=%s user_id=%s step=%s", record.job_id, record.user_id, record.current_step)
        try:
          claimed = await self._finish_failed(record, INTERRUPTED_ERROR)
        except Exception:
          logger.error("Orphan recovery failed job_id=%s", record.job_id, exc_info=True)
          claimed = False
        if claimed:
          recovered += 1
        else:
          skipped += 1
      if len(batch) < limit:
        break
    return recovered

  async def run_maintenance(self) -> dict[str, int]:
    """One pass of the periodic housekeeping loop."""
    return {
      "expired": await self.sweep_expired(),
      "recovered": await self.recover_orphaned_jobs(stale_after=self._orphan_grace),
      "refunds": await self.reconcile_refunds(),
    }

  def _launch(self, job_id: str) -> None:
    async def _run(cancel_event: asyncio.Event) -> None:
      await self._run_pipeline(job_id, cancel_event)

    self._supervisor.launch(job_id, _run)

  async def _run_pipeline(self, job_id: str, cancel_event: asyncio.Event) -> None:
    """Drive every step of a job; always end in a terminal state unless the task itself is cancelled."""
    record = await self._jobs.get_job(job_id)
    if record is None or record.status != "processing":
      logger.warning("Pipeline start skipped; job missing or not processing job_id=%s", job_id)
      return

    definition = self._registry.resolve(record.workflow_type)
    try:
      outputs = await self._run_steps(record, definition, cancel_event)
      if outputs is None or cancel_event.is_set():
        await self._finish_cancelled(record)
        return
      last_output = outputs[definition.steps[-1].name]
      record.complete({"outputs": outputs, "output_ref": last_output, "workflow_type": definition.name}, now=self._clock())
      await self._save_owned(record)
      self._notify(record, "complete", message="Processing complete!", data={"output_ref": last_output})
      logger.info("Workflow completed job_id=%s seconds=%s", job_id, record.processing_time_seconds)
    except asyncio.CancelledError:
      # Process shutdown: the job stays processing and startup recovery settles it.
      logger.warning("Pipeline task cancelled during shutdown job_id=%s", job_id)
      raise
    except _RunSuperseded:
      logger.warning("Pipeline stopped; job left this run job_id=%s", job_id)
    except ProviderFailureError as exc:
      logger.warning("Workflow step failed job_id=%s step=%s error=%s", job_id, record.current_step, exc.message)
      await self._finish_failed(record, exc.message)
    except Exception:
      logger.error("Workflow crashed job_id=%s step=%s", job_id, record.current_step, exc_info=True)
      await self._finish_failed(record, UNEXPECTED_ERROR)

  async def _run_steps(self, record: JobRecord, definition: WorkflowDefinition, cancel_event: asyncio.Event) -> dict[str, str] | None:
    """Run steps in order; return their outputs, or None when cancelled at a boundary."""
    outputs: dict[str, str] = {}
    total = len(definition.steps)
    for index, step in enumerate(definition.steps):
      if cancel_event.is_set():
        return None
      record.update_progress(step.name, round(100 * index / total), "processing", now=self._clock())
      await self._save_owned(record)
      self._notify(record, "progress", step=step.name, message=step.message)

      call = step.build(record.input_ref, outputs)
      outputs[step.name] = await self._invoke(call)

      record.update_progress(step.name, round(100 * (index + 1) / total), "completed", now=self._clock())
      await self._save_owned(record)
      self._notify(record, "progress", step=step.name, message=f"{step.name} completed")
    return outputs

  async def _invoke(self, call: StepCall) -> str:
    # Blocking providers run in a worker thread so they don't stall other jobs.
    if inspect.iscoroutinefunction(self._provider.invoke):
      output = await self._provider.invoke(call)
    else:
      output = await run_in_threadpool(self._provider.invoke, call)
    if not isinstance(output, str) or not output:
      raise ProviderFailureError(f"Step '{call.kind}' returned no output.", kind=call.kind)
    return output

  async def _finish_failed(self, record: JobRecord, error: str) -> bool:
    if record.status != "processing":
      # The run already ended locally (e.g. its final save raised); the stored job is left to orphan recovery.
      logger.error("Error after job left processing job_id=%s status=%s error=%s", record.job_id, record.status, error)
      return False
    step = record.current_step
    if step in record.step_progress and record.step_progress[step].status == "processing":
      record.update_progress(step, record.progress, "failed", error=error, now=self._clock())
    record.fail(error, now=self._clock())
    if not await self._settle_terminal(record):
      return False
    self._notify(record, "error", step=record.current_step, message=error)
    return True

  async def _finish_cancelled(self, record: JobRecord) -> bool:
    record.cancel_requested = True
    record.cancel(now=self._clock())
    if not await self._settle_terminal(record):
      return False
    self._notify(record, "cancelled", message="Workflow cancelled.")
    logger.info("Workflow cancelled job_id=%s step=%s", record.job_id, record.current_step)
    return True

  async def _settle_terminal(self, record: JobRecord) -> bool:
    """Claim and refund a job that just became failed or cancelled.

    Returns False, refunding nothing, when the stored job already left the
    processing run ``record`` belongs to. A refund that can't be applied now is
    left pending on the record and picked up by ``reconcile_refunds``.
    """
    if not await self._jobs.update_job(record, expected_status="processing", expected_retry_count=record.retry_count):
      logger.warning("Terminal transition skipped; job already moved on job_id=%s status=%s", record.job_id, record.status)
      return False
    try:
      await self._refund(record)
    except Exception:
      logger.error("Refund failed; left pending for reconciliation job_id=%s", record.job_id, exc_info=True)
      return True
    await self._jobs.update_job(record, expected_status=record.status, expected_retry_count=record.retry_count)
    return True

  async def _save_owned(self, record: JobRecord) -> None:
    """Persist a running job, or stop the run when the stored job moved on."""
    if not await self._jobs.update_job(record, expected_status="processing", expected_retry_count=record.retry_count):
      raise _RunSuperseded(record.job_id)

  async def _refund(self, record: JobRecord) -> None:
    if not record.credit_receipt or record.credits_refunded:
      return
    receipt = CreditReceipt.from_dict(record.credit_receipt)
    await self._ledger.refund(record.user_id, receipt)
    record.credits_refunded = True

  async def _get_owned(self, job_id: str, user_id: str) -> JobRecord:
    record = await self._jobs.get_job(job_id)
    # Foreign jobs are reported as missing so ids can't be enumerated.
    if record is None or record.user_id != user_id:
      raise JobNotFoundError("Job not found.", job_id=job_id)
    return record

  def _notify(self, record: JobRecord, event: ProgressEventType, *, step: str | None = None, message: str | None = None, data: dict[str, Any] | None = None) -> None:
    self._notifier.publish(ProgressEvent(event=event, job_id=record.job_id, user_id=record.user_id, step=step or record.current_step, progress=record.progress, message=message, data=data))
