"""Unit tests for workflow runs and their credit accounting."""

from __future__ import annotations

import asyncio
import copy
import datetime

import pytest
from conftest import START, FakeClock, InterleavingAccountsRepository, ScriptedProvider, subscribe_basic

from photoflow.core.errors import InsufficientCreditsError, InvalidStateTransitionError, JobNotFoundError, ResultsNotReadyError, UnknownWorkflowTypeError
from photoflow.credits.ledger import CreditLedger
from photoflow.credits.tiers import CreditAction
from photoflow.jobs.models import JobRecord
from photoflow.jobs.orchestrator import INTERRUPTED_ERROR, WorkflowOrchestrator
from photoflow.jobs.supervisor import JobSupervisor
from photoflow.notifications.progress import ProgressNotifier
from photoflow.storage.jobs_repo import InMemoryJobsRepository


async def _run(orchestrator: WorkflowOrchestrator, supervisor: JobSupervisor, user_id: str, workflow_type: str) -> JobRecord:
  record = await orchestrator.start_workflow(user_id, workflow_type, "s3://bucket/shoe.png")
  await supervisor.wait(record.job_id)
  return record


def _build(ledger: CreditLedger, jobs_repo: InMemoryJobsRepository, provider: ScriptedProvider, notifier: ProgressNotifier, supervisor: JobSupervisor, clock: FakeClock) -> WorkflowOrchestrator:
  return WorkflowOrchestrator(ledger=ledger, jobs_repo=jobs_repo, provider=provider, notifier=notifier, supervisor=supervisor, max_retries=3, clock=clock)


def _orphan(user_id: str, now: datetime.datetime, receipt=None) -> JobRecord:
  record = JobRecord.create(user_id=user_id, workflow_type="product_enhancement", input_ref="s3://in.png", steps=("detection", "background_removal"), max_retries=3, ttl=datetime.timedelta(days=30), now=now)
  if receipt is not None:
    record.credit_receipt = receipt.as_dict()
    record.credits_reserved = receipt.quantity
  return record


class CompletingJobsRepository(InMemoryJobsRepository):
  """Another writer completes the job right after the Nth snapshot of it is handed out."""

  def __init__(self, complete_on_read: int) -> None:
    super().__init__()
    self.reads = 0
    self._complete_on_read = complete_on_read

  async def get_job(self, job_id: str) -> JobRecord | None:
    record = await super().get_job(job_id)
    self.reads += 1
    if record is not None and self.reads == self._complete_on_read:
      await asyncio.sleep(0)
      winner = copy.deepcopy(record)
      winner.complete({"output_ref": "dummy://elsewhere"}, now=START)
      assert await self.update_job(winner, expected_status="processing")
    return record


class YieldingJobsRepository(InMemoryJobsRepository):
  """Hands out a snapshot, then yields so concurrent callers all read the same state."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    record = await super().get_job(job_id)
    await asyncio.sleep(0)
    return record


class FlakyTerminalJobsRepository(InMemoryJobsRepository):
  """The first write of a failed or cancelled job raises."""

  def __init__(self) -> None:
    super().__init__()
    self.failures_left = 1

  async def update_job(self, record: JobRecord, **kwargs) -> bool:
    if record.status in {"failed", "cancelled"} and self.failures_left:
      self.failures_left -= 1
      raise RuntimeError("database unavailable")
    return await super().update_job(record, **kwargs)


async def _counters(ledger: CreditLedger, user_id: str) -> tuple[int, int, int]:
  account = await ledger.get_account(user_id)
  return account.used(CreditAction.FIX), account.rollover_for(CreditAction.FIX), account.lifetime_for(CreditAction.FIX)


@pytest.mark.anyio
async def test_successful_run_completes_with_chained_outputs(orchestrator: WorkflowOrchestrator, supervisor: JobSupervisor, ledger: CreditLedger, provider: ScriptedProvider, jobs_repo: InMemoryJobsRepository) -> None:
  await subscribe_basic(ledger, "u1")
  record = await _run(orchestrator, supervisor, "u1", "product_enhancement")

  stored = await jobs_repo.get_job(record.job_id)
  assert stored.status == "completed"
  assert stored.progress == 100
  assert stored.credits_reserved == 3
  assert stored.credits_refunded is False
  assert list(stored.results["outputs"]) == ["detection", "background_removal", "enhancement", "export_generation"]
  assert stored.results["output_ref"] == stored.results["outputs"]["export_generation"]
  assert all(entry.status == "completed" for entry in stored.step_progress.values())
  assert [call.kind for call in provider.calls] == ["product_detection", "background_removal", "image_enhancement", "platform_export"]
  assert (await ledger.get_account("u1")).used(CreditAction.FIX) == 3

  results = await orchestrator.get_results(record.job_id, "u1")
  assert results["credits_used"] == 3


@pytest.mark.anyio
async def test_failed_step_fails_job_and_refunds_reservation(orchestrator: WorkflowOrchestrator, supervisor: JobSupervisor, ledger: CreditLedger, provider: ScriptedProvider, jobs_repo: InMemoryJobsRepository) -> None:
  await subscribe_basic(ledger, "u1")
  before = await _counters(ledger, "u1")
  provider.fail_kinds = {"image_enhancement"}

  record = await _run(orchestrator, supervisor, "u1", "product_enhancement")

  stored = await jobs_repo.get_job(record.job_id)
  assert stored.status == "failed"
  assert stored.retry_count == 0
  assert stored.credits_reserved == 3
  assert stored.credits_refunded is True
  assert "image_enhancement unavailable" in stored.error
  assert stored.step_progress["enhancement"].status == "failed"
  assert stored.step_progress["export_generation"].status == "pending"
  assert await _counters(ledger, "u1") == before


@pytest.mark.anyio
async def test_unexpected_error_is_treated_as_failure(orchestrator: WorkflowOrchestrator, supervisor: JobSupervisor, ledger: CreditLedger, provider: ScriptedProvider, jobs_repo: InMemoryJobsRepository) -> None:
  async def _broken(call):
    raise KeyError("boom")

  provider.invoke = _broken
  before = await _counters(ledger, "u-free")
  record = await _run(orchestrator, supervisor, "u-free", "product_enhancement")

  stored = await jobs_repo.get_job(record.job_id)
  assert stored.status == "failed"
  assert stored.error == "Unexpected processing error."
  assert await _counters(ledger, "u-free") == before


@pytest.mark.anyio
async def test_insufficient_credits_leave_no_job(orchestrator: WorkflowOrchestrator, ledger: CreditLedger, jobs_repo: InMemoryJobsRepository) -> None:
  with pytest.raises(InsufficientCreditsError) as exc_info:
    await orchestrator.start_workflow("u-free", "product_variants", "s3://in.png")

  assert exc_info.value.status_code == 402
  records, total = await jobs_repo.list_jobs("u-free")
  assert (records, total) == ([], 0)
  assert await _counters(ledger, "u-free") == (0, 0, 0)


@pytest.mark.anyio
async def test_unknown_workflow_is_rejected_before_credits(orchestrator: WorkflowOrchestrator, ledger: CreditLedger) -> None:
  with pytest.raises(UnknownWorkflowTypeError):
    await orchestrator.start_workflow("u1", "teleportation", "s3://in.png")
  assert (await ledger.get_account("u1")).version == 0


@pytest.mark.anyio
async def test_persistence_failure_on_start_refunds(orchestrator: WorkflowOrchestrator, ledger: CreditLedger, jobs_repo: InMemoryJobsRepository) -> None:
  async def _fail(record):
    raise RuntimeError("database unavailable")

  jobs_repo.create_job = _fail
  with pytest.raises(RuntimeError):
    await orchestrator.start_workflow("u-free", "product_enhancement", "s3://in.png")
  assert await _counters(ledger, "u-free") == (0, 0, 0)


@pytest.mark.anyio
async def test_retry_after_failure_reserves_again_and_can_succeed(orchestrator: WorkflowOrchestrator, supervisor: JobSupervisor, ledger: CreditLedger, provider: ScriptedProvider, jobs_repo: InMemoryJobsRepository) -> None:
  await subscribe_basic(ledger, "u1")
  provider.fail_kinds = {"platform_export"}
  record = await _run(orchestrator, supervisor, "u1", "product_enhancement")

  provider.fail_kinds = set()
  retried = await orchestrator.retry_workflow(record.job_id, "u1")
  assert retried.status == "processing"
  assert retried.retry_count == 1
  assert all(entry.status == "pending" for entry in retried.step_progress.values())
  assert (await ledger.get_account("u1")).used(CreditAction.FIX) == 3

  await supervisor.wait(record.job_id)
  stored = await jobs_repo.get_job(record.job_id)
  assert stored.status == "completed"
  assert stored.retry_count == 1
  assert (await ledger.get_account("u1")).used(CreditAction.FIX) == 3


@pytest.mark.anyio
async def test_retry_at_limit_moves_no_credits(orchestrator: WorkflowOrchestrator, ledger: CreditLedger, jobs_repo: InMemoryJobsRepository) -> None:
  await subscribe_basic(ledger, "u1")
  record = JobRecord.create(user_id="u1", workflow_type="product_enhancement", input_ref="s3://in.png", steps=("detection",), max_retries=3, ttl=datetime.timedelta(days=30), now=START)
  record.fail("boom")
  record.retry_count = 3
  await jobs_repo.create_job(record)
  before = await ledger.get_account("u1")

  with pytest.raises(InvalidStateTransitionError):
    await orchestrator.retry_workflow(record.job_id, "u1")
  assert await ledger.get_account("u1") == before


@pytest.mark.anyio
async def test_retry_requires_failed_status(orchestrator: WorkflowOrchestrator, supervisor: JobSupervisor, ledger: CreditLedger) -> None:
  record = await _run(orchestrator, supervisor, "u-free", "compliance_check")
  with pytest.raises(InvalidStateTransitionError):
    await orchestrator.retry_workflow(record.job_id, "u-free")


@pytest.mark.anyio
async def test_cancel_before_first_step_refunds_without_provider_calls(orchestrator: WorkflowOrchestrator, supervisor: JobSupervisor, ledger: CreditLedger, provider: ScriptedProvider, jobs_repo: InMemoryJobsRepository) -> None:
  record = await orchestrator.start_workflow("u-free", "product_enhancement", "s3://in.png")
  cancelled = await orchestrator.cancel_workflow(record.job_id, "u-free")
  assert cancelled.cancel_requested is True
  assert (await orchestrator.get_status(record.job_id, "u-free"))["cancel_requested"] is True

  await supervisor.wait(record.job_id)
  stored = await jobs_repo.get_job(record.job_id)
  assert stored.status == "cancelled"
  assert stored.credits_refunded is True
  assert provider.calls == []
  assert await _counters(ledger, "u-free") == (0, 0, 0)


@pytest.mark.anyio
async def test_cancel_mid_run_stops_at_next_step(orchestrator: WorkflowOrchestrator, supervisor: JobSupervisor, ledger: CreditLedger, provider: ScriptedProvider, jobs_repo: InMemoryJobsRepository) -> None:
  provider.gate = asyncio.Event()
  record = await orchestrator.start_workflow("u-free", "product_enhancement", "s3://in.png")
  # Let the pipeline reach the first provider call.
  while (await jobs_repo.get_job(record.job_id)).current_step == "starting":
    await asyncio.sleep(0)

  await orchestrator.cancel_workflow(record.job_id, "u-free")
  provider.gate.set()
  await supervisor.wait(record.job_id)

  stored = await jobs_repo.get_job(record.job_id)
  assert stored.status == "cancelled"
  assert len(provider.calls) == 1
  assert stored.step_progress["detection"].status == "completed"
  assert stored.step_progress["background_removal"].status == "pending"
  assert await _counters(ledger, "u-free") == (0, 0, 0)


@pytest.mark.anyio
async def test_cancel_without_live_task_finishes_immediately(orchestrator: WorkflowOrchestrator, ledger: CreditLedger, jobs_repo: InMemoryJobsRepository) -> None:
  receipt = await ledger.deduct("u-free", CreditAction.FIX, 3)
  record = JobRecord.create(user_id="u-free", workflow_type="product_enhancement", input_ref="s3://in.png", steps=("detection",), max_retries=3, ttl=datetime.timedelta(days=30), now=START)
  record.credits_reserved = 3
  record.credit_receipt = receipt.as_dict()
  await jobs_repo.create_job(record)

  cancelled = await orchestrator.cancel_workflow(record.job_id, "u-free")
  assert cancelled.status == "cancelled"
  assert (await jobs_repo.get_job(record.job_id)).credits_refunded is True
  assert await _counters(ledger, "u-free") == (0, 0, 0)

  with pytest.raises(InvalidStateTransitionError):
    await orchestrator.cancel_workflow(record.job_id, "u-free")


@pytest.mark.anyio
async def test_queries_hide_other_users_jobs(orchestrator: WorkflowOrchestrator, supervisor: JobSupervisor) -> None:
  record = await _run(orchestrator, supervisor, "owner", "compliance_check")
  with pytest.raises(JobNotFoundError):
    await orchestrator.get_status(record.job_id, "intruder")
  with pytest.raises(JobNotFoundError):
    await orchestrator.cancel_workflow(record.job_id, "intruder")
  with pytest.raises(JobNotFoundError):
    await orchestrator.get_status("missing", "owner")


@pytest.mark.anyio
async def test_results_require_completion(orchestrator: WorkflowOrchestrator, provider: ScriptedProvider, supervisor: JobSupervisor) -> None:
  provider.gate = asyncio.Event()
  record = await orchestrator.start_workflow("u-free", "compliance_check", "s3://in.png")
  with pytest.raises(ResultsNotReadyError):
    await orchestrator.get_results(record.job_id, "u-free")
  with pytest.raises(InvalidStateTransitionError):
    await orchestrator.delete_job(record.job_id, "u-free")
  provider.gate.set()
  await supervisor.wait(record.job_id)
  assert (await orchestrator.get_results(record.job_id, "u-free"))["results"]["workflow_type"] == "compliance_check"
  assert await orchestrator.delete_job(record.job_id, "u-free") is True


@pytest.mark.anyio
async def test_history_and_stats(orchestrator: WorkflowOrchestrator, supervisor: JobSupervisor, ledger: CreditLedger, provider: ScriptedProvider, clock: FakeClock) -> None:
  await subscribe_basic(ledger, "u1")
  await _run(orchestrator, supervisor, "u1", "compliance_check")
  clock.advance(minutes=1)
  provider.fail_kinds = {"platform_export"}
  await _run(orchestrator, supervisor, "u1", "product_enhancement")
  clock.advance(minutes=1)
  provider.fail_kinds = set()
  newest = await _run(orchestrator, supervisor, "u1", "lifestyle_scenes")

  history = await orchestrator.list_history("u1", page=1, limit=2)
  assert history["total"] == 3
  assert history["pages"] == 2
  assert history["jobs"][0]["job_id"] == newest.job_id

  failed_only = await orchestrator.list_history("u1", status="failed")
  assert [job["workflow_type"] for job in failed_only["jobs"]] == ["product_enhancement"]

  with pytest.raises(UnknownWorkflowTypeError):
    await orchestrator.list_history("u1", workflow_type="nope")
  with pytest.raises(ValueError):
    await orchestrator.list_history("u1", limit=101)

  stats = await orchestrator.get_user_stats("u1")
  assert stats["total_jobs"] == 3
  assert stats["completed"] == 2
  assert stats["failed"] == 1
  assert stats["success_rate"] == 66.7
  assert stats["credits_used"] == 5


@pytest.mark.anyio
async def test_orphaned_jobs_are_failed_and_refunded(orchestrator: WorkflowOrchestrator, ledger: CreditLedger, jobs_repo: InMemoryJobsRepository, notifier: ProgressNotifier) -> None:
  receipt = await ledger.deduct("u-free", CreditAction.FIX, 3)
  record = JobRecord.create(user_id="u-free", workflow_type="product_enhancement", input_ref="s3://in.png", steps=("detection", "background_removal"), max_retries=3, ttl=datetime.timedelta(days=30), now=START)
  record.credit_receipt = receipt.as_dict()
  record.credits_reserved = 3
  record.update_progress("detection", 0, "processing", now=START)
  await jobs_repo.create_job(record)
  subscription = notifier.subscribe("u-free", record.job_id)

  assert await orchestrator.recover_orphaned_jobs() == 1

  stored = await jobs_repo.get_job(record.job_id)
  assert stored.status == "failed"
  assert stored.error == INTERRUPTED_ERROR
  assert stored.step_progress["detection"].status == "failed"
  assert stored.credits_refunded is True
  assert stored.can_retry is True
  assert await _counters(ledger, "u-free") == (0, 0, 0)
  event = await subscription.get(timeout=1)
  assert event.event == "error"
  assert await orchestrator.recover_orphaned_jobs() == 0


@pytest.mark.anyio
async def test_pending_refunds_are_reconciled_once(orchestrator: WorkflowOrchestrator, ledger: CreditLedger, jobs_repo: InMemoryJobsRepository) -> None:
  receipt = await ledger.deduct("u-free", CreditAction.FIX, 2)
  record = JobRecord.create(user_id="u-free", workflow_type="product_enhancement", input_ref="s3://in.png", steps=("detection",), max_retries=3, ttl=datetime.timedelta(days=30), now=START)
  record.credit_receipt = receipt.as_dict()
  record.fail("provider down")
  await jobs_repo.create_job(record)

  assert await orchestrator.reconcile_refunds() == 1
  assert await orchestrator.reconcile_refunds() == 0
  assert await _counters(ledger, "u-free") == (0, 0, 0)
  assert (await jobs_repo.get_job(record.job_id)).credits_refunded is True


@pytest.mark.anyio
async def test_sweep_removes_only_expired_finished_jobs(orchestrator: WorkflowOrchestrator, jobs_repo: InMemoryJobsRepository, clock: FakeClock) -> None:
  ttl = datetime.timedelta(days=30)
  expired = JobRecord.create(user_id="u1", workflow_type="compliance_check", input_ref="a", steps=("s",), max_retries=3, ttl=ttl, now=START)
  expired.complete({})
  running = JobRecord.create(user_id="u1", workflow_type="compliance_check", input_ref="b", steps=("s",), max_retries=3, ttl=ttl, now=START)
  fresh = JobRecord.create(user_id="u1", workflow_type="compliance_check", input_ref="c", steps=("s",), max_retries=3, ttl=ttl, now=START + datetime.timedelta(days=20))
  fresh.fail("x")
  for record in (expired, running, fresh):
    await jobs_repo.create_job(record)

  assert await orchestrator.sweep_expired(START + datetime.timedelta(days=31)) == 1
  assert await jobs_repo.get_job(expired.job_id) is None
  assert await jobs_repo.get_job(running.job_id) is not None
  assert await jobs_repo.get_job(fresh.job_id) is not None


@pytest.mark.anyio
async def test_progress_events_reach_subscribers(orchestrator: WorkflowOrchestrator, supervisor: JobSupervisor, notifier: ProgressNotifier) -> None:
  subscription = notifier.subscribe("u-free")
  record = await _run(orchestrator, supervisor, "u-free", "compliance_check")

  events = []
  while (event := await subscription.get(timeout=0.01)) is not None:
    events.append(event)

  assert all(event.job_id == record.job_id for event in events)
  assert [event.event for event in events].count("progress") == 4
  assert events[-1].event == "complete"
  assert events[-1].progress == 100


@pytest.mark.anyio
@pytest.mark.parametrize("complete_on_read", [1, 2])
async def test_cancel_never_overrides_a_job_that_completed_meanwhile(complete_on_read: int, ledger: CreditLedger, provider: ScriptedProvider, notifier: ProgressNotifier, supervisor: JobSupervisor, clock: FakeClock) -> None:
  jobs_repo = CompletingJobsRepository(complete_on_read)
  orchestrator = _build(ledger, jobs_repo, provider, notifier, supervisor, clock)
  receipt = await ledger.deduct("u-free", CreditAction.FIX, 3)
  record = _orphan("u-free", START, receipt)
  await jobs_repo.create_job(record)
  spent = await _counters(ledger, "u-free")

  with pytest.raises(InvalidStateTransitionError):
    await orchestrator.cancel_workflow(record.job_id, "u-free")

  stored = await jobs_repo.get_job(record.job_id)
  assert stored.status == "completed"
  assert stored.credits_refunded is False
  assert await _counters(ledger, "u-free") == spent


@pytest.mark.anyio
async def test_concurrent_retries_reserve_credits_once(provider: ScriptedProvider, notifier: ProgressNotifier, supervisor: JobSupervisor, clock: FakeClock) -> None:
  ledger = CreditLedger(InterleavingAccountsRepository(), clock=clock, max_attempts=50, backoff_ms=1)
  jobs_repo = YieldingJobsRepository()
  orchestrator = _build(ledger, jobs_repo, provider, notifier, supervisor, clock)
  await subscribe_basic(ledger, "u1")
  provider.fail_kinds = {"platform_export"}
  record = await _run(orchestrator, supervisor, "u1", "product_enhancement")
  assert (await ledger.get_account("u1")).used(CreditAction.FIX) == 0

  provider.fail_kinds = set()
  outcomes = await asyncio.gather(orchestrator.retry_workflow(record.job_id, "u1"), orchestrator.retry_workflow(record.job_id, "u1"), return_exceptions=True)

  assert sum(isinstance(outcome, JobRecord) for outcome in outcomes) == 1
  assert sum(isinstance(outcome, InvalidStateTransitionError) for outcome in outcomes) == 1
  await supervisor.wait(record.job_id)
  stored = await jobs_repo.get_job(record.job_id)
  assert stored.status == "completed"
  assert stored.retry_count == 1
  assert (await ledger.get_account("u1")).used(CreditAction.FIX) == 3


@pytest.mark.anyio
async def test_retry_waits_for_the_previous_run_to_exit(orchestrator: WorkflowOrchestrator, supervisor: JobSupervisor, ledger: CreditLedger, jobs_repo: InMemoryJobsRepository) -> None:
  await subscribe_basic(ledger, "u1")
  record = _orphan("u1", START)
  record.fail("provider down")
  await jobs_repo.create_job(record)
  release = asyncio.Event()

  async def _still_unwinding(cancel_event: asyncio.Event) -> None:
    await release.wait()

  supervisor.launch(record.job_id, _still_unwinding)
  before = await ledger.get_account("u1")
  with pytest.raises(InvalidStateTransitionError):
    await orchestrator.retry_workflow(record.job_id, "u1")
  assert await ledger.get_account("u1") == before
  assert (await jobs_repo.get_job(record.job_id)).retry_count == 0

  release.set()
  await supervisor.wait(record.job_id)


@pytest.mark.anyio
async def test_maintenance_recovers_a_job_whose_terminal_save_failed(ledger: CreditLedger, provider: ScriptedProvider, notifier: ProgressNotifier, supervisor: JobSupervisor, clock: FakeClock) -> None:
  jobs_repo = FlakyTerminalJobsRepository()
  orchestrator = _build(ledger, jobs_repo, provider, notifier, supervisor, clock)
  provider.fail_kinds = {"image_enhancement"}

  record = await _run(orchestrator, supervisor, "u-free", "product_enhancement")
  stuck = await jobs_repo.get_job(record.job_id)
  assert stuck.status == "processing"
  assert await _counters(ledger, "u-free") != (0, 0, 0)

  # Too recent to be treated as orphaned yet.
  assert (await orchestrator.run_maintenance())["recovered"] == 0
  clock.advance(minutes=2)
  assert (await orchestrator.run_maintenance())["recovered"] == 1

  stored = await jobs_repo.get_job(record.job_id)
  assert stored.status == "failed"
  assert stored.error == INTERRUPTED_ERROR
  assert stored.credits_refunded is True
  assert await _counters(ledger, "u-free") == (0, 0, 0)


@pytest.mark.anyio
async def test_orphan_recovery_pages_through_every_processing_job(orchestrator: WorkflowOrchestrator, jobs_repo: InMemoryJobsRepository, clock: FakeClock) -> None:
  recent = START + datetime.timedelta(minutes=10)
  old = [_orphan("u1", START + datetime.timedelta(seconds=index)) for index in range(3)]
  fresh = [_orphan("u1", recent) for _ in range(2)]
  for record in (*old, *fresh):
    await jobs_repo.create_job(record)
  clock.now = recent

  assert await orchestrator.recover_orphaned_jobs(limit=2, stale_after=datetime.timedelta(minutes=1)) == 3
  assert {record.job_id for record in await jobs_repo.find_processing()} == {record.job_id for record in fresh}

  clock.advance(minutes=2)
  assert await orchestrator.recover_orphaned_jobs(limit=2, stale_after=datetime.timedelta(minutes=1)) == 2
  assert await jobs_repo.find_processing() == []
