"""Shared fixtures: in-memory storage, a controllable clock and a wired orchestrator."""

from __future__ import annotations

import asyncio
import datetime
import os

# Ensure required settings are available before importing the app.
os.environ["PHOTOFLOW_ALLOWED_ORIGINS"] = "http://localhost"
os.environ["PHOTOFLOW_STORAGE_BACKEND"] = "memory"
os.environ["PHOTOFLOW_PROVIDER"] = "dummy"
os.environ["PHOTOFLOW_TASK_SECRET"] = "test-task-secret"
os.environ["PHOTOFLOW_EXPIRY_SWEEP_INTERVAL_SECONDS"] = "0"

import pytest  # noqa: E402

from photoflow.core.errors import ProviderFailureError  # noqa: E402
from photoflow.credits.ledger import CreditLedger  # noqa: E402
from photoflow.credits.models import CreditAccount  # noqa: E402
from photoflow.credits.tiers import SubscriptionStatus, Tier  # noqa: E402
from photoflow.jobs.orchestrator import WorkflowOrchestrator  # noqa: E402
from photoflow.jobs.supervisor import JobSupervisor  # noqa: E402
from photoflow.jobs.workflows import StepCall  # noqa: E402
from photoflow.notifications.progress import ProgressNotifier  # noqa: E402
from photoflow.providers.dummy import DummyProvider  # noqa: E402
from photoflow.storage.credit_accounts_repo import InMemoryCreditAccountsRepository  # noqa: E402
from photoflow.storage.jobs_repo import InMemoryJobsRepository  # noqa: E402

START = datetime.datetime(2026, 1, 1, tzinfo=datetime.UTC)


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


class FakeClock:
  """Callable clock that tests move forward explicitly."""

  def __init__(self, now: datetime.datetime = START) -> None:
    self.now = now

  def __call__(self) -> datetime.datetime:
    return self.now

  def advance(self, **kwargs: float) -> datetime.datetime:
    self.now = self.now + datetime.timedelta(**kwargs)
    return self.now


class ScriptedProvider(DummyProvider):
  """Dummy provider that fails chosen step kinds and can hold steps behind a gate."""

  def __init__(self, fail_kinds: set[str] | None = None) -> None:
    super().__init__()
    self.fail_kinds = set(fail_kinds or ())
    self.gate: asyncio.Event | None = None

  async def invoke(self, call: StepCall) -> str:
    if self.gate is not None:
      await self.gate.wait()
    if call.kind in self.fail_kinds:
      self.calls.append(call)
      raise ProviderFailureError(f"Processing failed: {call.kind} unavailable", kind=call.kind)
    return await super().invoke(call)


class InterleavingAccountsRepository(InMemoryCreditAccountsRepository):
  """Yields between a writer's read and its compare-and-swap so concurrent writers interleave."""

  def __init__(self) -> None:
    super().__init__()
    self.lost_swaps = 0

  async def compare_and_swap(self, account: CreditAccount, *, expected_version: int) -> bool:
    await asyncio.sleep(0)
    swapped = await super().compare_and_swap(account, expected_version=expected_version)
    if not swapped:
      self.lost_swaps += 1
    return swapped


@pytest.fixture
def clock() -> FakeClock:
  return FakeClock()


@pytest.fixture
def accounts_repo() -> InMemoryCreditAccountsRepository:
  return InMemoryCreditAccountsRepository()


@pytest.fixture
def jobs_repo() -> InMemoryJobsRepository:
  return InMemoryJobsRepository()


@pytest.fixture
def ledger(accounts_repo: InMemoryCreditAccountsRepository, clock: FakeClock) -> CreditLedger:
  return CreditLedger(accounts_repo, clock=clock, backoff_ms=1)


@pytest.fixture
def provider() -> ScriptedProvider:
  return ScriptedProvider()


@pytest.fixture
def notifier() -> ProgressNotifier:
  return ProgressNotifier(max_queue=100)


@pytest.fixture
def supervisor() -> JobSupervisor:
  return JobSupervisor(concurrency=2)


@pytest.fixture
def orchestrator(ledger: CreditLedger, jobs_repo: InMemoryJobsRepository, provider: ScriptedProvider, notifier: ProgressNotifier, supervisor: JobSupervisor, clock: FakeClock) -> WorkflowOrchestrator:
  return WorkflowOrchestrator(ledger=ledger, jobs_repo=jobs_repo, provider=provider, notifier=notifier, supervisor=supervisor, job_ttl=datetime.timedelta(days=30), max_retries=3, clock=clock)


async def subscribe_basic(ledger: CreditLedger, user_id: str, event_id: str = "evt-checkout") -> None:
  """Put a user on an active Basic subscription."""
  await ledger.update_subscription(user_id, event_id=event_id, tier=Tier.BASIC, status=SubscriptionStatus.ACTIVE, reset=True)
