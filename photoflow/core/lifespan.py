import asyncio
import contextlib
import datetime
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from photoflow.config import Settings
from photoflow.core.database import dispose_engine
from photoflow.core.logging import _initialize_logging
from photoflow.credits.billing import BillingEventHandler
from photoflow.credits.ledger import CreditLedger
from photoflow.credits.tiers import build_tier_table
from photoflow.jobs.orchestrator import WorkflowOrchestrator
from photoflow.jobs.supervisor import JobSupervisor
from photoflow.notifications.progress import ProgressNotifier
from photoflow.providers import build_provider
from photoflow.storage.factory import build_credit_accounts_repo, build_jobs_repo


def build_services(app: FastAPI, settings: Settings) -> None:
  """Wire the ledger, notifier, supervisor and orchestrator onto ``app.state``."""
  ledger = CreditLedger(build_credit_accounts_repo(settings), build_tier_table(settings.tier_limits), max_attempts=settings.ledger_max_attempts, backoff_ms=settings.ledger_backoff_ms)
  notifier = ProgressNotifier(max_queue=settings.notifier_queue_size)
  supervisor = JobSupervisor(concurrency=settings.worker_concurrency)
  provider = build_provider(settings)
  orchestrator = WorkflowOrchestrator(
    ledger=ledger,
    jobs_repo=build_jobs_repo(settings),
    provider=provider,
    notifier=notifier,
    supervisor=supervisor,
    job_ttl=datetime.timedelta(days=settings.job_ttl_days),
    max_retries=settings.job_max_retries,
  )
  app.state.ledger = ledger
  app.state.billing = BillingEventHandler(ledger)
  app.state.notifier = notifier
  app.state.supervisor = supervisor
  app.state.provider = provider
  app.state.orchestrator = orchestrator


async def _maintenance_loop(orchestrator: WorkflowOrchestrator, interval_seconds: int, logger: logging.Logger) -> None:
  """Run expiry sweeps, orphan recovery and refund reconciliation until cancelled."""
  while True:
    await asyncio.sleep(interval_seconds)
    try:
      await orchestrator.run_maintenance()
    except Exception:  # noqa: BLE001
      # Keep the loop alive; the next pass retries the same work.
      logger.error("Maintenance pass failed.", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging and services, recover interrupted jobs, and tear everything down on exit."""
  from photoflow.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("photoflow.core.lifespan")

  try:
    _initialize_logging(settings)
    logger.info("Startup complete - logging verified.")
  except Exception:
    # Logging failures must not keep the service from serving requests.
    logger.warning("Initial logging setup failed; continuing with default handlers.", exc_info=True)

  build_services(app, settings)
  orchestrator: WorkflowOrchestrator = app.state.orchestrator

  # Nothing is running yet, so every processing job left behind was interrupted.
  recovered = await orchestrator.recover_orphaned_jobs()
  if recovered:
    logger.warning("Recovered %d interrupted job(s) at startup.", recovered)
  await orchestrator.reconcile_refunds()

  maintenance_task: asyncio.Task[None] | None = None
  if settings.expiry_sweep_interval_seconds > 0:
    maintenance_task = asyncio.create_task(_maintenance_loop(orchestrator, settings.expiry_sweep_interval_seconds, logger), name="photoflow-maintenance")

  try:
    yield
  finally:
    if maintenance_task is not None:
      maintenance_task.cancel()
      with contextlib.suppress(asyncio.CancelledError):
        await maintenance_task
    await app.state.supervisor.shutdown()
    aclose = getattr(app.state.provider, "aclose", None)
    if aclose is not None:
      await aclose()
    await dispose_engine()
    logger.info("Shutdown complete.")
