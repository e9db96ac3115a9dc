"""In-process supervisor for running pipeline tasks and their cancel flags."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from photoflow.core.errors import InvalidStateTransitionError

logger = logging.getLogger(__name__)


@dataclass
class TaskHandle:
  """A running pipeline task plus the flag it polls between steps."""

  job_id: str
  task: asyncio.Task[None]
  cancel_event: asyncio.Event


class JobSupervisor:
  """Schedule one background task per job on a bounded worker pool.

  Cancellation is cooperative: ``request_cancel`` only sets the flag, and the
  pipeline decides when to stop at its next step boundary.
  """

  def __init__(self, concurrency: int = 4) -> None:
    if concurrency <= 0:
      raise ValueError("concurrency must be >= 1")
    self._semaphore = asyncio.Semaphore(concurrency)
    self._handles: dict[str, TaskHandle] = {}

  def launch(self, job_id: str, run: Callable[[asyncio.Event], Awaitable[None]]) -> TaskHandle:
    """Start ``run(cancel_event)`` for a job once a worker slot is free."""
    if self.is_running(job_id):
      raise InvalidStateTransitionError("Job already has an active run.", job_id=job_id)

    cancel_event = asyncio.Event()

    async def _guarded() -> None:
      async with self._semaphore:
        await run(cancel_event)

    task = asyncio.create_task(_guarded(), name=f"photoflow-job-{job_id}")
    handle = TaskHandle(job_id=job_id, task=task, cancel_event=cancel_event)
    self._handles[job_id] = handle
    task.add_done_callback(lambda finished: self._on_done(job_id, finished))
    logger.info("Pipeline task launched job_id=%s", job_id)
    return handle

  def _on_done(self, job_id: str, task: asyncio.Task[None]) -> None:
    handle = self._handles.get(job_id)
    if handle is not None and handle.task is task:
      self._handles.pop(job_id, None)
    if task.cancelled():
      logger.warning("Pipeline task was cancelled before finishing job_id=%s", job_id)
      return
    exc = task.exception()
    if exc is not None:
      logger.error("Pipeline task crashed job_id=%s", job_id, exc_info=exc)

  def is_running(self, job_id: str) -> bool:
    handle = self._handles.get(job_id)
    return handle is not None and not handle.task.done()

  def request_cancel(self, job_id: str) -> bool:
    """Flag a running job for cancellation. Returns False when no task owns it."""
    handle = self._handles.get(job_id)
    if handle is None or handle.task.done():
      return False
    handle.cancel_event.set()
    logger.info("Cancellation requested job_id=%s", job_id)
    return True

  def is_cancel_requested(self, job_id: str) -> bool:
    handle = self._handles.get(job_id)
    return handle is not None and handle.cancel_event.is_set()

  def running_jobs(self) -> list[str]:
    return [job_id for job_id, handle in self._handles.items() if not handle.task.done()]

  async def wait(self, job_id: str) -> None:
    """Wait for a job's task to finish, if one is running."""
    handle = self._handles.get(job_id)
    if handle is not None:
      await asyncio.gather(handle.task, return_exceptions=True)

  async def shutdown(self) -> None:
    """Cancel every running task and wait for them to unwind."""
    handles = list(self._handles.values())
    for handle in handles:
      handle.task.cancel()
    if handles:
      await asyncio.gather(*(handle.task for handle in handles), return_exceptions=True)
    self._handles.clear()
    logger.info("Supervisor stopped %d pipeline task(s)", len(handles))
