"""Best-effort push channel for job progress, keyed by user and optionally by job."""

from __future__ import annotations

import asyncio
import datetime
import logging
from dataclasses import dataclass, field
from typing import Any, Literal

logger = logging.getLogger(__name__)

ProgressEventType = Literal["progress", "complete", "error", "cancelled"]


@dataclass(frozen=True)
class ProgressEvent:
  """Structured event emitted while a workflow job runs."""

  event: ProgressEventType
  job_id: str
  user_id: str
  step: str | None = None
  progress: int | None = None
  message: str | None = None
  data: dict[str, Any] | None = None
  timestamp: datetime.datetime = field(default_factory=lambda: datetime.datetime.now(datetime.UTC))

  def as_dict(self) -> dict[str, Any]:
    """Serialize the event for the wire; the owner id stays server-side."""
    return {
      "event": self.event,
      "job_id": self.job_id,
      "step": self.step,
      "progress": self.progress,
      "message": self.message,
      "data": self.data,
      "timestamp": self.timestamp.isoformat(),
    }


class Subscription:
  """One subscriber's bounded queue. Call ``get`` to receive events."""

  def __init__(self, notifier: ProgressNotifier, user_id: str, job_id: str | None, max_queue: int) -> None:
    self.user_id = user_id
    self.job_id = job_id
    self.dropped = 0
    self._notifier = notifier
    self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=max_queue)

  def matches(self, event: ProgressEvent) -> bool:
    return event.user_id == self.user_id and (self.job_id is None or self.job_id == event.job_id)

  def offer(self, event: ProgressEvent) -> None:
    """Enqueue without blocking, dropping the oldest event when full."""
    if self._queue.full():
      self._queue.get_nowait()
      self.dropped += 1
    self._queue.put_nowait(event)

  async def get(self, timeout: float | None = None) -> ProgressEvent | None:
    """Wait for the next event; return None when ``timeout`` elapses first."""
    if timeout is None:
      return await self._queue.get()
    try:
      return await asyncio.wait_for(self._queue.get(), timeout=timeout)
    except TimeoutError:
      return None

  def close(self) -> None:
    self._notifier.unsubscribe(self)


class ProgressNotifier:
  """Fan events out to live subscribers.

  Nothing is persisted: a subscriber that was not attached, or whose queue
  overflowed, must fall back to polling the job status.
  """

  def __init__(self, max_queue: int = 100) -> None:
    self._max_queue = max_queue
    self._subscriptions: dict[str, set[Subscription]] = {}

  def subscribe(self, user_id: str, job_id: str | None = None) -> Subscription:
    subscription = Subscription(self, user_id, job_id, self._max_queue)
    self._subscriptions.setdefault(user_id, set()).add(subscription)
    logger.debug("Progress subscriber attached user_id=%s job_id=%s", user_id, job_id)
    return subscription

  def unsubscribe(self, subscription: Subscription) -> None:
    subscribers = self._subscriptions.get(subscription.user_id)
    if not subscribers:
      return
    subscribers.discard(subscription)
    if not subscribers:
      self._subscriptions.pop(subscription.user_id, None)

  def subscriber_count(self, user_id: str) -> int:
    return len(self._subscriptions.get(user_id, ()))

  def publish(self, event: ProgressEvent) -> int:
    """Deliver to every matching subscriber and return how many received it."""
    delivered = 0
    for subscription in list(self._subscriptions.get(event.user_id, ())):
      if not subscription.matches(event):
        continue
      subscription.offer(event)
      delivered += 1
    return delivered
