"""Processing provider contract."""

from __future__ import annotations

from typing import Protocol

from photoflow.jobs.workflows import StepCall


class ProcessingProvider(Protocol):
  """Runs one model step and returns a reference to its output.

  Implementations raise ``ProviderFailureError`` on failure or timeout. Calls are
  slow and are never assumed idempotent. Coroutine implementations are awaited;
  blocking ones are run in a worker thread by the orchestrator.
  """

  name: str

  def invoke(self, call: StepCall) -> object:
    """Return the output reference (or an awaitable resolving to it)."""
