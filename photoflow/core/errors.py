"""Domain error taxonomy shared by the ledger, the orchestrator and the HTTP layer."""

from __future__ import annotations

from typing import Any


class PhotoflowError(RuntimeError):
  """Base class for errors that map to a structured client response."""

  code = "PHOTOFLOW_ERROR"
  status_code = 500

  def __init__(self, message: str, **context: Any) -> None:
    super().__init__(message)
    self.message = message
    self.context = context

  def as_detail(self) -> dict[str, Any]:
    """Return the client-facing error detail."""
    detail: dict[str, Any] = {"error": self.code, "message": self.message}
    detail.update(self.context)
    return detail


class InsufficientCreditsError(PhotoflowError):
  """Raised before any job exists when the account cannot pay for the workflow."""

  code = "CREDITS_EXHAUSTED"
  status_code = 402


class UnknownWorkflowTypeError(PhotoflowError):
  code = "UNKNOWN_WORKFLOW_TYPE"
  status_code = 400


class JobNotFoundError(PhotoflowError):
  code = "JOB_NOT_FOUND"
  status_code = 404


class InvalidStateTransitionError(PhotoflowError):
  """Raised when a job operation is not valid for the job's current status."""

  code = "INVALID_STATE_TRANSITION"
  status_code = 409


class ResultsNotReadyError(PhotoflowError):
  code = "RESULTS_NOT_READY"
  status_code = 409


class ProviderFailureError(PhotoflowError):
  """Raised when the processing provider fails, rejects, or times out a step."""

  code = "PROVIDER_FAILURE"
  status_code = 502


class PersistenceConflictError(PhotoflowError):
  """Raised when optimistic updates keep conflicting after the bounded retries."""

  code = "PERSISTENCE_CONFLICT"
  status_code = 503
