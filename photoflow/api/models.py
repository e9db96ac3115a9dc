from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, field_validator

from photoflow.credits.tiers import Tier

MAX_INPUT_REF_LENGTH = 2048


class InputMetadata(BaseModel):
  """Optional descriptive metadata about the submitted image."""

  filename: StrictStr | None = Field(default=None, max_length=255)
  file_size: StrictInt | None = Field(default=None, ge=0)
  mime_type: StrictStr | None = Field(default=None, max_length=100)
  model_config = ConfigDict(extra="forbid")


class StartWorkflowRequest(BaseModel):
  """Request payload for starting a workflow."""

  workflow_type: StrictStr = Field(min_length=1, max_length=64, description="Registered workflow name.", examples=["product_enhancement"])
  input_ref: StrictStr = Field(min_length=1, max_length=MAX_INPUT_REF_LENGTH, description="Opaque reference (URL or object key) to the input image.")
  metadata: InputMetadata | None = Field(default=None, description="Optional metadata about the input image.")
  model_config = ConfigDict(extra="forbid")

  @field_validator("input_ref")
  @classmethod
  def _strip_input_ref(cls, value: str) -> str:
    stripped = value.strip()
    if not stripped:
      raise ValueError("input_ref must not be blank.")
    return stripped


class StepProgressResponse(BaseModel):
  status: Literal["pending", "processing", "completed", "failed"]
  progress: int
  started_at: str | None = None
  completed_at: str | None = None
  error: str | None = None


class JobStatusResponse(BaseModel):
  """Polling view of a workflow job."""

  job_id: str
  workflow_type: str
  status: Literal["processing", "completed", "failed", "cancelled"]
  progress: int
  current_step: str
  step_progress: dict[str, StepProgressResponse]
  error: str | None = None
  credits_reserved: int
  retry_count: int
  max_retries: int
  can_retry: bool
  cancel_requested: bool
  created_at: str
  completed_at: str | None = None
  expires_at: str
  processing_time_seconds: float | None = None


class JobResultsResponse(BaseModel):
  job_id: str
  workflow_type: str
  results: dict[str, Any] | None
  credits_used: int
  processing_time_seconds: float | None = None
  completed_at: str | None = None


class JobHistoryResponse(BaseModel):
  jobs: list[JobStatusResponse]
  page: int
  limit: int
  total: int
  pages: int


class JobStatsResponse(BaseModel):
  total_jobs: int
  processing: int
  completed: int
  failed: int
  cancelled: int
  success_rate: float
  average_processing_seconds: float | None = None
  credits_used: int


class CreditsSummaryResponse(BaseModel):
  """Remaining credits per action for the caller."""

  user_id: str
  tier: str
  status: str
  monthly_remaining: dict[str, int]
  rollover: dict[str, int]
  lifetime_remaining: dict[str, int] | None = None
  next_reset_at: str | None = None


class BillingEventRequest(BaseModel):
  """Normalized billing event forwarded by the payment integration."""

  event_id: StrictStr = Field(min_length=1, max_length=255)
  type: StrictStr = Field(min_length=1, max_length=64, examples=["checkout.completed"])
  user_id: StrictStr = Field(min_length=1, max_length=128)
  tier: Tier | None = None
  cancel_at_period_end: bool = False
  model_config = ConfigDict(extra="forbid")


class BillingEventResponse(BaseModel):
  status: Literal["applied", "duplicate", "ignored"]
