import json
import logging
from collections.abc import AsyncIterator
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from photoflow.api.deps import get_notifier, get_orchestrator
from photoflow.api.models import JobHistoryResponse, JobResultsResponse, JobStatsResponse, JobStatusResponse, StartWorkflowRequest
from photoflow.core.security import get_current_user_id
from photoflow.jobs.orchestrator import MAX_HISTORY_PAGE_SIZE, WorkflowOrchestrator
from photoflow.notifications.progress import ProgressNotifier, Subscription

router = APIRouter()
logger = logging.getLogger("photoflow.api.routes.workflows")

SSE_KEEPALIVE_SECONDS = 15.0
_FINAL_EVENTS = {"complete", "error", "cancelled"}

UserId = Annotated[str, Depends(get_current_user_id)]
Orchestrator = Annotated[WorkflowOrchestrator, Depends(get_orchestrator)]
Notifier = Annotated[ProgressNotifier, Depends(get_notifier)]


async def _event_stream(request: Request, subscription: Subscription, *, stop_on_final: bool) -> AsyncIterator[str]:
  """Yield Server-Sent Events until the client leaves or a job-scoped stream ends."""
  try:
    yield ": connected\n\n"
    while True:
      if await request.is_disconnected():
        break
      event = await subscription.get(timeout=SSE_KEEPALIVE_SECONDS)
      if event is None:
        # Comment lines keep proxies from closing idle streams.
        yield ": keepalive\n\n"
        continue
      yield f"event: {event.event}\ndata: {json.dumps(event.as_dict())}\n\n"
      if stop_on_final and event.event in _FINAL_EVENTS:
        break
  finally:
    subscription.close()


@router.post("", response_model=JobStatusResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_workflow(payload: StartWorkflowRequest, user_id: UserId, orchestrator: Orchestrator) -> JobStatusResponse:
  """Reserve credits and start a workflow in the background."""
  metadata = payload.metadata.model_dump(exclude_none=True) if payload.metadata else None
  record = await orchestrator.start_workflow(user_id, payload.workflow_type, payload.input_ref, metadata)
  return JobStatusResponse.model_validate(record.status_view())


@router.get("", response_model=JobHistoryResponse)
async def list_workflows(
  user_id: UserId,
  orchestrator: Orchestrator,
  page: Annotated[int, Query(ge=1)] = 1,
  limit: Annotated[int, Query(ge=1, le=MAX_HISTORY_PAGE_SIZE)] = 20,
  workflow_type: str | None = None,
  status_filter: Annotated[Literal["processing", "completed", "failed", "cancelled"] | None, Query(alias="status")] = None,
) -> JobHistoryResponse:
  """List the caller's jobs, newest first."""
  history = await orchestrator.list_history(user_id, workflow_type=workflow_type, status=status_filter, page=page, limit=limit)
  return JobHistoryResponse.model_validate(history)


@router.get("/stats", response_model=JobStatsResponse)
async def workflow_stats(user_id: UserId, orchestrator: Orchestrator) -> JobStatsResponse:
  return JobStatsResponse.model_validate(await orchestrator.get_user_stats(user_id))


@router.get("/events")
async def stream_user_events(request: Request, user_id: UserId, notifier: Notifier) -> StreamingResponse:
  """Stream progress events for every job the caller owns."""
  subscription = notifier.subscribe(user_id)
  return StreamingResponse(_event_stream(request, subscription, stop_on_final=False), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_workflow_status(job_id: str, user_id: UserId, orchestrator: Orchestrator) -> JobStatusResponse:
  return JobStatusResponse.model_validate(await orchestrator.get_status(job_id, user_id))


@router.get("/{job_id}/results", response_model=JobResultsResponse)
async def get_workflow_results(job_id: str, user_id: UserId, orchestrator: Orchestrator) -> JobResultsResponse:
  return JobResultsResponse.model_validate(await orchestrator.get_results(job_id, user_id))


@router.get("/{job_id}/events")
async def stream_job_events(job_id: str, request: Request, user_id: UserId, orchestrator: Orchestrator, notifier: Notifier) -> StreamingResponse:
  """Stream progress events for one job until it reaches a final state."""
  view = await orchestrator.get_status(job_id, user_id)
  if view["status"] != "processing":
    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Job is no longer processing; poll its status instead.")
  subscription = notifier.subscribe(user_id, job_id)
  return StreamingResponse(_event_stream(request, subscription, stop_on_final=True), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})


@router.post("/{job_id}/retry", response_model=JobStatusResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_workflow(job_id: str, user_id: UserId, orchestrator: Orchestrator) -> JobStatusResponse:
  """Retry a failed job with a fresh credit reservation."""
  record = await orchestrator.retry_workflow(job_id, user_id)
  return JobStatusResponse.model_validate(record.status_view())


@router.post("/{job_id}/cancel", response_model=JobStatusResponse)
async def cancel_workflow(job_id: str, user_id: UserId, orchestrator: Orchestrator) -> JobStatusResponse:
  """Request cancellation of a processing job."""
  record = await orchestrator.cancel_workflow(job_id, user_id)
  return JobStatusResponse.model_validate(record.status_view())


@router.delete("/{job_id}")
async def delete_workflow(job_id: str, user_id: UserId, orchestrator: Orchestrator) -> dict[str, bool]:
  deleted = await orchestrator.delete_job(job_id, user_id)
  logger.info("Delete requested job_id=%s deleted=%s", job_id, deleted)
  return {"deleted": deleted}
