from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, status

from photoflow.api.deps import get_billing_handler
from photoflow.api.models import BillingEventRequest, BillingEventResponse
from photoflow.config import Settings, get_settings
from photoflow.credits.billing import BillingEvent, BillingEventHandler

router = APIRouter(prefix="/billing", tags=["billing"])
logger = logging.getLogger(__name__)


def require_task_secret(
  settings: Annotated[Settings, Depends(get_settings)], authorization: str | None = Header(default=None), x_photoflow_task_secret: str | None = Header(default=None)
) -> None:
  """Reject callers that don't present the shared internal secret."""
  # Internal endpoints are closed until a secret is configured.
  if not settings.task_secret:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Task authentication is not configured.")
  expected_auth = f"Bearer {settings.task_secret}"
  shared_secret_valid = secrets.compare_digest((x_photoflow_task_secret or ""), settings.task_secret)
  bearer_valid = secrets.compare_digest((authorization or ""), expected_auth)
  if not shared_secret_valid and not bearer_valid:
    logger.warning("Unauthorized access attempt to /billing/events")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid task secret.")


@router.post("/events", response_model=BillingEventResponse, dependencies=[Depends(require_task_secret)])
async def apply_billing_event(payload: BillingEventRequest, handler: Annotated[BillingEventHandler, Depends(get_billing_handler)]) -> BillingEventResponse:
  """Apply a normalized billing event to the user's credit account."""
  event = BillingEvent(event_id=payload.event_id, type=payload.type, user_id=payload.user_id, tier=payload.tier, cancel_at_period_end=payload.cancel_at_period_end)
  try:
    outcome = await handler.handle(event)
  except ValueError as exc:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
  return BillingEventResponse(status=outcome)
