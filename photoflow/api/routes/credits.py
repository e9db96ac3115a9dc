from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from photoflow.api.deps import get_ledger
from photoflow.api.models import CreditsSummaryResponse
from photoflow.core.security import get_current_user_id
from photoflow.credits.ledger import CreditLedger

router = APIRouter()


@router.get("", response_model=CreditsSummaryResponse)
async def get_credits(user_id: Annotated[str, Depends(get_current_user_id)], ledger: Annotated[CreditLedger, Depends(get_ledger)]) -> CreditsSummaryResponse:
  """Return remaining credits per action for the caller."""
  summary = await ledger.get_credits_summary(user_id)
  return CreditsSummaryResponse.model_validate(summary.as_dict())
