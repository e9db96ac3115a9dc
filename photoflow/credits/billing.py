"""Apply normalized billing-provider events to credit accounts."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from photoflow.credits.ledger import CreditLedger
from photoflow.credits.tiers import SubscriptionStatus, Tier

logger = logging.getLogger(__name__)

BillingEventType = Literal["checkout.completed", "invoice.payment_succeeded", "invoice.payment_failed", "subscription.updated", "subscription.deleted"]
BillingOutcome = Literal["applied", "duplicate", "ignored"]


@dataclass(frozen=True)
class BillingEvent:
  """A billing event already verified and normalized by the payment integration."""

  event_id: str
  type: str
  user_id: str
  tier: Tier | None = None
  cancel_at_period_end: bool = False


def _require_paid_tier(event: BillingEvent) -> Tier:
  if event.tier is None or event.tier == Tier.FREE:
    raise ValueError(f"{event.type} requires a paid tier.")
  return event.tier


class BillingEventHandler:
  """The only writer of subscription tier and status on credit accounts."""

  def __init__(self, ledger: CreditLedger) -> None:
    self._ledger = ledger

  async def handle(self, event: BillingEvent) -> BillingOutcome:
    if event.type == "checkout.completed":
      applied = await self._ledger.update_subscription(event.user_id, event_id=event.event_id, tier=_require_paid_tier(event), status=SubscriptionStatus.ACTIVE, reset=True)
    elif event.type == "invoice.payment_succeeded":
      applied = await self._ledger.update_subscription(event.user_id, event_id=event.event_id, status=SubscriptionStatus.ACTIVE, reset=True)
    elif event.type == "invoice.payment_failed":
      applied = await self._ledger.update_subscription(event.user_id, event_id=event.event_id, status=SubscriptionStatus.PAST_DUE)
    elif event.type == "subscription.updated":
      tier = _require_paid_tier(event)
      if event.cancel_at_period_end:
        # The plan change lands with subscription.deleted at period end.
        logger.info("Tier change scheduled for period end user_id=%s tier=%s event_id=%s", event.user_id, tier.value, event.event_id)
        return "ignored"
      applied = await self._ledger.update_subscription(event.user_id, event_id=event.event_id, tier=tier)
    elif event.type == "subscription.deleted":
      applied = await self._ledger.update_subscription(event.user_id, event_id=event.event_id, tier=Tier.FREE, status=SubscriptionStatus.CANCELLED)
    else:
      logger.info("Ignoring unhandled billing event type=%s event_id=%s", event.type, event.event_id)
      return "ignored"

    if not applied:
      logger.info("Duplicate billing event skipped type=%s event_id=%s user_id=%s", event.type, event.event_id, event.user_id)
      return "duplicate"
    logger.info("Billing event applied type=%s event_id=%s user_id=%s", event.type, event.event_id, event.user_id)
    return "applied"
