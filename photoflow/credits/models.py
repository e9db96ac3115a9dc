"""Domain models for per-user credit accounts and deduction receipts."""

from __future__ import annotations

import datetime
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from photoflow.credits.tiers import ACTIONS, CreditAction, SubscriptionStatus, Tier

Counters = Mapping[CreditAction, int]


def _utc_now() -> datetime.datetime:
  return datetime.datetime.now(datetime.UTC)


def zero_counters() -> dict[CreditAction, int]:
  return {action: 0 for action in ACTIONS}


def counters_to_json(counters: Counters) -> dict[str, int]:
  return {CreditAction(action).value: int(value) for action, value in counters.items()}


def counters_from_json(raw: Mapping[str, Any] | None) -> dict[CreditAction, int]:
  counters = zero_counters()
  for key, value in (raw or {}).items():
    counters[CreditAction(key)] = int(value)
  return counters


@dataclass(frozen=True)
class CreditAccount:
  """Credit state of one user; replaced wholesale on every ledger mutation."""

  user_id: str
  tier: Tier
  status: SubscriptionStatus
  last_reset_date: datetime.datetime
  monthly_used: Counters = field(default_factory=zero_counters)
  rollover: Counters = field(default_factory=zero_counters)
  lifetime_used: Counters = field(default_factory=zero_counters)
  version: int = 0
  refunded_receipts: tuple[str, ...] = ()
  billing_event_ids: tuple[str, ...] = ()
  created_at: datetime.datetime = field(default_factory=_utc_now)
  updated_at: datetime.datetime = field(default_factory=_utc_now)

  @classmethod
  def new_free(cls, user_id: str, *, now: datetime.datetime | None = None) -> CreditAccount:
    """Return the account a user starts with before any subscription event."""
    now = now or _utc_now()
    return cls(user_id=user_id, tier=Tier.FREE, status=SubscriptionStatus.ACTIVE, last_reset_date=now, created_at=now, updated_at=now)

  def used(self, action: CreditAction) -> int:
    return self.monthly_used.get(action, 0)

  def rollover_for(self, action: CreditAction) -> int:
    return self.rollover.get(action, 0)

  def lifetime_for(self, action: CreditAction) -> int:
    return self.lifetime_used.get(action, 0)


@dataclass(frozen=True)
class CreditReceipt:
  """Records which counters a single deduction touched so it can be inverted exactly."""

  receipt_id: str
  user_id: str
  action: CreditAction
  quantity: int
  monthly: int = 0
  rollover: int = 0
  lifetime: int = 0
  unfunded: int = 0
  created_at: datetime.datetime = field(default_factory=_utc_now)

  def as_dict(self) -> dict[str, Any]:
    return {
      "receipt_id": self.receipt_id,
      "user_id": self.user_id,
      "action": self.action.value,
      "quantity": self.quantity,
      "monthly": self.monthly,
      "rollover": self.rollover,
      "lifetime": self.lifetime,
      "unfunded": self.unfunded,
      "created_at": self.created_at.isoformat(),
    }

  @classmethod
  def from_dict(cls, raw: Mapping[str, Any]) -> CreditReceipt:
    created_at = raw.get("created_at")
    return cls(
      receipt_id=str(raw["receipt_id"]),
      user_id=str(raw["user_id"]),
      action=CreditAction(raw["action"]),
      quantity=int(raw["quantity"]),
      monthly=int(raw.get("monthly", 0)),
      rollover=int(raw.get("rollover", 0)),
      lifetime=int(raw.get("lifetime", 0)),
      unfunded=int(raw.get("unfunded", 0)),
      created_at=datetime.datetime.fromisoformat(created_at) if created_at else _utc_now(),
    )


@dataclass(frozen=True)
class CreditsSummary:
  """Read-only view of an account's remaining entitlement."""

  user_id: str
  tier: Tier
  status: SubscriptionStatus
  monthly_remaining: dict[str, int]
  rollover: dict[str, int]
  lifetime_remaining: dict[str, int] | None
  next_reset_at: datetime.datetime | None

  def as_dict(self) -> dict[str, Any]:
    return {
      "user_id": self.user_id,
      "tier": self.tier.value,
      "status": self.status.value,
      "monthly_remaining": dict(self.monthly_remaining),
      "rollover": dict(self.rollover),
      "lifetime_remaining": dict(self.lifetime_remaining) if self.lifetime_remaining is not None else None,
      "next_reset_at": self.next_reset_at.isoformat() if self.next_reset_at else None,
    }
