"""Subscription tiers and the immutable per-tier credit limits."""

from __future__ import annotations

import datetime
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any


class Tier(str, Enum):
  FREE = "Free"
  BASIC = "Basic"
  PRO = "Pro"


class SubscriptionStatus(str, Enum):
  ACTIVE = "Active"
  CANCELLED = "Cancelled"
  PAST_DUE = "Past Due"


class CreditAction(str, Enum):
  CHECK = "check"
  FIX = "fix"


ACTIONS: tuple[CreditAction, ...] = (CreditAction.CHECK, CreditAction.FIX)


@dataclass(frozen=True)
class TierLimits:
  """Limits for one tier.

  Paid tiers carry a monthly allowance and a rollover cap per action.
  The Free tier carries only lifetime caps and never resets.
  """

  tier: Tier
  monthly_allowance: Mapping[CreditAction, int] = field(default_factory=dict)
  rollover_cap: Mapping[CreditAction, int] = field(default_factory=dict)
  lifetime_cap: Mapping[CreditAction, int] = field(default_factory=dict)

  def __post_init__(self) -> None:
    # Freeze the mappings so a shared table can't be mutated by a caller.
    for name in ("monthly_allowance", "rollover_cap", "lifetime_cap"):
      values = {CreditAction(key): int(value) for key, value in getattr(self, name).items()}
      if any(value < 0 for value in values.values()):
        raise ValueError(f"{self.tier.value} {name} values must be >= 0.")
      object.__setattr__(self, name, MappingProxyType(values))

  @property
  def is_free(self) -> bool:
    return self.tier == Tier.FREE

  def allowance(self, action: CreditAction) -> int:
    return self.monthly_allowance.get(action, 0)

  def cap(self, action: CreditAction) -> int:
    return self.rollover_cap.get(action, 0)

  def lifetime(self, action: CreditAction) -> int:
    return self.lifetime_cap.get(action, 0)


@dataclass(frozen=True)
class TierTable:
  """Immutable lookup of limits by tier, injected into the ledger."""

  limits: Mapping[Tier, TierLimits]
  reset_period: datetime.timedelta = datetime.timedelta(days=30)

  def __post_init__(self) -> None:
    missing = [tier.value for tier in Tier if tier not in self.limits]
    if missing:
      raise ValueError(f"Tier table is missing limits for: {', '.join(missing)}")
    object.__setattr__(self, "limits", MappingProxyType(dict(self.limits)))

  def for_tier(self, tier: Tier) -> TierLimits:
    return self.limits[tier]

  @classmethod
  def from_dict(cls, raw: Mapping[str, Any], *, base: TierTable | None = None) -> TierTable:
    """Build a table from a JSON-style mapping, layering over ``base`` when given.

    Shape: ``{"Basic": {"monthly_allowance": {"check": 50}, "rollover_cap": {...}}, "reset_period_days": 30}``.
    """
    limits = dict(base.limits) if base is not None else {}
    reset_period = base.reset_period if base is not None else datetime.timedelta(days=30)
    for key, value in raw.items():
      if key == "reset_period_days":
        reset_period = datetime.timedelta(days=int(value))
        continue
      tier = Tier(key)
      if not isinstance(value, Mapping):
        raise ValueError(f"Tier limits for {key} must be an object.")
      current = limits.get(tier)
      merged: dict[str, Mapping[Any, int]] = {}
      for name in ("monthly_allowance", "rollover_cap", "lifetime_cap"):
        existing = dict(getattr(current, name)) if current is not None else {}
        existing.update({CreditAction(action): int(amount) for action, amount in (value.get(name) or {}).items()})
        merged[name] = existing
      limits[tier] = TierLimits(tier=tier, **merged)
    return cls(limits=limits, reset_period=reset_period)


DEFAULT_TIER_TABLE = TierTable(
  limits={
    Tier.FREE: TierLimits(tier=Tier.FREE, lifetime_cap={CreditAction.CHECK: 10, CreditAction.FIX: 3}),
    Tier.BASIC: TierLimits(tier=Tier.BASIC, monthly_allowance={CreditAction.CHECK: 50, CreditAction.FIX: 25}, rollover_cap={CreditAction.CHECK: 200, CreditAction.FIX: 100}),
    Tier.PRO: TierLimits(tier=Tier.PRO, monthly_allowance={CreditAction.CHECK: 150, CreditAction.FIX: 75}, rollover_cap={CreditAction.CHECK: 500, CreditAction.FIX: 250}),
  }
)


def build_tier_table(overrides: Mapping[str, Any] | None) -> TierTable:
  """Return the default table with optional configured overrides applied."""
  if not overrides:
    return DEFAULT_TIER_TABLE
  return TierTable.from_dict(overrides, base=DEFAULT_TIER_TABLE)
