"""Credit ledger: eligibility, deduction receipts, refunds and monthly rollover."""

from __future__ import annotations

import asyncio
import datetime
import logging
import random
import uuid
from collections.abc import Callable
from dataclasses import replace
from typing import TypeVar

from photoflow.core.errors import PersistenceConflictError
from photoflow.credits.models import CreditAccount, CreditReceipt, CreditsSummary, zero_counters
from photoflow.credits.tiers import ACTIONS, DEFAULT_TIER_TABLE, CreditAction, SubscriptionStatus, Tier, TierLimits, TierTable
from photoflow.storage.credit_accounts_repo import CreditAccountsRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

Mutation = Callable[[CreditAccount], tuple[CreditAccount, T]]


def _utc_now() -> datetime.datetime:
  """Return timezone-aware current UTC time for deterministic period math."""
  return datetime.datetime.now(datetime.UTC)


def needs_monthly_reset(account: CreditAccount, *, now: datetime.datetime, period: datetime.timedelta) -> bool:
  """Return True when a paid account's period anchor is older than one period."""
  if account.tier == Tier.FREE:
    return False
  return account.last_reset_date < now - period


def apply_monthly_reset(account: CreditAccount, limits: TierLimits, *, now: datetime.datetime) -> CreditAccount:
  """Roll unused allowance into the capped rollover and start a new period."""
  # Free accounts run on lifetime caps and never reset.
  if limits.is_free:
    return account

  rollover = dict(account.rollover)
  for action in ACTIONS:
    unused = max(0, limits.allowance(action) - account.used(action))
    rollover[action] = min(limits.cap(action), account.rollover_for(action) + unused)
  return replace(account, monthly_used=zero_counters(), rollover=rollover, last_reset_date=now)


def available_units(account: CreditAccount, limits: TierLimits, action: CreditAction) -> int:
  if limits.is_free:
    return max(0, limits.lifetime(action) - account.lifetime_for(action))
  return max(0, limits.allowance(action) - account.used(action)) + account.rollover_for(action)


def apply_deduct(account: CreditAccount, limits: TierLimits, action: CreditAction, quantity: int, *, receipt_id: str, now: datetime.datetime) -> tuple[CreditAccount, CreditReceipt]:
  """Deduct ``quantity`` units one at a time and record which branch paid for each.

  Eligibility is not re-checked here; callers pair this with ``can_perform``.
  """
  if quantity <= 0:
    raise ValueError("quantity must be a positive integer.")

  monthly_used = dict(account.monthly_used)
  rollover = dict(account.rollover)
  lifetime_used = dict(account.lifetime_used)
  monthly_units = rollover_units = lifetime_units = unfunded_units = 0

  for _ in range(quantity):
    if limits.is_free:
      lifetime_used[action] = lifetime_used.get(action, 0) + 1
      lifetime_units += 1
    elif monthly_used.get(action, 0) < limits.allowance(action):
      monthly_used[action] = monthly_used.get(action, 0) + 1
      monthly_units += 1
    elif rollover.get(action, 0) > 0:
      rollover[action] -= 1
      rollover_units += 1
    else:
      # Rollover already at zero: the unit succeeds without moving a counter.
      unfunded_units += 1

  receipt = CreditReceipt(receipt_id=receipt_id, user_id=account.user_id, action=action, quantity=quantity, monthly=monthly_units, rollover=rollover_units, lifetime=lifetime_units, unfunded=unfunded_units, created_at=now)
  updated = replace(account, monthly_used=monthly_used, rollover=rollover, lifetime_used=lifetime_used)
  return updated, receipt


def apply_refund(account: CreditAccount, limits: TierLimits, receipt: CreditReceipt, *, history_size: int) -> tuple[CreditAccount, bool]:
  """Invert a receipt once; a receipt id already refunded leaves the account unchanged."""
  if receipt.receipt_id in account.refunded_receipts:
    return account, False

  action = receipt.action
  monthly_used = dict(account.monthly_used)
  rollover = dict(account.rollover)
  lifetime_used = dict(account.lifetime_used)

  monthly_used[action] = max(0, monthly_used.get(action, 0) - receipt.monthly)
  lifetime_used[action] = max(0, lifetime_used.get(action, 0) - receipt.lifetime)
  current = rollover.get(action, 0)
  restored = current + receipt.rollover
  if restored > limits.cap(action):
    # Never push rollover past the cap, and never shrink it below where it already is.
    restored = max(current, limits.cap(action))
  rollover[action] = restored

  history = (*account.refunded_receipts, receipt.receipt_id)[-history_size:]
  updated = replace(account, monthly_used=monthly_used, rollover=rollover, lifetime_used=lifetime_used, refunded_receipts=history)
  return updated, True


def summarize(account: CreditAccount, table: TierTable) -> CreditsSummary:
  limits = table.for_tier(account.tier)
  if limits.is_free:
    return CreditsSummary(
      user_id=account.user_id,
      tier=account.tier,
      status=account.status,
      monthly_remaining={action.value: 0 for action in ACTIONS},
      rollover={action.value: 0 for action in ACTIONS},
      lifetime_remaining={action.value: available_units(account, limits, action) for action in ACTIONS},
      next_reset_at=None,
    )
  return CreditsSummary(
    user_id=account.user_id,
    tier=account.tier,
    status=account.status,
    monthly_remaining={action.value: max(0, limits.allowance(action) - account.used(action)) for action in ACTIONS},
    rollover={action.value: account.rollover_for(action) for action in ACTIONS},
    lifetime_remaining=None,
    next_reset_at=account.last_reset_date + table.reset_period,
  )


class CreditLedger:
  """Owns every read-modify-write against credit accounts.

  Each mutation is computed by a pure function and written with an optimistic
  version check. Conflicts re-read and retry with backoff before surfacing
  ``PersistenceConflictError``.
  """

  def __init__(
    self,
    repo: CreditAccountsRepository,
    tier_table: TierTable = DEFAULT_TIER_TABLE,
    *,
    max_attempts: int = 5,
    backoff_ms: int = 25,
    max_backoff_ms: int = 1000,
    refund_history_size: int = 200,
    billing_history_size: int = 100,
    clock: Callable[[], datetime.datetime] = _utc_now,
  ) -> None:
    if max_attempts <= 0:
      raise ValueError("max_attempts must be >= 1")
    self._repo = repo
    self._table = tier_table
    self._max_attempts = max_attempts
    self._backoff_ms = backoff_ms
    self._max_backoff_ms = max_backoff_ms
    self._refund_history_size = refund_history_size
    self._billing_history_size = billing_history_size
    self._clock = clock

  @property
  def tier_table(self) -> TierTable:
    return self._table

  async def can_perform(self, user_id: str, action: CreditAction, quantity: int = 1) -> bool:
    """Return whether the account can pay ``quantity`` units of ``action`` right now."""
    account = await self._fresh_account(user_id)
    limits = self._table.for_tier(account.tier)
    return available_units(account, limits, action) >= quantity

  async def deduct(self, user_id: str, action: CreditAction, quantity: int = 1) -> CreditReceipt:
    """Deduct units and return the receipt needed to refund them later."""
    receipt_id = uuid.uuid4().hex
    now = self._clock()

    def _deduct(account: CreditAccount) -> tuple[CreditAccount, CreditReceipt]:
      return apply_deduct(account, self._table.for_tier(account.tier), action, quantity, receipt_id=receipt_id, now=now)

    _, receipt = await self._mutate(user_id, "deduct", _deduct)
    if receipt.unfunded:
      logger.warning("Deduction exceeded entitlement user_id=%s action=%s unfunded=%d", user_id, action.value, receipt.unfunded)
    logger.info("Credits deducted user_id=%s action=%s quantity=%d receipt=%s", user_id, action.value, quantity, receipt_id)
    return receipt

  async def refund(self, user_id: str, receipt: CreditReceipt) -> bool:
    """Invert a deduction receipt. Returns False when it was already refunded."""
    if receipt.user_id != user_id:
      raise ValueError("Receipt does not belong to this account.")

    def _refund(account: CreditAccount) -> tuple[CreditAccount, bool]:
      return apply_refund(account, self._table.for_tier(account.tier), receipt, history_size=self._refund_history_size)

    _, applied = await self._mutate(user_id, "refund", _refund)
    if applied:
      logger.info("Credits refunded user_id=%s action=%s receipt=%s", user_id, receipt.action.value, receipt.receipt_id)
    else:
      logger.info("Refund skipped; receipt already applied user_id=%s receipt=%s", user_id, receipt.receipt_id)
    return applied

  async def monthly_reset(self, user_id: str, *, now: datetime.datetime | None = None) -> CreditAccount:
    """Start a new period for a paid account; Free accounts are returned unchanged."""
    reset_at = now or self._clock()

    def _reset(account: CreditAccount) -> tuple[CreditAccount, None]:
      return apply_monthly_reset(account, self._table.for_tier(account.tier), now=reset_at), None

    account, _ = await self._mutate(user_id, "monthly_reset", _reset)
    return account

  async def update_subscription(self, user_id: str, *, event_id: str | None = None, tier: Tier | None = None, status: SubscriptionStatus | None = None, reset: bool = False) -> bool:
    """Apply a billing-driven tier/status change, optionally starting a new period.

    Replaying any of the recently applied ``event_id``s is a no-op and returns False,
    even when other events were applied in between.
    """
    now = self._clock()

    def _update(account: CreditAccount) -> tuple[CreditAccount, bool]:
      if event_id is not None and event_id in account.billing_event_ids:
        return account, False
      updated = account
      if tier is not None:
        updated = replace(updated, tier=tier)
      if reset:
        updated = apply_monthly_reset(replace(updated, last_reset_date=now), self._table.for_tier(updated.tier), now=now)
      if status is not None:
        updated = replace(updated, status=status)
      if event_id is not None:
        updated = replace(updated, billing_event_ids=(*account.billing_event_ids, event_id)[-self._billing_history_size :])
      return updated, True

    _, applied = await self._mutate(user_id, "update_subscription", _update)
    return applied

  async def get_account(self, user_id: str) -> CreditAccount:
    """Return the account after any due lazy reset."""
    return await self._fresh_account(user_id)

  async def get_credits_summary(self, user_id: str) -> CreditsSummary:
    account = await self._fresh_account(user_id)
    return summarize(account, self._table)

  async def _fresh_account(self, user_id: str) -> CreditAccount:
    """Load the account, performing the lazy monthly reset when one is due."""
    account = await self._load(user_id)
    if not needs_monthly_reset(account, now=self._clock(), period=self._table.reset_period):
      return account

    def _lazy_reset(current: CreditAccount) -> tuple[CreditAccount, None]:
      now = self._clock()
      # Another writer may have reset the account since it was read.
      if not needs_monthly_reset(current, now=now, period=self._table.reset_period):
        return current, None
      return apply_monthly_reset(current, self._table.for_tier(current.tier), now=now), None

    logger.info("Lazy monthly reset due user_id=%s last_reset=%s", user_id, account.last_reset_date.isoformat())
    refreshed, _ = await self._mutate(user_id, "lazy_reset", _lazy_reset)
    return refreshed

  async def _load(self, user_id: str) -> CreditAccount:
    account = await self._repo.get_account(user_id)
    if account is not None:
      return account
    # Lazily create the starting Free account on first touch.
    logger.info("Credit account missing; lazy-creating user_id=%s", user_id)
    created = CreditAccount.new_free(user_id, now=self._clock())
    if await self._repo.create_account(created):
      return created
    # Lost the creation race; another writer inserted it first.
    existing = await self._repo.get_account(user_id)
    if existing is None:
      raise PersistenceConflictError("Credit account could not be created.", user_id=user_id)
    return existing

  async def _mutate(self, user_id: str, operation_name: str, mutation: Mutation[T]) -> tuple[CreditAccount, T]:
    """Apply ``mutation`` with an optimistic version check, retrying on conflict."""
    for attempt in range(1, self._max_attempts + 1):
      current = await self._load(user_id)
      updated, result = mutation(current)
      # Identity means the mutation decided nothing needs writing.
      if updated is current:
        return current, result

      candidate = replace(updated, version=current.version + 1, updated_at=self._clock())
      if await self._repo.compare_and_swap(candidate, expected_version=current.version):
        if attempt > 1:
          logger.info("Ledger update succeeded after retry: operation=%s user_id=%s attempt=%d/%d", operation_name, user_id, attempt, self._max_attempts)
        return candidate, result

      if attempt >= self._max_attempts:
        break

      # Calculate backoff delay with exponential growth and jitter
      backoff_ms = min(self._backoff_ms * (2 ** (attempt - 1)), self._max_backoff_ms)
      backoff_ms += random.uniform(-backoff_ms * 0.25, backoff_ms * 0.25)
      logger.info("Ledger version conflict: operation=%s user_id=%s attempt=%d/%d backoff_ms=%.1f", operation_name, user_id, attempt, self._max_attempts, backoff_ms)
      await asyncio.sleep(backoff_ms / 1000.0)

    logger.error("Ledger update gave up after %d attempts: operation=%s user_id=%s", self._max_attempts, operation_name, user_id)
    raise PersistenceConflictError("Credit account is busy; please retry.", operation=operation_name)
