"""Storage interfaces for credit accounts."""

from __future__ import annotations

from typing import Protocol

from photoflow.credits.models import CreditAccount


class CreditAccountsRepository(Protocol):
  """Repository contract for credit account persistence.

  Writes are optimistic: ``compare_and_swap`` only succeeds while the stored
  version still equals ``expected_version``.
  """

  async def get_account(self, user_id: str) -> CreditAccount | None:
    """Fetch the account for a user."""

  async def create_account(self, account: CreditAccount) -> bool:
    """Insert a new account; return False when one already exists."""

  async def compare_and_swap(self, account: CreditAccount, *, expected_version: int) -> bool:
    """Replace the stored account when its version matches ``expected_version``."""


class InMemoryCreditAccountsRepository:
  """Process-local account store used by the memory backend and tests."""

  def __init__(self) -> None:
    self._accounts: dict[str, CreditAccount] = {}

  async def get_account(self, user_id: str) -> CreditAccount | None:
    return self._accounts.get(user_id)

  async def create_account(self, account: CreditAccount) -> bool:
    if account.user_id in self._accounts:
      return False
    self._accounts[account.user_id] = account
    return True

  async def compare_and_swap(self, account: CreditAccount, *, expected_version: int) -> bool:
    current = self._accounts.get(account.user_id)
    # Reject stale writers so concurrent mutations can't lose updates.
    if current is None or current.version != expected_version:
      return False
    self._accounts[account.user_id] = account
    return True
