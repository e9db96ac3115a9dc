"""Postgres-backed repository for credit accounts using SQLAlchemy."""

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert

from photoflow.core.database import get_session_factory
from photoflow.credits.models import CreditAccount, counters_from_json, counters_to_json
from photoflow.credits.tiers import SubscriptionStatus, Tier
from photoflow.schema.credits import CreditAccountRow
from photoflow.storage.credit_accounts_repo import CreditAccountsRepository
from photoflow.utils.db_retry import execute_with_retry


class PostgresCreditAccountsRepository(CreditAccountsRepository):
  """Persist credit accounts with a version column for optimistic updates."""

  def __init__(self) -> None:
    self._session_factory = get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def get_account(self, user_id: str) -> CreditAccount | None:
    async def _get() -> CreditAccount | None:
      async with self._session_factory() as session:
        row = await session.get(CreditAccountRow, user_id)
        return self._row_to_account(row) if row is not None else None

    return await execute_with_retry(operation_name="credit_account_get", func=_get)

  async def create_account(self, account: CreditAccount) -> bool:
    async def _create() -> bool:
      async with self._session_factory() as session:
        # ON CONFLICT DO NOTHING lets concurrent first touches agree on one row.
        stmt = insert(CreditAccountRow).values(**self._account_values(account)).on_conflict_do_nothing(index_elements=[CreditAccountRow.user_id])
        result = await session.execute(stmt)
        await session.commit()
        return bool(result.rowcount)

    return await execute_with_retry(operation_name="credit_account_create", func=_create)

  async def compare_and_swap(self, account: CreditAccount, *, expected_version: int) -> bool:
    # Not retried here: replaying a write whose commit acknowledgement was lost could apply it twice.
    async with self._session_factory() as session:
      stmt = update(CreditAccountRow).where(CreditAccountRow.user_id == account.user_id, CreditAccountRow.version == expected_version).values(**self._account_values(account))
      result = await session.execute(stmt)
      await session.commit()
      return result.rowcount == 1

  def _account_values(self, account: CreditAccount) -> dict[str, object]:
    return {
      "user_id": account.user_id,
      "tier": account.tier.value,
      "status": account.status.value,
      "last_reset_date": account.last_reset_date,
      "monthly_used": counters_to_json(account.monthly_used),
      "rollover": counters_to_json(account.rollover),
      "lifetime_used": counters_to_json(account.lifetime_used),
      "refunded_receipts": list(account.refunded_receipts),
      "billing_event_ids": list(account.billing_event_ids),
      "version": account.version,
      "created_at": account.created_at,
      "updated_at": account.updated_at,
    }

  def _row_to_account(self, row: CreditAccountRow) -> CreditAccount:
    return CreditAccount(
      user_id=row.user_id,
      tier=Tier(row.tier),
      status=SubscriptionStatus(row.status),
      last_reset_date=row.last_reset_date,
      monthly_used=counters_from_json(row.monthly_used),
      rollover=counters_from_json(row.rollover),
      lifetime_used=counters_from_json(row.lifetime_used),
      version=row.version,
      refunded_receipts=tuple(row.refunded_receipts or ()),
      billing_event_ids=tuple(row.billing_event_ids or ()),
      created_at=row.created_at,
      updated_at=row.updated_at,
    )
