"""Select repository implementations from settings."""

from __future__ import annotations

from photoflow.config import Settings
from photoflow.storage.credit_accounts_repo import CreditAccountsRepository, InMemoryCreditAccountsRepository
from photoflow.storage.jobs_repo import InMemoryJobsRepository, JobsRepository


def build_credit_accounts_repo(settings: Settings) -> CreditAccountsRepository:
  if settings.storage_backend == "memory":
    return InMemoryCreditAccountsRepository()
  from photoflow.storage.postgres_credit_accounts_repo import PostgresCreditAccountsRepository

  return PostgresCreditAccountsRepository()


def build_jobs_repo(settings: Settings) -> JobsRepository:
  if settings.storage_backend == "memory":
    return InMemoryJobsRepository()
  from photoflow.storage.postgres_jobs_repo import PostgresJobsRepository

  return PostgresJobsRepository()
