"""Retry transient database failures, classified by Postgres SQLSTATE."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATE -> (retryable, category)
_SQLSTATE_CLASSES: dict[str, tuple[bool, str]] = {
  "40001": (True, "serialization_conflict"),
  "40P01": (True, "deadlock"),
  "55P03": (False, "lock_timeout"),
  "57014": (False, "query_timeout"),
}

# SQLSTATE class prefix -> category; all non-retryable
_SQLSTATE_PREFIXES: dict[str, str] = {"23": "integrity_error", "42": "schema_error", "28": "permission_error"}

_CONNECTIVITY_PATTERNS = ("connection", "timeout", "reset", "network", "broken pipe", "lost connection")


@dataclass(frozen=True)
class DBFailureClassification:
  retryable: bool
  category: str
  sqlstate: str | None


def _extract_sqlstate(exc: Exception) -> str | None:
  """Extract Postgres SQLSTATE from a SQLAlchemy exception."""
  if isinstance(exc, DBAPIError) and exc.orig is not None:
    # asyncpg exposes sqlstate; psycopg exposes pgcode
    for attribute in ("sqlstate", "pgcode"):
      value = getattr(exc.orig, attribute, None)
      if value:
        return str(value)
  return None


def classify_db_failure(exc: Exception) -> DBFailureClassification:
  """Decide whether a failure is transient (serialization, deadlock, dropped connection)."""
  sqlstate = _extract_sqlstate(exc)
  if sqlstate in _SQLSTATE_CLASSES:
    retryable, category = _SQLSTATE_CLASSES[sqlstate]
    return DBFailureClassification(retryable=retryable, category=category, sqlstate=sqlstate)
  if sqlstate and sqlstate[:2] in _SQLSTATE_PREFIXES:
    return DBFailureClassification(retryable=False, category=_SQLSTATE_PREFIXES[sqlstate[:2]], sqlstate=sqlstate)
  if isinstance(exc, IntegrityError):
    return DBFailureClassification(retryable=False, category="integrity_error", sqlstate=sqlstate)
  if isinstance(exc, OperationalError):
    message = str(exc).lower()
    if any(pattern in message for pattern in _CONNECTIVITY_PATTERNS):
      return DBFailureClassification(retryable=True, category="connectivity_error", sqlstate=sqlstate)
    return DBFailureClassification(retryable=False, category="operational_error_unknown", sqlstate=sqlstate)
  return DBFailureClassification(retryable=False, category="unknown_error", sqlstate=sqlstate)


async def execute_with_retry(*, operation_name: str, func: Callable[[], Awaitable[T]], max_attempts: int = 3, initial_backoff_ms: int = 100, max_backoff_ms: int = 2000, jitter: bool = True) -> T:
  """Run an idempotent database operation, retrying only transient failures.

  Non-retryable errors and the last transient error are re-raised unchanged.
  """
  attempt = 0
  while True:
    attempt += 1
    try:
      result = await func()
    except Exception as exc:
      classification = classify_db_failure(exc)
      logger.warning(
        "DB operation failed: operation=%s, attempt=%d/%d, category=%s, sqlstate=%s, retryable=%s",
        operation_name,
        attempt,
        max_attempts,
        classification.category,
        classification.sqlstate or "none",
        classification.retryable,
        exc_info=(not classification.retryable),
      )
      if not classification.retryable or attempt >= max_attempts:
        raise

      # Calculate backoff delay with exponential growth and optional jitter
      backoff_ms = min(initial_backoff_ms * (2 ** (attempt - 1)), max_backoff_ms)
      if jitter:
        backoff_ms += random.uniform(-backoff_ms * 0.25, backoff_ms * 0.25)
      await asyncio.sleep(backoff_ms / 1000.0)
      continue

    if attempt > 1:
      logger.info("DB operation succeeded after retry: operation=%s, attempt=%d/%d", operation_name, attempt, max_attempts)
    return result
