"""Application configuration loaded from environment variables."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any


@dataclass(frozen=True)
class Settings:
  """Typed settings for the Photoflow service."""

  environment: str
  allowed_origins: tuple[str, ...]
  debug: bool
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  storage_backend: str
  job_ttl_days: int
  job_max_retries: int
  worker_concurrency: int
  expiry_sweep_interval_seconds: int
  ledger_max_attempts: int
  ledger_backoff_ms: int
  tier_limits: dict[str, Any] | None = field(hash=False)
  provider: str
  replicate_api_token: str | None
  replicate_base_url: str
  provider_poll_interval_seconds: float
  provider_max_poll_attempts: int
  provider_timeout_seconds: float
  provider_models: dict[str, str] = field(hash=False)
  notifier_queue_size: int
  task_secret: str | None


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("PHOTOFLOW_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("PHOTOFLOW_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("PHOTOFLOW_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_json_dict(raw: str | None, *, name: str) -> dict[str, Any] | None:
  if not raw:
    return None
  try:
    parsed = json.loads(raw)
  except json.JSONDecodeError as exc:
    raise ValueError(f"{name} must be valid JSON.") from exc
  if not isinstance(parsed, dict):
    raise ValueError(f"{name} must be a JSON object.")
  return parsed


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("PHOTOFLOW_ENV", "development").lower()
  debug = _parse_bool(os.getenv("PHOTOFLOW_DEBUG"))

  log_max_bytes = _positive_int("PHOTOFLOW_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("PHOTOFLOW_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("PHOTOFLOW_LOG_BACKUP_COUNT must be zero or a positive integer.")

  # Allow opt-in logging of 4xx errors for diagnostics.
  log_http_4xx = _parse_bool(os.getenv("PHOTOFLOW_LOG_HTTP_4XX"))

  storage_backend = (os.getenv("PHOTOFLOW_STORAGE_BACKEND") or "postgres").strip().lower()
  if storage_backend not in {"postgres", "memory"}:
    raise ValueError("PHOTOFLOW_STORAGE_BACKEND must be 'postgres' or 'memory'.")

  job_ttl_days = _positive_int("PHOTOFLOW_JOB_TTL_DAYS", "30")
  job_max_retries = int(os.getenv("PHOTOFLOW_JOB_MAX_RETRIES", "3"))
  if job_max_retries < 0:
    raise ValueError("PHOTOFLOW_JOB_MAX_RETRIES must be zero or a positive integer.")

  worker_concurrency = _positive_int("PHOTOFLOW_WORKER_CONCURRENCY", "4")
  # Zero disables the periodic expiry sweep.
  expiry_sweep_interval_seconds = int(os.getenv("PHOTOFLOW_EXPIRY_SWEEP_INTERVAL_SECONDS", "3600"))
  if expiry_sweep_interval_seconds < 0:
    raise ValueError("PHOTOFLOW_EXPIRY_SWEEP_INTERVAL_SECONDS must be zero or a positive integer.")

  ledger_max_attempts = _positive_int("PHOTOFLOW_LEDGER_MAX_ATTEMPTS", "5")
  ledger_backoff_ms = _positive_int("PHOTOFLOW_LEDGER_BACKOFF_MS", "25")

  provider = (os.getenv("PHOTOFLOW_PROVIDER") or "dummy").strip().lower()
  if provider not in {"dummy", "replicate"}:
    raise ValueError("PHOTOFLOW_PROVIDER must be 'dummy' or 'replicate'.")

  replicate_api_token = _optional_str(os.getenv("PHOTOFLOW_REPLICATE_API_TOKEN"))
  # Validate provider credentials only when the remote provider is selected.
  if provider == "replicate" and not replicate_api_token:
    raise ValueError("PHOTOFLOW_REPLICATE_API_TOKEN must be set when PHOTOFLOW_PROVIDER=replicate.")

  provider_models = _parse_json_dict(os.getenv("PHOTOFLOW_PROVIDER_MODELS_JSON"), name="PHOTOFLOW_PROVIDER_MODELS_JSON") or {}

  return Settings(
    environment=environment,
    allowed_origins=_parse_origins(os.getenv("PHOTOFLOW_ALLOWED_ORIGINS")),
    debug=debug,
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=log_http_4xx,
    pg_dsn=os.getenv("PHOTOFLOW_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_positive_int("PHOTOFLOW_PG_CONNECT_TIMEOUT", "5"),
    storage_backend=storage_backend,
    job_ttl_days=job_ttl_days,
    job_max_retries=job_max_retries,
    worker_concurrency=worker_concurrency,
    expiry_sweep_interval_seconds=expiry_sweep_interval_seconds,
    ledger_max_attempts=ledger_max_attempts,
    ledger_backoff_ms=ledger_backoff_ms,
    tier_limits=_parse_json_dict(os.getenv("PHOTOFLOW_TIER_LIMITS_JSON"), name="PHOTOFLOW_TIER_LIMITS_JSON"),
    provider=provider,
    replicate_api_token=replicate_api_token,
    replicate_base_url=(os.getenv("PHOTOFLOW_REPLICATE_BASE_URL") or "https://api.replicate.com/v1").strip().rstrip("/"),
    provider_poll_interval_seconds=_positive_float("PHOTOFLOW_PROVIDER_POLL_INTERVAL_SECONDS", "5"),
    provider_max_poll_attempts=_positive_int("PHOTOFLOW_PROVIDER_MAX_POLL_ATTEMPTS", "60"),
    provider_timeout_seconds=_positive_float("PHOTOFLOW_PROVIDER_TIMEOUT_SECONDS", "30"),
    provider_models={str(key): str(value) for key, value in provider_models.items()},
    notifier_queue_size=_positive_int("PHOTOFLOW_NOTIFIER_QUEUE_SIZE", "100"),
    task_secret=_optional_str(os.getenv("PHOTOFLOW_TASK_SECRET")),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration like CORS."""
  # Keep database configuration isolated so migrations don't require unrelated env vars.
  debug = _parse_bool(os.getenv("PHOTOFLOW_DEBUG"))
  pg_connect_timeout = int(os.getenv("PHOTOFLOW_PG_CONNECT_TIMEOUT", "5"))
  if pg_connect_timeout <= 0:
    raise ValueError("PHOTOFLOW_PG_CONNECT_TIMEOUT must be a positive integer.")

  pg_dsn = os.getenv("PHOTOFLOW_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value
