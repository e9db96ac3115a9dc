"""Processing provider implementations."""

from photoflow.config import Settings
from photoflow.providers.base import ProcessingProvider
from photoflow.providers.dummy import DummyProvider
from photoflow.providers.replicate import ReplicateProvider


def build_provider(settings: Settings) -> ProcessingProvider:
  """Return the processing provider selected by settings."""
  if settings.provider == "replicate":
    if not settings.replicate_api_token:
      raise RuntimeError("Replicate provider selected without an API token.")
    return ReplicateProvider(
      api_token=settings.replicate_api_token,
      base_url=settings.replicate_base_url,
      models=settings.provider_models,
      poll_interval=settings.provider_poll_interval_seconds,
      max_poll_attempts=settings.provider_max_poll_attempts,
      timeout=settings.provider_timeout_seconds,
    )
  return DummyProvider()


__all__ = ["ProcessingProvider", "DummyProvider", "ReplicateProvider", "build_provider"]
