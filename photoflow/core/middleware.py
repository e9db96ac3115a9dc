import logging
import time
from typing import Any

from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Receive, Scope, Send

from photoflow.utils.ids import generate_request_id

logger = logging.getLogger("photoflow.core.middleware")


def _build_request_url(scope: Scope) -> str:
  """Build a readable URL path for logging without relying on Request bodies."""
  path = scope.get("path", "")
  query_string = scope.get("query_string", b"")
  if query_string:
    return f"{path}?{query_string.decode('latin-1')}"

  return path


def _header(scope: Scope, name: bytes) -> str | None:
  for key, value in scope.get("headers", ()):
    if key == name:
      return value.decode("latin-1")[:128]
  return None


class RequestLoggingMiddleware:
  """Log request metadata and latency, and tag every response with a request id."""

  def __init__(self, app: ASGIApp) -> None:
    self.app = app

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    # Skip non-HTTP scopes to avoid interfering with lifespan events.
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    # Store the id on scope state so exception handlers can include it.
    request_id = generate_request_id()
    scope.setdefault("state", {})["request_id"] = request_id

    started = time.perf_counter()
    method = scope.get("method", "UNKNOWN")
    caller = _header(scope, b"x-user-id") or "-"
    logger.info("Incoming request request_id=%s user_id=%s %s %s", request_id, caller, method, _build_request_url(scope))

    status_code: int | None = None

    async def send_wrapper(message: dict[str, Any]) -> None:
      nonlocal status_code
      if message.get("type") == "http.response.start":
        status_code = message.get("status")
        response_headers = MutableHeaders(scope=message)
        if "x-request-id" not in response_headers:
          response_headers["x-request-id"] = request_id

      await send(message)

    await self.app(scope, receive, send_wrapper)

    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info("Response request_id=%s user_id=%s status=%s (took %.2fms)", request_id, caller, status_code or 0, elapsed_ms)


class SecurityHeadersMiddleware:
  """Strip server fingerprints and add baseline hardening headers to API responses."""

  _STRIPPED = ("x-powered-by", "server")
  _DEFAULTS = {"x-content-type-options": "nosniff", "referrer-policy": "no-referrer", "cache-control": "no-store"}

  def __init__(self, app: ASGIApp) -> None:
    self.app = app

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    async def send_wrapper(message: dict[str, Any]) -> None:
      if message["type"] == "http.response.start":
        headers = MutableHeaders(scope=message)
        for name in self._STRIPPED:
          if name in headers:
            del headers[name]
        # Routes that set their own value (event streams) keep it.
        for name, value in self._DEFAULTS.items():
          headers.setdefault(name, value)

      await send(message)

    await self.app(scope, receive, send_wrapper)
