"""Unit tests for the Replicate prediction provider against a mocked HTTP transport."""

from __future__ import annotations

import json

import httpx
import pytest

from photoflow.core.errors import ProviderFailureError
from photoflow.jobs.workflows import StepCall
from photoflow.providers.replicate import DEFAULT_MODELS, ReplicateProvider


def _provider(handler, **kwargs) -> ReplicateProvider:
  options = {"poll_interval": 0.001, "max_poll_attempts": 3}
  options.update(kwargs)
  return ReplicateProvider(api_token="r8_test", base_url="https://replicate.test/v1", transport=httpx.MockTransport(handler), **options)


@pytest.mark.anyio
async def test_pinned_model_creates_prediction_and_polls_until_success() -> None:
  requests: list[httpx.Request] = []
  statuses = iter(["starting", "processing", "succeeded"])

  def handler(request: httpx.Request) -> httpx.Response:
    requests.append(request)
    if request.method == "POST":
      return httpx.Response(201, json={"id": "pred-1", "status": "starting"})
    status = next(statuses)
    output = ["https://cdn.test/out.png"] if status == "succeeded" else None
    return httpx.Response(200, json={"id": "pred-1", "status": status, "output": output})

  provider = _provider(handler)
  output = await provider.invoke(StepCall(kind="background_removal", input_ref="https://cdn.test/in.png", params={"alpha_matting": True}))
  await provider.aclose()

  assert output == "https://cdn.test/out.png"
  create = requests[0]
  assert create.url.path == "/v1/predictions"
  assert create.headers["Authorization"] == "Token r8_test"
  body = json.loads(create.content)
  assert body["version"] == DEFAULT_MODELS["background_removal"].split(":", 1)[1]
  assert body["input"] == {"image": "https://cdn.test/in.png", "alpha_matting": True}
  assert [request.url.path for request in requests[1:]] == ["/v1/predictions/pred-1"] * 3


@pytest.mark.anyio
async def test_bare_model_name_uses_model_endpoint() -> None:
  paths: list[str] = []

  def handler(request: httpx.Request) -> httpx.Response:
    paths.append(request.url.path)
    if request.method == "POST":
      return httpx.Response(201, json={"id": "pred-2"})
    return httpx.Response(200, json={"id": "pred-2", "status": "succeeded", "output": "https://cdn.test/a.png"})

  provider = _provider(handler, models={"color_variation": "acme/recolor"})
  assert await provider.invoke(StepCall(kind="color_variation", input_ref="in")) == "https://cdn.test/a.png"
  assert paths[0] == "/v1/models/acme/recolor/predictions"


@pytest.mark.anyio
async def test_failed_prediction_raises() -> None:
  def handler(request: httpx.Request) -> httpx.Response:
    if request.method == "POST":
      return httpx.Response(201, json={"id": "pred-3"})
    return httpx.Response(200, json={"id": "pred-3", "status": "failed", "error": "CUDA out of memory"})

  with pytest.raises(ProviderFailureError) as exc_info:
    await _provider(handler).invoke(StepCall(kind="image_enhancement", input_ref="in"))
  assert "CUDA out of memory" in exc_info.value.message


@pytest.mark.anyio
async def test_polling_gives_up_after_max_attempts() -> None:
  polls = 0

  def handler(request: httpx.Request) -> httpx.Response:
    nonlocal polls
    if request.method == "POST":
      return httpx.Response(201, json={"id": "pred-4"})
    polls += 1
    return httpx.Response(200, json={"id": "pred-4", "status": "processing"})

  with pytest.raises(ProviderFailureError) as exc_info:
    await _provider(handler, max_poll_attempts=4).invoke(StepCall(kind="image_enhancement", input_ref="in"))
  assert exc_info.value.message == "Processing timeout"
  assert polls == 4


@pytest.mark.anyio
async def test_http_errors_become_provider_failures() -> None:
  def handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(503, json={"detail": "overloaded"})

  with pytest.raises(ProviderFailureError):
    await _provider(handler).invoke(StepCall(kind="image_enhancement", input_ref="in"))


@pytest.mark.anyio
async def test_transport_errors_become_provider_failures() -> None:
  def handler(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)

  with pytest.raises(ProviderFailureError):
    await _provider(handler).invoke(StepCall(kind="image_enhancement", input_ref="in"))


@pytest.mark.anyio
async def test_unknown_kind_is_rejected_before_any_request() -> None:
  def handler(request: httpx.Request) -> httpx.Response:
    raise AssertionError("no request expected")

  with pytest.raises(ProviderFailureError):
    await _provider(handler).invoke(StepCall(kind="hologram", input_ref="in"))
