"""Replicate-style prediction provider: create a prediction, then poll it to a terminal state."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

import httpx

from photoflow.core.errors import ProviderFailureError
from photoflow.jobs.workflows import StepCall

logger = logging.getLogger(__name__)

_REMBG = "cjwbw/rembg:fb8af171cfa1616ddcf1242c093f9c46bcada5ad4cf6f2fbe8b81b330ec5c003"
_SEGMENT_ANYTHING = "meta/segment-anything-2:4737ee36e7b1c9c3ecb78d0e33088e1de8f1e5a3f12dc6a37bb1e7bc16fb0ec5"
_GFPGAN = "tencentarc/gfpgan:9283608cc6b7be6b65a8e44983db012355fde4132009bf99d976b2f0896856a3"
_STABLE_DIFFUSION = "stability-ai/stable-diffusion:27b93a2413e7f36cd83da926f3656280b2931564ff050bf9575f1fdf9bcd7478"
_SDXL = "stability-ai/stable-diffusion-xl:39ed52f2a78e934b3ba6e2a89f5b1c712de7dfea535525255b1aa35c5565e08b"

# Kinds without a dedicated hosted model share the closest pinned one; override per kind in settings.
DEFAULT_MODELS: dict[str, str] = {
  "background_removal": _REMBG,
  "product_detection": _SEGMENT_ANYTHING,
  "image_analysis": _SEGMENT_ANYTHING,
  "image_enhancement": _GFPGAN,
  "platform_export": _GFPGAN,
  "lifestyle_generation": _STABLE_DIFFUSION,
  "color_variation": _SDXL,
  "3d_reconstruction": _SDXL,
  "angle_generation": _SDXL,
}

TERMINAL_FAILURES = {"failed", "canceled"}


class ReplicateProvider:
  """Invoke hosted models through the predictions API.

  A step is one prediction. The provider polls every ``poll_interval`` seconds
  and gives up after ``max_poll_attempts`` polls.
  """

  name = "replicate"

  def __init__(
    self,
    *,
    api_token: str,
    base_url: str = "https://api.replicate.com/v1",
    models: Mapping[str, str] | None = None,
    poll_interval: float = 5.0,
    max_poll_attempts: int = 60,
    timeout: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
  ) -> None:
    if not api_token:
      raise ValueError("A Replicate API token is required.")
    self._base_url = base_url.rstrip("/")
    self._models = {**DEFAULT_MODELS, **dict(models or {})}
    self._poll_interval = poll_interval
    self._max_poll_attempts = max_poll_attempts
    # Never trust environment proxy variables for provider traffic.
    self._client = httpx.AsyncClient(base_url=self._base_url, headers={"Authorization": f"Token {api_token}", "Content-Type": "application/json"}, timeout=timeout, transport=transport, trust_env=False)

  def model_for(self, kind: str) -> str:
    model = self._models.get(kind)
    if model is None:
      raise ProviderFailureError(f"No model configured for step kind '{kind}'.", kind=kind)
    return model

  async def invoke(self, call: StepCall) -> str:
    model = self.model_for(call.kind)
    model_input = {"image": call.input_ref, **dict(call.params)}
    # Pinned "owner/name:version" models go through /predictions; bare names use the model endpoint.
    if ":" in model:
      prediction = await self._request("POST", "/predictions", json={"version": model.split(":", 1)[1], "input": model_input})
    else:
      prediction = await self._request("POST", f"/models/{model}/predictions", json={"input": model_input})
    prediction_id = prediction.get("id")
    if not prediction_id:
      raise ProviderFailureError("Provider did not return a prediction id.", kind=call.kind)
    logger.info("Prediction created id=%s kind=%s model=%s", prediction_id, call.kind, model)
    return await self._await_prediction(str(prediction_id), call.kind)

  async def _await_prediction(self, prediction_id: str, kind: str) -> str:
    for attempt in range(1, self._max_poll_attempts + 1):
      prediction = await self._request("GET", f"/predictions/{prediction_id}")
      status = prediction.get("status")
      if status == "succeeded":
        logger.info("Prediction succeeded id=%s kind=%s polls=%d", prediction_id, kind, attempt)
        return _output_ref(prediction.get("output"), prediction_id)
      if status in TERMINAL_FAILURES:
        error = prediction.get("error") or f"Prediction {status}"
        logger.warning("Prediction failed id=%s kind=%s status=%s error=%s", prediction_id, kind, status, error)
        raise ProviderFailureError(f"Processing failed: {error}", kind=kind, prediction_id=prediction_id)
      await asyncio.sleep(self._poll_interval)

    logger.warning("Prediction timed out id=%s kind=%s attempts=%d", prediction_id, kind, self._max_poll_attempts)
    raise ProviderFailureError("Processing timeout", kind=kind, prediction_id=prediction_id)

  async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
    try:
      response = await self._client.request(method, path, **kwargs)
      response.raise_for_status()
    except httpx.HTTPStatusError as exc:
      logger.error("Provider returned %s for %s %s: %s", exc.response.status_code, method, path, exc.response.text[:500])
      raise ProviderFailureError(f"Provider request failed with status {exc.response.status_code}.") from exc
    except httpx.RequestError as exc:
      logger.error("Provider request error for %s %s: %s", method, path, exc)
      raise ProviderFailureError("Provider request failed.") from exc
    body = response.json()
    if not isinstance(body, dict):
      raise ProviderFailureError("Provider returned an unexpected payload.")
    return body

  async def aclose(self) -> None:
    await self._client.aclose()


def _output_ref(output: Any, prediction_id: str) -> str:
  """Reduce a prediction output to a single reference."""
  if isinstance(output, str) and output:
    return output
  if isinstance(output, list) and output and isinstance(output[0], str):
    return output[0]
  if isinstance(output, dict):
    for key in ("image", "output", "url"):
      value = output.get(key)
      if isinstance(value, str) and value:
        return value
  raise ProviderFailureError("Prediction succeeded without a usable output.", prediction_id=prediction_id)
