"""Deterministic provider for local development and tests."""

from __future__ import annotations

import hashlib
import json
import logging

from photoflow.jobs.workflows import StepCall

logger = logging.getLogger(__name__)


class DummyProvider:
  """Echo-style provider that returns a stable reference per call without any I/O."""

  name = "dummy"

  def __init__(self) -> None:
    self.calls: list[StepCall] = []

  async def invoke(self, call: StepCall) -> str:
    self.calls.append(call)
    fingerprint = json.dumps({"input": call.input_ref, "params": dict(call.params)}, sort_keys=True, default=str)
    digest = hashlib.sha1(fingerprint.encode("utf-8")).hexdigest()[:16]
    output_ref = f"dummy://{call.kind}/{digest}"
    logger.debug("Dummy provider step kind=%s input=%s output=%s", call.kind, call.input_ref, output_ref)
    return output_ref
