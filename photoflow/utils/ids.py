"""Identifier utilities."""

from __future__ import annotations

import uuid


def generate_job_id() -> str:
  """Return a new opaque job identifier."""
  return uuid.uuid4().hex


def generate_request_id() -> str:
  """Return a new request identifier for log correlation."""
  return str(uuid.uuid4())
