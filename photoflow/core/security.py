"""Caller identity resolution.

Authentication happens upstream; the gateway forwards the verified user id in
``X-User-Id``. This module only refuses requests that arrive without it.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Header, HTTPException, status

MAX_USER_ID_LENGTH = 128


async def get_current_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str:
  """Return the caller's user id or reject the request."""
  user_id = (x_user_id or "").strip()
  if not user_id:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing caller identity.")
  if len(user_id) > MAX_USER_ID_LENGTH:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid caller identity.")
  return user_id
