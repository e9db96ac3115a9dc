"""SQLAlchemy model for per-user credit accounts."""

from __future__ import annotations

import datetime

from sqlalchemy import DateTime, Integer, String, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from photoflow.core.database import Base


class CreditAccountRow(Base):
  __tablename__ = "credit_accounts"

  user_id: Mapped[str] = mapped_column(String, primary_key=True)
  tier: Mapped[str] = mapped_column(String, nullable=False, server_default="Free")
  status: Mapped[str] = mapped_column(String, nullable=False, server_default="Active")
  last_reset_date: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  monthly_used: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
  rollover: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
  lifetime_used: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
  refunded_receipts: Mapped[list] = mapped_column(JSONB, nullable=False, server_default=text("'[]'::jsonb"))
  billing_event_ids: Mapped[list] = mapped_column(JSONB, nullable=False, server_default=text("'[]'::jsonb"))
  version: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
