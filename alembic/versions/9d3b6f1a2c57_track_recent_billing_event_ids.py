"""Track recent billing event ids instead of only the last one.

Revision ID: 9d3b6f1a2c57
Revises: 4c1e2a7d9b30
Create Date: 2026-10-18
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "9d3b6f1a2c57"
down_revision = "4c1e2a7d9b30"
branch_labels = None
depends_on = None


def upgrade() -> None:
  """Upgrade schema."""
  op.add_column("credit_accounts", sa.Column("billing_event_ids", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'[]'::jsonb"), nullable=False))
  # Carry the last applied id over so a redelivery right after deploy stays a duplicate.
  op.execute("UPDATE credit_accounts SET billing_event_ids = jsonb_build_array(last_billing_event_id) WHERE last_billing_event_id IS NOT NULL")
  op.drop_column("credit_accounts", "last_billing_event_id")


def downgrade() -> None:
  """Downgrade schema."""
  op.add_column("credit_accounts", sa.Column("last_billing_event_id", sa.String(), nullable=True))
  op.execute("UPDATE credit_accounts SET last_billing_event_id = billing_event_ids ->> (jsonb_array_length(billing_event_ids) - 1) WHERE jsonb_array_length(billing_event_ids) > 0")
  op.drop_column("credit_accounts", "billing_event_ids")
