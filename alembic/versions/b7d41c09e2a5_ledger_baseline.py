"""Baseline: PHI Vault ledger schema

Revision ID: b7d41c09e2a5
Revises:
Create Date: 2025-01-06 00:00:00.000000

The core persists everything through a key-value ledger:
- ledger_state: world state (entities, composite-key indexes, audit log)
- ledger_events: committed domain events, in emission order

Composite index keys sort lexicographically, so per-owner range scans are
plain `key >= prefix AND key < prefix || U+10FFFF` queries on the primary key.
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "b7d41c09e2a5"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "ledger_state",
        sa.Column("state_key", sa.Text, primary_key=True),
        sa.Column("state_value", sa.Text, nullable=False),
        sa.Column("tx_id", sa.Text, nullable=False),
        sa.Column("updated_at_utc", sa.Text, nullable=False),
    )

    op.create_table(
        "ledger_events",
        sa.Column("seq", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.Text, nullable=False, unique=True),
        sa.Column("tx_id", sa.Text, nullable=False),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("payload_json", sa.Text, nullable=False),
        sa.Column("emitted_at_utc", sa.Text, nullable=False),
    )
    op.create_index("idx_ledger_events_name", "ledger_events", ["name"])
    op.create_index("idx_ledger_events_tx", "ledger_events", ["tx_id"])


def downgrade() -> None:
    op.drop_index("idx_ledger_events_tx", table_name="ledger_events")
    op.drop_index("idx_ledger_events_name", table_name="ledger_events")
    op.drop_table("ledger_events")
    op.drop_table("ledger_state")
