"""Initial schema for transfers, net-flow aggregates and metadata.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Observed transfers (append-only)
    op.create_table(
        "transfers",
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.Integer(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("from_address", sa.String(42), nullable=False),
        sa.Column("to_address", sa.String(42), nullable=False),
        sa.Column("asset_address", sa.String(42), nullable=False),
        sa.Column("amount_raw", sa.String(78), nullable=False),
        sa.Column("amount", sa.Numeric(96, 18), nullable=False),
        sa.Column("fee_raw", sa.String(78), nullable=True),
        sa.Column("receipt_status", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("tx_hash", "log_index"),
    )
    op.create_index("idx_transfers_to", "transfers", ["to_address"])
    op.create_index("idx_transfers_from", "transfers", ["from_address"])
    op.create_index("idx_transfers_block", "transfers", ["block_number"])

    # Per-entity net flow
    op.create_table(
        "net_flow",
        sa.Column("entity_name", sa.String(128), nullable=False),
        sa.Column("asset_address", sa.String(42), nullable=False),
        sa.Column("cumulative_amount_raw", sa.String(80), nullable=False),
        sa.Column("cumulative_amount", sa.Numeric(96, 18), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("entity_name", "asset_address"),
    )

    # Process metadata
    op.create_table(
        "metadata",
        sa.Column("key", sa.String(128), nullable=False),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    op.drop_table("metadata")

    op.drop_table("net_flow")

    op.drop_index("idx_transfers_block", table_name="transfers")
    op.drop_index("idx_transfers_from", table_name="transfers")
    op.drop_index("idx_transfers_to", table_name="transfers")
    op.drop_table("transfers")
