"""SQLAlchemy models for persistent storage.

This module defines the database schema for observed transfers, the
per-entity net-flow aggregates and auxiliary process metadata.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TransferModel(Base):
    """Observed value transfers touching a watched address (append-only)."""

    __tablename__ = "transfers"

    tx_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    log_index: Mapped[int] = mapped_column(Integer, primary_key=True)

    block_number: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    from_address: Mapped[str] = mapped_column(String(42), nullable=False)
    to_address: Mapped[str] = mapped_column(String(42), nullable=False)
    asset_address: Mapped[str] = mapped_column(String(42), nullable=False)

    # Exact base units as a decimal string (uint256 does not fit every backend's integer type).
    amount_raw: Mapped[str] = mapped_column(String(78), nullable=False)
    # Display value only; aggregation reads amount_raw.
    amount: Mapped[Decimal] = mapped_column(Numeric(96, 18), nullable=False)
    fee_raw: Mapped[str | None] = mapped_column(String(78), nullable=True)
    receipt_status: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_transfers_to", "to_address"),
        Index("idx_transfers_from", "from_address"),
        Index("idx_transfers_block", "block_number"),
    )


class NetFlowModel(Base):
    """Cumulative inflow minus outflow per (entity, asset), recomputed each cycle."""

    __tablename__ = "net_flow"

    entity_name: Mapped[str] = mapped_column(String(128), primary_key=True)
    asset_address: Mapped[str] = mapped_column(String(42), primary_key=True)

    # Signed exact base units as a decimal string.
    cumulative_amount_raw: Mapped[str] = mapped_column(String(80), nullable=False)
    cumulative_amount: Mapped[Decimal] = mapped_column(Numeric(96, 18), nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class MetadataModel(Base):
    """Auxiliary key/value process metadata (e.g. last processed height)."""

    __tablename__ = "metadata"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
