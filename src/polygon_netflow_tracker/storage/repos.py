"""Repository pattern implementations for data access.

This module provides data access abstractions for observed transfers,
net-flow aggregates and process metadata.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from polygon_netflow_tracker.storage.models import MetadataModel, NetFlowModel, TransferModel

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    """Return the dialect-specific INSERT construct supporting ON CONFLICT."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"Unsupported database dialect: {dialect}")


@dataclass
class TransferDTO:
    """Data transfer object for observed transfers."""

    tx_hash: str
    log_index: int
    block_number: int
    timestamp: datetime
    from_address: str
    to_address: str
    asset_address: str
    amount_raw: int
    amount: Decimal
    fee_raw: int | None = None
    receipt_status: int | None = None
    created_at: datetime | None = None

    @property
    def identity(self) -> tuple[str, int]:
        return (self.tx_hash.lower(), self.log_index)

    @classmethod
    def from_model(cls, model: TransferModel) -> TransferDTO:
        return cls(
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            block_number=model.block_number,
            timestamp=model.timestamp,
            from_address=model.from_address,
            to_address=model.to_address,
            asset_address=model.asset_address,
            amount_raw=int(model.amount_raw),
            amount=model.amount,
            fee_raw=int(model.fee_raw) if model.fee_raw is not None else None,
            receipt_status=model.receipt_status,
            created_at=model.created_at,
        )


@dataclass
class NetFlowDTO:
    """Data transfer object for net-flow aggregates."""

    entity_name: str
    asset_address: str
    cumulative_amount_raw: int
    cumulative_amount: Decimal
    last_updated: datetime

    @classmethod
    def from_model(cls, model: NetFlowModel) -> NetFlowDTO:
        return cls(
            entity_name=model.entity_name,
            asset_address=model.asset_address,
            cumulative_amount_raw=int(model.cumulative_amount_raw),
            cumulative_amount=model.cumulative_amount,
            last_updated=model.last_updated,
        )


@dataclass(frozen=True)
class FlowTotals:
    """Exact inflow/outflow sums for a set of addresses and one asset."""

    total_in_raw: int
    total_out_raw: int

    @property
    def net_raw(self) -> int:
        return self.total_in_raw - self.total_out_raw


class TransferRepository:
    """Repository for the append-only transfers table."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def insert_ignore(self, dto: TransferDTO) -> bool:
        """Insert a transfer unless its (tx_hash, log_index) already exists.

        Args:
            dto: Transfer data.

        Returns:
            True if a new row was written, False for a duplicate.
        """
        stmt = _insert_for(self.session, TransferModel).values(
            tx_hash=dto.tx_hash.lower(),
            log_index=dto.log_index,
            block_number=dto.block_number,
            timestamp=dto.timestamp,
            from_address=dto.from_address.lower(),
            to_address=dto.to_address.lower(),
            asset_address=dto.asset_address.lower(),
            amount_raw=str(dto.amount_raw),
            amount=dto.amount,
            fee_raw=str(dto.fee_raw) if dto.fee_raw is not None else None,
            receipt_status=dto.receipt_status,
            created_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["tx_hash", "log_index"])
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def get(self, tx_hash: str, log_index: int) -> TransferDTO | None:
        """Get a transfer by identity."""
        model = await self.session.get(TransferModel, (tx_hash.lower(), log_index))
        return TransferDTO.from_model(model) if model else None

    async def sum_flow(self, addresses: Iterable[str], asset_address: str) -> FlowTotals:
        """Sum raw amounts flowing into and out of ``addresses`` for one asset.

        Raw amounts are uint256 values stored as strings, so the sum is taken
        in Python over exact integers rather than in SQL.
        """
        normalized = sorted({a.lower() for a in addresses})
        if not normalized:
            return FlowTotals(total_in_raw=0, total_out_raw=0)
        asset = asset_address.lower()

        inflow = await self.session.scalars(
            select(TransferModel.amount_raw).where(
                (TransferModel.asset_address == asset) & TransferModel.to_address.in_(normalized)
            )
        )
        total_in = 0
        for raw in inflow:
            total_in += int(raw)

        outflow = await self.session.scalars(
            select(TransferModel.amount_raw).where(
                (TransferModel.asset_address == asset) & TransferModel.from_address.in_(normalized)
            )
        )
        total_out = 0
        for raw in outflow:
            total_out += int(raw)

        return FlowTotals(total_in_raw=total_in, total_out_raw=total_out)

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(TransferModel))
        return int(result.scalar_one())


class NetFlowRepository:
    """Repository for per-entity net-flow aggregates."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, dto: NetFlowDTO) -> NetFlowDTO:
        """Insert or replace the aggregate for (entity_name, asset_address)."""
        stmt = _insert_for(self.session, NetFlowModel).values(
            entity_name=dto.entity_name,
            asset_address=dto.asset_address.lower(),
            cumulative_amount_raw=str(dto.cumulative_amount_raw),
            cumulative_amount=dto.cumulative_amount,
            last_updated=dto.last_updated,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["entity_name", "asset_address"],
            set_={
                "cumulative_amount_raw": stmt.excluded.cumulative_amount_raw,
                "cumulative_amount": stmt.excluded.cumulative_amount,
                "last_updated": stmt.excluded.last_updated,
            },
        )
        await self.session.execute(stmt)
        return dto

    async def get(self, entity_name: str, asset_address: str) -> NetFlowDTO | None:
        model = await self.session.get(NetFlowModel, (entity_name, asset_address.lower()))
        return NetFlowDTO.from_model(model) if model else None

    async def list_all(self) -> list[NetFlowDTO]:
        """List all aggregates ordered by entity then asset."""
        result = await self.session.execute(
            select(NetFlowModel).order_by(NetFlowModel.entity_name.asc(), NetFlowModel.asset_address.asc())
        )
        return [NetFlowDTO.from_model(m) for m in result.scalars().all()]


class MetadataRepository:
    """Repository for key/value process metadata."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, key: str) -> str | None:
        result = await self.session.execute(select(MetadataModel.value).where(MetadataModel.key == key))
        return result.scalar_one_or_none()

    async def set(self, key: str, value: str | None) -> None:
        now = datetime.now(UTC)
        stmt = _insert_for(self.session, MetadataModel).values(key=key, value=value, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"],
            set_={"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at},
        )
        await self.session.execute(stmt)

