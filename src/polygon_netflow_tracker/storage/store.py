"""Transfer store: the single shared persistence facade.

The ingestion engine and the net-flow aggregator both receive the same
``TransferStore`` instance. Every write goes through one session per call
and an ``asyncio.Lock``, so writes are serialized within the process.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from polygon_netflow_tracker.storage.repos import (
    FlowTotals,
    MetadataRepository,
    NetFlowDTO,
    NetFlowRepository,
    TransferDTO,
    TransferRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from polygon_netflow_tracker.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage errors."""


class PersistenceError(StorageError):
    """Raised when a read or write against the backing database fails."""


class TransferStore:
    """Durable home for transfers, net-flow aggregates and metadata.

    Example:
        ```python
        store = TransferStore(DatabaseManager("sqlite+aiosqlite:///./data/polygon.db"))
        inserted = await store.upsert_transfer(dto)
        totals = await store.sum_flow({"0xabc..."}, NATIVE_ASSET_ADDRESS)
        ```
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db
        self._write_lock = asyncio.Lock()

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._db.get_async_session() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error("Storage operation %s failed: %s", operation, e)
            raise PersistenceError(f"{operation} failed: {e}") from e

    @asynccontextmanager
    async def _write_session(self, operation: str) -> AsyncIterator[AsyncSession]:
        async with self._write_lock, self._session(operation) as session:
            yield session

    # Transfers

    async def upsert_transfer(self, transfer: TransferDTO) -> bool:
        """Insert a transfer if its identity is new.

        Returns:
            True if a row was inserted, False if it already existed.

        Raises:
            PersistenceError: If the write fails.
        """
        async with self._write_session("upsert_transfer") as session:
            return await TransferRepository(session).insert_ignore(transfer)

    async def upsert_transfers(self, transfers: Sequence[TransferDTO]) -> tuple[int, int]:
        """Insert a batch of transfers in one transaction.

        Returns:
            ``(inserted, duplicates)``. Identities repeated within the batch
            count as duplicates after their first occurrence.

        Raises:
            PersistenceError: If the write fails; nothing from the batch is kept.
        """
        if not transfers:
            return 0, 0
        inserted = 0
        async with self._write_session("upsert_transfers") as session:
            repo = TransferRepository(session)
            for transfer in transfers:
                if await repo.insert_ignore(transfer):
                    inserted += 1
        return inserted, len(transfers) - inserted

    async def get_transfer(self, tx_hash: str, log_index: int) -> TransferDTO | None:
        async with self._session("get_transfer") as session:
            return await TransferRepository(session).get(tx_hash, log_index)

    async def count_transfers(self) -> int:
        async with self._session("count_transfers") as session:
            return await TransferRepository(session).count()

    async def sum_flow(self, addresses: Iterable[str], asset_address: str) -> FlowTotals:
        """Exact inflow/outflow totals for ``addresses`` in one asset.

        Raises:
            PersistenceError: If the read fails.
        """
        async with self._session("sum_flow") as session:
            return await TransferRepository(session).sum_flow(addresses, asset_address)

    # Net flow

    async def upsert_net_flow(
        self,
        entity_name: str,
        asset_address: str,
        cumulative_amount_raw: int,
        cumulative_amount: Decimal,
        timestamp: datetime,
    ) -> NetFlowDTO:
        """Insert or replace one aggregate row atomically."""
        entry = NetFlowDTO(
            entity_name=entity_name,
            asset_address=asset_address,
            cumulative_amount_raw=cumulative_amount_raw,
            cumulative_amount=cumulative_amount,
            last_updated=timestamp,
        )
        async with self._write_session("upsert_net_flow") as session:
            return await NetFlowRepository(session).upsert(entry)

    async def upsert_net_flows(self, entries: Sequence[NetFlowDTO]) -> int:
        """Insert or replace many aggregate rows in one transaction."""
        if not entries:
            return 0
        async with self._write_session("upsert_net_flows") as session:
            repo = NetFlowRepository(session)
            for entry in entries:
                await repo.upsert(entry)
        return len(entries)

    async def get_net_flow(self, entity_name: str, asset_address: str) -> NetFlowDTO | None:
        async with self._session("get_net_flow") as session:
            return await NetFlowRepository(session).get(entity_name, asset_address)

    async def list_net_flows(self) -> list[NetFlowDTO]:
        async with self._session("list_net_flows") as session:
            return await NetFlowRepository(session).list_all()

    # Metadata

    async def get_metadata(self, key: str) -> str | None:
        async with self._session("get_metadata") as session:
            return await MetadataRepository(session).get(key)

    async def set_metadata(self, key: str, value: str | None) -> None:
        async with self._write_session("set_metadata") as session:
            await MetadataRepository(session).set(key, value)
