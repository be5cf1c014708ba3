"""Net-flow aggregation over persisted transfers.

Aggregates are always rebuilt from the full transfers table rather than
incremented, so the stored value equals inflow minus outflow over every
persisted transfer at the time of the last recomputation.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from polygon_netflow_tracker.storage.repos import NetFlowDTO
from polygon_netflow_tracker.watchlist import NATIVE_ASSET, TrackedAsset

if TYPE_CHECKING:
    from polygon_netflow_tracker.storage.store import TransferStore
    from polygon_netflow_tracker.watchlist import Watchlist

logger = logging.getLogger(__name__)


class NetFlowAggregator:
    """Recomputes per-entity, per-asset net flow from the transfer store."""

    def __init__(
        self,
        store: TransferStore,
        watchlist: Watchlist,
        *,
        assets: Iterable[TrackedAsset] = (NATIVE_ASSET,),
    ) -> None:
        self._store = store
        self._watchlist = watchlist
        self._assets = tuple(assets)

    async def compute(self, *, as_of: datetime | None = None) -> list[NetFlowDTO]:
        """Compute every (entity, asset) aggregate without writing it.

        Raises:
            PersistenceError: If the transfer sums cannot be read.
        """
        timestamp = as_of or datetime.now(UTC)
        entries: list[NetFlowDTO] = []
        for entity in self._watchlist.entities:
            addresses = self._watchlist.addresses_for(entity)
            for asset in self._assets:
                totals = await self._store.sum_flow(addresses, asset.address)
                entries.append(
                    NetFlowDTO(
                        entity_name=entity,
                        asset_address=asset.address,
                        cumulative_amount_raw=totals.net_raw,
                        cumulative_amount=asset.display_amount(totals.net_raw),
                        last_updated=timestamp,
                    )
                )
        return entries

    async def recompute(self) -> list[NetFlowDTO]:
        """Rebuild and persist every aggregate in one transaction.

        All entries written by one call share the same ``last_updated``.

        Raises:
            PersistenceError: If reading sums or writing aggregates fails.
        """
        entries = await self.compute()
        await self._store.upsert_net_flows(entries)
        logger.info("Net flow recomputed: %d entries", len(entries))
        for entry in entries:
            logger.debug(
                "Net flow %s %s: %s (%d raw)",
                entry.entity_name,
                entry.asset_address,
                entry.cumulative_amount,
                entry.cumulative_amount_raw,
            )
        return entries
