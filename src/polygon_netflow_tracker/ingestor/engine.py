"""Ingestion engine: one polling cycle from chain height to persisted transfers.

A cycle walks a fixed sequence of steps::

    FETCH_HEIGHT -> FETCH_BLOCK -> FILTER_TRANSACTIONS -> RESOLVE_DETAILS -> PERSIST -> DONE

and ends in ``FAILED`` if the height, the block listing or the batch write
cannot be obtained. Problems with a single transaction never fail the cycle;
that transaction is skipped and reported in the ``CycleResult``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from polygon_netflow_tracker.ingestor.normalizer import extract_transfers, index_assets, is_candidate
from polygon_netflow_tracker.ledger.client import LedgerClientError
from polygon_netflow_tracker.ledger.models import MalformedDataError
from polygon_netflow_tracker.storage.store import PersistenceError
from polygon_netflow_tracker.watchlist import NATIVE_ASSET, TrackedAsset

if TYPE_CHECKING:
    from polygon_netflow_tracker.ledger.client import LedgerClient
    from polygon_netflow_tracker.ledger.models import TransactionView
    from polygon_netflow_tracker.storage.repos import TransferDTO
    from polygon_netflow_tracker.storage.store import TransferStore
    from polygon_netflow_tracker.watchlist import Watchlist

logger = logging.getLogger(__name__)

DEFAULT_DETAIL_CONCURRENCY = 4


class CycleState(str, Enum):
    """Steps of one ingestion cycle."""

    FETCH_HEIGHT = "fetch_height"
    FETCH_BLOCK = "fetch_block"
    FILTER_TRANSACTIONS = "filter_transactions"
    RESOLVE_DETAILS = "resolve_details"
    PERSIST = "persist"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class SkippedTransaction:
    """A transaction dropped from a cycle and why."""

    tx_hash: str
    step: CycleState
    reason: str


@dataclass
class CycleResult:
    """Outcome of one ingestion cycle."""

    started_at: datetime
    state: CycleState = CycleState.FETCH_HEIGHT
    height: int | None = None
    failed_in: CycleState | None = None
    error: str | None = None
    transactions_seen: int = 0
    transactions_matched: int = 0
    details_resolved: int = 0
    transfers_found: int = 0
    transfers_inserted: int = 0
    duplicates: int = 0
    skipped: list[SkippedTransaction] = field(default_factory=list)
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == CycleState.DONE


class IngestionEngine:
    """Runs ingestion cycles against an injected ledger client and store.

    Example:
        ```python
        engine = IngestionEngine(client, store, watchlist, assets=[NATIVE_ASSET])
        result = await engine.run_cycle()
        if result.succeeded:
            print(result.height, result.transfers_inserted)
        ```
    """

    def __init__(
        self,
        client: LedgerClient,
        store: TransferStore,
        watchlist: Watchlist,
        *,
        assets: Iterable[TrackedAsset] = (NATIVE_ASSET,),
        detail_concurrency: int = DEFAULT_DETAIL_CONCURRENCY,
        resolve_receipts: bool = True,
    ) -> None:
        """Initialize the engine.

        Args:
            client: Read-only ledger client.
            store: Transfer store shared with the aggregator.
            watchlist: Watched addresses.
            assets: Assets whose transfers are recorded.
            detail_concurrency: Maximum concurrent transaction detail lookups.
            resolve_receipts: Fetch receipts for every matched transaction.
                When False, only listing entries missing their value are
                resolved and token transfers are not observed.
        """
        if detail_concurrency < 1:
            raise ValueError("detail_concurrency must be at least 1")
        self._client = client
        self._store = store
        self._watchlist = watchlist
        self._assets = index_assets(assets)
        self._detail_concurrency = detail_concurrency
        self._resolve_receipts = resolve_receipts

    async def run_cycle(self) -> CycleResult:
        """Run one cycle for the current chain height.

        Never raises for upstream, malformed-data or persistence failures;
        those are reflected in the returned result.
        """
        result = CycleResult(started_at=datetime.now(UTC))

        try:
            result.height = await self._client.latest_height()
        except LedgerClientError as e:
            return self._fail(result, e)

        result.state = CycleState.FETCH_BLOCK
        try:
            listing = await self._client.block_transactions(result.height)
        except LedgerClientError as e:
            return self._fail(result, e)

        unique = list({view.hash: view for view in listing}.values())
        result.transactions_seen = len(unique)
        if not unique:
            logger.debug("Block %d has no transactions", result.height)
            return self._finish(result)

        result.state = CycleState.FILTER_TRANSACTIONS
        matched = [view for view in unique if is_candidate(view, self._watchlist)]
        result.transactions_matched = len(matched)
        if not matched:
            return self._finish(result)

        result.state = CycleState.RESOLVE_DETAILS
        resolved = await self._resolve_details(matched, result)

        transfers: list[TransferDTO] = []
        for view in resolved:
            try:
                transfers.extend(extract_transfers(view, self._watchlist, self._assets))
            except MalformedDataError as e:
                self._skip(result, view.hash, CycleState.RESOLVE_DETAILS, e)
        result.transfers_found = len(transfers)

        result.state = CycleState.PERSIST
        try:
            inserted, duplicates = await self._store.upsert_transfers(transfers)
        except PersistenceError as e:
            return self._fail(result, e)
        result.transfers_inserted = inserted
        result.duplicates = duplicates

        return self._finish(result)

    def _needs_detail(self, view: TransactionView) -> bool:
        if self._resolve_receipts:
            return view.needs_detail
        return view.value_raw is None

    async def _resolve_details(self, matched: list[TransactionView], result: CycleResult) -> list[TransactionView]:
        semaphore = asyncio.Semaphore(self._detail_concurrency)

        async def resolve(view: TransactionView) -> TransactionView | None:
            if not self._needs_detail(view):
                return view
            try:
                async with semaphore:
                    detail = await self._client.transaction_detail(view.hash)
            except (LedgerClientError, MalformedDataError) as e:
                self._skip(result, view.hash, CycleState.RESOLVE_DETAILS, e)
                return None
            result.details_resolved += 1
            return view.merged_with(detail)

        views = await asyncio.gather(*(resolve(view) for view in matched))
        return [view for view in views if view is not None]

    def _skip(self, result: CycleResult, tx_hash: str, step: CycleState, error: Exception) -> None:
        result.skipped.append(SkippedTransaction(tx_hash=tx_hash, step=step, reason=str(error)))
        logger.warning("Skipping transaction %s at block %s (%s): %s", tx_hash, result.height, step.value, error)

    def _fail(self, result: CycleResult, error: Exception) -> CycleResult:
        result.failed_in = result.state
        result.error = str(error)
        result.state = CycleState.FAILED
        result.finished_at = datetime.now(UTC)
        logger.warning("Cycle failed in %s (height=%s): %s", result.failed_in.value, result.height, error)
        return result

    def _finish(self, result: CycleResult) -> CycleResult:
        result.state = CycleState.DONE
        result.finished_at = datetime.now(UTC)
        logger.info(
            "Cycle done: height=%s seen=%d matched=%d resolved=%d found=%d inserted=%d duplicates=%d skipped=%d",
            result.height,
            result.transactions_seen,
            result.transactions_matched,
            result.details_resolved,
            result.transfers_found,
            result.transfers_inserted,
            result.duplicates,
            len(result.skipped),
        )
        return result
