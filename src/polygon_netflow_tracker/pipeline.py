"""Main pipeline orchestrator for the Polygon net-flow tracker.

This module provides the Pipeline class that wires the ledger client,
transfer store, ingestion engine and net-flow aggregator together and
drives them on a fixed polling interval.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis

from polygon_netflow_tracker.aggregator import NetFlowAggregator
from polygon_netflow_tracker.config import Settings, get_settings
from polygon_netflow_tracker.ingestor.engine import CycleResult, IngestionEngine
from polygon_netflow_tracker.ledger.client import Web3LedgerClient
from polygon_netflow_tracker.storage.database import DatabaseManager
from polygon_netflow_tracker.storage.store import PersistenceError, TransferStore
from polygon_netflow_tracker.watchlist import load_watchlist_file

if TYPE_CHECKING:
    from polygon_netflow_tracker.ledger.client import LedgerClient
    from polygon_netflow_tracker.watchlist import WatchlistConfig

logger = logging.getLogger(__name__)

LAST_PROCESSED_HEIGHT_KEY = "last_processed_height"
LAST_CYCLE_COMPLETED_AT_KEY = "last_cycle_completed_at"


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    cycles_run: int = 0
    cycles_failed: int = 0
    transfers_inserted: int = 0
    duplicates: int = 0
    transactions_skipped: int = 0
    last_height: int | None = None
    last_cycle_started_at: datetime | None = None
    last_cycle_completed_at: datetime | None = None
    last_error: str | None = None


class Pipeline:
    """Polling driver for the net-flow tracker.

    Pipeline flow:
        Ledger Client → Watchlist filter → Transfer Store → Net-Flow Aggregator

    Cycles never overlap. A stop request is honoured between cycles; a
    cycle in progress always runs to completion.

    Example:
        ```python
        from polygon_netflow_tracker.config import get_settings
        from polygon_netflow_tracker.pipeline import Pipeline

        pipeline = Pipeline(get_settings())
        await pipeline.start()
        # Pipeline polls until stop() is called
        await pipeline.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        watchlist_config: WatchlistConfig | None = None,
        client: LedgerClient | None = None,
        store: TransferStore | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            watchlist_config: Pre-loaded watchlist. If not provided, loaded
                from ``settings.watchlist.path`` on start.
            client: Ledger client. If not provided, a Web3LedgerClient is built
                from settings and closed on stop.
            store: Transfer store. If not provided, one is built over a
                DatabaseManager from settings and disposed on stop.
        """
        self._settings = settings or get_settings()
        self._watchlist_config = watchlist_config

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        # Components (initialized in start())
        self._client: LedgerClient | None = client
        self._store: TransferStore | None = store
        self._owned_client: Web3LedgerClient | None = None
        self._db_manager: DatabaseManager | None = None
        self._redis: Redis | None = None
        self._engine: IngestionEngine | None = None
        self._aggregator: NetFlowAggregator | None = None

        # Synchronization
        self._stop_event: asyncio.Event | None = None
        self._cycle_lock = asyncio.Lock()
        self._loop_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if pipeline is running."""
        return self._state == PipelineState.RUNNING

    async def start(self) -> None:
        """Start the pipeline.

        Initializes all components and schedules the polling loop.

        Raises:
            RuntimeError: If pipeline is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting pipeline...")

        try:
            await self._initialize_components()
            self._stats.started_at = datetime.now(UTC)
            self._loop_task = asyncio.create_task(self._run_poll_loop())
            self._state = PipelineState.RUNNING
            logger.info(
                "Pipeline started successfully (poll interval %.1fs)",
                self._settings.poller.interval_seconds,
            )
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

    def request_stop(self) -> None:
        """Ask the polling loop to exit after the current cycle.

        Safe to call from a signal handler.
        """
        if self._stop_event and not self._stop_event.is_set():
            logger.info("Stop requested; finishing current cycle")
            self._stop_event.set()

    async def stop(self) -> None:
        """Stop the pipeline gracefully.

        Waits for an in-flight cycle to finish, then releases resources.
        """
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()

        if self._loop_task:
            await self._loop_task
            self._loop_task = None

        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    async def _initialize_components(self) -> None:
        """Initialize all pipeline components."""
        settings = self._settings

        if self._watchlist_config is None:
            if settings.watchlist.path is None:
                raise ValueError("WATCHLIST_PATH is required")
            self._watchlist_config = load_watchlist_file(settings.watchlist.path)

        if self._store is None:
            logger.debug("Initializing database manager...")
            self._db_manager = DatabaseManager(settings.database.url)
            self._store = TransferStore(self._db_manager)

        if self._client is None:
            if not settings.ledger.rpc_url:
                raise ValueError("LEDGER_RPC_URL is required")
            if settings.redis.url:
                logger.debug("Initializing Redis connection...")
                self._redis = Redis.from_url(settings.redis.url)
            logger.debug("Initializing ledger client...")
            self._owned_client = Web3LedgerClient(
                settings.ledger.rpc_url,
                fallback_rpc_url=settings.ledger.fallback_rpc_url,
                redis=self._redis,
                height_timeout_seconds=settings.ledger.height_timeout_seconds,
                block_timeout_seconds=settings.ledger.block_timeout_seconds,
                max_requests_per_second=settings.ledger.max_requests_per_second,
                max_retries=settings.ledger.max_retries,
                retry_delay_seconds=settings.ledger.retry_delay_seconds,
            )
            self._client = self._owned_client

        watchlist = self._watchlist_config.watchlist
        assets = self._watchlist_config.assets

        logger.debug("Initializing ingestion engine...")
        self._engine = IngestionEngine(
            self._client,
            self._store,
            watchlist,
            assets=assets,
            detail_concurrency=settings.poller.detail_concurrency,
            resolve_receipts=settings.ledger.resolve_receipts,
        )

        logger.debug("Initializing net-flow aggregator...")
        self._aggregator = NetFlowAggregator(self._store, watchlist, assets=assets)

        logger.info(
            "Components initialized: %d entities, %d addresses, %d assets",
            len(watchlist.entities),
            len(watchlist),
            len(assets),
        )

    async def _run_poll_loop(self) -> None:
        if not self._stop_event:
            return

        interval = self._settings.poller.interval_seconds
        while not self._stop_event.is_set():
            try:
                await self.run_cycle()
            except Exception as e:
                self._stats.cycles_failed += 1
                self._stats.last_error = str(e)
                logger.exception("Unexpected error in polling cycle: %s", e)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except TimeoutError:
                pass

    async def run_cycle(self) -> CycleResult:
        """Run one ingest-then-aggregate cycle.

        Cycles are serialized; a call made while another cycle is running
        waits for it to finish first.

        Raises:
            RuntimeError: If components have not been initialized.
        """
        if not self._engine or not self._aggregator or not self._store:
            raise RuntimeError("Pipeline components are not initialized")

        async with self._cycle_lock:
            self._stats.last_cycle_started_at = datetime.now(UTC)
            result = await self._engine.run_cycle()

            self._stats.cycles_run += 1
            self._stats.transfers_inserted += result.transfers_inserted
            self._stats.duplicates += result.duplicates
            self._stats.transactions_skipped += len(result.skipped)

            if not result.succeeded:
                self._stats.cycles_failed += 1
                self._stats.last_error = result.error
                return result

            # Recompute even when nothing was inserted.
            try:
                await self._aggregator.recompute()
                await self._record_progress(result)
            except PersistenceError as e:
                self._stats.cycles_failed += 1
                self._stats.last_error = str(e)
                logger.warning("Post-ingestion step failed for height %s: %s", result.height, e)
                return result

            self._stats.last_height = result.height
            self._stats.last_cycle_completed_at = result.finished_at
            return result

    async def run_once(self) -> CycleResult:
        """Initialize components, run a single cycle and release resources."""
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot run a one-shot cycle in state {self._state}")
        try:
            await self._initialize_components()
            return await self.run_cycle()
        finally:
            await self._cleanup()

    async def _record_progress(self, result: CycleResult) -> None:
        if not self._store:
            return
        if result.height is not None:
            await self._store.set_metadata(LAST_PROCESSED_HEIGHT_KEY, str(result.height))
        completed = result.finished_at or datetime.now(UTC)
        await self._store.set_metadata(LAST_CYCLE_COMPLETED_AT_KEY, completed.isoformat())

    async def _cleanup(self) -> None:
        """Clean up resources this pipeline created."""
        if self._owned_client:
            await self._owned_client.aclose()
            self._owned_client = None
            self._client = None

        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None
            self._store = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        self._engine = None
        self._aggregator = None
        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the pipeline and poll until a stop is requested.

        Example:
            ```python
            pipeline = Pipeline()
            loop.add_signal_handler(signal.SIGTERM, pipeline.request_stop)
            await pipeline.run()
            ```
        """
        await self.start()

        try:
            if self._loop_task:
                await asyncio.shield(self._loop_task)
        finally:
            await self.stop()

    async def __aenter__(self) -> Pipeline:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
