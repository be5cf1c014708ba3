"""Ledger JSON-RPC client with timeouts, retries and optional caching.

This module provides the ledger capability consumed by the ingestion engine:
- Latest block height
- Full transaction listing for a block
- Transaction detail (transaction plus receipt) by hash

The production implementation talks JSON-RPC through web3's async HTTP
provider and adds:
- Per-call timeouts (height queries vs. block/detail queries)
- Retry logic with exponential backoff
- Rate limiting to respect provider limits
- Failover to a secondary RPC URL
- Redis caching of immutable transaction details
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from redis.asyncio import Redis
from web3.providers import AsyncHTTPProvider

from polygon_netflow_tracker.ledger.models import (
    MalformedDataError,
    TransactionView,
    block_timestamp_from_rpc,
    parse_quantity,
)

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_HEIGHT_TIMEOUT_SECONDS = 10.0
DEFAULT_BLOCK_TIMEOUT_SECONDS = 20.0
DEFAULT_CACHE_TTL_SECONDS = 3600
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
PRIMARY_RECOVERY_INTERVAL_SECONDS = 60.0


class LedgerClientError(Exception):
    """Base exception for ledger client errors."""


class UpstreamError(LedgerClientError):
    """Raised when the ledger cannot answer: network, timeout or malformed/absent result.

    Upstream errors are retryable on the next polling cycle.
    """


class LedgerClient(Protocol):
    """Capability the ingestion engine needs from a ledger."""

    async def latest_height(self) -> int: ...

    async def block_transactions(self, height: int) -> Sequence[TransactionView]: ...

    async def transaction_detail(self, tx_hash: str) -> TransactionView: ...


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class Web3LedgerClient:
    """JSON-RPC ledger client built on web3's ``AsyncHTTPProvider``.

    Example:
        ```python
        client = Web3LedgerClient(
            "https://polygon-rpc.com",
            fallback_rpc_url="https://polygon-bor.publicnode.com",
        )
        height = await client.latest_height()
        txs = await client.block_transactions(height)
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        height_timeout_seconds: float = DEFAULT_HEIGHT_TIMEOUT_SECONDS,
        block_timeout_seconds: float = DEFAULT_BLOCK_TIMEOUT_SECONDS,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        """Initialize the ledger client.

        Args:
            rpc_url: Primary JSON-RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching transaction details.
            height_timeout_seconds: Timeout for each latest-height attempt.
            block_timeout_seconds: Timeout for each block listing or detail attempt.
            cache_ttl_seconds: Cache TTL in seconds.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Attempts per endpoint before giving up.
            retry_delay_seconds: Initial delay between retries.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._redis = redis
        self._height_timeout = height_timeout_seconds
        self._block_timeout = block_timeout_seconds
        self._cache_ttl = cache_ttl_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

        self._provider = AsyncHTTPProvider(rpc_url)
        self._fallback_provider: AsyncHTTPProvider | None = None
        if fallback_rpc_url:
            self._fallback_provider = AsyncHTTPProvider(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0

        self._cache_prefix = "ledger:"

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int | None = None) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl or self._cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    async def _get_cached_detail(self, key: str) -> tuple[dict[str, Any], dict[str, Any]] | None:
        cached = await self._get_cached(key)
        if cached is None:
            return None
        try:
            payload = json.loads(cached)
            tx, receipt = payload["tx"], payload["receipt"]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable cache entry %s: %s", key, e)
            return None
        if not isinstance(tx, dict) or not isinstance(receipt, dict):
            logger.warning("Ignoring unreadable cache entry %s", key)
            return None
        return tx, receipt

    def _should_try_primary(self) -> bool:
        if self._primary_healthy or self._fallback_provider is None:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > PRIMARY_RECOVERY_INTERVAL_SECONDS:
            self._last_primary_check = now
            return True
        return False

    async def _request_once(
        self,
        provider: AsyncHTTPProvider,
        method: str,
        params: list[Any],
        timeout: float,
    ) -> Any:
        """Issue one JSON-RPC request and unwrap its envelope."""
        try:
            response = await asyncio.wait_for(provider.make_request(method, params), timeout=timeout)
        except TimeoutError as e:
            raise UpstreamError(f"{method} timed out after {timeout:.1f}s") from e
        except Exception as e:
            raise UpstreamError(f"{method} transport failure: {e}") from e

        if not isinstance(response, dict):
            raise UpstreamError(f"{method} returned a non-object response")
        if response.get("error") is not None:
            raise UpstreamError(f"{method} returned error: {response['error']}")
        if "result" not in response:
            raise UpstreamError(f"{method} response has no result")
        return response["result"]

    async def _attempts(
        self,
        provider: AsyncHTTPProvider,
        label: str,
        method: str,
        params: list[Any],
        timeout: float,
    ) -> Any:
        delay = self._retry_delay
        last_error: UpstreamError | None = None
        for attempt in range(self._max_retries):
            try:
                return await self._request_once(provider, method, params, timeout)
            except UpstreamError as e:
                last_error = e
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    label,
                    method,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2
        assert last_error is not None
        raise last_error

    async def _call(self, method: str, params: list[Any], *, timeout: float) -> Any:
        """Execute an RPC call with retry and failover logic.

        Raises:
            UpstreamError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: UpstreamError | None = None

        if self._should_try_primary():
            try:
                result = await self._attempts(self._provider, "Primary", method, params, timeout)
                self._primary_healthy = True
                return result
            except UpstreamError as e:
                last_error = e
                self._primary_healthy = False
                self._last_primary_check = time.monotonic()

        if self._fallback_provider is not None:
            try:
                result = await self._attempts(self._fallback_provider, "Fallback", method, params, timeout)
                logger.info("Fallback RPC succeeded for %s", method)
                return result
            except UpstreamError as e:
                last_error = e

        raise UpstreamError(f"RPC call {method} failed after all retries: {last_error}") from last_error

    async def latest_height(self) -> int:
        """Get the current chain height.

        Raises:
            UpstreamError: On network failure, timeout or malformed result.
        """
        result = await self._call("eth_blockNumber", [], timeout=self._height_timeout)
        try:
            return parse_quantity(result, field="eth_blockNumber")
        except MalformedDataError as e:
            raise UpstreamError(str(e)) from e

    async def block_transactions(self, height: int) -> list[TransactionView]:
        """Get every transaction in the block at ``height``.

        An empty block yields an empty list. Listing entries that cannot be
        decoded are dropped with a warning.

        Raises:
            UpstreamError: If the block cannot be fetched or is malformed.
        """
        if height < 0:
            raise ValueError("height must be >= 0")

        block = await self._call("eth_getBlockByNumber", [hex(height), True], timeout=self._block_timeout)
        if not isinstance(block, dict):
            raise UpstreamError(f"Block {height} not available")
        raw_txs = block.get("transactions")
        if not isinstance(raw_txs, list):
            raise UpstreamError(f"Block {height} has no transaction list")
        try:
            block_timestamp = block_timestamp_from_rpc(block)
        except MalformedDataError as e:
            raise UpstreamError(f"Block {height} is malformed: {e}") from e

        transactions: list[TransactionView] = []
        for index, raw in enumerate(raw_txs):
            if not isinstance(raw, dict):
                logger.warning("Block %d transaction %d is not an object; dropped", height, index)
                continue
            try:
                view = TransactionView.from_rpc(raw, block_timestamp=block_timestamp)
            except MalformedDataError as e:
                logger.warning(
                    "Block %d transaction %s dropped: %s",
                    height,
                    e.tx_hash or f"#{index}",
                    e,
                )
                continue
            if view.block_number is None:
                view = dataclasses.replace(view, block_number=height)
            transactions.append(view)
        return transactions

    async def transaction_detail(self, tx_hash: str) -> TransactionView:
        """Get a transaction together with its receipt.

        Details are cached in Redis when available; receipts of mined
        transactions do not change.

        Raises:
            UpstreamError: If either lookup fails or returns no result.
            MalformedDataError: If the payload cannot be decoded.
        """
        tx_hash = tx_hash.lower()
        cache_key = f"{self._cache_prefix}detail:{tx_hash}"

        payload = await self._get_cached_detail(cache_key)
        if payload is not None:
            tx, receipt = payload
        else:
            tx = await self._call("eth_getTransactionByHash", [tx_hash], timeout=self._block_timeout)
            if not isinstance(tx, dict):
                raise UpstreamError(f"Transaction {tx_hash} not found")
            receipt = await self._call("eth_getTransactionReceipt", [tx_hash], timeout=self._block_timeout)
            if not isinstance(receipt, dict):
                raise UpstreamError(f"Receipt for {tx_hash} not available")
            await self._set_cached(cache_key, json.dumps({"tx": tx, "receipt": receipt}))

        view = TransactionView.from_rpc(tx)
        return view.with_receipt(receipt, gas_price=tx.get("gasPrice"))

    async def health_check(self) -> bool:
        """Check if the client can reach the RPC.

        Returns:
            True if healthy, False otherwise.
        """
        try:
            await self.latest_height()
            return True
        except UpstreamError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._provider]
        if self._fallback_provider is not None:
            providers.append(self._fallback_provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
