"""Pytest configuration and fixtures."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from types import SimpleNamespace

import pytest

from polygon_netflow_tracker.ledger.client import UpstreamError
from polygon_netflow_tracker.ledger.models import TRANSFER_EVENT_TOPIC, LogView, TransactionView
from polygon_netflow_tracker.storage.database import DatabaseManager
from polygon_netflow_tracker.storage.store import TransferStore
from polygon_netflow_tracker.watchlist import TrackedAsset, Watchlist

BLOCK_TIMESTAMP = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
GAS_FEE = 21_000 * 30_000_000_000

USDC = TrackedAsset(address="0x3c499c542cef5e3811e1192ce70d8cc03d5c3359", symbol="USDC", decimals=6)

# Watched
ADDR_A = "0x" + "a" * 40
ADDR_A2 = "0x" + "a2" * 20
ADDR_K = "0x" + "c" * 40
# Not watched
ADDR_X = "0x" + "1" * 40
ADDR_Y = "0x" + "2" * 40
ADDR_B = "0x" + "3" * 40
ADDR_C = "0x" + "4" * 40


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


def _word(address: str) -> str:
    return "0x" + address[2:].rjust(64, "0")


class FakeLedgerClient:
    """In-memory ledger client keyed by height and transaction hash."""

    def __init__(self) -> None:
        self.height = 0
        self.blocks: dict[int, list[TransactionView]] = {}
        self.details: dict[str, TransactionView] = {}
        self.failing_details: set[str] = set()
        self.height_error: Exception | None = None
        self.block_error: Exception | None = None
        self.detail_calls: list[str] = []

    async def latest_height(self) -> int:
        if self.height_error is not None:
            raise self.height_error
        return self.height

    async def block_transactions(self, height: int) -> list[TransactionView]:
        if self.block_error is not None:
            raise self.block_error
        return list(self.blocks.get(height, []))

    async def transaction_detail(self, tx_hash: str) -> TransactionView:
        self.detail_calls.append(tx_hash)
        if tx_hash in self.failing_details:
            raise UpstreamError(f"detail unavailable for {tx_hash}")
        return self.details[tx_hash]

    def add_block(self, height: int, *transactions: tuple[TransactionView, TransactionView]) -> None:
        """Register a block of ``(listing_view, detail_view)`` pairs and make it the tip."""
        self.blocks.setdefault(height, [])
        for listing, detail in transactions:
            self.blocks[height].append(listing)
            self.details[listing.hash] = detail
        self.height = max(self.height, height)


def native_tx(
    n: int,
    from_address: str,
    to_address: str | None,
    value: int,
    *,
    height: int = 100,
    status: int = 1,
) -> tuple[TransactionView, TransactionView]:
    """A native value transfer as listed in a block and as resolved with its receipt."""
    listing = TransactionView(
        hash=tx_hash(n),
        from_address=from_address,
        to_address=to_address,
        block_number=height,
        block_timestamp=BLOCK_TIMESTAMP,
        value_raw=value,
    )
    detail = TransactionView(
        hash=tx_hash(n),
        from_address=from_address,
        to_address=to_address,
        block_number=height,
        value_raw=value,
        fee_raw=GAS_FEE,
        receipt_status=status,
        logs=(),
    )
    return listing, detail


def token_tx(
    n: int,
    token: TrackedAsset,
    from_address: str,
    to_address: str,
    amount: int,
    *,
    height: int = 100,
    log_index: int = 3,
) -> tuple[TransactionView, TransactionView]:
    """An ERC-20 ``transfer`` call and its resolved receipt carrying one Transfer log."""
    calldata = "0xa9059cbb" + _word(to_address)[2:] + f"{amount:064x}"
    listing = TransactionView(
        hash=tx_hash(n),
        from_address=from_address,
        to_address=token.address,
        block_number=height,
        block_timestamp=BLOCK_TIMESTAMP,
        value_raw=0,
        input_data=calldata,
    )
    log = LogView(
        address=token.address,
        topics=(TRANSFER_EVENT_TOPIC, _word(from_address), _word(to_address)),
        data="0x" + f"{amount:064x}",
        log_index=log_index,
    )
    detail = TransactionView(
        hash=tx_hash(n),
        from_address=from_address,
        to_address=token.address,
        block_number=height,
        value_raw=0,
        input_data=calldata,
        fee_raw=GAS_FEE,
        receipt_status=1,
        logs=(log,),
    )
    return listing, detail


@pytest.fixture
def fake_ledger() -> FakeLedgerClient:
    return FakeLedgerClient()


@pytest.fixture
def watchlist() -> Watchlist:
    """Binance owns A and A2; Kraken owns K."""
    return Watchlist.from_mapping({"Binance": [ADDR_A, ADDR_A2], "Kraken": [ADDR_K]})


@pytest.fixture
async def db_manager(tmp_path: Path):
    """File-backed SQLite database with the schema created."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'polygon.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def store(db_manager: DatabaseManager) -> TransferStore:
    return TransferStore(db_manager)


@pytest.fixture
def make_native_tx():
    return native_tx


@pytest.fixture
def make_token_tx():
    return token_tx


@pytest.fixture
def usdc() -> TrackedAsset:
    return USDC


@pytest.fixture
def addr() -> SimpleNamespace:
    """Addresses a, a2 (Binance) and k (Kraken) are watched; x, y, b, c are not."""
    return SimpleNamespace(a=ADDR_A, a2=ADDR_A2, k=ADDR_K, x=ADDR_X, y=ADDR_Y, b=ADDR_B, c=ADDR_C)
