"""Watchlist of entities and the addresses they control.

The watchlist is loaded once at startup and never mutated. Ledger
addresses are case-insensitive hex, so every lookup canonicalizes both
sides to lowercase before comparing.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from decimal import Context, Decimal
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator
from web3 import Web3

logger = logging.getLogger(__name__)

NATIVE_ASSET_ADDRESS = "0x0000000000000000000000000000000000000000"
NATIVE_ASSET_DECIMALS = 18

# Wide enough for any signed uint256 without rounding
_EXACT = Context(prec=80)


class WatchlistError(ValueError):
    """Raised when a watchlist source is invalid."""


def normalize_address(address: str) -> str:
    """Canonicalize an address for comparison and storage.

    Raises:
        WatchlistError: If the value is not a 20-byte hex address.
    """
    candidate = address.strip().lower()
    if not Web3.is_address(candidate):
        raise WatchlistError(f"Invalid address: {address!r}")
    return candidate


@dataclass(frozen=True)
class WatchlistEntry:
    """One (entity, address) pair."""

    entity_name: str
    address: str


@dataclass(frozen=True)
class TrackedAsset:
    """An asset whose transfers are recorded and aggregated."""

    address: str
    symbol: str
    decimals: int

    @property
    def is_native(self) -> bool:
        return self.address == NATIVE_ASSET_ADDRESS

    def display_amount(self, amount_raw: int) -> Decimal:
        """Scale a base-unit amount by this asset's decimals."""
        return Decimal(amount_raw).scaleb(-self.decimals, _EXACT)


NATIVE_ASSET = TrackedAsset(address=NATIVE_ASSET_ADDRESS, symbol="POL", decimals=NATIVE_ASSET_DECIMALS)


class Watchlist:
    """Immutable set of watched addresses keyed by owning entity.

    Example:
        ```python
        watchlist = Watchlist.from_mapping({"Binance": ["0xF977814e90dA44bFA03b6295A0616a897441aceC"]})
        watchlist.matches("0xf977814e90da44bfa03b6295a0616a897441acec")  # "Binance"
        ```
    """

    __slots__ = ("_by_address", "_by_entity")

    def __init__(self, entries: Iterable[WatchlistEntry]) -> None:
        by_address: dict[str, str] = {}
        by_entity: dict[str, set[str]] = {}
        for entry in entries:
            name = entry.entity_name.strip()
            if not name:
                raise WatchlistError("Entity name must not be empty")
            address = normalize_address(entry.address)
            owner = by_address.get(address)
            if owner is not None and owner != name:
                raise WatchlistError(f"Address {address} is listed under both {owner!r} and {name!r}")
            by_address[address] = name
            by_entity.setdefault(name, set()).add(address)

        self._by_address: Mapping[str, str] = by_address
        self._by_entity: Mapping[str, frozenset[str]] = {
            name: frozenset(addresses) for name, addresses in by_entity.items()
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Iterable[str]]) -> Watchlist:
        """Build a watchlist from ``{entity_name: [address, ...]}``."""
        return cls(
            WatchlistEntry(entity_name=name, address=address)
            for name, addresses in mapping.items()
            for address in addresses
        )

    def matches(self, address: str | None) -> str | None:
        """Return the entity owning ``address``, or None if it is not watched."""
        if not address:
            return None
        return self._by_address.get(address.strip().lower())

    @property
    def entities(self) -> tuple[str, ...]:
        """Entity names in a stable order."""
        return tuple(sorted(self._by_entity))

    def addresses_for(self, entity_name: str) -> frozenset[str]:
        """Lowercased addresses controlled by ``entity_name``.

        Raises:
            KeyError: If the entity is not on the watchlist.
        """
        return self._by_entity[entity_name]

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and self.matches(address) is not None

    def __iter__(self) -> Iterator[WatchlistEntry]:
        for address, name in sorted(self._by_address.items()):
            yield WatchlistEntry(entity_name=name, address=address)

    def __len__(self) -> int:
        return len(self._by_address)

    def __repr__(self) -> str:
        return f"Watchlist(entities={len(self._by_entity)}, addresses={len(self._by_address)})"


class _AssetSpec(BaseModel):
    address: str
    symbol: str = ""
    decimals: int = Field(default=18, ge=0, le=77)

    @field_validator("address")
    @classmethod
    def _normalize(cls, v: str) -> str:
        return normalize_address(v)


class _WatchlistFile(BaseModel):
    entities: dict[str, list[str]]
    assets: list[_AssetSpec] = Field(default_factory=list)

    @field_validator("entities")
    @classmethod
    def _non_empty(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        if not v:
            raise ValueError("watchlist must name at least one entity")
        return v


@dataclass(frozen=True)
class WatchlistConfig:
    """Parsed watchlist source: the entity watchlist and the tracked assets."""

    watchlist: Watchlist
    assets: tuple[TrackedAsset, ...]


def parse_watchlist(raw: str | bytes) -> WatchlistConfig:
    """Parse a JSON watchlist document.

    Expected shape::

        {
          "entities": {"Binance": ["0x...", "0x..."]},
          "assets": [{"address": "0x...", "symbol": "USDC", "decimals": 6}]
        }

    ``assets`` is optional and defaults to the native asset.

    Raises:
        WatchlistError: If the document is malformed.
    """
    try:
        parsed = _WatchlistFile.model_validate_json(raw)
    except ValidationError as e:
        raise WatchlistError(f"Invalid watchlist document: {e}") from e

    watchlist = Watchlist.from_mapping(parsed.entities)

    assets: list[TrackedAsset] = []
    seen: set[str] = set()
    for spec in parsed.assets:
        if spec.address in seen:
            raise WatchlistError(f"Asset {spec.address} is listed twice")
        seen.add(spec.address)
        symbol = spec.symbol or (NATIVE_ASSET.symbol if spec.address == NATIVE_ASSET_ADDRESS else spec.address[:10])
        assets.append(TrackedAsset(address=spec.address, symbol=symbol, decimals=spec.decimals))

    return WatchlistConfig(watchlist=watchlist, assets=tuple(assets) or (NATIVE_ASSET,))


def load_watchlist_file(path: Path | str) -> WatchlistConfig:
    """Load and parse a watchlist JSON file.

    Raises:
        WatchlistError: If the file cannot be read or is malformed.
    """
    path = Path(path)
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise WatchlistError(f"Cannot read watchlist file {path}: {e}") from e

    config = parse_watchlist(raw)
    logger.info(
        "Loaded watchlist from %s: %d entities, %d addresses, %d assets",
        path,
        len(config.watchlist.entities),
        len(config.watchlist),
        len(config.assets),
    )
    return config
