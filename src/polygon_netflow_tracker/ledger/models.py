"""Data models for ledger responses.

Views are built from raw JSON-RPC payloads (hex quantities, lowercase or
checksummed addresses) and carry only what the ingestion engine needs.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

# keccak256("Transfer(address,address,uint256)")
TRANSFER_EVENT_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

# ERC-20 function selectors recognised in block listings
_TRANSFER_SELECTOR = "0xa9059cbb"
_TRANSFER_FROM_SELECTOR = "0x23b872dd"


class MalformedDataError(Exception):
    """Raised when a ledger payload is missing or has an undecodable field."""

    def __init__(self, message: str, *, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


def parse_quantity(value: Any, *, field: str, tx_hash: str | None = None) -> int:
    """Decode a JSON-RPC quantity (hex string or int)."""
    if isinstance(value, bool):
        raise MalformedDataError(f"{field} is not a quantity: {value!r}", tx_hash=tx_hash)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.startswith(("0x", "0X")) else int(value)
        except ValueError:
            pass
    raise MalformedDataError(f"{field} is not a quantity: {value!r}", tx_hash=tx_hash)


def _address_or_none(value: Any, *, field: str, tx_hash: str | None) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str) or not value.startswith("0x") or len(value) != 42:
        raise MalformedDataError(f"{field} is not an address: {value!r}", tx_hash=tx_hash)
    return value.lower()


def _word_to_address(word: str) -> str:
    return "0x" + word[-40:].lower()


@dataclass(frozen=True)
class LogView:
    """One receipt log entry."""

    address: str
    topics: tuple[str, ...]
    data: str
    log_index: int

    @classmethod
    def from_rpc(cls, raw: Mapping[str, Any], *, tx_hash: str) -> LogView:
        if not isinstance(raw, Mapping):
            raise MalformedDataError(f"log is not an object: {raw!r}", tx_hash=tx_hash)
        address = _address_or_none(raw.get("address"), field="log.address", tx_hash=tx_hash)
        if address is None:
            raise MalformedDataError("log.address is missing", tx_hash=tx_hash)
        topics = raw.get("topics")
        if not isinstance(topics, list):
            raise MalformedDataError("log.topics is missing", tx_hash=tx_hash)
        data = raw.get("data")
        if not isinstance(data, str):
            raise MalformedDataError("log.data is missing", tx_hash=tx_hash)
        return cls(
            address=address,
            topics=tuple(str(t).lower() for t in topics),
            data=data.lower(),
            log_index=parse_quantity(raw.get("logIndex"), field="log.logIndex", tx_hash=tx_hash),
        )

    @property
    def is_erc20_transfer(self) -> bool:
        """Transfer(address indexed, address indexed, uint256) has exactly three topics."""
        return len(self.topics) == 3 and self.topics[0] == TRANSFER_EVENT_TOPIC

    def decode_erc20_transfer(self) -> tuple[str, str, int]:
        """Return ``(from, to, amount_raw)`` for an ERC-20 Transfer log."""
        if not self.is_erc20_transfer:
            raise MalformedDataError(f"log {self.log_index} is not an ERC-20 Transfer")
        try:
            amount = int(self.data, 16)
        except ValueError as e:
            raise MalformedDataError(f"log {self.log_index} has undecodable data") from e
        return _word_to_address(self.topics[1]), _word_to_address(self.topics[2]), amount


@dataclass(frozen=True)
class TransactionView:
    """A transaction as seen in a block listing, optionally enriched with its receipt.

    ``logs`` is None until the receipt has been resolved; an empty tuple
    means the receipt was resolved and emitted no logs.
    """

    hash: str
    from_address: str | None
    to_address: str | None
    block_number: int | None = None
    block_timestamp: datetime | None = None
    value_raw: int | None = None
    input_data: str = "0x"
    fee_raw: int | None = None
    receipt_status: int | None = None
    logs: tuple[LogView, ...] | None = None

    @classmethod
    def from_rpc(
        cls,
        raw: Mapping[str, Any],
        *,
        block_timestamp: datetime | None = None,
    ) -> TransactionView:
        """Create a view from an ``eth_getBlockByNumber``/``eth_getTransactionByHash`` entry.

        Raises:
            MalformedDataError: If the hash is missing or a present field is undecodable.
        """
        if not isinstance(raw, Mapping):
            raise MalformedDataError(f"transaction is not an object: {raw!r}")
        tx_hash = raw.get("hash")
        if not isinstance(tx_hash, str) or not tx_hash.startswith("0x"):
            raise MalformedDataError(f"transaction hash is missing or invalid: {tx_hash!r}")
        tx_hash = tx_hash.lower()

        block_number = raw.get("blockNumber")
        value = raw.get("value")
        input_data = raw.get("input")
        return cls(
            hash=tx_hash,
            from_address=_address_or_none(raw.get("from"), field="from", tx_hash=tx_hash),
            to_address=_address_or_none(raw.get("to"), field="to", tx_hash=tx_hash),
            block_number=(
                parse_quantity(block_number, field="blockNumber", tx_hash=tx_hash)
                if block_number is not None
                else None
            ),
            block_timestamp=block_timestamp,
            value_raw=parse_quantity(value, field="value", tx_hash=tx_hash) if value is not None else None,
            input_data=input_data.lower() if isinstance(input_data, str) else "0x",
        )

    def with_receipt(self, receipt: Mapping[str, Any], *, gas_price: Any = None) -> TransactionView:
        """Return a copy enriched with fee, status and logs from ``eth_getTransactionReceipt``."""
        if not isinstance(receipt, Mapping):
            raise MalformedDataError("receipt is not an object", tx_hash=self.hash)
        status = receipt.get("status")
        gas_used = receipt.get("gasUsed")
        price = receipt.get("effectiveGasPrice", gas_price)
        fee_raw = None
        if gas_used is not None and price is not None:
            fee_raw = parse_quantity(gas_used, field="gasUsed", tx_hash=self.hash) * parse_quantity(
                price, field="effectiveGasPrice", tx_hash=self.hash
            )
        raw_logs = receipt.get("logs")
        if not isinstance(raw_logs, list):
            raise MalformedDataError("receipt.logs is missing", tx_hash=self.hash)
        block_number = self.block_number
        if block_number is None and receipt.get("blockNumber") is not None:
            block_number = parse_quantity(receipt["blockNumber"], field="blockNumber", tx_hash=self.hash)
        return dataclasses.replace(
            self,
            block_number=block_number,
            fee_raw=fee_raw,
            receipt_status=(
                parse_quantity(status, field="status", tx_hash=self.hash) if status is not None else None
            ),
            logs=tuple(LogView.from_rpc(log, tx_hash=self.hash) for log in raw_logs),
        )

    def merged_with(self, detail: TransactionView) -> TransactionView:
        """Fill fields missing from this listing entry with values from ``detail``."""
        return dataclasses.replace(
            self,
            from_address=self.from_address or detail.from_address,
            to_address=self.to_address or detail.to_address,
            block_number=self.block_number if self.block_number is not None else detail.block_number,
            block_timestamp=self.block_timestamp or detail.block_timestamp,
            value_raw=self.value_raw if self.value_raw is not None else detail.value_raw,
            input_data=self.input_data if self.input_data != "0x" else detail.input_data,
            fee_raw=detail.fee_raw if detail.fee_raw is not None else self.fee_raw,
            receipt_status=detail.receipt_status if detail.receipt_status is not None else self.receipt_status,
            logs=detail.logs if detail.logs is not None else self.logs,
        )

    @property
    def needs_detail(self) -> bool:
        """True until the receipt (fee, status, logs) has been resolved."""
        return self.logs is None or self.value_raw is None

    @property
    def failed(self) -> bool:
        return self.receipt_status == 0

    def candidate_addresses(self) -> tuple[str, ...]:
        """Addresses this transaction can move value between.

        Includes the sender and recipient plus the parties encoded in
        ERC-20 ``transfer``/``transferFrom`` calldata, so token transfers
        are matched from the block listing alone.
        """
        candidates = [a for a in (self.from_address, self.to_address) if a]
        data = self.input_data
        if data.startswith(_TRANSFER_SELECTOR) and len(data) >= 10 + 64:
            candidates.append(_word_to_address(data[10:74]))
        elif data.startswith(_TRANSFER_FROM_SELECTOR) and len(data) >= 10 + 128:
            candidates.append(_word_to_address(data[10:74]))
            candidates.append(_word_to_address(data[74:138]))
        for log in self.logs or ():
            if log.is_erc20_transfer:
                candidates.append(_word_to_address(log.topics[1]))
                candidates.append(_word_to_address(log.topics[2]))
        return tuple(dict.fromkeys(candidates))


def block_timestamp_from_rpc(raw_block: Mapping[str, Any]) -> datetime:
    """Decode a block's timestamp into an aware UTC datetime."""
    seconds = parse_quantity(raw_block.get("timestamp"), field="block.timestamp")
    return datetime.fromtimestamp(seconds, tz=UTC)
