"""Turn resolved transactions into transfer records.

A transaction can move value in two ways: its native ``value`` and the
ERC-20 ``Transfer`` events emitted by token contracts during execution.
Each movement that touches a watched address and a tracked asset becomes
one ``TransferDTO``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime

from polygon_netflow_tracker.ledger.models import MalformedDataError, TransactionView
from polygon_netflow_tracker.storage.repos import TransferDTO
from polygon_netflow_tracker.watchlist import TrackedAsset, Watchlist

# Native transfers have no log; they take this slot in the transfer identity.
# Token transfers use their position in the receipt's logs plus one, so the
# two never share an identity within a transaction.
NATIVE_LOG_INDEX = 0


def token_log_index(position: int) -> int:
    """Transfer identity slot for the receipt log at ``position``."""
    return NATIVE_LOG_INDEX + 1 + position


def index_assets(assets: Iterable[TrackedAsset]) -> dict[str, TrackedAsset]:
    return {asset.address: asset for asset in assets}


def is_candidate(view: TransactionView, watchlist: Watchlist) -> bool:
    """True when any address the transaction can move value between is watched."""
    return any(watchlist.matches(address) for address in view.candidate_addresses())


def extract_transfers(
    view: TransactionView,
    watchlist: Watchlist,
    assets: Mapping[str, TrackedAsset],
) -> list[TransferDTO]:
    """Build the transfer records for one resolved transaction.

    Args:
        view: Transaction with block context (and receipt, when resolved).
        watchlist: Watched addresses.
        assets: Tracked assets keyed by lowercase contract address.

    Returns:
        Zero or more transfers; a transfer between two watched addresses
        appears once. The native transfer takes ``NATIVE_LOG_INDEX`` and
        token transfers take ``token_log_index`` of their receipt position.

    Raises:
        MalformedDataError: If a field needed to build a record is missing
            or two records would share an identity.
    """
    if view.block_number is None:
        raise MalformedDataError("block number is missing", tx_hash=view.hash)
    if view.block_timestamp is None:
        raise MalformedDataError("block timestamp is missing", tx_hash=view.hash)

    transfers: list[TransferDTO] = []

    native = next((a for a in assets.values() if a.is_native), None)
    if native is not None:
        transfer = _native_transfer(
            view, watchlist, native, block_number=view.block_number, timestamp=view.block_timestamp
        )
        if transfer is not None:
            transfers.append(transfer)

    for position, log in enumerate(view.logs or ()):
        asset = assets.get(log.address)
        if asset is None or asset.is_native or not log.is_erc20_transfer:
            continue
        from_address, to_address, amount_raw = log.decode_erc20_transfer()
        if not (watchlist.matches(from_address) or watchlist.matches(to_address)):
            continue
        transfers.append(
            TransferDTO(
                tx_hash=view.hash,
                log_index=token_log_index(position),
                block_number=view.block_number,
                timestamp=view.block_timestamp,
                from_address=from_address,
                to_address=to_address,
                asset_address=asset.address,
                amount_raw=amount_raw,
                amount=asset.display_amount(amount_raw),
                fee_raw=view.fee_raw,
                receipt_status=view.receipt_status,
            )
        )

    identities = [transfer.identity for transfer in transfers]
    if len(set(identities)) != len(identities):
        raise MalformedDataError("transfers share an identity", tx_hash=view.hash)
    return transfers


def _native_transfer(
    view: TransactionView,
    watchlist: Watchlist,
    native: TrackedAsset,
    *,
    block_number: int,
    timestamp: datetime,
) -> TransferDTO | None:
    # Contract creations and reverted transactions move no native value.
    if view.to_address is None or view.failed:
        return None
    if not (watchlist.matches(view.from_address) or watchlist.matches(view.to_address)):
        return None
    if view.from_address is None:
        raise MalformedDataError("sender is missing", tx_hash=view.hash)
    if view.value_raw is None:
        raise MalformedDataError("value is missing", tx_hash=view.hash)
    if view.value_raw <= 0:
        return None

    return TransferDTO(
        tx_hash=view.hash,
        log_index=NATIVE_LOG_INDEX,
        block_number=block_number,
        timestamp=timestamp,
        from_address=view.from_address,
        to_address=view.to_address,
        asset_address=native.address,
        amount_raw=view.value_raw,
        amount=native.display_amount(view.value_raw),
        fee_raw=view.fee_raw,
        receipt_status=view.receipt_status,
    )
