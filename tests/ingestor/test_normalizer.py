"""Tests for turning resolved transactions into transfer records."""

import dataclasses
from decimal import Decimal

import pytest

from polygon_netflow_tracker.ingestor.normalizer import (
    NATIVE_LOG_INDEX,
    extract_transfers,
    index_assets,
    is_candidate,
    token_log_index,
)
from polygon_netflow_tracker.ledger.models import TRANSFER_EVENT_TOPIC, LogView, MalformedDataError
from polygon_netflow_tracker.watchlist import NATIVE_ASSET, NATIVE_ASSET_ADDRESS


@pytest.fixture
def assets(usdc):
    return index_assets([NATIVE_ASSET, usdc])


class TestIsCandidate:
    """Tests for listing-level filtering."""

    def test_native_to_watched(self, watchlist, addr, make_native_tx) -> None:
        listing, _ = make_native_tx(1, addr.x, addr.a, 10)
        assert is_candidate(listing, watchlist)

    def test_unrelated(self, watchlist, addr, make_native_tx) -> None:
        listing, _ = make_native_tx(1, addr.b, addr.c, 5)
        assert not is_candidate(listing, watchlist)

    def test_token_recipient_in_calldata(self, watchlist, addr, usdc, make_token_tx) -> None:
        """A token transfer to a watched address matches from the listing alone."""
        listing, _ = make_token_tx(1, usdc, addr.x, addr.k, 1_000_000)
        assert is_candidate(listing, watchlist)


class TestNativeTransfers:
    """Tests for native value transfers."""

    def test_inbound(self, watchlist, assets, addr, make_native_tx) -> None:
        listing, detail = make_native_tx(1, addr.x, addr.a, 10**18)

        transfers = extract_transfers(listing.merged_with(detail), watchlist, assets)

        assert len(transfers) == 1
        transfer = transfers[0]
        assert transfer.log_index == NATIVE_LOG_INDEX
        assert transfer.asset_address == NATIVE_ASSET_ADDRESS
        assert transfer.from_address == addr.x
        assert transfer.to_address == addr.a
        assert transfer.amount_raw == 10**18
        assert transfer.amount == Decimal(1)
        assert transfer.receipt_status == 1
        assert transfer.fee_raw is not None
        assert transfer.block_number == 100

    def test_between_two_watched_addresses_is_one_record(self, watchlist, assets, addr, make_native_tx) -> None:
        listing, detail = make_native_tx(1, addr.a, addr.k, 7)
        assert len(extract_transfers(listing.merged_with(detail), watchlist, assets)) == 1

    def test_zero_value_is_ignored(self, watchlist, assets, addr, make_native_tx) -> None:
        listing, detail = make_native_tx(1, addr.x, addr.a, 0)
        assert extract_transfers(listing.merged_with(detail), watchlist, assets) == []

    def test_failed_transaction_moves_no_value(self, watchlist, assets, addr, make_native_tx) -> None:
        listing, detail = make_native_tx(1, addr.x, addr.a, 10, status=0)
        assert extract_transfers(listing.merged_with(detail), watchlist, assets) == []

    def test_contract_creation_is_ignored(self, watchlist, assets, addr, make_native_tx) -> None:
        listing, detail = make_native_tx(1, addr.a, None, 10)
        assert extract_transfers(listing.merged_with(detail), watchlist, assets) == []

    def test_native_not_tracked(self, watchlist, usdc, addr, make_native_tx) -> None:
        listing, detail = make_native_tx(1, addr.x, addr.a, 10)
        assert extract_transfers(listing.merged_with(detail), watchlist, index_assets([usdc])) == []

    def test_missing_value_is_malformed(self, watchlist, assets, addr, make_native_tx) -> None:
        listing, _ = make_native_tx(1, addr.x, addr.a, 10)
        view = dataclasses.replace(listing, value_raw=None)
        with pytest.raises(MalformedDataError, match="value"):
            extract_transfers(view, watchlist, assets)

    def test_missing_block_context_is_malformed(self, watchlist, assets, addr, make_native_tx) -> None:
        _, detail = make_native_tx(1, addr.x, addr.a, 10)
        with pytest.raises(MalformedDataError, match="timestamp"):
            extract_transfers(detail, watchlist, assets)


class TestTokenTransfers:
    """Tests for ERC-20 Transfer logs."""

    def test_tracked_token(self, watchlist, assets, addr, usdc, make_token_tx) -> None:
        listing, detail = make_token_tx(1, usdc, addr.x, addr.k, 2_500_000, log_index=3)

        transfers = extract_transfers(listing.merged_with(detail), watchlist, assets)

        assert len(transfers) == 1
        transfer = transfers[0]
        assert transfer.log_index == token_log_index(0)
        assert transfer.asset_address == usdc.address
        assert transfer.from_address == addr.x
        assert transfer.to_address == addr.k
        assert transfer.amount_raw == 2_500_000
        assert transfer.amount == Decimal("2.5")

    def test_untracked_token_is_ignored(self, watchlist, addr, usdc, make_token_tx) -> None:
        listing, detail = make_token_tx(1, usdc, addr.x, addr.k, 1)
        assert extract_transfers(listing.merged_with(detail), watchlist, index_assets([NATIVE_ASSET])) == []

    def test_unwatched_parties_are_ignored(self, watchlist, assets, addr, usdc, make_token_tx) -> None:
        listing, detail = make_token_tx(1, usdc, addr.b, addr.c, 1)
        assert extract_transfers(listing.merged_with(detail), watchlist, assets) == []

    def test_listing_without_receipt_yields_no_token_transfers(
        self, watchlist, assets, addr, usdc, make_token_tx
    ) -> None:
        listing, _ = make_token_tx(1, usdc, addr.x, addr.k, 1)
        assert extract_transfers(listing, watchlist, assets) == []


class TestTransferIdentity:
    """Tests for identities of transfers sharing one transaction."""

    @staticmethod
    def _usdc_log(usdc, from_address: str, to_address: str, amount: int, log_index: int) -> LogView:
        return LogView(
            address=usdc.address,
            topics=(
                TRANSFER_EVENT_TOPIC,
                "0x" + from_address[2:].rjust(64, "0"),
                "0x" + to_address[2:].rjust(64, "0"),
            ),
            data="0x" + f"{amount:064x}",
            log_index=log_index,
        )

    def test_native_and_token_at_block_log_zero_stay_distinct(
        self, watchlist, assets, addr, usdc, make_native_tx
    ) -> None:
        """A swap paying native value and receiving a token keeps both records."""
        listing, detail = make_native_tx(1, addr.a, addr.b, 10)
        detail = dataclasses.replace(detail, logs=(self._usdc_log(usdc, addr.b, addr.a, 5, 0),))

        transfers = extract_transfers(listing.merged_with(detail), watchlist, assets)

        assert sorted(t.log_index for t in transfers) == [NATIVE_LOG_INDEX, token_log_index(0)]
        assert len({t.identity for t in transfers}) == 2

    def test_token_identities_follow_receipt_order(self, watchlist, assets, addr, usdc, make_native_tx) -> None:
        listing, detail = make_native_tx(1, addr.x, addr.a, 0)
        detail = dataclasses.replace(
            detail,
            logs=(
                self._usdc_log(usdc, addr.x, addr.a, 1, 40),
                self._usdc_log(usdc, addr.a, addr.y, 2, 41),
            ),
        )

        transfers = extract_transfers(listing.merged_with(detail), watchlist, assets)

        assert [t.log_index for t in transfers] == [1, 2]
