"""Tests for ledger response views."""

from datetime import UTC, datetime

import pytest

from polygon_netflow_tracker.ledger.models import (
    TRANSFER_EVENT_TOPIC,
    LogView,
    MalformedDataError,
    TransactionView,
    block_timestamp_from_rpc,
    parse_quantity,
)

TX_HASH = "0x" + "ab" * 32
SENDER = "0x" + "1" * 40
RECIPIENT = "0x" + "2" * 40
TOKEN = "0x3c499c542cef5e3811e1192ce70d8cc03d5c3359"


def _word(address: str) -> str:
    return "0x" + address[2:].rjust(64, "0")


def _transfer_log(from_address: str, to_address: str, amount: int, log_index: str = "0x5") -> dict:
    return {
        "address": TOKEN,
        "topics": [TRANSFER_EVENT_TOPIC, _word(from_address), _word(to_address)],
        "data": "0x" + f"{amount:064x}",
        "logIndex": log_index,
    }


class TestParseQuantity:
    def test_hex(self) -> None:
        assert parse_quantity("0x1a", field="f") == 26

    def test_decimal_string_and_int(self) -> None:
        assert parse_quantity("26", field="f") == 26
        assert parse_quantity(26, field="f") == 26

    @pytest.mark.parametrize("value", [None, True, "0xzz", "", 1.5])
    def test_rejects(self, value: object) -> None:
        with pytest.raises(MalformedDataError):
            parse_quantity(value, field="f")


class TestLogView:
    def test_decodes_erc20_transfer(self) -> None:
        log = LogView.from_rpc(_transfer_log(SENDER, RECIPIENT, 5_000_000), tx_hash=TX_HASH)
        assert log.is_erc20_transfer
        assert log.log_index == 5
        assert log.decode_erc20_transfer() == (SENDER, RECIPIENT, 5_000_000)

    def test_erc721_transfer_is_not_erc20(self) -> None:
        raw = _transfer_log(SENDER, RECIPIENT, 0)
        raw["topics"].append("0x" + "0" * 63 + "7")
        log = LogView.from_rpc(raw, tx_hash=TX_HASH)
        assert not log.is_erc20_transfer
        with pytest.raises(MalformedDataError):
            log.decode_erc20_transfer()

    def test_missing_topics(self) -> None:
        raw = _transfer_log(SENDER, RECIPIENT, 1)
        del raw["topics"]
        with pytest.raises(MalformedDataError, match="topics"):
            LogView.from_rpc(raw, tx_hash=TX_HASH)

    @pytest.mark.parametrize("raw", ["junk", None, 5])
    def test_non_object_log(self, raw: object) -> None:
        with pytest.raises(MalformedDataError, match="log is not an object") as exc_info:
            LogView.from_rpc(raw, tx_hash=TX_HASH)
        assert exc_info.value.tx_hash == TX_HASH


class TestTransactionView:
    def test_from_rpc(self) -> None:
        view = TransactionView.from_rpc(
            {
                "hash": TX_HASH.upper().replace("0X", "0x"),
                "from": SENDER.upper().replace("0X", "0x"),
                "to": RECIPIENT,
                "blockNumber": "0x64",
                "value": "0xde0b6b3a7640000",
                "input": "0x",
            }
        )
        assert view.hash == TX_HASH
        assert view.from_address == SENDER
        assert view.block_number == 100
        assert view.value_raw == 10**18
        assert view.logs is None
        assert view.needs_detail

    def test_contract_creation_has_no_recipient(self) -> None:
        view = TransactionView.from_rpc({"hash": TX_HASH, "from": SENDER, "to": None, "value": "0x0"})
        assert view.to_address is None

    def test_missing_hash(self) -> None:
        with pytest.raises(MalformedDataError, match="hash"):
            TransactionView.from_rpc({"from": SENDER, "to": RECIPIENT})

    def test_bad_address(self) -> None:
        with pytest.raises(MalformedDataError) as exc_info:
            TransactionView.from_rpc({"hash": TX_HASH, "from": "0x1234", "to": RECIPIENT})
        assert exc_info.value.tx_hash == TX_HASH

    def test_with_receipt(self) -> None:
        view = TransactionView.from_rpc({"hash": TX_HASH, "from": SENDER, "to": TOKEN, "value": "0x0"})
        resolved = view.with_receipt(
            {
                "status": "0x1",
                "gasUsed": "0x5208",
                "effectiveGasPrice": "0x6fc23ac00",
                "blockNumber": "0x64",
                "logs": [_transfer_log(SENDER, RECIPIENT, 7)],
            }
        )
        assert resolved.receipt_status == 1
        assert resolved.fee_raw == 21_000 * 30_000_000_000
        assert resolved.block_number == 100
        assert resolved.logs is not None and len(resolved.logs) == 1
        assert not resolved.needs_detail
        assert not resolved.failed

    def test_with_receipt_falls_back_to_gas_price(self) -> None:
        view = TransactionView.from_rpc({"hash": TX_HASH, "from": SENDER, "to": RECIPIENT, "value": "0x1"})
        resolved = view.with_receipt({"status": "0x0", "gasUsed": "0x2", "logs": []}, gas_price="0x3")
        assert resolved.fee_raw == 6
        assert resolved.failed
        assert resolved.logs == ()

    def test_with_receipt_requires_logs(self) -> None:
        view = TransactionView.from_rpc({"hash": TX_HASH, "from": SENDER, "to": RECIPIENT})
        with pytest.raises(MalformedDataError, match="logs"):
            view.with_receipt({"status": "0x1"})

    def test_with_receipt_rejects_non_object_log(self) -> None:
        view = TransactionView.from_rpc({"hash": TX_HASH, "from": SENDER, "to": RECIPIENT})
        with pytest.raises(MalformedDataError, match="log is not an object") as exc_info:
            view.with_receipt({"status": "0x1", "logs": ["junk"]})
        assert exc_info.value.tx_hash == TX_HASH

    @pytest.mark.parametrize("receipt", [None, "0x1", ["logs"]])
    def test_with_receipt_rejects_non_object_receipt(self, receipt: object) -> None:
        view = TransactionView.from_rpc({"hash": TX_HASH, "from": SENDER, "to": RECIPIENT})
        with pytest.raises(MalformedDataError, match="receipt is not an object"):
            view.with_receipt(receipt)

    def test_non_object_transaction(self) -> None:
        with pytest.raises(MalformedDataError, match="transaction is not an object"):
            TransactionView.from_rpc(TX_HASH)

    def test_merged_with_keeps_listing_context(self) -> None:
        ts = datetime(2026, 3, 1, tzinfo=UTC)
        listing = TransactionView(hash=TX_HASH, from_address=SENDER, to_address=RECIPIENT, block_number=100, block_timestamp=ts)
        detail = TransactionView(
            hash=TX_HASH,
            from_address=SENDER,
            to_address=RECIPIENT,
            value_raw=5,
            fee_raw=9,
            receipt_status=1,
            logs=(),
        )
        merged = listing.merged_with(detail)
        assert merged.block_timestamp == ts
        assert merged.block_number == 100
        assert merged.value_raw == 5
        assert merged.fee_raw == 9
        assert merged.logs == ()

    def test_candidate_addresses_from_transfer_calldata(self) -> None:
        calldata = "0xa9059cbb" + _word(RECIPIENT)[2:] + f"{10:064x}"
        view = TransactionView(hash=TX_HASH, from_address=SENDER, to_address=TOKEN, input_data=calldata)
        assert view.candidate_addresses() == (SENDER, TOKEN, RECIPIENT)

    def test_candidate_addresses_from_transfer_from_calldata(self) -> None:
        owner = "0x" + "3" * 40
        calldata = "0x23b872dd" + _word(owner)[2:] + _word(RECIPIENT)[2:] + f"{10:064x}"
        view = TransactionView(hash=TX_HASH, from_address=SENDER, to_address=TOKEN, input_data=calldata)
        assert view.candidate_addresses() == (SENDER, TOKEN, owner, RECIPIENT)

    def test_candidate_addresses_deduplicated(self) -> None:
        view = TransactionView(hash=TX_HASH, from_address=SENDER, to_address=SENDER)
        assert view.candidate_addresses() == (SENDER,)


def test_block_timestamp_from_rpc() -> None:
    assert block_timestamp_from_rpc({"timestamp": "0x0"}) == datetime(1970, 1, 1, tzinfo=UTC)
    with pytest.raises(MalformedDataError):
        block_timestamp_from_rpc({})
