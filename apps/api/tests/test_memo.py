"""Tests for the versioned settlement memo."""

import json

import pytest

from conftest import BUYER, SELLER
from market_api.errors import MemoDecodeError
from market_api.ledger.memo import (
    MEMO_TYPE,
    SettlementMemo,
    from_hex,
    recover_from_transaction,
    to_hex,
)
from market_api.ledger.transactions import leg_memo


@pytest.fixture
def memo() -> SettlementMemo:
    return SettlementMemo(
        batch_id="batch_0123",
        buyer_address=BUYER,
        seller_address=SELLER,
        asset_id="asset_photos",
        seller_amount=70_000_000,
        platform_amount=30_000_000,
    )


def test_encoding_is_canonical(memo):
    """Keys are sorted, there is no whitespace and amounts are strings."""
    encoded = memo.encode()
    data = json.loads(encoded)
    assert encoded == json.dumps(data, sort_keys=True, separators=(",", ":"))
    assert data["v"] == 1
    assert data["seller_amount"] == "70000000"
    assert data["digest"] == memo.digest


def test_decode_recovers_intent(memo):
    decoded = SettlementMemo.decode(memo.encode())
    assert decoded == memo
    assert decoded.total_amount == 100_000_000


def test_ledger_memo_fields_are_upper_hex(memo):
    entry = memo.to_ledger_memo()["Memo"]
    assert from_hex(entry["MemoType"]) == MEMO_TYPE
    assert entry["MemoData"] == entry["MemoData"].upper()
    assert SettlementMemo.from_ledger_memo({"Memo": entry}) == memo


def test_tampered_amount_is_rejected(memo):
    data = json.loads(memo.encode())
    data["seller_amount"] = "99000000"
    with pytest.raises(MemoDecodeError, match="digest"):
        SettlementMemo.decode(json.dumps(data))


def test_unknown_version_is_rejected(memo):
    data = json.loads(memo.encode())
    data["v"] = 2
    with pytest.raises(MemoDecodeError, match="version"):
        SettlementMemo.decode(json.dumps(data))


@pytest.mark.parametrize("encoded", ["not json", "[1, 2]", '{"v": 1}'])
def test_malformed_memo_is_rejected(encoded):
    with pytest.raises(MemoDecodeError):
        SettlementMemo.decode(encoded)


def test_bad_hex_is_rejected():
    with pytest.raises(MemoDecodeError):
        from_hex("ZZ")


def test_recover_skips_other_memo_types(memo):
    tx = {"Memos": [leg_memo("batch_0123", "seller_payout"), memo.to_ledger_memo()]}
    assert recover_from_transaction(tx) == memo


def test_recover_without_memo_returns_none():
    assert recover_from_transaction({"TransactionType": "EscrowCreate"}) is None
    assert recover_from_transaction({"Memos": [leg_memo("batch_0123", "escrow_release")]}) is None


def test_hex_helpers():
    assert to_hex("market") == "6D61726B6574"
    assert from_hex("6D61726B6574") == "market"
