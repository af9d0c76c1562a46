"""Versioned settlement memo attached to escrow deposits.

The memo records the intended split and the parties of a purchase. It is
the only way to recover settlement intent from the ledger alone, so the
encoding is canonical and every version stays decodable.

Wire format (version 1): canonical JSON (sorted keys, no whitespace) of

    {"v": 1, "batch_id", "buyer_address", "seller_address", "asset_id",
     "seller_amount", "platform_amount", "digest"}

where amounts are integer strings in the smallest payment unit and
``digest`` is the SHA-256 hex of the canonical JSON of every other field.
The JSON is upper-hex encoded into ``MemoData``; ``MemoType`` and
``MemoFormat`` carry ``market/settlement`` and ``application/json``.
"""

import binascii
import hashlib
import json
from typing import Optional

from pydantic import BaseModel, ConfigDict

from market_api.errors import MemoDecodeError

MEMO_VERSION = 1
SUPPORTED_VERSIONS = (1,)
MEMO_TYPE = "market/settlement"
MEMO_FORMAT = "application/json"


def to_hex(text: str) -> str:
    """Upper-case hex of UTF-8 text, as the ledger stores memo fields."""
    return text.encode("utf-8").hex().upper()


def from_hex(value: str) -> str:
    """Decode a hex memo field."""
    try:
        return binascii.unhexlify(value).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, TypeError) as e:
        raise MemoDecodeError("Memo field is not valid hex-encoded UTF-8") from e


def _canonical(data: dict) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


class SettlementMemo(BaseModel):
    """Settlement intent for one purchase batch."""

    model_config = ConfigDict(frozen=True)

    batch_id: str
    buyer_address: str
    seller_address: str
    asset_id: str
    seller_amount: int
    platform_amount: int
    version: int = MEMO_VERSION

    def body(self) -> dict:
        """Fields covered by the digest."""
        return {
            "v": self.version,
            "batch_id": self.batch_id,
            "buyer_address": self.buyer_address,
            "seller_address": self.seller_address,
            "asset_id": self.asset_id,
            "seller_amount": str(self.seller_amount),
            "platform_amount": str(self.platform_amount),
        }

    @property
    def digest(self) -> str:
        return hashlib.sha256(_canonical(self.body()).encode()).hexdigest()

    @property
    def total_amount(self) -> int:
        return self.seller_amount + self.platform_amount

    def encode(self) -> str:
        """Encode to the canonical JSON string."""
        data = self.body()
        data["digest"] = self.digest
        return _canonical(data)

    def to_ledger_memo(self) -> dict:
        """Memo entry for a transaction's ``Memos`` array."""
        return {
            "Memo": {
                "MemoType": to_hex(MEMO_TYPE),
                "MemoFormat": to_hex(MEMO_FORMAT),
                "MemoData": to_hex(self.encode()),
            }
        }

    @classmethod
    def decode(cls, encoded: str) -> "SettlementMemo":
        """Decode and verify a canonical memo string."""
        try:
            data = json.loads(encoded)
        except (TypeError, ValueError) as e:
            raise MemoDecodeError("Settlement memo is not valid JSON") from e
        if not isinstance(data, dict):
            raise MemoDecodeError("Settlement memo must be a JSON object")

        version = data.get("v")
        if version not in SUPPORTED_VERSIONS:
            raise MemoDecodeError(f"Unsupported settlement memo version: {version!r}")

        try:
            memo = cls(
                version=version,
                batch_id=data["batch_id"],
                buyer_address=data["buyer_address"],
                seller_address=data["seller_address"],
                asset_id=data["asset_id"],
                seller_amount=int(data["seller_amount"]),
                platform_amount=int(data["platform_amount"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MemoDecodeError(f"Settlement memo is missing or has invalid fields: {e}") from e

        if data.get("digest") != memo.digest:
            raise MemoDecodeError("Settlement memo digest does not match its contents")
        return memo

    @classmethod
    def from_ledger_memo(cls, memo_entry: dict) -> "SettlementMemo":
        """Decode a ``{"Memo": {...}}`` entry."""
        memo = memo_entry.get("Memo") or {}
        memo_type = memo.get("MemoType")
        if memo_type and from_hex(memo_type) != MEMO_TYPE:
            raise MemoDecodeError(f"Not a settlement memo: {from_hex(memo_type)}")
        data = memo.get("MemoData")
        if not data:
            raise MemoDecodeError("Memo has no data")
        return cls.decode(from_hex(data))


def recover_from_transaction(transaction: dict) -> Optional[SettlementMemo]:
    """Find the settlement memo on a ledger transaction, if any.

    A memo of a different type is ignored; a settlement memo that fails
    verification raises MemoDecodeError.
    """
    for entry in transaction.get("Memos") or []:
        memo = entry.get("Memo") or {}
        memo_type = memo.get("MemoType")
        if memo_type and from_hex(memo_type) != MEMO_TYPE:
            continue
        return SettlementMemo.from_ledger_memo(entry)
    return None
