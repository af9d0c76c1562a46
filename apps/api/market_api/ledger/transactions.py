"""Unsigned ledger transaction builders.

Builders only return data. Buyer transactions are signed by the buyer's
own wallet; platform transactions go through a TransactionSigner.
"""

import json
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional, Tuple

from pydantic import BaseModel

from market_api.errors import ValidationError
from market_api.fees.calculator import FeeBreakdown
from market_api.ledger.client import is_valid_address
from market_api.ledger.memo import SettlementMemo, to_hex
from market_api.settings import Settings, get_settings
from market_api.utils.clock import to_ledger_time, utcnow

LEG_MEMO_TYPE = "market/leg"
CREDENTIAL_TYPE_PREFIX = "LIC_"


class PurchaseContext(BaseModel):
    """Purchase details recorded in the deposit memo."""

    batch_id: str
    asset_id: str
    seller_address: str


def credential_type_for(asset_id: str) -> str:
    """Hex-encoded ledger credential type for an asset."""
    return to_hex(CREDENTIAL_TYPE_PREFIX + asset_id[:12])


def leg_memo(batch_id: str, leg_kind: str) -> dict:
    """Reference memo tying a platform transaction to its batch leg."""
    data = json.dumps({"batch_id": batch_id, "leg": leg_kind}, sort_keys=True, separators=(",", ":"))
    return {"Memo": {"MemoType": to_hex(LEG_MEMO_TYPE), "MemoData": to_hex(data)}}


def _require_address(address: str, role: str):
    if not is_valid_address(address):
        raise ValidationError(f"Invalid {role} address: {address!r}")


class EscrowTransactionBuilder:
    """Build escrow deposits and the platform's settlement transactions."""

    def __init__(self, settings: Optional[Settings] = None, clock: Callable[[], datetime] = utcnow):
        """Initialize transaction builder."""
        self.settings = settings or get_settings()
        self.clock = clock

    def release_window(self, now: Optional[datetime] = None) -> Tuple[int, int]:
        """Return (finish_after, cancel_after) in ledger epoch seconds.

        The platform may release from finish_after on; the buyer may reclaim
        from cancel_after on if the platform never released.
        """
        now = now or self.clock()
        finish_after = to_ledger_time(now + timedelta(seconds=self.settings.escrow_finish_after_seconds))
        cancel_after = to_ledger_time(now + timedelta(seconds=self.settings.escrow_cancel_after_seconds))
        return finish_after, cancel_after

    def build_escrow_deposit(
        self,
        buyer: str,
        platform_address: str,
        fees: FeeBreakdown,
        context: PurchaseContext,
        now: Optional[datetime] = None,
        window: Optional[Tuple[int, int]] = None,
    ) -> dict:
        """Build the buyer's escrow deposit for the total price.

        ``window`` reuses a previously issued (finish_after, cancel_after) pair
        so the same purchase always yields the same transaction.
        """
        _require_address(buyer, "buyer")
        _require_address(platform_address, "platform")
        _require_address(context.seller_address, "seller")
        if buyer == platform_address:
            raise ValidationError("Buyer address cannot be the platform address")

        memo = SettlementMemo(
            batch_id=context.batch_id,
            buyer_address=buyer,
            seller_address=context.seller_address,
            asset_id=context.asset_id,
            seller_amount=fees.seller_revenue_drops,
            platform_amount=fees.platform_fee_drops,
        )
        finish_after, cancel_after = window or self.release_window(now)
        return {
            "TransactionType": "EscrowCreate",
            "Account": buyer,
            "Destination": platform_address,
            "Amount": str(fees.total_drops),
            "FinishAfter": finish_after,
            "CancelAfter": cancel_after,
            "Memos": [memo.to_ledger_memo()],
        }

    def build_escrow_finish(self, platform_address: str, owner: str, offer_sequence: int, batch_id: str) -> dict:
        """Build the platform's release of an escrow created by ``owner``."""
        return {
            "TransactionType": "EscrowFinish",
            "Account": platform_address,
            "Owner": owner,
            "OfferSequence": int(offer_sequence),
            "Memos": [leg_memo(batch_id, "escrow_release")],
        }

    def build_payment(self, source: str, destination: str, drops: int, batch_id: str, leg_kind: str) -> dict:
        """Build a native-currency payment."""
        _require_address(destination, "destination")
        if drops <= 0:
            raise ValidationError("Payment amount must be positive")
        return {
            "TransactionType": "Payment",
            "Account": source,
            "Destination": destination,
            "Amount": str(drops),
            "Memos": [leg_memo(batch_id, leg_kind)],
        }

    def build_credential_create(
        self,
        issuer: str,
        subject: str,
        asset_id: str,
        batch_id: str,
        expiration: Optional[datetime] = None,
    ) -> dict:
        """Build the on-ledger credential granting ``subject`` use of an asset."""
        _require_address(subject, "subject")
        tx = {
            "TransactionType": "CredentialCreate",
            "Account": issuer,
            "Subject": subject,
            "CredentialType": credential_type_for(asset_id),
            "Memos": [leg_memo(batch_id, "credential_issuance")],
        }
        if expiration is not None:
            tx["Expiration"] = to_ledger_time(expiration)
        return tx

    def build_credential_delete(self, issuer: str, subject: str, asset_id: str, batch_id: str) -> dict:
        """Build the issuer-side deletion of an asset credential."""
        _require_address(subject, "subject")
        return {
            "TransactionType": "CredentialDelete",
            "Account": issuer,
            "Subject": subject,
            "Issuer": issuer,
            "CredentialType": credential_type_for(asset_id),
            "Memos": [leg_memo(batch_id, "credential_revocation")],
        }

    def build_reward_payment(
        self,
        issuer: str,
        destination: str,
        value: Decimal,
        currency: str,
        batch_id: str,
    ) -> dict:
        """Build an issued-currency reward payment."""
        _require_address(destination, "destination")
        return {
            "TransactionType": "Payment",
            "Account": issuer,
            "Destination": destination,
            "Amount": {"currency": currency, "issuer": issuer, "value": format(value, "f")},
            "Memos": [leg_memo(batch_id, "reward_issuance")],
        }
