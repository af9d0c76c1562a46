"""Signing abstraction for platform-issued ledger transactions.

The platform never holds the buyer's keys. Its own transactions are
signed before they are submitted, so the hash is known up front and a
resubmission carries the very same blob.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from market_api.errors import SigningError
from market_api.ledger.client import LedgerClient, SignedTransaction
from market_api.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class TransactionSigner(ABC):
    """Abstract transaction signer interface."""

    @abstractmethod
    def sign(self, tx_json: dict, ledger: LedgerClient) -> SignedTransaction:
        """Sign an unsigned platform transaction.

        Raises SigningError when this signer cannot sign for the account.
        """
        pass

    @abstractmethod
    def get_address(self) -> str:
        """Get the signing account address."""
        pass


class ServerSideSigner(TransactionSigner):
    """The trusted ledger node signs with the account secret."""

    def __init__(self, address: str, secret: Optional[str]):
        """Initialize server-side signer."""
        self.address = address
        self._secret = secret

    def signing_request(self, tx_json: dict) -> dict:
        """Build the node sign request for a platform transaction."""
        if not self._secret:
            raise SigningError("Platform secret is not configured; cannot sign platform transactions")
        if tx_json.get("Account") != self.address:
            raise SigningError(
                f"Refusing to sign a transaction for {tx_json.get('Account')} with the key of {self.address}",
                details={"account": tx_json.get("Account")},
            )
        return {"tx_json": tx_json, "secret": self._secret, "fee_mult_max": 1000}

    def sign(self, tx_json: dict, ledger: LedgerClient) -> SignedTransaction:
        """Sign through the ledger node."""
        return ledger.sign(self.signing_request(tx_json))

    def get_address(self) -> str:
        """Get platform address."""
        return self.address


def presigned_payload(tx_blob: str) -> dict:
    """Submit payload for an already signed blob."""
    return {"tx_blob": tx_blob}


def get_signer(settings: Optional[Settings] = None) -> TransactionSigner:
    """Get the platform signer configured in settings."""
    settings = settings or get_settings()
    return ServerSideSigner(settings.platform_address, settings.platform_secret)
