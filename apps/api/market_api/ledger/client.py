"""Ledger RPC collaborator.

The settlement core depends only on signing, submit, transaction lookup,
account object lookup and address validation. ``JsonRpcLedgerClient`` implements
them over the ledger's JSON-RPC interface with httpx.
"""

import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from market_api.errors import LedgerError, LedgerFatal, LedgerOutcomeUnknown, LedgerTimeout, LedgerTransient
from market_api.settings import Settings, get_settings
from market_api.utils.metrics import ledger_call_duration

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = re.compile(r"^r[1-9A-HJ-NP-Za-km-z]{24,34}$")

SUCCESS_RESULTS = ("tesSUCCESS",)
QUEUED_RESULTS = ("terQUEUED",)
TRANSIENT_PREFIXES = ("ter", "tel")
FATAL_PREFIXES = ("tec", "tem", "tef")
TRANSIENT_RPC_ERRORS = ("tooBusy", "noNetwork", "noCurrent", "noClosed", "slowDown", "amendmentBlocked")
NOT_FOUND_RPC_ERRORS = ("txnNotFound", "actNotFound")


class SubmitResult(BaseModel):
    """Outcome of a submission that the ledger accepted for processing."""

    hash: Optional[str] = None
    result: str
    message: Optional[str] = None
    sequence: Optional[int] = None


class SignedTransaction(BaseModel):
    """A signed blob and the hash it will have on the ledger."""

    tx_blob: str
    hash: str
    sequence: Optional[int] = None


class TransactionStatus(BaseModel):
    """Transaction as seen by the ledger."""

    hash: str
    found: bool = True
    confirmed: bool = False
    result: Optional[str] = None
    transaction: Dict[str, Any] = Field(default_factory=dict)


def is_valid_address(address: Optional[str]) -> bool:
    """Check that an address has the classic base58 account address shape."""
    return bool(address) and bool(ADDRESS_PATTERN.match(address))


def classify_engine_result(result: Optional[str]) -> str:
    """Classify an engine result as success, queued, transient, fatal or unknown."""
    if not result:
        return "unknown"
    if result in SUCCESS_RESULTS:
        return "success"
    if result in QUEUED_RESULTS:
        return "queued"
    if result.startswith(TRANSIENT_PREFIXES):
        return "transient"
    if result.startswith(FATAL_PREFIXES):
        return "fatal"
    return "unknown"


def raise_for_engine_result(result: Optional[str], message: Optional[str] = None):
    """Raise the matching ledger error for a non-accepted engine result."""
    kind = classify_engine_result(result)
    text = f"Ledger returned {result}" + (f": {message}" if message else "")
    if kind == "transient":
        raise LedgerTransient(text, result=result)
    if kind == "fatal":
        raise LedgerFatal(text, result=result)
    if kind == "unknown":
        raise LedgerError(text, result=result)


class LedgerClient(ABC):
    """Abstract ledger collaborator."""

    @abstractmethod
    def sign(self, request: dict) -> SignedTransaction:
        """Sign a transaction without submitting it.

        Fills in Sequence and Fee. The returned hash identifies the
        transaction on the ledger however many times the blob is submitted.
        """
        pass

    @abstractmethod
    def submit(self, payload: dict) -> SubmitResult:
        """Submit a signed (or sign-and-submit) payload.

        Returns only for accepted or queued submissions; raises
        LedgerTransient, LedgerFatal or LedgerError otherwise.
        """
        pass

    @abstractmethod
    def query_transaction(self, tx_hash: str) -> TransactionStatus:
        """Look up a transaction by hash."""
        pass

    @abstractmethod
    def query_account_objects(self, address: str, object_type: Optional[str] = None) -> List[dict]:
        """List ledger objects owned by an account, optionally filtered by type."""
        pass

    def is_valid_address(self, address: Optional[str]) -> bool:
        """Check address validity."""
        return is_valid_address(address)


class JsonRpcLedgerClient(LedgerClient):
    """Ledger client speaking JSON-RPC over HTTP."""

    def __init__(self, url: str, timeout: float = 10.0, http_client: Optional[httpx.Client] = None):
        """Initialize JSON-RPC ledger client."""
        self.url = url
        self.timeout = timeout
        self._client = http_client or httpx.Client(timeout=timeout)

    def close(self):
        """Close the underlying HTTP client."""
        self._client.close()

    def _call(self, method: str, params: dict, idempotent: bool = True) -> dict:
        """Perform one JSON-RPC call and return its result object.

        Failures before the request left (refused connection, no free pool
        slot) are plain transient errors. Once the request may have been
        delivered, a lost answer to a non-idempotent call is an unknown
        outcome: the caller has to look before repeating it.
        """
        start = time.monotonic()
        try:
            response = self._client.post(self.url, json={"method": method, "params": [params]})
            response.raise_for_status()
            body = response.json()
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            raise LedgerTransient(f"Ledger unreachable during {method}: {e}") from e
        except httpx.TimeoutException as e:
            logger.warning(f"Ledger call {method} timed out", extra={"method": method})
            raise LedgerTimeout(f"Ledger call {method} timed out") from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            message = f"Ledger call {method} failed with HTTP {status_code}"
            if status_code == 429:
                raise LedgerTransient(message) from e
            if status_code >= 500:
                if idempotent:
                    raise LedgerTransient(message) from e
                raise LedgerOutcomeUnknown(message) from e
            raise LedgerError(message) from e
        except httpx.TransportError as e:
            if idempotent:
                raise LedgerTransient(f"Ledger connection lost during {method}: {e}") from e
            raise LedgerOutcomeUnknown(f"Ledger connection lost during {method}: {e}") from e
        except ValueError as e:
            logger.error(f"Ledger returned a non-JSON body for {method}", exc_info=True)
            raise LedgerError(f"Ledger returned an unreadable response for {method}") from e
        finally:
            ledger_call_duration.labels(method=method).observe(time.monotonic() - start)

        result = body.get("result")
        if not isinstance(result, dict):
            raise LedgerError(f"Ledger response for {method} has no result object")
        return result

    @staticmethod
    def _rpc_error(method: str, result: dict):
        error = result.get("error")
        message = result.get("error_message") or error
        if error in TRANSIENT_RPC_ERRORS:
            raise LedgerTransient(f"Ledger {method} error: {message}", result=error)
        raise LedgerFatal(f"Ledger {method} error: {message}", result=error)

    def sign(self, request: dict) -> SignedTransaction:
        """Sign through the node's sign method."""
        result = self._call("sign", request)
        if result.get("status") == "error":
            self._rpc_error("sign", result)

        tx_json = result.get("tx_json") or {}
        if not result.get("tx_blob") or not tx_json.get("hash"):
            raise LedgerError("Ledger sign response carries no blob or hash")
        return SignedTransaction(tx_blob=result["tx_blob"], hash=tx_json["hash"], sequence=tx_json.get("Sequence"))

    def submit(self, payload: dict) -> SubmitResult:
        """Submit a transaction."""
        result = self._call("submit", payload, idempotent=False)
        if result.get("status") == "error":
            self._rpc_error("submit", result)

        engine_result = result.get("engine_result")
        message = result.get("engine_result_message")
        tx_json = result.get("tx_json") or {}
        kind = classify_engine_result(engine_result)
        if kind not in ("success", "queued"):
            raise_for_engine_result(engine_result, message)

        return SubmitResult(
            hash=tx_json.get("hash"),
            result=engine_result,
            message=message,
            sequence=tx_json.get("Sequence"),
        )

    def query_transaction(self, tx_hash: str) -> TransactionStatus:
        """Look up a transaction by hash."""
        result = self._call("tx", {"transaction": tx_hash, "binary": False})
        if result.get("status") == "error":
            if result.get("error") in NOT_FOUND_RPC_ERRORS:
                return TransactionStatus(hash=tx_hash, found=False)
            self._rpc_error("tx", result)

        meta = result.get("meta") or {}
        return TransactionStatus(
            hash=result.get("hash", tx_hash),
            confirmed=bool(result.get("validated")),
            result=meta.get("TransactionResult"),
            transaction=result,
        )

    def query_account_objects(self, address: str, object_type: Optional[str] = None) -> List[dict]:
        """List ledger objects owned by an account."""
        params = {"account": address, "ledger_index": "validated"}
        if object_type:
            params["type"] = object_type
        result = self._call("account_objects", params)
        if result.get("status") == "error":
            if result.get("error") in NOT_FOUND_RPC_ERRORS:
                return []
            self._rpc_error("account_objects", result)
        return list(result.get("account_objects") or [])


def build_ledger_client(settings: Optional[Settings] = None) -> LedgerClient:
    """Construct the process-wide ledger client from settings."""
    settings = settings or get_settings()
    return JsonRpcLedgerClient(settings.ledger_rpc_url, timeout=settings.ledger_timeout_seconds)
