"""Pytest configuration and fixtures."""

import hashlib
import json
import os
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional
from unittest.mock import MagicMock, patch

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("PLATFORM_SECRET", "sEdTestPlatformSecret")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from market_api.catalog.service import CatalogService
from market_api.credentials.service import CredentialService
from market_api.db.base import Base
from market_api.fees.calculator import FeeCalculator
from market_api.errors import LedgerFatal
from market_api.ledger.client import LedgerClient, SignedTransaction, SubmitResult, TransactionStatus
from market_api.ledger.signer import ServerSideSigner
from market_api.models import Asset, Credential, PurchaseBatch, SettlementState
from market_api.settings import Settings
from market_api.settlement.orchestrator import SettlementOrchestrator
from market_api.settlement.retry import RetryPolicy
from market_api.settlement.tracker import BatchTracker

# Use test database URL from environment or default to SQLite in-memory
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")

PLATFORM = "rPT1Sjq2YGrBMTttX4GZHjKu9dyfzbpAYe"
SELLER = "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh"
BUYER = "rf1BiGeXwwQoi8Z2ueFYTEXSwuJYfV2Jpn"
OTHER_BUYER = "rLHzPsX6oXkzU2qL12kHCH8G8cnZv1rBJh"
STRANGER = "rU6K7V3Po4snVhBBaU29sesqs2qTQJWDw1"


class FakeClock:
    """Controllable clock returning naive UTC datetimes."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 2, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeLedger(LedgerClient):
    """In-memory ledger.

    Submissions validate immediately with tesSUCCESS unless scripted
    otherwise through ``fail_types``, ``submit_errors``, ``lost_responses``
    or ``final_results``. A blob is identified by its hash, so submitting
    one that already applied is refused with tefPAST_SEQ, as a real ledger
    would.
    """

    def __init__(self):
        self.transactions: Dict[str, dict] = {}
        self.objects: Dict[str, List[dict]] = {}
        self.submitted: List[dict] = []
        self.submit_errors: List[Exception] = []  # Raised once each, in order, before applying
        self.lost_responses: Dict[str, Exception] = {}  # TransactionType -> raised once, after applying
        self.fail_types: Dict[str, Exception] = {}  # Raised on every submit of a type
        self.final_results: Dict[str, str] = {}  # TransactionType -> validated result
        self.query_errors: List[Exception] = []
        self.validate_submissions = True
        self.signed_blobs: Dict[str, dict] = {}  # Blob -> transaction it encodes
        self.sequences: Dict[str, int] = {}  # Account -> next Sequence handed out by sign()
        self.query_count = 0
        self._counter = 0

    def _hash(self, tx: dict) -> str:
        self._counter += 1
        body = json.dumps(tx, sort_keys=True, default=str)
        return hashlib.sha256(f"{self._counter}:{body}".encode()).hexdigest().upper()

    @staticmethod
    def blob_hash(tx_blob: str) -> str:
        return hashlib.sha256(tx_blob.encode()).hexdigest().upper()

    def _blob(self, tx: dict) -> str:
        blob = json.dumps(tx, sort_keys=True, default=str).encode().hex().upper()
        self.signed_blobs[blob] = tx
        return blob

    def sign(self, request: dict) -> SignedTransaction:
        tx = dict(request["tx_json"])
        account = tx["Account"]
        sequence = self.sequences.get(account, 1)
        self.sequences[account] = sequence + 1
        tx.setdefault("Sequence", sequence)
        tx.setdefault("Fee", "12")
        blob = self._blob(tx)
        return SignedTransaction(tx_blob=blob, hash=self.blob_hash(blob), sequence=tx["Sequence"])

    def submit(self, payload: dict) -> SubmitResult:
        self.submitted.append(payload)
        tx = dict(self._decode(payload))
        tx_type = tx.get("TransactionType")
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        if tx_type in self.fail_types:
            raise self.fail_types[tx_type]

        tx_hash = self.blob_hash(payload["tx_blob"]) if "tx_blob" in payload else self._hash(tx)
        if tx_hash in self.transactions:
            raise LedgerFatal("Ledger returned tefPAST_SEQ", result="tefPAST_SEQ")
        self.transactions[tx_hash] = {
            **tx,
            "hash": tx_hash,
            "validated": self.validate_submissions,
            "meta": {"TransactionResult": self.final_results.get(tx_type, "tesSUCCESS")},
        }
        if tx_type == "EscrowCreate":
            self._add_escrow(tx, tx_hash)
        if tx_type in self.lost_responses:
            raise self.lost_responses.pop(tx_type)
        return SubmitResult(hash=tx_hash, result="tesSUCCESS")

    def record_deposit(
        self,
        unsigned_tx: dict,
        sequence: int = 7,
        validated: bool = True,
        result: str = "tesSUCCESS",
        **overrides,
    ) -> str:
        """Put a buyer-signed deposit on the ledger and return its hash."""
        tx = {**unsigned_tx, "Sequence": sequence, **overrides}
        tx_hash = self._hash(tx)
        self.transactions[tx_hash] = {
            **tx,
            "hash": tx_hash,
            "validated": validated,
            "meta": {"TransactionResult": result},
        }
        self._add_escrow(tx, tx_hash)
        return tx_hash

    def _add_escrow(self, tx: dict, tx_hash: str):
        self.objects.setdefault(tx["Account"], []).append(
            {
                "LedgerEntryType": "Escrow",
                "Account": tx["Account"],
                "Destination": tx["Destination"],
                "Amount": tx["Amount"],
                "FinishAfter": tx.get("FinishAfter"),
                "CancelAfter": tx.get("CancelAfter"),
                "PreviousTxnID": tx_hash,
            }
        )

    def _decode(self, payload: dict) -> dict:
        if "tx_blob" in payload:
            return self.signed_blobs[payload["tx_blob"]]
        return payload.get("tx_json") or {}

    def sign_deposit(self, unsigned_tx: dict, sequence: int = 7, **overrides) -> str:
        """Stand in for the buyer signing a deposit offline; returns the blob."""
        return self._blob({**unsigned_tx, "Sequence": sequence, **overrides})

    def validate(self, tx_hash: str, result: str = "tesSUCCESS"):
        self.transactions[tx_hash]["validated"] = True
        self.transactions[tx_hash]["meta"] = {"TransactionResult": result}

    def query_transaction(self, tx_hash: str) -> TransactionStatus:
        self.query_count += 1
        if self.query_errors:
            raise self.query_errors.pop(0)
        tx = self.transactions.get(tx_hash.upper())
        if tx is None:
            return TransactionStatus(hash=tx_hash, found=False)
        return TransactionStatus(
            hash=tx_hash,
            confirmed=tx["validated"],
            result=tx["meta"]["TransactionResult"],
            transaction=tx,
        )

    def query_account_objects(self, address: str, object_type: Optional[str] = None) -> List[dict]:
        return list(self.objects.get(address, []))

    def submitted_types(self) -> List[str]:
        return [self._decode(payload).get("TransactionType") for payload in self.submitted]

    def submitted_tx(self, index: int) -> dict:
        """Decoded transaction of the index-th submission."""
        return self._decode(self.submitted[index])

    def applied(self, tx_type: str, destination: Optional[str] = None) -> List[dict]:
        """Transactions of a type that made it onto the ledger."""
        return [
            tx
            for tx in self.transactions.values()
            if tx.get("TransactionType") == tx_type and (destination is None or tx.get("Destination") == destination)
        ]


@pytest.fixture(scope="function")
def db():
    """
    Create a test database session.

    Set TEST_DATABASE_URL to run against PostgreSQL instead of SQLite.
    """
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(TEST_DATABASE_URL)

    Base.metadata.create_all(engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def file_engine(tmp_path):
    """File-backed SQLite engine whose transactions take the write lock up front.

    Used by concurrency tests: every thread gets its own connection and
    SQLite serializes writers, as a server database would.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    """Settings with a fast, deterministic ledger policy."""
    return Settings(
        database_url="sqlite://",
        environment="test",
        platform_address=PLATFORM,
        platform_secret="sEdTestPlatformSecret",
        admin_api_token="test-admin-token",
        escrow_finish_after_seconds=60,
        escrow_cancel_after_seconds=3600,
        ledger_retry_attempts=3,
        ledger_retry_base_delay_seconds=0,
        confirmation_poll_attempts=2,
        confirmation_poll_interval_seconds=0,
        download_token_ttl_hours=24,
        download_max_attempts=3,
    )


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def signer(settings) -> ServerSideSigner:
    return ServerSideSigner(settings.platform_address, settings.platform_secret)


@pytest.fixture
def retry_sleeps() -> List[float]:
    return []


@pytest.fixture
def fast_retry(retry_sleeps) -> RetryPolicy:
    """Retry policy that records its delays instead of sleeping."""
    return RetryPolicy(attempts=3, base_delay=1.0, multiplier=2.0, max_delay=30.0, sleep=retry_sleeps.append)


@pytest.fixture
def orchestrator(db, ledger, signer, settings, fast_retry, clock) -> SettlementOrchestrator:
    return SettlementOrchestrator(
        db,
        ledger,
        signer,
        settings=settings,
        retry_policy=fast_retry,
        clock=clock,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def asset(db: Session) -> Asset:
    """A 100 XRP asset listed by SELLER."""
    asset = CatalogService(db).create_asset(
        owner_address=SELLER,
        title="Street photography set",
        price=Decimal("100"),
        content_ref="bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi",
        asset_id="asset_photos",
    )
    db.commit()
    return asset


def make_credential(db: Session, settings: Settings, clock, buyer: str = BUYER, asset_id: str = "asset_photos") -> Credential:
    """Insert a completed purchase of ``asset_id`` and its credential directly."""
    tracker = BatchTracker(db, clock)
    fees = FeeCalculator(settings).compute_fees(Decimal("100"))
    batch = tracker.create_batch(
        buyer_address=buyer,
        seller_address=SELLER,
        asset_id=asset_id,
        fees=fees,
        settlement_state=SettlementState.COMPLETED.value,
    )
    credential = CredentialService(db, clock).issue_for_batch(batch, ledger_ref="AB" * 32)
    batch.credential_id = credential.credential_id
    db.commit()
    return credential


@pytest.fixture
def credential(db, settings, clock, asset) -> Credential:
    return make_credential(db, settings, clock)


def settle_purchase(orchestrator: SettlementOrchestrator, ledger: FakeLedger, clock: FakeClock, asset_id: str, buyer: str = BUYER) -> PurchaseBatch:
    """Drive a purchase from initiation to completion."""
    initiation = orchestrator.initiate_purchase(asset_id, buyer)
    tx_hash = ledger.record_deposit(initiation.unsigned_transaction)
    clock.advance(seconds=orchestrator.settings.escrow_finish_after_seconds + 1)
    return orchestrator.on_deposit_confirmed(initiation.batch_id, tx_hash)


@pytest.fixture
def celery_app():
    """Stand-in Celery client recording enqueued settlement tasks."""
    with patch("market_api.routes.purchases.get_celery_app") as get_celery_app:
        app = MagicMock()
        app.signature.return_value.apply_async.return_value.id = "task-123"
        get_celery_app.return_value = app
        yield app


@pytest.fixture
def client(db, ledger, signer, settings, fast_retry, clock, celery_app):
    """TestClient wired to the test session, fake ledger, fake clock and a stand-in Celery client."""
    from fastapi.testclient import TestClient

    from market_api.db.session import get_db
    from market_api.deps import (
        get_download_service,
        get_ledger_client,
        get_orchestrator,
        get_reputation_service,
        get_retry_policy,
        get_transaction_signer,
    )
    from market_api.downloads.tokens import DownloadTokenService
    from market_api.main import app
    from market_api.reputation.service import ReputationService
    from market_api.settings import get_settings

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_ledger_client] = lambda: ledger
    app.dependency_overrides[get_transaction_signer] = lambda: signer
    app.dependency_overrides[get_retry_policy] = lambda: fast_retry
    app.dependency_overrides[get_orchestrator] = lambda: SettlementOrchestrator(
        db, ledger, signer, settings=settings, retry_policy=fast_retry, clock=clock, sleep=lambda seconds: None
    )
    app.dependency_overrides[get_download_service] = lambda: DownloadTokenService(db, settings, clock)
    app.dependency_overrides[get_reputation_service] = lambda: ReputationService(db, settings, clock)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth_headers(wallet_address: str) -> dict:
    """Bearer header for a wallet."""
    from market_api.auth.tokens import create_access_token

    return {"Authorization": f"Bearer {create_access_token(wallet_address)}"}
