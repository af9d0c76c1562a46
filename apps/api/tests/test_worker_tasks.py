"""Tests for the worker's periodic sweeps."""

from datetime import datetime
from unittest.mock import MagicMock, patch

from conftest import BUYER, FakeClock
from market_api.downloads.tokens import DownloadTokenService
from market_api.errors import NotFoundError
from market_api.settlement.orchestrator import SettlementOrchestrator
from market_worker.tasks import run_reconcile, run_token_cleanup, settle_batch


def test_reconcile_fails_abandoned_purchase(db, ledger, signer, settings, asset):
    # Initiated long ago; the escrow window has closed without a deposit
    past = FakeClock(datetime(2020, 1, 1, 12, 0, 0))
    initiation = SettlementOrchestrator(db, ledger, signer, settings=settings, clock=past).initiate_purchase(
        "asset_photos", BUYER
    )

    summary = run_reconcile(db, limit=10, ledger=ledger)

    assert summary["examined"] == 1
    assert summary["failed"] == 1
    assert initiation.batch_id


def test_reconcile_with_nothing_open(db, ledger):
    summary = run_reconcile(db, ledger=ledger)
    assert summary["examined"] == 0


def test_token_cleanup(db, settings, credential):
    past = FakeClock(datetime(2020, 1, 1, 12, 0, 0))
    DownloadTokenService(db, settings, past).issue(credential.credential_id, BUYER)

    assert run_token_cleanup(db) == 1
    assert run_token_cleanup(db) == 0


def test_settle_batch_task_reports_state():
    orchestrator = MagicMock()
    orchestrator.settle.return_value = MagicMock(settlement_state="completed")
    with patch("market_worker.tasks._orchestrator", return_value=orchestrator):
        result = settle_batch.run("batch_abc")

    orchestrator.settle.assert_called_once_with("batch_abc")
    assert result == {"batch_id": "batch_abc", "settlement_state": "completed"}


def test_settle_batch_task_missing_batch():
    orchestrator = MagicMock()
    orchestrator.settle.side_effect = NotFoundError("Batch batch_missing not found")
    with patch("market_worker.tasks._orchestrator", return_value=orchestrator):
        assert settle_batch.run("batch_missing") is None


def test_settle_batch_task_name_matches_api_client():
    from market_api.celery_client import SETTLE_BATCH_TASK

    assert settle_batch.name == SETTLE_BATCH_TASK
