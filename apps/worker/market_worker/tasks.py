"""Celery tasks for settlement recovery and download housekeeping."""

import logging
from typing import Dict, Optional

from celery import Task
from sqlalchemy.orm import Session

from market_worker.celery_app import celery_app
from market_worker.db import get_db

logger = logging.getLogger(__name__)


class DatabaseTask(Task):
    """Task with database session."""

    _db: Optional[Session] = None

    @property
    def db(self) -> Session:
        """Get database session."""
        if self._db is None:
            self._db = next(get_db())
        return self._db

    def after_return(self, *args, **kwargs):
        """Close database session after task."""
        if self._db:
            self._db.close()
            self._db = None


def _orchestrator(db: Session, ledger=None):
    from market_api.ledger.client import build_ledger_client
    from market_api.ledger.signer import get_signer
    from market_api.settings import get_settings
    from market_api.settlement.orchestrator import SettlementOrchestrator

    settings = get_settings()
    ledger = ledger or build_ledger_client(settings)
    return SettlementOrchestrator(db, ledger, get_signer(settings), settings=settings)


def run_reconcile(db: Session, limit: int = 100, ledger=None) -> Dict[str, int]:
    """One reconciliation sweep over open batches."""
    orchestrator = _orchestrator(db, ledger)
    try:
        return orchestrator.reconcile(limit)
    finally:
        if ledger is None:
            orchestrator.ledger.close()


def run_token_cleanup(db: Session) -> int:
    """Deactivate expired download tokens."""
    from market_api.downloads.tokens import DownloadTokenService
    from market_api.settings import get_settings

    return DownloadTokenService(db, get_settings()).cleanup_expired()


@celery_app.task(base=DatabaseTask, bind=True)
def reconcile_open_batches(self, limit: int = 100):
    """Periodic sweep resuming every open settlement batch."""
    summary = run_reconcile(self.db, limit)
    logger.info("Reconciliation task finished", extra={"task": "reconcile_open_batches", **summary})
    return summary


@celery_app.task(base=DatabaseTask, bind=True)
def cleanup_expired_download_tokens(self):
    """Periodic sweep deactivating expired download tokens."""
    count = run_token_cleanup(self.db)
    return {"deactivated": count}


@celery_app.task(base=DatabaseTask, bind=True, max_retries=5, default_retry_delay=30)
def settle_batch(self, batch_id: str, correlation_id: Optional[str] = None):
    """Resume one batch from its recorded state."""
    from market_api.errors import LedgerTransient, NotFoundError

    log_extra = {"task": "settle_batch", "batch_id": batch_id, "correlation_id": correlation_id}
    try:
        batch = _orchestrator(self.db).settle(batch_id)
    except NotFoundError:
        logger.error(f"Batch {batch_id} not found", extra=log_extra)
        return None
    except LedgerTransient as e:
        self.db.rollback()
        logger.warning(f"Ledger unavailable while settling {batch_id}: {e}", extra=log_extra)
        raise self.retry(exc=e)

    logger.info(f"Batch {batch_id} is {batch.settlement_state}", extra=log_extra)
    return {"batch_id": batch_id, "settlement_state": batch.settlement_state}
