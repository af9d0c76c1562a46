"""Purchase endpoints: initiate, confirm deposit, inspect settlement."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field

from market_api.celery_client import SETTLE_BATCH_TASK, get_celery_app
from market_api.deps import get_current_wallet, get_orchestrator
from market_api.errors import AuthorizationError, ValidationError
from market_api.models import PurchaseBatch
from market_api.models.settlement import TERMINAL_STATES
from market_api.settlement.orchestrator import PurchaseInitiation, SettlementOrchestrator
from market_api.settlement.tracker import BatchStatusView
from market_api.utils.clock import to_ledger_time

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["purchases"])


class PurchaseRequest(BaseModel):
    """Purchase initiation request."""

    asset_id: str = Field(..., description="Asset to purchase")


class DepositConfirmation(BaseModel):
    """Buyer's escrow deposit: the hash of a submitted one, or a signed blob to relay."""

    tx_hash: Optional[str] = Field(None, description="Hash of the submitted EscrowCreate transaction")
    tx_blob: Optional[str] = Field(None, description="Signed EscrowCreate blob for the platform to submit")


def _enqueue_settlement(batch: PurchaseBatch, orchestrator: SettlementOrchestrator, correlation_id: Optional[str]):
    """Hand an unfinished batch to the worker, timed for its release window.

    A failed enqueue is logged and otherwise ignored: the periodic
    reconciliation sweep picks the batch up anyway.
    """
    countdown = 0
    if batch.finish_after is not None:
        countdown = max(batch.finish_after - to_ledger_time(orchestrator.clock()) + 1, 0)
    try:
        celery_app = get_celery_app()
        task = celery_app.signature(
            SETTLE_BATCH_TASK,
            args=[batch.batch_id],
            kwargs={"correlation_id": correlation_id},
        ).apply_async(countdown=countdown)
        logger.info(
            f"Enqueued settlement of batch {batch.batch_id}: {task.id}",
            extra={"correlation_id": correlation_id, "batch_id": batch.batch_id, "countdown": countdown},
        )
    except Exception as e:
        logger.error(
            f"Failed to enqueue settlement of batch {batch.batch_id}: {e}",
            exc_info=True,
            extra={"correlation_id": correlation_id, "batch_id": batch.batch_id},
        )


@router.post("/purchases", response_model=PurchaseInitiation, status_code=status.HTTP_201_CREATED)
def initiate_purchase(
    purchase: PurchaseRequest,
    wallet_address: str = Depends(get_current_wallet),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    """Open a purchase and return the unsigned escrow deposit for the buyer to sign."""
    return orchestrator.initiate_purchase(purchase.asset_id, wallet_address)


@router.get("/purchases", response_model=List[BatchStatusView])
def list_purchases(
    pending: Optional[bool] = Query(None, description="Only open (true) or only finished (false) purchases"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    wallet_address: str = Depends(get_current_wallet),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    """Purchases the caller bought or sold, newest first."""
    batches = orchestrator.tracker.list_for_wallet(wallet_address, pending=pending, limit=limit, offset=offset)
    return [orchestrator.tracker.describe(batch) for batch in batches]


@router.post("/purchases/{batch_id}/deposit", response_model=BatchStatusView)
def confirm_deposit(
    batch_id: str,
    confirmation: DepositConfirmation,
    request: Request,
    wallet_address: str = Depends(get_current_wallet),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    """Record the buyer's deposit and settle as far as the ledger allows.

    Whatever cannot be settled within the request continues in the worker.
    """
    batch = orchestrator.tracker.get_batch(batch_id)
    if batch.buyer_address != wallet_address:
        raise AuthorizationError("Only the buyer can confirm a deposit")
    if confirmation.tx_blob:
        batch = orchestrator.submit_signed_deposit(batch_id, confirmation.tx_blob)
    elif confirmation.tx_hash:
        batch = orchestrator.on_deposit_confirmed(batch_id, confirmation.tx_hash)
    else:
        raise ValidationError("Provide either tx_hash or tx_blob")

    if batch.settlement_state not in TERMINAL_STATES:
        _enqueue_settlement(batch, orchestrator, getattr(request.state, "correlation_id", None))
    return orchestrator.tracker.describe(batch)


@router.get("/purchases/{batch_id}", response_model=BatchStatusView)
def get_batch_status(
    batch_id: str,
    wallet_address: str = Depends(get_current_wallet),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    """Settlement state of a batch and every leg in it."""
    view = orchestrator.tracker.get_batch_status(batch_id)
    if wallet_address not in (view.buyer_address, view.seller_address):
        raise AuthorizationError("Only the parties to a purchase can view it")
    return view
