"""Admin routes for settlement recovery and housekeeping."""

from typing import Dict

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from market_api.deps import get_download_service, get_orchestrator, require_admin
from market_api.downloads.tokens import DownloadTokenService
from market_api.ledger.memo import SettlementMemo
from market_api.settlement.orchestrator import SettlementOrchestrator
from market_api.settlement.tracker import BatchStatusView

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class CleanupResponse(BaseModel):
    """Result of a token cleanup sweep."""

    deactivated: int


@router.post("/settlement/reconcile")
def reconcile(
    limit: int = Query(100, ge=1, le=1000),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
) -> Dict[str, int]:
    """Re-evaluate open batches against the ledger."""
    return orchestrator.reconcile(limit)


@router.post("/settlement/{batch_id}/retry", response_model=BatchStatusView)
def retry_failed_leg(
    batch_id: str,
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    """Re-open the failed payout, credential or reward leg of a batch."""
    batch = orchestrator.retry_failed_leg(batch_id)
    return orchestrator.tracker.describe(batch)


@router.get("/settlement/recover/{tx_hash}", response_model=SettlementMemo)
def recover_settlement_intent(
    tx_hash: str,
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    """Rebuild a purchase's intended split from its deposit transaction alone."""
    return orchestrator.recover_settlement_intent(tx_hash)


@router.post("/downloads/cleanup", response_model=CleanupResponse)
async def cleanup_download_tokens(
    service: DownloadTokenService = Depends(get_download_service),
):
    """Deactivate expired download tokens."""
    return CleanupResponse(deactivated=service.cleanup_expired())
