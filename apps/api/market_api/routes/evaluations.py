"""Evaluation and reputation endpoints."""

from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from market_api.deps import get_current_wallet, get_orchestrator, get_reputation_service
from market_api.errors import ValidationError
from market_api.ledger.client import is_valid_address
from market_api.reputation.service import (
    MAX_RATING,
    MIN_RATING,
    EvaluationResult,
    RewardRecordView,
    ReputationService,
)
from market_api.settlement.orchestrator import SettlementOrchestrator

router = APIRouter(prefix="/v1", tags=["reputation"])


class EvaluationRequest(BaseModel):
    """Evaluation of a completed purchase."""

    purchase_batch_id: str = Field(..., description="Completed purchase being evaluated")
    rating: int = Field(..., ge=MIN_RATING, le=MAX_RATING, description="0 (no opinion) to 5")
    comment: Optional[str] = Field(None, max_length=1000)


class ReputationResponse(BaseModel):
    """Reward balance and history of an address."""

    address: str
    balance: Decimal
    history: List[RewardRecordView]


@router.post("/evaluations", response_model=EvaluationResult, status_code=status.HTTP_201_CREATED)
def submit_evaluation(
    evaluation: EvaluationRequest,
    wallet_address: str = Depends(get_current_wallet),
    service: ReputationService = Depends(get_reputation_service),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    """Evaluate the seller of a completed purchase. One evaluation per purchase."""
    return service.submit_evaluation(
        wallet_address,
        evaluation.purchase_batch_id,
        evaluation.rating,
        orchestrator=orchestrator,
        comment=evaluation.comment,
    )


@router.get("/reputation/{address}", response_model=ReputationResponse)
async def get_reputation(
    address: str,
    limit: int = Query(50, ge=1, le=500),
    service: ReputationService = Depends(get_reputation_service),
):
    """Reward balance and most recent rewards of an address."""
    if not is_valid_address(address):
        raise ValidationError(f"Invalid address: {address!r}")
    return ReputationResponse(
        address=address,
        balance=service.get_balance(address),
        history=[RewardRecordView.model_validate(record) for record in service.history(address, limit)],
    )
