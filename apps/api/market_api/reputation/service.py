"""Reputation distribution: reward calculation and one-time evaluation records."""

import logging
import secrets
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, List, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from market_api.errors import (
    AlreadyEvaluated,
    AuthorizationError,
    LedgerError,
    OutOfRange,
    ValidationError,
)
from market_api.models import BatchKind, PurchaseBatch, RewardRecord, SettlementState
from market_api.models.reward import REWARD_UNIT_SCALE
from market_api.settings import Settings, get_settings
from market_api.settlement.tracker import BatchTracker
from market_api.utils.clock import utcnow
from market_api.utils.metrics import rewards_distributed

if TYPE_CHECKING:
    from market_api.settlement.orchestrator import SettlementOrchestrator

logger = logging.getLogger(__name__)

MIN_RATING = 0
MAX_RATING = 5


def compute_reward(rating: int, is_first_submission: bool, settings: Optional[Settings] = None) -> Decimal:
    """Reward for an evaluation.

    ``reward_base_amount * rating``, plus the first-submission bonus when
    the evaluated party has never been rated before. A zero rating is a
    null evaluation and earns nothing, bonus included.
    """
    settings = settings or get_settings()
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise ValidationError("Rating must be an integer")
    if rating < MIN_RATING or rating > MAX_RATING:
        raise OutOfRange(f"Rating must be between {MIN_RATING} and {MAX_RATING}")
    if rating == 0:
        return Decimal("0")

    amount = Decimal(settings.reward_base_amount) * rating
    if is_first_submission:
        amount += Decimal(settings.reward_first_submission_bonus)
    return amount


def to_units(amount: Decimal) -> int:
    """Convert a reward amount to stored integer units."""
    units = Decimal(amount) * REWARD_UNIT_SCALE
    if units < 0:
        raise ValidationError("Reward amount cannot be negative")
    if units != units.to_integral_value():
        raise ValidationError(f"Reward amount {amount} has more precision than supported")
    return int(units)


class RewardRecordView(BaseModel):
    """Reward record as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    record_id: str
    evaluator_address: str
    target_address: str
    purchase_batch_id: str
    rating: int
    amount: Decimal
    reason: str
    balance_before: Decimal
    balance_after: Decimal
    reward_batch_id: Optional[str] = None
    created_at: datetime


class EvaluationResult(BaseModel):
    """Outcome of submitEvaluation."""

    record: RewardRecordView
    first_submission: bool
    reward_batch_id: Optional[str] = None
    reward_settlement_state: Optional[str] = None


class ReputationService:
    """Compute, record and settle evaluation rewards."""

    def __init__(self, db: Session, settings: Optional[Settings] = None, clock: Callable[[], datetime] = utcnow):
        """Initialize reputation service."""
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.tracker = BatchTracker(db, clock)

    def compute_reward(self, rating: int, is_first_submission: bool) -> Decimal:
        return compute_reward(rating, is_first_submission, self.settings)

    def is_first_submission(self, target_address: str) -> bool:
        """True if nobody has evaluated the target yet."""
        return (
            self.db.query(RewardRecord.id).filter(RewardRecord.target_address == target_address).first() is None
        )

    def _balance_units(self, address: str) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(RewardRecord.amount_units), 0))
            .filter(RewardRecord.target_address == address)
            .scalar()
        )
        return int(total or 0)

    def get_balance(self, address: str) -> Decimal:
        """Running reward balance of an address."""
        return Decimal(self._balance_units(address)) / REWARD_UNIT_SCALE

    def history(self, address: str, limit: int = 50) -> List[RewardRecord]:
        """Rewards received by an address, newest first."""
        return (
            self.db.query(RewardRecord)
            .filter(RewardRecord.target_address == address)
            .order_by(RewardRecord.created_at.desc(), RewardRecord.id.desc())
            .limit(limit)
            .all()
        )

    def find_record(self, evaluator_address: str, purchase_batch_id: str) -> Optional[RewardRecord]:
        return (
            self.db.query(RewardRecord)
            .filter(
                RewardRecord.evaluator_address == evaluator_address,
                RewardRecord.purchase_batch_id == purchase_batch_id,
            )
            .first()
        )

    def record_distribution(
        self,
        evaluator_address: str,
        target_address: str,
        amount: Decimal,
        reason: str,
        purchase_batch_id: str,
        rating: int = 0,
        credential_id: Optional[str] = None,
        reward_batch_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> RewardRecord:
        """Write the one reward record allowed per (evaluator, purchase).

        A second call for the same pair raises AlreadyEvaluated and leaves
        the stored record and balance untouched. Zero-amount evaluations
        count too.
        """
        if self.find_record(evaluator_address, purchase_batch_id):
            raise AlreadyEvaluated(
                f"{evaluator_address} has already evaluated purchase {purchase_batch_id}",
                details={"purchase_batch_id": purchase_batch_id},
            )

        amount_units = to_units(amount)
        balance_before = self._balance_units(target_address)
        record = RewardRecord(
            record_id=f"rwd_{secrets.token_hex(12)}",
            evaluator_address=evaluator_address,
            target_address=target_address,
            purchase_batch_id=purchase_batch_id,
            credential_id=credential_id,
            rating=rating,
            amount_units=amount_units,
            reason=reason,
            balance_before_units=balance_before,
            balance_after_units=balance_before + amount_units,
            reward_batch_id=reward_batch_id,
            metadata_json=metadata,
            created_at=self.clock(),
        )
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent evaluation of the same purchase won
            self.db.rollback()
            raise AlreadyEvaluated(
                f"{evaluator_address} has already evaluated purchase {purchase_batch_id}",
                details={"purchase_batch_id": purchase_batch_id},
            )

        logger.info(
            f"Recorded reward of {record.amount} for {target_address}",
            extra={
                "record_id": record.record_id,
                "purchase_batch_id": purchase_batch_id,
                "amount": str(record.amount),
            },
        )
        return record

    def _evaluable_purchase(self, evaluator_address: str, purchase_batch_id: str) -> PurchaseBatch:
        batch = self.tracker.get_batch(purchase_batch_id)
        if batch.kind != BatchKind.PURCHASE.value:
            raise ValidationError("Only purchases can be evaluated")
        if batch.buyer_address != evaluator_address:
            raise AuthorizationError("Only the buyer of a purchase may evaluate it")
        if batch.settlement_state != SettlementState.COMPLETED.value:
            raise ValidationError(f"Purchase {purchase_batch_id} has not completed settlement")
        return batch

    def submit_evaluation(
        self,
        evaluator_address: str,
        purchase_batch_id: str,
        rating: int,
        orchestrator: Optional["SettlementOrchestrator"] = None,
        comment: Optional[str] = None,
    ) -> EvaluationResult:
        """Evaluate the seller of a completed purchase and distribute the reward.

        A positive reward opens a reward batch that the orchestrator settles
        on the ledger; a failure there leaves the batch open for the
        reconciliation sweep and does not undo the evaluation.
        """
        batch = self._evaluable_purchase(evaluator_address, purchase_batch_id)
        if self.find_record(evaluator_address, purchase_batch_id):
            raise AlreadyEvaluated(
                f"{evaluator_address} has already evaluated purchase {purchase_batch_id}",
                details={"purchase_batch_id": purchase_batch_id},
            )

        target = batch.seller_address
        first = self.is_first_submission(target)
        amount = self.compute_reward(rating, first)

        reward_batch = None
        if amount > 0 and orchestrator is not None:
            reward_batch = orchestrator.create_reward_batch(batch, target, to_units(amount))

        record = self.record_distribution(
            evaluator_address=evaluator_address,
            target_address=target,
            amount=amount,
            reason="first_evaluation" if first and amount > 0 else "evaluation",
            purchase_batch_id=purchase_batch_id,
            rating=rating,
            credential_id=batch.credential_id,
            reward_batch_id=reward_batch.batch_id if reward_batch else None,
            metadata={"comment": comment} if comment else None,
        )
        rewards_distributed.labels(first_submission=str(first).lower()).inc()

        if reward_batch is not None:
            try:
                orchestrator.advance(reward_batch)
            except LedgerError as e:
                self.db.rollback()
                logger.warning(
                    f"Reward batch {reward_batch.batch_id} left for reconciliation: {e}",
                    extra={"batch_id": reward_batch.batch_id},
                )

        return EvaluationResult(
            record=RewardRecordView.model_validate(record),
            first_submission=first,
            reward_batch_id=reward_batch.batch_id if reward_batch else None,
            reward_settlement_state=reward_batch.settlement_state if reward_batch else None,
        )
