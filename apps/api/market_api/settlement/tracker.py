"""Batch/state tracker: the durable recovery log of every settlement leg.

The tracker validates transitions and flushes; callers decide when to
commit. The overall batch status is always derived from the legs.
"""

import logging
import secrets
from datetime import datetime
from typing import Callable, List, Optional, Union

from pydantic import BaseModel, ConfigDict
from sqlalchemy import or_
from sqlalchemy.orm import Session

from market_api.errors import InvalidTransition, NotFoundError
from market_api.fees.calculator import FeeBreakdown, drops_to_amount
from market_api.models import (
    BatchKind,
    BatchStatus,
    LegKind,
    LegStatus,
    PurchaseBatch,
    SettlementState,
    TransactionLeg,
)
from market_api.models.settlement import TERMINAL_STATES
from market_api.utils.clock import utcnow
from market_api.utils.metrics import settlement_batches, settlement_legs

logger = logging.getLogger(__name__)

LEG_TRANSITIONS = {
    LegStatus.PENDING.value: {LegStatus.SUBMITTED.value, LegStatus.CONFIRMED.value, LegStatus.FAILED.value},
    LegStatus.SUBMITTED.value: {LegStatus.CONFIRMED.value, LegStatus.FAILED.value},
    LegStatus.CONFIRMED.value: set(),
    LegStatus.FAILED.value: set(),
}

STATE_TRANSITIONS = {
    SettlementState.AWAITING_DEPOSIT.value: {SettlementState.RELEASING.value},
    SettlementState.RELEASING.value: {SettlementState.PAYING_SELLER.value},
    SettlementState.PAYING_SELLER.value: {SettlementState.ISSUING_CREDENTIAL.value},
    SettlementState.ISSUING_CREDENTIAL.value: {SettlementState.COMPLETED.value},
    SettlementState.ISSUING_REWARD.value: {SettlementState.COMPLETED.value},
    SettlementState.REVOKING_CREDENTIAL.value: {SettlementState.COMPLETED.value},
    SettlementState.COMPLETED.value: set(),
    SettlementState.FAILED.value: set(),
}

# Legs whose failure can be retried: the funds are already with the platform
# or no funds move at all.
REOPENABLE_LEGS = {
    LegKind.SELLER_PAYOUT.value: SettlementState.PAYING_SELLER.value,
    LegKind.CREDENTIAL_ISSUANCE.value: SettlementState.ISSUING_CREDENTIAL.value,
    LegKind.REWARD_ISSUANCE.value: SettlementState.ISSUING_REWARD.value,
    LegKind.CREDENTIAL_REVOCATION.value: SettlementState.REVOKING_CREDENTIAL.value,
}


class LegView(BaseModel):
    """Leg as reported by getBatchStatus."""

    model_config = ConfigDict(from_attributes=True)

    leg_id: str
    sequence: int
    kind: str
    from_address: str
    to_address: str
    amount: int
    currency: str
    status: str
    ledger_ref: Optional[str] = None
    ledger_result: Optional[str] = None
    failure_reason: Optional[str] = None
    attempts: int
    outcome_unknown: bool
    submitted_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None


class BatchStatusView(BaseModel):
    """Inspectable snapshot of a batch and its legs."""

    batch_id: str
    kind: str
    status: str
    settlement_state: str
    buyer_address: str
    seller_address: str
    asset_id: str
    total: str
    platform_fee: str
    seller_revenue: str
    credential_id: Optional[str] = None
    requires_intervention: bool
    funds_recoverable_by_buyer: bool
    failure_reason: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    legs: List[LegView]


def new_batch_id() -> str:
    """Opaque, unguessable batch id."""
    return f"batch_{secrets.token_hex(16)}"


def new_leg_id() -> str:
    """Opaque leg id."""
    return f"tx_{secrets.token_hex(12)}"


def derive_status(legs: List[TransactionLeg]) -> BatchStatus:
    """Derive the overall batch status from its legs."""
    statuses = [leg.status for leg in legs]
    if any(status == LegStatus.FAILED.value for status in statuses):
        return BatchStatus.FAILED
    if statuses and all(status == LegStatus.CONFIRMED.value for status in statuses):
        return BatchStatus.COMPLETED
    if any(status in (LegStatus.SUBMITTED.value, LegStatus.CONFIRMED.value) for status in statuses):
        return BatchStatus.SETTLING
    return BatchStatus.PENDING


class BatchTracker:
    """Durable record of batches and their legs."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        """Initialize batch tracker."""
        self.db = db
        self.clock = clock

    def create_batch(
        self,
        buyer_address: str,
        seller_address: str,
        asset_id: str,
        fees: FeeBreakdown,
        kind: str = BatchKind.PURCHASE.value,
        settlement_state: str = SettlementState.AWAITING_DEPOSIT.value,
        related_batch_id: Optional[str] = None,
    ) -> PurchaseBatch:
        """Create a batch record. Legs are recorded separately."""
        if fees.platform_fee_drops + fees.seller_revenue_drops != fees.total_drops:
            raise ValueError("Fee split does not add up to the total")

        batch = PurchaseBatch(
            batch_id=new_batch_id(),
            kind=BatchKind(kind).value,
            buyer_address=buyer_address,
            seller_address=seller_address,
            asset_id=asset_id,
            total_drops=fees.total_drops,
            platform_fee_drops=fees.platform_fee_drops,
            seller_revenue_drops=fees.seller_revenue_drops,
            settlement_state=SettlementState(settlement_state).value,
            related_batch_id=related_batch_id,
        )
        self.db.add(batch)
        self.db.flush()
        logger.info(
            f"Created {batch.kind} batch {batch.batch_id}",
            extra={"batch_id": batch.batch_id, "asset_id": asset_id},
        )
        return batch

    def record_leg(
        self,
        batch: PurchaseBatch,
        kind: str,
        from_address: str,
        to_address: str,
        amount: int = 0,
        currency: str = "XRP",
    ) -> TransactionLeg:
        """Append the next leg to a batch."""
        kind = LegKind(kind).value
        if batch.leg(kind) is not None:
            raise InvalidTransition(f"Batch {batch.batch_id} already has a {kind} leg")
        if amount < 0:
            raise ValueError("Leg amount cannot be negative")

        leg = TransactionLeg(
            leg_id=new_leg_id(),
            batch_id=batch.batch_id,
            sequence=len(batch.legs) + 1,
            kind=kind,
            from_address=from_address,
            to_address=to_address,
            amount=amount,
            currency=currency,
            status=LegStatus.PENDING.value,
        )
        batch.legs.append(leg)
        self.db.add(leg)
        self.db.flush()
        return leg

    def get_batch(self, batch_id: str) -> PurchaseBatch:
        """Get a batch or raise NotFoundError."""
        batch = self.db.query(PurchaseBatch).filter(PurchaseBatch.batch_id == batch_id).first()
        if not batch:
            raise NotFoundError(f"Batch {batch_id} not found")
        return batch

    def get_leg(self, leg_id: str) -> TransactionLeg:
        """Get a leg or raise NotFoundError."""
        leg = self.db.query(TransactionLeg).filter(TransactionLeg.leg_id == leg_id).first()
        if not leg:
            raise NotFoundError(f"Leg {leg_id} not found")
        return leg

    def predecessors_confirmed(self, leg: TransactionLeg) -> bool:
        """True when every earlier leg of the batch is confirmed."""
        return all(
            other.status == LegStatus.CONFIRMED.value
            for other in leg.batch.legs
            if other.sequence < leg.sequence
        )

    def update_leg_status(
        self,
        leg: Union[TransactionLeg, str],
        status: str,
        ledger_ref: Optional[str] = None,
        failure_reason: Optional[str] = None,
        ledger_result: Optional[str] = None,
    ) -> TransactionLeg:
        """Move a leg to a new status, enforcing transitions and leg ordering."""
        if isinstance(leg, str):
            leg = self.get_leg(leg)
        status = LegStatus(status).value
        batch = leg.batch

        if batch.settlement_state == SettlementState.COMPLETED.value:
            raise InvalidTransition(f"Batch {batch.batch_id} is completed and immutable")
        if status != leg.status and status not in LEG_TRANSITIONS[leg.status]:
            raise InvalidTransition(f"Leg {leg.leg_id} cannot move from {leg.status} to {status}")
        if status in (LegStatus.SUBMITTED.value, LegStatus.CONFIRMED.value) and not self.predecessors_confirmed(leg):
            raise InvalidTransition(
                f"Leg {leg.leg_id} ({leg.kind}) cannot be {status} before its predecessors are confirmed"
            )

        now = self.clock()
        if ledger_ref:
            if leg.ledger_ref and leg.ledger_ref != ledger_ref:
                raise InvalidTransition(f"Leg {leg.leg_id} already references {leg.ledger_ref}")
            leg.ledger_ref = ledger_ref
        if ledger_result:
            leg.ledger_result = ledger_result
        if failure_reason is not None:
            leg.failure_reason = failure_reason
        if status == LegStatus.SUBMITTED.value and leg.submitted_at is None:
            leg.submitted_at = now
        if status == LegStatus.CONFIRMED.value:
            leg.confirmed_at = now
            leg.outcome_unknown = False

        changed = leg.status != status
        leg.status = status
        self.db.flush()
        if changed:
            settlement_legs.labels(kind=leg.kind, status=status).inc()
            logger.info(
                f"Leg {leg.kind} of batch {batch.batch_id} is now {status}",
                extra={"batch_id": batch.batch_id, "leg_id": leg.leg_id, "ledger_ref": leg.ledger_ref},
            )
        return leg

    def record_signed(self, leg: TransactionLeg, tx_blob: str, tx_hash: str) -> TransactionLeg:
        """Remember the signed blob of a pending leg and the hash it will land under."""
        if leg.status != LegStatus.PENDING.value:
            raise InvalidTransition(f"Leg {leg.leg_id} is {leg.status}; only pending legs are signed")
        if leg.signed_blob:
            raise InvalidTransition(f"Leg {leg.leg_id} is already signed as {leg.ledger_ref}")
        leg.signed_blob = tx_blob
        leg.ledger_ref = tx_hash.upper()
        self.db.flush()
        return leg

    def discard_signed(self, leg: TransactionLeg) -> TransactionLeg:
        """Forget a signed blob that can never be applied, so the leg is signed afresh."""
        leg.signed_blob = None
        leg.outcome_unknown = False
        if leg.status != LegStatus.CONFIRMED.value:
            leg.ledger_ref = None
        self.db.flush()
        return leg

    def reopen_leg(self, leg: TransactionLeg) -> TransactionLeg:
        """Put a failed post-release leg back to pending for another attempt.

        A leg that still holds its signed blob keeps it, and its hash: the
        retry resubmits that same transaction, which the ledger applies at
        most once.
        """
        batch = leg.batch
        if leg.status != LegStatus.FAILED.value or leg.kind not in REOPENABLE_LEGS:
            raise InvalidTransition(f"Leg {leg.leg_id} ({leg.kind}, {leg.status}) cannot be retried")
        if leg.outcome_unknown and not leg.signed_blob:
            raise InvalidTransition(f"Leg {leg.leg_id} has an unknown ledger outcome; verify it before retrying")

        leg.status = LegStatus.PENDING.value
        if not leg.signed_blob:
            leg.ledger_ref = None
        leg.ledger_result = None
        leg.failure_reason = f"retry requested after: {leg.failure_reason}"
        batch.settlement_state = REOPENABLE_LEGS[leg.kind]
        batch.failure_reason = None
        batch.requires_intervention = False
        self.db.flush()
        logger.info(
            f"Reopened {leg.kind} leg of batch {batch.batch_id}",
            extra={"batch_id": batch.batch_id, "leg_id": leg.leg_id},
        )
        return leg

    def set_state(self, batch: PurchaseBatch, state: str) -> PurchaseBatch:
        """Advance the orchestrator state of a batch."""
        state = SettlementState(state).value
        if state == batch.settlement_state:
            return batch
        if state == SettlementState.FAILED.value:
            raise InvalidTransition("Use fail_batch to fail a batch")
        if state not in STATE_TRANSITIONS[batch.settlement_state]:
            raise InvalidTransition(
                f"Batch {batch.batch_id} cannot move from {batch.settlement_state} to {state}"
            )
        if state == SettlementState.COMPLETED.value:
            if derive_status(batch.legs) != BatchStatus.COMPLETED:
                raise InvalidTransition(f"Batch {batch.batch_id} has unconfirmed legs")
            batch.completed_at = self.clock()
            settlement_batches.labels(kind=batch.kind, outcome="completed").inc()

        batch.settlement_state = state
        self.db.flush()
        return batch

    def fail_batch(
        self,
        batch: PurchaseBatch,
        leg: TransactionLeg,
        reason: str,
        requires_intervention: bool = False,
        ledger_result: Optional[str] = None,
    ) -> PurchaseBatch:
        """Mark a leg failed and move its batch to the Failed terminal state."""
        if batch.settlement_state in TERMINAL_STATES:
            raise InvalidTransition(f"Batch {batch.batch_id} is already {batch.settlement_state}")
        if leg.status != LegStatus.FAILED.value:
            self.update_leg_status(leg, LegStatus.FAILED.value, failure_reason=reason, ledger_result=ledger_result)
        batch.settlement_state = SettlementState.FAILED.value
        batch.failure_reason = reason
        batch.requires_intervention = requires_intervention
        self.db.flush()
        settlement_batches.labels(kind=batch.kind, outcome="failed").inc()
        logger.warning(
            f"Batch {batch.batch_id} failed at {leg.kind}: {reason}",
            extra={"batch_id": batch.batch_id, "leg_id": leg.leg_id, "requires_intervention": requires_intervention},
        )
        return batch

    def flag_intervention(self, batch: PurchaseBatch, reason: str) -> PurchaseBatch:
        """Flag a batch for support without changing its state."""
        batch.requires_intervention = True
        batch.failure_reason = reason
        self.db.flush()
        return batch

    def open_batches(self, limit: int = 100, kind: Optional[str] = None) -> List[PurchaseBatch]:
        """Batches not yet completed or failed, oldest first."""
        query = self.db.query(PurchaseBatch).filter(PurchaseBatch.settlement_state.notin_(TERMINAL_STATES))
        if kind:
            query = query.filter(PurchaseBatch.kind == kind)
        return query.order_by(PurchaseBatch.created_at.asc(), PurchaseBatch.id.asc()).limit(limit).all()

    def find_open_purchase(self, buyer_address: str, asset_id: str) -> Optional[PurchaseBatch]:
        """Open purchase batch for a buyer and asset, if any."""
        return (
            self.db.query(PurchaseBatch)
            .filter(
                PurchaseBatch.kind == BatchKind.PURCHASE.value,
                PurchaseBatch.buyer_address == buyer_address,
                PurchaseBatch.asset_id == asset_id,
                PurchaseBatch.settlement_state.notin_(TERMINAL_STATES),
            )
            .order_by(PurchaseBatch.created_at.desc())
            .first()
        )

    def find_open_revocation(self, buyer_address: str, asset_id: str) -> Optional[PurchaseBatch]:
        """Revocation still deleting a buyer's ledger credential for an asset, if any."""
        return (
            self.db.query(PurchaseBatch)
            .filter(
                PurchaseBatch.kind == BatchKind.REVOCATION.value,
                PurchaseBatch.buyer_address == buyer_address,
                PurchaseBatch.asset_id == asset_id,
                PurchaseBatch.settlement_state.notin_(TERMINAL_STATES),
            )
            .first()
        )

    def list_for_wallet(
        self,
        wallet_address: str,
        pending: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[PurchaseBatch]:
        """Purchases a wallet bought or sold, newest first.

        ``pending`` narrows the list to open (True) or finished (False) batches.
        """
        query = self.db.query(PurchaseBatch).filter(
            PurchaseBatch.kind == BatchKind.PURCHASE.value,
            or_(PurchaseBatch.buyer_address == wallet_address, PurchaseBatch.seller_address == wallet_address),
        )
        if pending is True:
            query = query.filter(PurchaseBatch.settlement_state.notin_(TERMINAL_STATES))
        elif pending is False:
            query = query.filter(PurchaseBatch.settlement_state.in_(TERMINAL_STATES))
        return (
            query.order_by(PurchaseBatch.created_at.desc(), PurchaseBatch.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def get_batch_status(self, batch_id: str) -> BatchStatusView:
        """Snapshot of a batch and its legs."""
        return self.describe(self.get_batch(batch_id))

    def describe(self, batch: PurchaseBatch) -> BatchStatusView:
        """Build the status view of a loaded batch."""
        status = derive_status(batch.legs)
        deposit = batch.leg(LegKind.ESCROW_DEPOSIT.value)
        release = batch.leg(LegKind.ESCROW_RELEASE.value)
        # Deposit landed but the platform never released it: the buyer can cancel the escrow
        recoverable = bool(
            deposit is not None
            and deposit.status == LegStatus.CONFIRMED.value
            and release is not None
            and release.status != LegStatus.CONFIRMED.value
            and batch.settlement_state == SettlementState.FAILED.value
        )
        return BatchStatusView(
            batch_id=batch.batch_id,
            kind=batch.kind,
            status=status.value,
            settlement_state=batch.settlement_state,
            buyer_address=batch.buyer_address,
            seller_address=batch.seller_address,
            asset_id=batch.asset_id,
            total=str(drops_to_amount(batch.total_drops)),
            platform_fee=str(drops_to_amount(batch.platform_fee_drops)),
            seller_revenue=str(drops_to_amount(batch.seller_revenue_drops)),
            credential_id=batch.credential_id,
            requires_intervention=batch.requires_intervention,
            funds_recoverable_by_buyer=recoverable,
            failure_reason=batch.failure_reason,
            created_at=batch.created_at,
            completed_at=batch.completed_at,
            legs=[LegView.model_validate(leg) for leg in batch.legs],
        )
