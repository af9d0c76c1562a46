"""Settlement batch and transaction leg models."""

from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from market_api.db.base import Base
from market_api.utils.clock import utcnow


class BatchKind(str, Enum):
    """What a batch settles."""

    PURCHASE = "purchase"
    REWARD = "reward"
    REVOCATION = "revocation"


class BatchStatus(str, Enum):
    """Overall batch status, always derived from the legs."""

    PENDING = "pending"
    SETTLING = "settling"
    COMPLETED = "completed"
    FAILED = "failed"


class SettlementState(str, Enum):
    """Orchestrator state per batch."""

    AWAITING_DEPOSIT = "awaiting_deposit"
    RELEASING = "releasing"
    PAYING_SELLER = "paying_seller"
    ISSUING_CREDENTIAL = "issuing_credential"
    ISSUING_REWARD = "issuing_reward"
    REVOKING_CREDENTIAL = "revoking_credential"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = (SettlementState.COMPLETED.value, SettlementState.FAILED.value)

OPEN_PURCHASE_PREDICATE = "kind = 'purchase' AND settlement_state NOT IN ('completed', 'failed')"


class LegKind(str, Enum):
    """Ledger operation a leg performs."""

    ESCROW_DEPOSIT = "escrow_deposit"
    ESCROW_RELEASE = "escrow_release"
    SELLER_PAYOUT = "seller_payout"
    CREDENTIAL_ISSUANCE = "credential_issuance"
    REWARD_ISSUANCE = "reward_issuance"
    CREDENTIAL_REVOCATION = "credential_revocation"


class LegStatus(str, Enum):
    """Leg status."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class PurchaseBatch(Base):
    """One purchase (or reward) settlement attempt. Never deleted."""

    __tablename__ = "purchase_batches"
    __table_args__ = (
        CheckConstraint(
            "platform_fee_drops + seller_revenue_drops = total_drops",
            name="ck_purchase_batches_fee_split",
        ),
        # At most one open purchase per (buyer, asset)
        Index(
            "uq_purchase_batches_open_purchase",
            "buyer_address",
            "asset_id",
            unique=True,
            sqlite_where=text(OPEN_PURCHASE_PREDICATE),
            postgresql_where=text(OPEN_PURCHASE_PREDICATE),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    batch_id = Column(String(64), nullable=False, unique=True, index=True)
    kind = Column(String(20), default=BatchKind.PURCHASE.value, nullable=False, index=True)
    buyer_address = Column(String(64), nullable=False, index=True)
    seller_address = Column(String(64), nullable=False, index=True)
    asset_id = Column(String(64), nullable=False, index=True)
    total_drops = Column(BigInteger, nullable=False)
    platform_fee_drops = Column(BigInteger, nullable=False)
    seller_revenue_drops = Column(BigInteger, nullable=False)
    settlement_state = Column(
        String(32), default=SettlementState.AWAITING_DEPOSIT.value, nullable=False, index=True
    )
    requires_intervention = Column(Boolean, default=False, nullable=False)
    failure_reason = Column(Text, nullable=True)
    memo_digest = Column(String(64), nullable=True)
    finish_after = Column(BigInteger, nullable=True)  # Ledger epoch seconds
    cancel_after = Column(BigInteger, nullable=True)  # Ledger epoch seconds
    escrow_sequence = Column(BigInteger, nullable=True)  # OfferSequence of the deposit
    related_batch_id = Column(String(64), nullable=True, index=True)  # Reward or revocation batch -> purchase batch
    credential_id = Column(String(64), nullable=True)  # Issued (purchase) or revoked (revocation) credential
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    # Relationships
    legs = relationship(
        "TransactionLeg",
        back_populates="batch",
        order_by="TransactionLeg.sequence",
    )

    def leg(self, kind: str):
        """Return the leg of the given kind, if the batch has one."""
        kind = LegKind(kind).value
        for leg in self.legs:
            if leg.kind == kind:
                return leg
        return None


class TransactionLeg(Base):
    """One ledger operation belonging to a batch."""

    __tablename__ = "transaction_legs"
    __table_args__ = (
        UniqueConstraint("batch_id", "sequence", name="uq_transaction_legs_batch_sequence"),
        UniqueConstraint("batch_id", "kind", name="uq_transaction_legs_batch_kind"),
        CheckConstraint("amount >= 0", name="ck_transaction_legs_amount"),
    )

    id = Column(Integer, primary_key=True, index=True)
    leg_id = Column(String(64), nullable=False, unique=True, index=True)
    batch_id = Column(String(64), ForeignKey("purchase_batches.batch_id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    kind = Column(String(32), nullable=False)
    from_address = Column(String(64), nullable=False)
    to_address = Column(String(64), nullable=False)
    amount = Column(BigInteger, default=0, nullable=False)  # Smallest unit (drops)
    currency = Column(String(16), default="XRP", nullable=False)
    status = Column(String(16), default=LegStatus.PENDING.value, nullable=False, index=True)
    ledger_ref = Column(String(128), nullable=True, index=True)  # Transaction hash
    signed_blob = Column(Text, nullable=True)  # Platform legs: signed before the first submission
    ledger_result = Column(String(64), nullable=True)  # Engine result, e.g. tesSUCCESS
    failure_reason = Column(Text, nullable=True)
    attempts = Column(Integer, default=0, nullable=False)
    outcome_unknown = Column(Boolean, default=False, nullable=False)
    submitted_at = Column(DateTime, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    batch = relationship("PurchaseBatch", back_populates="legs")
