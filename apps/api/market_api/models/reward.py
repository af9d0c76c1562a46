"""Reputation reward records."""

from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    UniqueConstraint,
)

from market_api.db.base import Base
from market_api.utils.clock import utcnow

REWARD_UNIT_SCALE = Decimal("1000000")


class RewardRecord(Base):
    """One reputation distribution event. Immutable once written."""

    __tablename__ = "reward_records"
    __table_args__ = (
        UniqueConstraint("evaluator_address", "purchase_batch_id", name="uq_reward_records_evaluator_purchase"),
    )

    id = Column(Integer, primary_key=True, index=True)
    record_id = Column(String(64), nullable=False, unique=True, index=True)
    evaluator_address = Column(String(64), nullable=False, index=True)
    target_address = Column(String(64), nullable=False, index=True)
    purchase_batch_id = Column(String(64), ForeignKey("purchase_batches.batch_id"), nullable=False)
    credential_id = Column(String(64), nullable=True)
    rating = Column(Integer, nullable=False)
    amount_units = Column(BigInteger, default=0, nullable=False)  # Reward amount * 10^6
    reason = Column(String(255), nullable=False)
    balance_before_units = Column(BigInteger, nullable=False)
    balance_after_units = Column(BigInteger, nullable=False)
    reward_batch_id = Column(String(64), nullable=True)
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    @property
    def amount(self) -> Decimal:
        return Decimal(self.amount_units) / REWARD_UNIT_SCALE

    @property
    def balance_before(self) -> Decimal:
        return Decimal(self.balance_before_units) / REWARD_UNIT_SCALE

    @property
    def balance_after(self) -> Decimal:
        return Decimal(self.balance_after_units) / REWARD_UNIT_SCALE
