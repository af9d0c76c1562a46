"""Usage credential model."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, text

from market_api.db.base import Base
from market_api.utils.clock import utcnow


class Credential(Base):
    """Buyer's right to use an asset. Immutable once issued, except for revocation."""

    __tablename__ = "credentials"
    __table_args__ = (
        # At most one active credential per (buyer, asset)
        Index(
            "uq_credentials_active_buyer_asset",
            "buyer_address",
            "asset_id",
            unique=True,
            sqlite_where=text("is_active"),
            postgresql_where=text("is_active"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    credential_id = Column(String(64), nullable=False, unique=True, index=True)
    batch_id = Column(String(64), ForeignKey("purchase_batches.batch_id"), nullable=False, unique=True)
    buyer_address = Column(String(64), nullable=False, index=True)
    asset_id = Column(String(64), nullable=False, index=True)
    credential_type = Column(String(128), nullable=False)  # Hex-encoded ledger credential type
    ledger_ref = Column(String(128), nullable=True)
    issued_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    revocation_reason = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
