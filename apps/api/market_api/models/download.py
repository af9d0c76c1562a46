"""Download token model."""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)

from market_api.db.base import Base
from market_api.utils.clock import utcnow


class DownloadToken(Base):
    """Attempt-limited capability bound to one credential."""

    __tablename__ = "download_tokens"
    __table_args__ = (
        CheckConstraint("remaining_attempts >= 0", name="ck_download_tokens_remaining"),
        # One live token per (credential, buyer); stale rows are deactivated first
        Index(
            "uq_download_tokens_active_pair",
            "credential_id",
            "buyer_address",
            unique=True,
            sqlite_where=text("is_active"),
            postgresql_where=text("is_active"),
        ),
    )

    token = Column(String(64), primary_key=True)
    credential_id = Column(String(64), ForeignKey("credentials.credential_id"), nullable=False, index=True)
    buyer_address = Column(String(64), nullable=False, index=True)
    client_address = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    max_attempts = Column(Integer, nullable=False)
    remaining_attempts = Column(Integer, nullable=False)
    used_at = Column(DateTime, nullable=True)  # First successful consumption
    last_used_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
