"""Catalog and identity models.

The settlement core only reads these, except for the post-settlement
counters it increments once a purchase completes.
"""

from sqlalchemy import BigInteger, Column, DateTime, Integer, String, Text

from market_api.db.base import Base
from market_api.utils.clock import utcnow


class Account(Base):
    """Marketplace participant identified by a ledger wallet address."""

    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    wallet_address = Column(String(64), nullable=False, unique=True, index=True)
    display_name = Column(String(255), nullable=True)
    total_sales = Column(Integer, default=0, nullable=False)
    total_purchases = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Asset(Base):
    """Digital asset listed for sale."""

    __tablename__ = "assets"

    id = Column(Integer, primary_key=True, index=True)
    asset_id = Column(String(64), nullable=False, unique=True, index=True)
    owner_address = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price_drops = Column(BigInteger, nullable=False)
    content_ref = Column(String(255), nullable=False)  # Content-addressed id (CID)
    status = Column(String(20), default="active", nullable=False, index=True)  # active, delisted
    total_sales = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
