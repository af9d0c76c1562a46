"""Database models - import all models here for Alembic discovery."""

from market_api.models.catalog import Account, Asset
from market_api.models.credential import Credential
from market_api.models.download import DownloadToken
from market_api.models.reward import RewardRecord
from market_api.models.settlement import (
    BatchKind,
    BatchStatus,
    LegKind,
    LegStatus,
    PurchaseBatch,
    SettlementState,
    TransactionLeg,
)

__all__ = [
    "Account",
    "Asset",
    "PurchaseBatch",
    "TransactionLeg",
    "BatchKind",
    "BatchStatus",
    "SettlementState",
    "LegKind",
    "LegStatus",
    "Credential",
    "DownloadToken",
    "RewardRecord",
]
