"""Catalog and identity lookups used by the purchase pipeline."""

import logging
import secrets
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from market_api.errors import NotFoundError, ValidationError
from market_api.fees.calculator import amount_to_drops
from market_api.ledger.client import is_valid_address
from market_api.models import Account, Asset, PurchaseBatch

logger = logging.getLogger(__name__)


class CatalogService:
    """Read access to listings and accounts, plus post-settlement counters."""

    def __init__(self, db: Session):
        """Initialize catalog service."""
        self.db = db

    def get_asset(self, asset_id: str) -> Asset:
        """Get an asset or raise NotFoundError."""
        asset = self.db.query(Asset).filter(Asset.asset_id == asset_id).first()
        if not asset:
            raise NotFoundError(f"Asset {asset_id} not found")
        return asset

    def get_account(self, wallet_address: str) -> Optional[Account]:
        """Get an account by wallet address."""
        return self.db.query(Account).filter(Account.wallet_address == wallet_address).first()

    def ensure_account(self, wallet_address: str, display_name: Optional[str] = None) -> Account:
        """Get or create the account for a wallet address."""
        account = self.get_account(wallet_address)
        if account:
            return account
        if not is_valid_address(wallet_address):
            raise ValidationError(f"Invalid wallet address: {wallet_address!r}")
        account = Account(wallet_address=wallet_address, display_name=display_name)
        self.db.add(account)
        self.db.flush()
        return account

    def create_asset(
        self,
        owner_address: str,
        title: str,
        price: Decimal,
        content_ref: str,
        description: Optional[str] = None,
        asset_id: Optional[str] = None,
    ) -> Asset:
        """List a new asset."""
        self.ensure_account(owner_address)
        asset = Asset(
            asset_id=asset_id or f"asset_{secrets.token_hex(8)}",
            owner_address=owner_address,
            title=title,
            description=description,
            price_drops=amount_to_drops(price),
            content_ref=content_ref,
            status="active",
        )
        self.db.add(asset)
        self.db.flush()
        return asset

    def record_sale(self, batch: PurchaseBatch):
        """Increment sales and purchase counters for a completed purchase."""
        self.ensure_account(batch.buyer_address)
        self.ensure_account(batch.seller_address)

        self.db.query(Account).filter(Account.wallet_address == batch.buyer_address).update(
            {Account.total_purchases: Account.total_purchases + 1},
            synchronize_session=False,
        )
        self.db.query(Account).filter(Account.wallet_address == batch.seller_address).update(
            {Account.total_sales: Account.total_sales + 1},
            synchronize_session=False,
        )
        self.db.query(Asset).filter(Asset.asset_id == batch.asset_id).update(
            {Asset.total_sales: Asset.total_sales + 1},
            synchronize_session=False,
        )
        self.db.flush()
        logger.info(
            f"Recorded sale of {batch.asset_id}",
            extra={"batch_id": batch.batch_id, "asset_id": batch.asset_id},
        )
