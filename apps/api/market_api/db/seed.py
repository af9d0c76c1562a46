"""Seed data for development and testing."""

from decimal import Decimal

from sqlalchemy.orm import Session

from market_api.catalog.service import CatalogService
from market_api.models import Account, Asset

DEMO_ACCOUNTS = [
    {"wallet_address": "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh", "display_name": "Demo Seller"},
    {"wallet_address": "rf1BiGeXwwQoi8Z2ueFYTEXSwuJYfV2Jpn", "display_name": "Demo Buyer 1"},
    {"wallet_address": "rLHzPsX6oXkzU2qL12kHCH8G8cnZv1rBJh", "display_name": "Demo Buyer 2"},
]

DEMO_ASSETS = [
    {
        "asset_id": "asset_demo_dataset",
        "owner_address": "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh",
        "title": "Demo Dataset",
        "description": "Labelled sample dataset",
        "price": Decimal("100"),
        "content_ref": "bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi",
    },
    {
        "asset_id": "asset_demo_model",
        "owner_address": "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh",
        "title": "Demo Model Weights",
        "description": "Small classifier checkpoint",
        "price": Decimal("12.5"),
        "content_ref": "bafkreihdwdcefgh4dqkjv67uzcmw7ojee6xedzdetojuzjevtenxquvyku",
    },
]


def seed_accounts(db: Session):
    """Seed demo accounts."""
    for acc_data in DEMO_ACCOUNTS:
        account = db.query(Account).filter(Account.wallet_address == acc_data["wallet_address"]).first()
        if not account:
            db.add(Account(**acc_data))
            print(f"✓ Created account: {acc_data['display_name']}")
        else:
            print(f"✓ Account already exists: {acc_data['display_name']}")
    db.commit()


def seed_assets(db: Session):
    """Seed demo assets."""
    catalog = CatalogService(db)
    for asset_data in DEMO_ASSETS:
        if db.query(Asset).filter(Asset.asset_id == asset_data["asset_id"]).first():
            print(f"✓ Asset already exists: {asset_data['asset_id']}")
            continue
        catalog.create_asset(**asset_data)
        print(f"✓ Created asset: {asset_data['asset_id']}")
    db.commit()


def seed_all(db: Session):
    """Seed all data."""
    print("Seeding database...")
    seed_accounts(db)
    seed_assets(db)
    print("✓ Seeding complete!")
