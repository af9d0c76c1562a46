"""Tests for demo seed data."""

from market_api.db.seed import DEMO_ACCOUNTS, DEMO_ASSETS, seed_all
from market_api.models import Account, Asset


def test_seed_is_idempotent(db):
    seed_all(db)
    seed_all(db)

    assert db.query(Account).count() == len(DEMO_ACCOUNTS)
    assert db.query(Asset).count() == len(DEMO_ASSETS)
    model = db.query(Asset).filter(Asset.asset_id == "asset_demo_model").one()
    assert model.price_drops == 12_500_000
