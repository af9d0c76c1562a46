"""Purchase-to-download scenario across every service."""

from decimal import Decimal

import pytest

from conftest import BUYER, PLATFORM, SELLER, settle_purchase
from market_api.downloads.tokens import DownloadTokenService
from market_api.errors import AttemptsExhausted, TokenExpired
from market_api.fees.calculator import FeeCalculator
from market_api.models import Credential, LegKind
from market_api.reputation.service import ReputationService


def test_purchase_download_and_evaluate(db, orchestrator, ledger, clock, settings, asset):
    fees = FeeCalculator(settings).compute_fees(Decimal("100"))
    assert (fees.platform_fee, fees.seller_revenue) == (Decimal("30.000000"), Decimal("70.000000"))

    batch = settle_purchase(orchestrator, ledger, clock, "asset_photos")

    # Settlement: deposit, release, payout and credential all confirmed in order
    assert batch.settlement_state == "completed"
    legs = {leg.kind: leg for leg in batch.legs}
    assert legs["escrow_deposit"].from_address == BUYER
    assert legs["escrow_release"].to_address == PLATFORM
    assert legs["seller_payout"].to_address == SELLER
    assert legs["seller_payout"].amount == 70_000_000
    confirmed = [leg.confirmed_at for leg in batch.legs]
    assert confirmed == sorted(confirmed)

    credential = db.query(Credential).filter(Credential.credential_id == batch.credential_id).one()
    assert credential.ledger_ref == batch.leg(LegKind.CREDENTIAL_ISSUANCE).ledger_ref

    downloads = DownloadTokenService(db, settings, clock)
    issued = downloads.issue(credential.credential_id, BUYER)
    for _ in range(3):
        downloads.validate_and_consume(issued.token)
    with pytest.raises(AttemptsExhausted):
        downloads.validate_and_consume(issued.token)

    fresh = downloads.issue(credential.credential_id, BUYER)
    clock.advance(hours=settings.download_token_ttl_hours)
    with pytest.raises(TokenExpired):
        downloads.validate_and_consume(fresh.token)

    reputation = ReputationService(db, settings, clock)
    result = reputation.submit_evaluation(BUYER, batch.batch_id, 4, orchestrator=orchestrator)
    assert result.record.amount == Decimal("45")
    assert reputation.get_balance(SELLER) == Decimal("45")
