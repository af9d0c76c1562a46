"""Tests for the download token lifecycle."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from conftest import BUYER, OTHER_BUYER, SELLER, make_credential
from market_api.catalog.service import CatalogService
from market_api.credentials.service import CredentialService
from market_api.downloads.tokens import DownloadTokenService
from market_api.errors import (
    AttemptsExhausted,
    AuthorizationError,
    InvalidToken,
    MarketError,
    NotFoundError,
    TokenExpired,
)
from market_api.models import DownloadToken


@pytest.fixture
def service(db, settings, clock) -> DownloadTokenService:
    return DownloadTokenService(db, settings, clock)


class TestIssue:
    """Token issuance."""

    def test_issue_new_token(self, service, credential, clock):
        issued = service.issue(credential.credential_id, BUYER)

        assert len(issued.token) == 64
        assert issued.credential_id == credential.credential_id
        assert issued.remaining_attempts == 3
        assert issued.max_attempts == 3
        assert (issued.expires_at - clock()).total_seconds() == 24 * 3600
        assert issued.download_url == f"/v1/downloads/{issued.token}"
        assert issued.reused is False

    def test_issue_is_idempotent(self, service, credential):
        first = service.issue(credential.credential_id, BUYER)
        second = service.issue(credential.credential_id, BUYER)

        assert second.token == first.token
        assert second.reused is True

    def test_exhausted_token_is_replaced(self, service, credential):
        first = service.issue(credential.credential_id, BUYER)
        for _ in range(3):
            service.validate_and_consume(first.token)

        second = service.issue(credential.credential_id, BUYER)

        assert second.token != first.token
        assert second.remaining_attempts == 3

    def test_expired_token_is_replaced(self, db, service, credential, clock):
        first = service.issue(credential.credential_id, BUYER)
        clock.advance(hours=25)

        second = service.issue(credential.credential_id, BUYER)

        assert second.token != first.token
        active = db.query(DownloadToken).filter(DownloadToken.is_active.is_(True)).all()
        assert [row.token for row in active] == [second.token]

    def test_non_owner_cannot_issue(self, service, credential):
        with pytest.raises(AuthorizationError):
            service.issue(credential.credential_id, OTHER_BUYER)

    def test_unknown_credential(self, service):
        with pytest.raises(NotFoundError):
            service.issue("cred_missing", BUYER)

    def test_revoked_credential_cannot_issue(self, db, service, credential, clock):
        CredentialService(db, clock).revoke(credential.credential_id)
        db.commit()

        with pytest.raises(AuthorizationError):
            service.issue(credential.credential_id, BUYER)


class TestConsume:
    """Validate-and-consume."""

    def test_three_uses_then_exhausted(self, service, credential):
        issued = service.issue(credential.credential_id, BUYER)

        remaining = [service.validate_and_consume(issued.token).remaining_attempts for _ in range(3)]
        assert remaining == [2, 1, 0]

        with pytest.raises(AttemptsExhausted):
            service.validate_and_consume(issued.token)

    def test_consume_reports_credential(self, service, credential):
        issued = service.issue(credential.credential_id, BUYER)

        consumed = service.validate_and_consume(issued.token)

        assert consumed.credential_id == credential.credential_id
        assert consumed.buyer_address == BUYER
        assert consumed.expires_at == issued.expires_at

    def test_usage_timestamps(self, service, credential, clock):
        issued = service.issue(credential.credential_id, BUYER)
        first_use = clock.advance(minutes=1)
        service.validate_and_consume(issued.token)
        second_use = clock.advance(minutes=1)
        service.validate_and_consume(issued.token)

        info = service.info(issued.token)
        assert info.used_at == first_use
        assert info.last_used_at == second_use

    def test_expired_token(self, service, credential, clock):
        issued = service.issue(credential.credential_id, BUYER)
        clock.advance(hours=24)

        with pytest.raises(TokenExpired):
            service.validate_and_consume(issued.token)

    def test_token_valid_until_just_before_expiry(self, service, credential, clock):
        issued = service.issue(credential.credential_id, BUYER)
        clock.advance(hours=23, minutes=59)

        assert service.validate_and_consume(issued.token).remaining_attempts == 2

    def test_unknown_token(self, service):
        with pytest.raises(InvalidToken):
            service.validate_and_consume("0" * 64)

    def test_credential_revocation_kills_tokens(self, db, service, credential, clock):
        issued = service.issue(credential.credential_id, BUYER)
        CredentialService(db, clock).revoke(credential.credential_id)
        db.commit()

        with pytest.raises(TokenExpired):
            service.validate_and_consume(issued.token)


class TestClientBinding:
    """Optional binding of a token to the requesting client."""

    def test_binding_enforced(self, db, settings, clock, credential):
        bound = DownloadTokenService(db, settings.model_copy(update={"download_enforce_client_binding": True}), clock)
        issued = bound.issue(credential.credential_id, BUYER, client_address="10.0.0.1")

        with pytest.raises(AuthorizationError):
            bound.validate_and_consume(issued.token, client_address="10.0.0.2")

        assert bound.info(issued.token).remaining_attempts == 3
        assert bound.validate_and_consume(issued.token, client_address="10.0.0.1").remaining_attempts == 2

    def test_binding_not_enforced_by_default(self, service, credential):
        issued = service.issue(credential.credential_id, BUYER, client_address="10.0.0.1")

        consumed = service.validate_and_consume(issued.token, client_address="10.0.0.2")

        assert consumed.remaining_attempts == 2


class TestInfoRevokeCleanup:
    """Inspection, revocation and the expiry sweep."""

    def test_info_does_not_consume(self, service, credential):
        issued = service.issue(credential.credential_id, BUYER)

        for _ in range(5):
            info = service.info(issued.token)

        assert info.remaining_attempts == 3
        assert info.usable is True
        assert info.used_at is None

    def test_info_reports_expiry(self, service, credential, clock):
        issued = service.issue(credential.credential_id, BUYER)
        clock.advance(hours=30)

        info = service.info(issued.token)

        assert info.expired is True
        assert info.usable is False

    def test_info_unknown_token(self, service):
        with pytest.raises(InvalidToken):
            service.info("0" * 64)

    def test_revoke(self, service, credential, clock):
        issued = service.issue(credential.credential_id, BUYER)

        info = service.revoke(issued.token, BUYER)

        assert info.revoked is True
        assert info.usable is False
        assert info.expires_at == clock()
        assert info.remaining_attempts == 3
        with pytest.raises(TokenExpired):
            service.validate_and_consume(issued.token)

    def test_revoke_is_repeatable(self, service, credential, clock):
        issued = service.issue(credential.credential_id, BUYER)
        service.revoke(issued.token)
        revoked_at = clock()
        clock.advance(minutes=5)

        info = service.revoke(issued.token)

        assert info.expires_at == revoked_at

    def test_revoke_by_other_buyer(self, service, credential):
        issued = service.issue(credential.credential_id, BUYER)

        with pytest.raises(AuthorizationError):
            service.revoke(issued.token, OTHER_BUYER)

    def test_revoke_unknown_token(self, service):
        with pytest.raises(InvalidToken):
            service.revoke("0" * 64)

    def test_cleanup_deactivates_expired(self, db, service, settings, clock, asset, credential):
        other = make_credential(db, settings, clock, buyer=OTHER_BUYER)
        service.issue(credential.credential_id, BUYER)
        clock.advance(hours=12)
        fresh = service.issue(other.credential_id, OTHER_BUYER)
        clock.advance(hours=13)

        assert service.cleanup_expired() == 1
        assert service.cleanup_expired() == 0
        assert service.info(fresh.token).usable is True

    def test_resolve_locator(self, service, credential):
        locator = service.resolve_locator(credential.credential_id)

        assert locator == "https://ipfs.io/ipfs/bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi"


def test_concurrent_consumption_spends_last_attempt_once(file_engine, settings, clock):
    """Fifty simultaneous consumers of a single-use token: exactly one wins."""
    single_use = settings.model_copy(update={"download_max_attempts": 1})
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)

    setup = SessionLocal()
    try:
        CatalogService(setup).create_asset(
            owner_address=SELLER,
            title="Race asset",
            price=Decimal("10"),
            content_ref="bafkreirace",
            asset_id="asset_photos",
        )
        setup.commit()
        credential = make_credential(setup, single_use, clock)
        token = DownloadTokenService(setup, single_use, clock).issue(credential.credential_id, BUYER).token
    finally:
        setup.close()

    workers = 50
    barrier = threading.Barrier(workers)

    def consume(_):
        session = SessionLocal()
        try:
            barrier.wait()
            DownloadTokenService(session, single_use, clock).validate_and_consume(token)
            return "success"
        except MarketError as e:
            return type(e).__name__
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=workers) as pool:
        outcomes = list(pool.map(consume, range(workers)))

    assert outcomes.count("success") == 1
    assert outcomes.count("AttemptsExhausted") == workers - 1

    check = SessionLocal()
    try:
        row = check.query(DownloadToken).filter(DownloadToken.token == token).one()
        assert row.remaining_attempts == 0
        assert row.is_active is False
    finally:
        check.close()


class TestListing:
    """A buyer's own token list."""

    def test_list_masks_tokens(self, service, credential):
        issued = service.issue(credential.credential_id, BUYER)

        listed = service.list_for_buyer(BUYER)

        assert len(listed) == 1
        assert listed[0].token_hint == issued.token[:8] + "..."
        assert listed[0].credential_id == credential.credential_id
        assert listed[0].usable is True
        assert service.list_for_buyer(OTHER_BUYER) == []

    def test_list_includes_replaced_tokens_newest_first(self, service, credential, clock):
        first = service.issue(credential.credential_id, BUYER)
        clock.advance(hours=25)
        second = service.issue(credential.credential_id, BUYER)

        listed = service.list_for_buyer(BUYER)

        assert [info.token_hint for info in listed] == [second.token[:8] + "...", first.token[:8] + "..."]
        assert listed[1].expired is True
        assert len(service.list_for_buyer(BUYER, limit=1)) == 1

    def test_info_has_no_hint(self, service, credential):
        issued = service.issue(credential.credential_id, BUYER)
        assert service.info(issued.token).token_hint is None


class TestCredentialVerification:
    """Public validity checks and revocation reasons."""

    def test_active_credential_is_valid(self, db, credential, clock):
        verification = CredentialService(db, clock).verify(credential.credential_id)

        assert verification.valid is True
        assert verification.holder_address == BUYER
        assert verification.revoked_at is None

    def test_revoked_credential_is_invalid(self, db, credential, clock):
        credentials = CredentialService(db, clock)
        credentials.revoke(credential.credential_id, reason="refunded")
        db.commit()

        verification = credentials.verify(credential.credential_id)

        assert verification.valid is False
        assert verification.revoked_at == clock()
        assert credential.revocation_reason == "refunded"

    def test_expired_credential_is_invalid(self, db, credential, clock):
        credential.expires_at = clock() + timedelta(days=1)
        db.commit()
        clock.advance(days=2)

        assert CredentialService(db, clock).verify(credential.credential_id).valid is False

    def test_unknown_credential(self, db, clock):
        with pytest.raises(NotFoundError):
            CredentialService(db, clock).verify("cred_missing")
