"""Download token lifecycle: issue, validate-and-consume, inspect, revoke, sweep.

Consumption is a single conditional UPDATE that decrements the remaining
attempts only while the token is active, unexpired and has attempts left.
The database serializes concurrent consumers of the same token, so two
requests can never both spend the last attempt.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from pydantic import BaseModel
from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from market_api.catalog.service import CatalogService
from market_api.credentials.service import CredentialService
from market_api.errors import AttemptsExhausted, AuthorizationError, InvalidToken, TokenExpired
from market_api.models import DownloadToken
from market_api.settings import Settings, get_settings
from market_api.utils.clock import utcnow
from market_api.utils.metrics import download_consumptions, download_tokens_issued

logger = logging.getLogger(__name__)


class IssuedToken(BaseModel):
    """Result of issue()."""

    token: str
    credential_id: str
    expires_at: datetime
    download_url: str
    remaining_attempts: int
    max_attempts: int
    reused: bool = False


class ConsumedToken(BaseModel):
    """Result of validate_and_consume()."""

    credential_id: str
    buyer_address: str
    remaining_attempts: int
    expires_at: datetime


class TokenInfo(BaseModel):
    """Read-only token metadata."""

    token_hint: Optional[str] = None  # Masked; only set in listings
    credential_id: str
    buyer_address: str
    created_at: datetime
    expires_at: datetime
    max_attempts: int
    remaining_attempts: int
    used_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    revoked: bool
    expired: bool
    usable: bool


def _mask(token: str) -> str:
    return f"{token[:8]}..."


class DownloadTokenService:
    """Credential-gated, attempt-limited download tokens."""

    def __init__(self, db: Session, settings: Optional[Settings] = None, clock: Callable[[], datetime] = utcnow):
        """Initialize download token service."""
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.credentials = CredentialService(db, clock)

    def download_url(self, token: str) -> str:
        return f"{self.settings.download_base_path.rstrip('/')}/{token}"

    def _issued(self, row: DownloadToken, reused: bool) -> IssuedToken:
        return IssuedToken(
            token=row.token,
            credential_id=row.credential_id,
            expires_at=row.expires_at,
            download_url=self.download_url(row.token),
            remaining_attempts=row.remaining_attempts,
            max_attempts=row.max_attempts,
            reused=reused,
        )

    def _find_usable(self, credential_id: str, buyer_address: str, now: datetime) -> Optional[DownloadToken]:
        return (
            self.db.query(DownloadToken)
            .populate_existing()
            .filter(
                DownloadToken.credential_id == credential_id,
                DownloadToken.buyer_address == buyer_address,
                DownloadToken.is_active.is_(True),
                DownloadToken.revoked_at.is_(None),
                DownloadToken.expires_at > now,
                DownloadToken.remaining_attempts > 0,
            )
            .order_by(DownloadToken.created_at.desc())
            .first()
        )

    def issue(self, credential_id: str, buyer_address: str, client_address: Optional[str] = None) -> IssuedToken:
        """Return the live token for (credential, buyer), minting one if none is usable."""
        self.credentials.verify_ownership(credential_id, buyer_address)
        now = self.clock()

        existing = self._find_usable(credential_id, buyer_address, now)
        if existing:
            download_tokens_issued.labels(reused="true").inc()
            logger.info(
                "Returning existing download token",
                extra={"token": _mask(existing.token), "credential_id": credential_id},
            )
            return self._issued(existing, reused=True)

        # Retire stale rows that still hold the active slot for this pair
        self.db.query(DownloadToken).filter(
            DownloadToken.credential_id == credential_id,
            DownloadToken.buyer_address == buyer_address,
            DownloadToken.is_active.is_(True),
        ).update({DownloadToken.is_active: False}, synchronize_session=False)

        max_attempts = self.settings.download_max_attempts
        row = DownloadToken(
            token=secrets.token_hex(32),
            credential_id=credential_id,
            buyer_address=buyer_address,
            client_address=client_address,
            created_at=now,
            expires_at=now + timedelta(hours=self.settings.download_token_ttl_hours),
            max_attempts=max_attempts,
            remaining_attempts=max_attempts,
            is_active=True,
        )
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent request minted the token for this pair first
            self.db.rollback()
            winner = self._find_usable(credential_id, buyer_address, self.clock())
            if winner is None:
                raise
            download_tokens_issued.labels(reused="true").inc()
            return self._issued(winner, reused=True)

        download_tokens_issued.labels(reused="false").inc()
        logger.info(
            "Issued download token",
            extra={"token": _mask(row.token), "credential_id": credential_id, "expires_at": row.expires_at.isoformat()},
        )
        return self._issued(row, reused=False)

    def validate_and_consume(self, token: str, client_address: Optional[str] = None) -> ConsumedToken:
        """Spend one attempt of a token, atomically."""
        now = self.clock()
        conditions = [
            DownloadToken.token == token,
            DownloadToken.is_active.is_(True),
            DownloadToken.revoked_at.is_(None),
            DownloadToken.expires_at > now,
            DownloadToken.remaining_attempts > 0,
        ]
        enforce_binding = self.settings.download_enforce_client_binding and client_address is not None
        if enforce_binding:
            conditions.append(
                or_(DownloadToken.client_address.is_(None), DownloadToken.client_address == client_address)
            )

        stmt = (
            update(DownloadToken)
            .where(*conditions)
            .values(
                remaining_attempts=DownloadToken.remaining_attempts - 1,
                is_active=DownloadToken.remaining_attempts > 1,
                used_at=func.coalesce(DownloadToken.used_at, now),
                last_used_at=now,
            )
            .returning(
                DownloadToken.credential_id,
                DownloadToken.buyer_address,
                DownloadToken.remaining_attempts,
                DownloadToken.expires_at,
                DownloadToken.client_address,
            )
            .execution_options(synchronize_session=False)
        )
        row = self.db.execute(stmt).first()
        self.db.commit()

        if row is None:
            error = self._rejection(token, now, client_address if enforce_binding else None)
            download_consumptions.labels(result=error.error_code).inc()
            logger.info(
                f"Download token rejected: {error.error_code}",
                extra={"token": _mask(token), "reason": error.error_code},
            )
            raise error

        if client_address and row.client_address and row.client_address != client_address:
            logger.warning(
                "Download token used from a different client address",
                extra={"token": _mask(token), "bound_to": row.client_address, "client": client_address},
            )

        download_consumptions.labels(result="success").inc()
        logger.info(
            "Download token consumed",
            extra={"token": _mask(token), "credential_id": row.credential_id, "remaining": row.remaining_attempts},
        )
        return ConsumedToken(
            credential_id=row.credential_id,
            buyer_address=row.buyer_address,
            remaining_attempts=row.remaining_attempts,
            expires_at=row.expires_at,
        )

    def _rejection(self, token: str, now: datetime, client_address: Optional[str]):
        """Explain why a token could not be consumed."""
        row = self.db.query(DownloadToken).populate_existing().filter(DownloadToken.token == token).first()
        if row is None:
            return InvalidToken("Download token not found")
        if row.revoked_at is not None or row.expires_at <= now:
            return TokenExpired("Download token has expired")
        if row.remaining_attempts <= 0:
            return AttemptsExhausted("Download token has no attempts left")
        if client_address and row.client_address and row.client_address != client_address:
            return AuthorizationError("Download token is bound to a different client")
        # Deactivated by a cleanup sweep or superseded by a newer token
        return TokenExpired("Download token is no longer active")

    def info(self, token: str) -> TokenInfo:
        """Token metadata. Never consumes an attempt."""
        row = self.db.query(DownloadToken).filter(DownloadToken.token == token).first()
        if row is None:
            raise InvalidToken("Download token not found")
        return self._to_info(row)

    def list_for_buyer(self, buyer_address: str, limit: int = 50, offset: int = 0) -> List[TokenInfo]:
        """A buyer's download tokens, newest first, with the token values masked."""
        rows = (
            self.db.query(DownloadToken)
            .filter(DownloadToken.buyer_address == buyer_address)
            .order_by(DownloadToken.created_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return [self._to_info(row, token_hint=_mask(row.token)) for row in rows]

    def _to_info(self, row: DownloadToken, token_hint: Optional[str] = None) -> TokenInfo:
        now = self.clock()
        expired = row.expires_at <= now
        revoked = row.revoked_at is not None
        return TokenInfo(
            token_hint=token_hint,
            credential_id=row.credential_id,
            buyer_address=row.buyer_address,
            created_at=row.created_at,
            expires_at=row.expires_at,
            max_attempts=row.max_attempts,
            remaining_attempts=row.remaining_attempts,
            used_at=row.used_at,
            last_used_at=row.last_used_at,
            revoked=revoked,
            expired=expired,
            usable=row.is_active and not expired and not revoked and row.remaining_attempts > 0,
        )

    def revoke(self, token: str, buyer_address: Optional[str] = None) -> TokenInfo:
        """Force a token's expiry to now, regardless of remaining attempts."""
        row = self.db.query(DownloadToken).filter(DownloadToken.token == token).first()
        if row is None:
            raise InvalidToken("Download token not found")
        if buyer_address is not None and row.buyer_address != buyer_address:
            raise AuthorizationError("Download token does not belong to the requesting buyer")

        now = self.clock()
        self.db.query(DownloadToken).filter(
            DownloadToken.token == token,
            DownloadToken.expires_at > now,
        ).update({DownloadToken.expires_at: now}, synchronize_session=False)
        self.db.query(DownloadToken).filter(DownloadToken.token == token).update(
            {
                DownloadToken.is_active: False,
                DownloadToken.revoked_at: func.coalesce(DownloadToken.revoked_at, now),
            },
            synchronize_session=False,
        )
        self.db.commit()
        logger.info("Download token revoked", extra={"token": _mask(token)})
        return self.info(token)

    def cleanup_expired(self) -> int:
        """Deactivate every token past its expiry. Returns the number of rows touched."""
        now = self.clock()
        count = (
            self.db.query(DownloadToken)
            .filter(DownloadToken.is_active.is_(True), DownloadToken.expires_at <= now)
            .update({DownloadToken.is_active: False}, synchronize_session=False)
        )
        self.db.commit()
        logger.info(f"Deactivated {count} expired download tokens", extra={"count": count})
        return count

    def resolve_locator(self, credential_id: str) -> str:
        """Gateway URL of the asset a credential unlocks."""
        credential = self.credentials.get(credential_id)
        asset = CatalogService(self.db).get_asset(credential.asset_id)
        return f"{self.settings.content_gateway_url.rstrip('/')}/{asset.content_ref}"
