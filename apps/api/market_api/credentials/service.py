"""Usage credential service."""

import logging
import secrets
from datetime import datetime
from typing import Callable, List, Optional

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from market_api.errors import AuthorizationError, NotFoundError
from market_api.ledger.transactions import credential_type_for
from market_api.models import Credential, DownloadToken, PurchaseBatch
from market_api.utils.clock import utcnow

logger = logging.getLogger(__name__)


class CredentialVerification(BaseModel):
    """Publicly verifiable facts about a credential."""

    credential_id: str
    asset_id: str
    holder_address: str
    credential_type: str
    ledger_ref: Optional[str] = None
    valid: bool
    issued_at: datetime
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None


class CredentialService:
    """Record, look up and revoke usage credentials."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        """Initialize credential service."""
        self.db = db
        self.clock = clock

    def get(self, credential_id: str) -> Credential:
        """Get a credential or raise NotFoundError."""
        credential = self.db.query(Credential).filter(Credential.credential_id == credential_id).first()
        if not credential:
            raise NotFoundError(f"Credential {credential_id} not found")
        return credential

    def get_for_batch(self, batch_id: str) -> Optional[Credential]:
        """Credential issued by a purchase batch, if any."""
        return self.db.query(Credential).filter(Credential.batch_id == batch_id).first()

    def get_active(self, buyer_address: str, asset_id: str) -> Optional[Credential]:
        """Active credential for a (buyer, asset) pair, if any."""
        return (
            self.db.query(Credential)
            .filter(
                Credential.buyer_address == buyer_address,
                Credential.asset_id == asset_id,
                Credential.is_active.is_(True),
            )
            .first()
        )

    def list_for_buyer(self, buyer_address: str) -> List[Credential]:
        """All credentials held by a buyer, newest first."""
        return (
            self.db.query(Credential)
            .filter(Credential.buyer_address == buyer_address)
            .order_by(Credential.issued_at.desc())
            .all()
        )

    def issue_for_batch(
        self,
        batch: PurchaseBatch,
        ledger_ref: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Credential:
        """Record the credential of a settled purchase.

        Idempotent: an existing credential for the batch, or an active one for
        the same (buyer, asset) pair, is returned instead of a duplicate.
        """
        existing = self.get_for_batch(batch.batch_id) or self.get_active(batch.buyer_address, batch.asset_id)
        if existing:
            logger.info(
                f"Reusing credential {existing.credential_id} for batch {batch.batch_id}",
                extra={"batch_id": batch.batch_id, "credential_id": existing.credential_id},
            )
            return existing

        credential = Credential(
            credential_id=f"cred_{secrets.token_hex(16)}",
            batch_id=batch.batch_id,
            buyer_address=batch.buyer_address,
            asset_id=batch.asset_id,
            credential_type=credential_type_for(batch.asset_id),
            ledger_ref=ledger_ref,
            issued_at=self.clock(),
            expires_at=expires_at,
            is_active=True,
        )
        self.db.add(credential)
        try:
            self.db.flush()
        except IntegrityError:
            # Lost a race with a concurrent issuance for the same batch or pair
            self.db.rollback()
            existing = self.get_for_batch(batch.batch_id) or self.get_active(batch.buyer_address, batch.asset_id)
            if existing is None:
                raise
            return existing

        logger.info(
            f"Issued credential {credential.credential_id}",
            extra={"batch_id": batch.batch_id, "credential_id": credential.credential_id},
        )
        return credential

    def verify_ownership(self, credential_id: str, buyer_address: str) -> Credential:
        """Check that a credential exists, belongs to the buyer and is usable."""
        credential = self.get(credential_id)
        if credential.buyer_address != buyer_address:
            raise AuthorizationError("Credential does not belong to the requesting buyer")
        if not credential.is_active or credential.revoked_at is not None:
            raise AuthorizationError("Credential has been revoked")
        if credential.expires_at is not None and credential.expires_at <= self.clock():
            raise AuthorizationError("Credential has expired")
        return credential

    def revoke(self, credential_id: str, reason: Optional[str] = None) -> Credential:
        """Revoke a credential and every download token bound to it. Caller commits."""
        credential = self.get(credential_id)
        now = self.clock()
        if credential.is_active:
            credential.is_active = False
            credential.revoked_at = now
            credential.revocation_reason = reason
        self.db.query(DownloadToken).filter(
            DownloadToken.credential_id == credential_id,
            DownloadToken.is_active.is_(True),
        ).update(
            {
                DownloadToken.is_active: False,
                DownloadToken.revoked_at: now,
                DownloadToken.expires_at: now,
            },
            synchronize_session=False,
        )
        self.db.flush()
        logger.info(f"Revoked credential {credential_id}", extra={"credential_id": credential_id})
        return credential

    def verify(self, credential_id: str) -> CredentialVerification:
        """Public validity check of a credential, as shown to third parties."""
        credential = self.get(credential_id)
        expired = credential.expires_at is not None and credential.expires_at <= self.clock()
        return CredentialVerification(
            credential_id=credential.credential_id,
            asset_id=credential.asset_id,
            holder_address=credential.buyer_address,
            credential_type=credential.credential_type,
            ledger_ref=credential.ledger_ref,
            valid=bool(credential.is_active and credential.revoked_at is None and not expired),
            issued_at=credential.issued_at,
            expires_at=credential.expires_at,
            revoked_at=credential.revoked_at,
        )
