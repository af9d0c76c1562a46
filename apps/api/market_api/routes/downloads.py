"""Download token endpoints."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from market_api.credentials.service import CredentialService, CredentialVerification
from market_api.db.session import get_db
from market_api.deps import get_current_wallet, get_download_service, get_orchestrator
from market_api.downloads.tokens import DownloadTokenService, IssuedToken, TokenInfo
from market_api.settlement.orchestrator import SettlementOrchestrator
from market_api.settlement.tracker import BatchStatusView

router = APIRouter(prefix="/v1", tags=["downloads"])


class TokenRequest(BaseModel):
    """Download token request."""

    client_address: Optional[str] = Field(None, description="Client address to bind the token to")


class RevocationRequest(BaseModel):
    """Seller's credential revocation request."""

    reason: Optional[str] = Field(None, max_length=255, description="Why access is withdrawn")


class CredentialView(BaseModel):
    """Credential held by the caller."""

    model_config = ConfigDict(from_attributes=True)

    credential_id: str
    batch_id: str
    asset_id: str
    credential_type: str
    ledger_ref: Optional[str] = None
    issued_at: datetime
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[str] = None
    is_active: bool


class DownloadGrant(BaseModel):
    """Gated resource returned by a successful consumption."""

    credential_id: str
    locator: str
    remaining_attempts: int


def _client_address(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


@router.get("/credentials", response_model=List[CredentialView])
async def list_credentials(
    wallet_address: str = Depends(get_current_wallet),
    db: Session = Depends(get_db),
):
    """Credentials held by the caller, newest first."""
    return CredentialService(db).list_for_buyer(wallet_address)


@router.get("/credentials/{credential_id}/verify", response_model=CredentialVerification)
async def verify_credential(credential_id: str, db: Session = Depends(get_db)):
    """Public check that a credential exists and is currently valid."""
    return CredentialService(db).verify(credential_id)


@router.post("/credentials/{credential_id}/revoke", response_model=BatchStatusView)
def revoke_credential(
    credential_id: str,
    revocation: Optional[RevocationRequest] = None,
    wallet_address: str = Depends(get_current_wallet),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    """Withdraw a buyer's access to one of the caller's assets and delete the credential on the ledger."""
    reason = revocation.reason if revocation else None
    batch = orchestrator.revoke_credential(credential_id, wallet_address, reason=reason)
    return orchestrator.tracker.describe(batch)


@router.post(
    "/credentials/{credential_id}/download-tokens",
    response_model=IssuedToken,
    status_code=status.HTTP_201_CREATED,
)
async def issue_download_token(
    credential_id: str,
    request: Request,
    token_request: Optional[TokenRequest] = None,
    wallet_address: str = Depends(get_current_wallet),
    service: DownloadTokenService = Depends(get_download_service),
):
    """Issue (or return the live) download token for a credential."""
    client_address = token_request.client_address if token_request and token_request.client_address else None
    return service.issue(credential_id, wallet_address, client_address or _client_address(request))


@router.get("/downloads", response_model=List[TokenInfo])
async def list_download_tokens(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    wallet_address: str = Depends(get_current_wallet),
    service: DownloadTokenService = Depends(get_download_service),
):
    """The caller's download tokens, newest first. Token values are masked."""
    return service.list_for_buyer(wallet_address, limit=limit, offset=offset)


@router.get("/downloads/{token}", response_model=DownloadGrant)
async def consume_download_token(
    token: str,
    request: Request,
    service: DownloadTokenService = Depends(get_download_service),
):
    """Spend one attempt of a download token and return the gated locator."""
    consumed = service.validate_and_consume(token, _client_address(request))
    return DownloadGrant(
        credential_id=consumed.credential_id,
        locator=service.resolve_locator(consumed.credential_id),
        remaining_attempts=consumed.remaining_attempts,
    )


@router.get("/downloads/{token}/info", response_model=TokenInfo)
async def download_token_info(
    token: str,
    service: DownloadTokenService = Depends(get_download_service),
):
    """Token metadata. Does not consume an attempt."""
    return service.info(token)


@router.delete("/downloads/{token}", response_model=TokenInfo)
async def revoke_download_token(
    token: str,
    wallet_address: str = Depends(get_current_wallet),
    service: DownloadTokenService = Depends(get_download_service),
):
    """Revoke a token owned by the caller."""
    return service.revoke(token, wallet_address)
