"""FastAPI dependencies: wallet identity, admin check and service wiring."""

import hmac

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from market_api.db.session import get_db
from market_api.downloads.tokens import DownloadTokenService
from market_api.errors import AuthenticationError, AuthorizationError
from market_api.ledger.client import LedgerClient, build_ledger_client
from market_api.ledger.signer import TransactionSigner, get_signer
from market_api.reputation.service import ReputationService
from market_api.settings import Settings, get_settings
from market_api.settlement.orchestrator import SettlementOrchestrator
from market_api.settlement.retry import RetryPolicy


def get_ledger_client(request: Request) -> LedgerClient:
    """The process-wide ledger client created at startup."""
    client = getattr(request.app.state, "ledger_client", None)
    if client is None:
        client = build_ledger_client(get_settings())
        request.app.state.ledger_client = client
    return client


def get_transaction_signer() -> TransactionSigner:
    return get_signer(get_settings())


def get_retry_policy() -> RetryPolicy:
    return RetryPolicy.from_settings(get_settings())


def get_orchestrator(
    db: Session = Depends(get_db),
    ledger: LedgerClient = Depends(get_ledger_client),
    signer: TransactionSigner = Depends(get_transaction_signer),
    retry_policy: RetryPolicy = Depends(get_retry_policy),
    settings: Settings = Depends(get_settings),
) -> SettlementOrchestrator:
    return SettlementOrchestrator(db, ledger, signer, settings=settings, retry_policy=retry_policy)


def get_download_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> DownloadTokenService:
    return DownloadTokenService(db, settings)


def get_reputation_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> ReputationService:
    return ReputationService(db, settings)


def get_current_wallet(request: Request) -> str:
    """Wallet address resolved by AuthMiddleware."""
    wallet_address = getattr(request.state, "wallet_address", None)
    if not wallet_address:
        raise AuthenticationError("Authentication required")
    return wallet_address


def require_admin(
    x_admin_token: str = Header(default=""),
    settings: Settings = Depends(get_settings),
) -> None:
    """Check the x-admin-token header against the configured admin token."""
    if not x_admin_token or not hmac.compare_digest(x_admin_token, settings.admin_api_token):
        raise AuthorizationError("Admin token required")
