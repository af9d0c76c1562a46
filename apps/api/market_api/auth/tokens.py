"""Wallet bearer tokens (JWT).

The subject of a token is the wallet address the caller proved control of.
"""

import logging
from datetime import timedelta
from typing import Optional

from jose import JWTError, jwt

from market_api.errors import AuthenticationError
from market_api.ledger.client import is_valid_address
from market_api.settings import Settings, get_settings
from market_api.utils.clock import utcnow

logger = logging.getLogger(__name__)


def create_access_token(wallet_address: str, settings: Optional[Settings] = None, expires_in: Optional[timedelta] = None) -> str:
    """Issue a bearer token for a wallet address."""
    settings = settings or get_settings()
    if not is_valid_address(wallet_address):
        raise AuthenticationError(f"Invalid wallet address: {wallet_address!r}")
    now = utcnow()
    expires_in = expires_in or timedelta(hours=settings.jwt_expiration_hours)
    claims = {
        "sub": wallet_address,
        "iat": now,
        "exp": now + expires_in,
    }
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Optional[Settings] = None) -> str:
    """Verify a bearer token and return its wallet address."""
    settings = settings or get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        raise AuthenticationError(f"Invalid bearer token: {e}")

    wallet_address = claims.get("sub")
    if not wallet_address or not is_valid_address(wallet_address):
        raise AuthenticationError("Bearer token does not name a valid wallet")
    return wallet_address
