"""Authentication middleware to resolve the caller's wallet from a bearer token."""

import logging
import re

from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from market_api.auth.tokens import decode_access_token
from market_api.errors import AuthenticationError

logger = logging.getLogger(__name__)

PUBLIC_PATHS = {"/health", "/ready", "/metrics", "/docs", "/openapi.json", "/"}

# The download token itself is the capability for these
DOWNLOAD_CAPABILITY_PATH = re.compile(r"^/v1/downloads/[^/]+(/info)?$")

# Anyone may check whether a credential is valid
CREDENTIAL_VERIFY_PATH = re.compile(r"^/v1/credentials/[^/]+/verify$")


class AuthMiddleware(BaseHTTPMiddleware):
    """Extract and validate the wallet address from the bearer token."""

    def _is_public(self, request: Request) -> bool:
        path = request.url.path
        if path in PUBLIC_PATHS or path.startswith("/metrics"):
            return True
        # Admin endpoints have their own token check
        if path.startswith("/admin"):
            return True
        if request.method != "GET":
            return False
        return bool(DOWNLOAD_CAPABILITY_PATH.match(path) or CREDENTIAL_VERIFY_PATH.match(path))

    async def dispatch(self, request: Request, call_next):
        """Process request with wallet extraction."""
        if self._is_public(request):
            return await call_next(request)

        authorization = request.headers.get("authorization", "")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"detail": "Missing bearer token. Provide an Authorization header.", "error_code": "unauthenticated"},
                headers={"WWW-Authenticate": "Bearer"},
            )

        try:
            wallet_address = decode_access_token(token.strip())
        except AuthenticationError as e:
            return JSONResponse(
                status_code=e.status_code,
                content=e.to_dict(),
                headers={"WWW-Authenticate": "Bearer"},
            )

        request.state.wallet_address = wallet_address
        logger.info(
            "Authenticated request",
            extra={
                "wallet_address": wallet_address,
                "correlation_id": getattr(request.state, "correlation_id", None),
                "path": request.url.path,
            },
        )
        return await call_next(request)
