"""Authentication middleware that validates bearer tokens.

Extracts ``Authorization: Bearer <token>`` from every request, validates
it via :class:`TokenManager`, and populates ``request.state`` with
``sub`` (user identity), ``email``, ``name`` and ``role``.  When the token
omits a role claim the least-privileged ``"viewer"`` is applied.

Endpoints listed in ``_PUBLIC_PATHS`` bypass authentication.  The webhook
endpoint is among them: it authenticates by provider signature instead.
"""

from __future__ import annotations

import logging
import os
import secrets
from typing import Any

from pydantic import SecretStr
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from billing_api.security import TokenConfig, TokenManager

logger = logging.getLogger(__name__)

# Paths that do not require authentication.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
        "/api/v1/webhooks/stripe",
    }
)

# Prefixes that skip auth (e.g. static docs assets).
_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
)


def _build_token_config() -> TokenConfig:
    """Construct a :class:`TokenConfig` from ``JWT_SECRET``.

    Without ``JWT_SECRET`` a random per-process secret is generated, so
    no previously issued token validates.  Staging and production refuse
    to start in that state (see the application lifespan).
    """
    secret = os.environ.get("JWT_SECRET", "")
    if not secret:
        secret = f"dev-{secrets.token_hex(32)}"
        logger.warning("JWT_SECRET not set; generated random per-process dev secret")
    ttl = int(os.environ.get("TOKEN_TTL_SECONDS", "3600"))
    return TokenConfig(jwt_secret=SecretStr(secret), token_ttl_seconds=ttl)


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces Bearer token authentication.

    Requests without a valid identity are rejected with a 401 before any
    subscription lookup happens.
    """

    def __init__(self, app: Any) -> None:
        super().__init__(app)
        self._token_manager = TokenManager(_build_token_config())
        logger.info("AuthenticationMiddleware initialised")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method == "OPTIONS" or _is_public_path(request.url.path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return JSONResponse(
                status_code=401,
                content={"status": "unauthenticated", "isActive": False, "message": "Not authenticated"},
            )

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return JSONResponse(
                status_code=401,
                content={
                    "status": "unauthenticated",
                    "isActive": False,
                    "message": "Authorization header must use Bearer scheme",
                },
            )

        try:
            claims = self._token_manager.validate_token(parts[1])
        except PermissionError as exc:
            logger.info("Rejected token on %s: %s", request.url.path, exc)
            return JSONResponse(
                status_code=401,
                content={"status": "unauthenticated", "isActive": False, "message": f"Invalid token: {exc}"},
            )

        request.state.sub = claims.sub
        request.state.email = claims.email
        request.state.name = claims.name
        request.state.role = claims.role or "viewer"
        return await call_next(request)
