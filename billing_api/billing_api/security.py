"""HMAC-signed bearer tokens consumed at the service boundary.

Tokens have the form ``bsdev.<urlsafe-base64 payload>.<hex signature>``
where the signature is HMAC-SHA256 over the JSON payload.  Identity is
issued elsewhere; this module only mints tokens for local development and
tests and validates them on every request.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from typing import Any

from pydantic import BaseModel, Field, SecretStr, ValidationError

TOKEN_PREFIX = "bsdev"


class TokenConfig(BaseModel):
    """Signing configuration."""

    jwt_secret: SecretStr
    token_ttl_seconds: int = Field(default=3600, gt=0)
    issuer: str = "billing-sync"


class TokenClaims(BaseModel):
    """Validated token payload."""

    sub: str = Field(..., min_length=1)
    email: str | None = None
    name: str | None = None
    role: str = "viewer"
    iss: str = "billing-sync"
    iat: float = Field(default_factory=time.time)
    exp: float = 0.0
    jti: str = Field(default_factory=lambda: uuid.uuid4().hex)


class TokenManager:
    """Mint and validate ``bsdev`` tokens.

    Parameters
    ----------
    config:
        Secret and lifetime used for every token.
    """

    def __init__(self, config: TokenConfig) -> None:
        self._config = config
        self._secret = config.jwt_secret.get_secret_value().encode("utf-8")

    def _sign(self, payload_json: str) -> str:
        return hmac.new(self._secret, payload_json.encode("utf-8"), hashlib.sha256).hexdigest()

    def generate_token(
        self,
        sub: str,
        *,
        email: str | None = None,
        name: str | None = None,
        role: str = "viewer",
        ttl_seconds: int | None = None,
    ) -> str:
        """Return a signed token for *sub*."""
        now = time.time()
        claims = TokenClaims(
            sub=sub,
            email=email,
            name=name,
            role=role,
            iss=self._config.issuer,
            iat=now,
            exp=now + (ttl_seconds or self._config.token_ttl_seconds),
        )
        payload_json = json.dumps(claims.model_dump())
        encoded = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
        return f"{TOKEN_PREFIX}.{encoded}.{self._sign(payload_json)}"

    def validate_token(self, token: str) -> TokenClaims:
        """Return the claims of a valid token.

        Raises
        ------
        PermissionError
            If the token is malformed, its signature does not match, or it
            has expired.
        """
        parts = token.split(".")
        if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
            raise PermissionError("malformed token")
        _, encoded, signature = parts
        try:
            payload_json = base64.urlsafe_b64decode(encoded.encode("ascii")).decode("utf-8")
        except (binascii.Error, UnicodeError, ValueError) as exc:
            raise PermissionError("malformed token payload") from exc

        if not hmac.compare_digest(self._sign(payload_json), signature):
            raise PermissionError("signature mismatch")

        try:
            raw: Any = json.loads(payload_json)
            claims = TokenClaims.model_validate(raw)
        except (ValueError, ValidationError) as exc:
            raise PermissionError("invalid token claims") from exc

        if claims.exp and claims.exp < time.time():
            raise PermissionError("token expired")
        return claims
