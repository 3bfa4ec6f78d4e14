"""Bearer token issuing and validation.

Tokens use a compact HMAC format::

    sddev.<base64url(json claims)>.<hex HMAC-SHA256 of the json>

Claims carry ``sub`` (user id), ``tenant_id``, ``role`` and ``exp``.  The
identity provider in production issues the same claims; this module only
has to verify them.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import secrets
import time
import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, SecretStr, ValidationError

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "sddev."


class TokenConfig(BaseModel):
    """Signing configuration for :class:`TokenManager`."""

    jwt_secret: SecretStr
    token_ttl_seconds: int = 3600
    max_token_ttl_seconds: int = 86400
    issuer: str = "servicedesk"


class TokenClaims(BaseModel):
    """Validated identity claims."""

    model_config = ConfigDict(extra="allow")

    sub: str
    tenant_id: str
    role: str = "END_USER"
    iat: float
    exp: float
    iss: str = "servicedesk"
    jti: str | None = None


def load_token_config() -> TokenConfig:
    """Build a :class:`TokenConfig` from ``JWT_SECRET`` / ``TOKEN_TTL_SECONDS``.

    When ``JWT_SECRET`` is unset a random per-process secret is generated
    and a warning is logged; tokens then do not survive restarts.
    """
    secret = os.environ.get("JWT_SECRET", "")
    if not secret:
        secret = f"dev-{secrets.token_hex(32)}"
        logger.warning("JWT_SECRET not set; generated a random per-process secret")
    return TokenConfig(
        jwt_secret=SecretStr(secret),
        token_ttl_seconds=int(os.environ.get("TOKEN_TTL_SECONDS", "3600")),
        max_token_ttl_seconds=int(os.environ.get("MAX_TOKEN_TTL_SECONDS", "86400")),
    )


class TokenManager:
    """Issue and validate HMAC-signed bearer tokens."""

    def __init__(self, config: TokenConfig) -> None:
        self._config = config
        self._key = config.jwt_secret.get_secret_value().encode("utf-8")

    def _sign(self, payload_json: str) -> str:
        return hmac.new(self._key, payload_json.encode("utf-8"), hashlib.sha256).hexdigest()

    def generate_token(self, sub: str, tenant_id: str, role: str, *, ttl_seconds: int | None = None) -> str:
        ttl = min(ttl_seconds or self._config.token_ttl_seconds, self._config.max_token_ttl_seconds)
        now = time.time()
        payload: dict[str, Any] = {
            "sub": sub,
            "tenant_id": tenant_id,
            "role": role,
            "iss": self._config.issuer,
            "iat": now,
            "exp": now + ttl,
            "jti": uuid.uuid4().hex,
        }
        payload_json = json.dumps(payload)
        encoded = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
        return f"{TOKEN_PREFIX}{encoded}.{self._sign(payload_json)}"

    def validate_token(self, token: str) -> TokenClaims:
        """Verify *token* and return its claims.

        Raises
        ------
        PermissionError
            If the token is malformed, its signature does not match, or it
            has expired.
        """
        if not token.startswith(TOKEN_PREFIX):
            raise PermissionError("Unsupported token format")
        try:
            encoded, signature = token[len(TOKEN_PREFIX) :].rsplit(".", 1)
            payload_json = base64.urlsafe_b64decode(encoded.encode("ascii")).decode("utf-8")
        except (ValueError, binascii.Error, UnicodeDecodeError):
            raise PermissionError("Malformed token")

        if not hmac.compare_digest(self._sign(payload_json), signature):
            raise PermissionError("Signature mismatch")

        try:
            claims = TokenClaims.model_validate(json.loads(payload_json))
        except (ValueError, ValidationError):
            raise PermissionError("Malformed token claims")

        if claims.exp < time.time():
            raise PermissionError("Token expired")
        return claims
