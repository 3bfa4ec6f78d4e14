"""Tests for api/api/security.py and api/api/middleware/auth.py

Covers:
- TokenManager: round trip, signature and expiry checks, TTL cap
- AuthenticationMiddleware: missing/invalid credentials, expired tokens,
  public paths, identity on request.state
"""

from __future__ import annotations

import base64
import json
import time

import pytest
from helpers import auth_headers
from httpx import AsyncClient
from pydantic import SecretStr

from api.security import TOKEN_PREFIX, TokenConfig, TokenManager


@pytest.fixture()
def manager() -> TokenManager:
    return TokenManager(TokenConfig(jwt_secret=SecretStr("unit-test-secret"), max_token_ttl_seconds=7200))


# ---------------------------------------------------------------------------
# TokenManager
# ---------------------------------------------------------------------------


class TestTokenManager:
    def test_round_trip(self, manager: TokenManager) -> None:
        token = manager.generate_token("user-1", "tenant-a", "CONTRACTOR")

        claims = manager.validate_token(token)

        assert token.startswith(TOKEN_PREFIX)
        assert claims.sub == "user-1"
        assert claims.tenant_id == "tenant-a"
        assert claims.role == "CONTRACTOR"
        assert claims.iss == "servicedesk"

    def test_ttl_is_capped(self, manager: TokenManager) -> None:
        claims = manager.validate_token(manager.generate_token("u", "t", "END_USER", ttl_seconds=999_999))

        assert claims.exp - claims.iat == pytest.approx(7200)

    def test_expired_token_rejected(self, manager: TokenManager, monkeypatch) -> None:
        token = manager.generate_token("u", "t", "END_USER", ttl_seconds=60)
        monkeypatch.setattr(time, "time", lambda: 4_000_000_000.0)

        with pytest.raises(PermissionError, match="expired"):
            manager.validate_token(token)

    def test_tampered_payload_rejected(self, manager: TokenManager) -> None:
        token = manager.generate_token("u", "tenant-a", "END_USER")
        encoded, signature = token[len(TOKEN_PREFIX) :].rsplit(".", 1)
        claims = json.loads(base64.urlsafe_b64decode(encoded))
        claims["role"] = "SUPER_ADMIN"
        forged = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode()

        with pytest.raises(PermissionError, match="Signature mismatch"):
            manager.validate_token(f"{TOKEN_PREFIX}{forged}.{signature}")

    def test_other_secret_rejected(self, manager: TokenManager) -> None:
        other = TokenManager(TokenConfig(jwt_secret=SecretStr("another-secret")))

        with pytest.raises(PermissionError):
            manager.validate_token(other.generate_token("u", "t", "END_USER"))

    @pytest.mark.parametrize("token", ["", "Bearer", "eyJhbGciOi.jwt.token", f"{TOKEN_PREFIX}not-base64"])
    def test_malformed_tokens_rejected(self, manager: TokenManager, token: str) -> None:
        with pytest.raises(PermissionError):
            manager.validate_token(token)


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


class TestAuthenticationMiddleware:
    @pytest.mark.asyncio
    async def test_missing_header_is_401(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/tickets")

        assert resp.status_code == 401
        assert resp.json()["detail"] == "Missing Authorization header"

    @pytest.mark.asyncio
    async def test_non_bearer_scheme_is_401(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/tickets", headers={"Authorization": "Basic dXNlcjpwYXNz"})

        assert resp.status_code == 401
        assert "Bearer" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_garbage_token_is_401(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/tickets", headers={"Authorization": "Bearer sddev.garbage.sig"})

        assert resp.status_code == 401
        assert resp.json()["detail"].startswith("Invalid token")

    @pytest.mark.asyncio
    async def test_expired_token_is_403(self, client: AsyncClient, monkeypatch) -> None:
        headers = auth_headers("requester")
        real_time = time.time
        monkeypatch.setattr(time, "time", lambda: real_time() + 2 * 86400)

        resp = await client.get("/api/v1/tickets", headers=headers)

        assert resp.status_code == 403
        assert resp.json()["detail"] == "Token has expired"

    @pytest.mark.asyncio
    async def test_unknown_role_is_403(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/tickets", headers=auth_headers("requester", role="JANITOR"))

        assert resp.status_code == 403

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/api/v1/health", "/openapi.json"])
    async def test_public_paths_skip_auth(self, client: AsyncClient, path: str) -> None:
        resp = await client.get(path)

        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_identity_comes_from_token_not_body(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/v1/tickets",
            json={"title": "Door stuck", "user_id": "someone-else", "tenant_id": "tenant-b"},
            headers=auth_headers("requester"),
        )

        assert resp.status_code == 201
        assert resp.json()["user_id"] == "requester"
        listed = await client.get("/api/v1/tickets", headers=auth_headers("requester"))
        assert [t["id"] for t in listed.json()] == [resp.json()["id"]]
