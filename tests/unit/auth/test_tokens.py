"""Unit tests for TokenService and request authentication."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from petrel.api.dependencies import authenticate, require_admin
from petrel.config import Settings
from petrel.errors import ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
from petrel.services.tokens import TokenService
from petrel.utils.datetime import utc_before


def create_mock_request(headers: dict[str, str] | None = None) -> Request:
    """Create a mock FastAPI Request with given headers."""
    mock_request = MagicMock(spec=Request)
    mock_request.headers = headers or {}
    return mock_request


@pytest.fixture
def token_service(patched_settings: Settings, db_session: AsyncSession) -> TokenService:
    return TokenService(db_session)


class TestTokenService:
    def test_generate_token_format(self):
        plaintext, token_hash, prefix = TokenService.generate_token()

        assert plaintext.startswith("pt-")
        assert len(plaintext) == 3 + 64
        assert prefix == plaintext[:12]
        assert token_hash == TokenService.hash_token(plaintext)
        assert token_hash != plaintext

    async def test_create_and_validate(self, token_service: TokenService):
        token, plaintext = await token_service.create("alice", name="ci", ttl_seconds=60)

        assert token.id.startswith("tok-")
        assert token.owner == "alice"
        assert token.token_hash != plaintext
        assert await token_service.validate(plaintext) == "alice"
        assert token.last_used_at is not None

    async def test_unknown_token(self, token_service: TokenService):
        with pytest.raises(UnauthorizedError) as exc_info:
            await token_service.validate("pt-unknown")

        assert exc_info.value.message == "Invalid token"

    async def test_expired_token_rejected_at_use(
        self,
        token_service: TokenService,
        db_session: AsyncSession,
    ):
        token, plaintext = await token_service.create("alice", ttl_seconds=60)
        token.expires_at = utc_before(1)
        await db_session.commit()

        with pytest.raises(UnauthorizedError) as exc_info:
            await token_service.validate(plaintext)

        assert exc_info.value.message == "Token expired"

    async def test_invalid_ttl(self, token_service: TokenService):
        with pytest.raises(ValidationError):
            await token_service.create("alice", ttl_seconds=0)

    async def test_list_and_delete_are_owner_scoped(self, token_service: TokenService):
        token, _ = await token_service.create("alice", name="a")
        await token_service.create("bob", name="b")

        assert [t.name for t in await token_service.list("alice")] == ["a"]
        with pytest.raises(NotFoundError):
            await token_service.delete("bob", token.id)

        await token_service.delete("alice", token.id)
        assert await token_service.list("alice") == []


class TestAutoProvision:
    async def test_skipped_in_anonymous_mode(self, db_session: AsyncSession):
        settings = Settings(security={"allow_anonymous": True})

        assert await TokenService.auto_provision(db_session, settings) is None

    async def test_generates_admin_token_and_credentials(
        self,
        token_service: TokenService,
        db_session: AsyncSession,
        tmp_path,
        monkeypatch,
    ):
        monkeypatch.delenv("PETREL_ADMIN_TOKEN", raising=False)
        monkeypatch.setenv("PETREL_DATA_DIR", str(tmp_path))
        settings = Settings(security={"allow_anonymous": False, "admin_owner": "admin"})

        prefix = await TokenService.auto_provision(db_session, settings)

        credentials = json.loads((tmp_path / "credentials.json").read_text())
        assert credentials["token"].startswith(prefix)
        assert await token_service.validate(credentials["token"]) == "admin"
        # A second boot finds the existing admin token
        assert await TokenService.auto_provision(db_session, settings) is None

    async def test_seeds_configured_token(
        self,
        token_service: TokenService,
        db_session: AsyncSession,
        monkeypatch,
    ):
        monkeypatch.setenv("PETREL_ADMIN_TOKEN", "pt-configured-admin-token")
        settings = Settings(security={"allow_anonymous": False})

        await TokenService.auto_provision(db_session, settings)

        assert await token_service.validate("pt-configured-admin-token") == "admin"


class TestAuthenticate:
    async def test_anonymous_default_owner(self, token_service: TokenService):
        assert await authenticate(create_mock_request(), token_service) == "default"

    async def test_anonymous_x_owner(self, token_service: TokenService):
        request = create_mock_request({"X-Owner": "alice"})

        assert await authenticate(request, token_service) == "alice"

    async def test_bearer_token(self, token_service: TokenService):
        _, plaintext = await token_service.create("alice")
        request = create_mock_request({"Authorization": f"Bearer {plaintext}"})

        assert await authenticate(request, token_service) == "alice"

    async def test_bad_token_rejected_even_in_anonymous_mode(self, token_service: TokenService):
        request = create_mock_request({"Authorization": "Bearer pt-wrong"})

        with pytest.raises(UnauthorizedError):
            await authenticate(request, token_service)

    async def test_no_token_without_anonymous(self, token_service: TokenService):
        settings = Settings(security={"allow_anonymous": False})

        with patch("petrel.api.dependencies.get_settings", return_value=settings):
            with pytest.raises(UnauthorizedError):
                await authenticate(create_mock_request(), token_service)

    async def test_require_admin(self, patched_settings: Settings):
        assert await require_admin("admin") == "admin"
        with pytest.raises(ForbiddenError):
            await require_admin("alice")
