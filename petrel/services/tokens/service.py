"""Token service.

Handles bearer token generation, hashing, validation, expiry and the
first-boot admin token.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import uuid
from pathlib import Path

import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from petrel.config import Settings, get_settings
from petrel.errors import NotFoundError, UnauthorizedError, ValidationError
from petrel.models.token import ApiToken
from petrel.utils.datetime import utc_after, utcnow

logger = structlog.get_logger()

# Token format: pt-{64 hex chars}
_TOKEN_PREFIX = "pt-"
_TOKEN_DISPLAY_LEN = 12


class TokenService:
    """Bearer token lifecycle."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._log = logger.bind(service="tokens")
        self._settings = get_settings()

    @staticmethod
    def generate_token() -> tuple[str, str, str]:
        """Generate a new token.

        Returns:
            Tuple of (plaintext, token_hash, token_prefix)
        """
        plaintext = f"{_TOKEN_PREFIX}{secrets.token_hex(32)}"
        return plaintext, TokenService.hash_token(plaintext), plaintext[:_TOKEN_DISPLAY_LEN]

    @staticmethod
    def hash_token(plaintext: str) -> str:
        return hashlib.sha256(plaintext.encode()).hexdigest()

    async def create(
        self,
        owner: str,
        *,
        name: str = "",
        ttl_seconds: int | None = None,
    ) -> tuple[ApiToken, str]:
        """Create a token for ``owner``.

        The plaintext is returned exactly once; only its hash is stored.

        Returns:
            Tuple of (token record, plaintext)
        """
        ttl = self._settings.security.token_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValidationError(
                message="ttl must be a positive number of seconds",
                details={"field": "ttl", "value": ttl},
            )

        plaintext, token_hash, token_prefix = self.generate_token()
        token = ApiToken(
            id=f"tok-{uuid.uuid4().hex[:12]}",
            token_hash=token_hash,
            token_prefix=token_prefix,
            name=name,
            owner=owner,
            expires_at=utc_after(ttl),
        )
        self._db.add(token)
        await self._db.commit()
        await self._db.refresh(token)

        self._log.info("token.create", token_id=token.id, owner=owner, prefix=token_prefix, ttl=ttl)
        return token, plaintext

    async def validate(self, plaintext: str) -> str:
        """Resolve a presented token to its owner.

        Expiry is checked here, at use time.

        Raises:
            UnauthorizedError: Unknown or expired token
        """
        token_hash = self.hash_token(plaintext)
        result = await self._db.execute(select(ApiToken).where(ApiToken.token_hash == token_hash))
        token = result.scalars().first()

        if token is None or not hmac.compare_digest(token.token_hash, token_hash):
            raise UnauthorizedError("Invalid token")
        if token.is_expired():
            self._log.info("token.expired", token_id=token.id, owner=token.owner)
            raise UnauthorizedError("Token expired")

        token.last_used_at = utcnow()
        await self._db.commit()
        return token.owner

    async def list(self, owner: str) -> list[ApiToken]:
        result = await self._db.execute(
            select(ApiToken).where(ApiToken.owner == owner).order_by(ApiToken.created_at)
        )
        return list(result.scalars().all())

    async def delete(self, owner: str, token_id: str) -> None:
        """Revoke a token.

        Raises:
            NotFoundError: Token missing or not owned by ``owner``
        """
        result = await self._db.execute(
            select(ApiToken).where(ApiToken.id == token_id, ApiToken.owner == owner)
        )
        token = result.scalars().first()
        if token is None:
            raise NotFoundError(f"Token not found: {token_id}", details={"token_id": token_id})

        await self._db.delete(token)
        await self._db.commit()
        self._log.info("token.delete", token_id=token_id, owner=owner)

    async def purge_expired(self) -> int:
        """Delete every expired token.

        Returns:
            Number of deleted tokens
        """
        result = await self._db.execute(delete(ApiToken).where(ApiToken.expires_at <= utcnow()))
        await self._db.commit()
        return result.rowcount or 0

    @staticmethod
    async def auto_provision(db: AsyncSession, settings: Settings) -> str | None:
        """Make sure the admin owner can authenticate on first boot.

        Only runs when anonymous access is disabled:
        1. PETREL_ADMIN_TOKEN env var -> seeded if not stored yet
        2. Else an unexpired admin token exists -> nothing to do
        3. Else generate one and write credentials.json to PETREL_DATA_DIR

        Returns:
            Prefix of the provisioned token, or None if nothing was done
        """
        if settings.security.allow_anonymous:
            return None

        admin = settings.security.admin_owner
        configured = os.environ.get("PETREL_ADMIN_TOKEN")
        if configured:
            token_hash = TokenService.hash_token(configured)
            existing = await db.execute(select(ApiToken).where(ApiToken.token_hash == token_hash))
            if existing.scalars().first() is not None:
                return None
            db.add(
                ApiToken(
                    id=f"tok-{uuid.uuid4().hex[:12]}",
                    token_hash=token_hash,
                    token_prefix=configured[:_TOKEN_DISPLAY_LEN],
                    name="admin (configured)",
                    owner=admin,
                    expires_at=utc_after(settings.security.token_ttl_seconds),
                )
            )
            await db.commit()
            logger.info("token.provision.configured", owner=admin)
            return configured[:_TOKEN_DISPLAY_LEN]

        existing = await db.execute(
            select(ApiToken).where(ApiToken.owner == admin, ApiToken.expires_at > utcnow())
        )
        if existing.scalars().first() is not None:
            logger.debug("token.provision.skip", reason="admin token exists")
            return None

        plaintext, token_hash, token_prefix = TokenService.generate_token()
        db.add(
            ApiToken(
                id=f"tok-{uuid.uuid4().hex[:12]}",
                token_hash=token_hash,
                token_prefix=token_prefix,
                name="admin (generated)",
                owner=admin,
                expires_at=utc_after(settings.security.token_ttl_seconds),
            )
        )
        await db.commit()

        data_dir = Path(os.environ.get("PETREL_DATA_DIR", "."))
        TokenService.write_credentials_file(
            data_dir,
            plaintext,
            f"http://{settings.server.host}:{settings.server.port}",
        )
        logger.info("token.provision.generated", owner=admin, prefix=token_prefix)
        return token_prefix

    @staticmethod
    def write_credentials_file(data_dir: Path, token: str, endpoint: str) -> Path:
        """Write credentials.json (mode 0600) next to the service data."""
        data_dir.mkdir(parents=True, exist_ok=True)
        cred_path = data_dir / "credentials.json"
        cred_path.write_text(
            json.dumps(
                {"token": token, "endpoint": endpoint, "generated_at": utcnow().isoformat()},
                indent=2,
            )
            + "\n"
        )
        try:
            os.chmod(cred_path, 0o600)
        except OSError:
            logger.warning("token.credentials.chmod_failed", path=str(cred_path))
        return cred_path
