"""API token data model.

Stores hashed bearer tokens for authentication.
Plaintext tokens are never stored, only SHA-256 hashes.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from petrel.utils.datetime import utcnow


class ApiToken(SQLModel, table=True):
    """Bearer token owned by a tenant.

    The token_prefix (first 12 chars of the plaintext) is kept for
    identification in logs and listings.
    """

    __tablename__ = "api_tokens"

    id: str = Field(primary_key=True)
    token_hash: str = Field(index=True, unique=True)  # SHA-256 hex digest
    token_prefix: str = Field()
    name: str = Field(default="")
    owner: str = Field(index=True)
    expires_at: datetime = Field(sa_type=DateTime, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    last_used_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at
