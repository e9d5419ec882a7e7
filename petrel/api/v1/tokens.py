"""Token API endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel, Field

from petrel.api.dependencies import AuthDep, TokenServiceDep
from petrel.api.v1.responses import Envelope, ok
from petrel.models.token import ApiToken

router = APIRouter()


class CreateTokenRequest(BaseModel):
    name: str = Field(default="", max_length=128)
    ttl: int | None = Field(default=None, ge=1, description="Lifetime in seconds")


class TokenResponse(BaseModel):
    """Token metadata. The plaintext is only ever shown on creation."""

    id: str
    name: str
    prefix: str
    expires_at: datetime
    created_at: datetime
    last_used_at: datetime | None


def _token_to_response(token: ApiToken) -> dict:
    return TokenResponse(
        id=token.id,
        name=token.name,
        prefix=token.token_prefix,
        expires_at=token.expires_at,
        created_at=token.created_at,
        last_used_at=token.last_used_at,
    ).model_dump(mode="json")


@router.post("", response_model=Envelope, status_code=201)
async def create_token(
    request: CreateTokenRequest,
    tokens: TokenServiceDep,
    owner: AuthDep,
) -> Envelope:
    token, plaintext = await tokens.create(owner, name=request.name, ttl_seconds=request.ttl)
    data = _token_to_response(token)
    data["token"] = plaintext
    return ok("Token created", data, status=201)


@router.get("", response_model=Envelope)
async def list_tokens(tokens: TokenServiceDep, owner: AuthDep) -> Envelope:
    items = await tokens.list(owner)
    return ok(f"{len(items)} tokens", {"items": [_token_to_response(t) for t in items]})


@router.delete("/{token_id}", response_model=Envelope)
async def delete_token(token_id: str, tokens: TokenServiceDep, owner: AuthDep) -> Envelope:
    await tokens.delete(owner, token_id)
    return ok(f"Token {token_id} deleted")
