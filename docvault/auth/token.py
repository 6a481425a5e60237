"""
Bearer token verification.

The hosted identity provider signs access tokens with RS256 after Google
sign-in. The `sub` claim is the owner id every document row is scoped by.

    iss   must equal settings.auth_issuer
    aud   must equal settings.auth_audience
    kid   looked up in <issuer>/.well-known/jwks.json (JwksCache)
"""

from __future__ import annotations

import logging
import time
from typing import Annotated
from uuid import UUID

import httpx
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel

from docvault.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# HTTP Bearer extractor
# ---------------------------------------------------------------------------

bearer_scheme = HTTPBearer(auto_error=True)


# ---------------------------------------------------------------------------
# Verified token payload
# ---------------------------------------------------------------------------

class TokenPayload(BaseModel):
    """Parsed, validated JWT claims — passed to route handlers."""
    sub:   str
    email: str
    exp:   int
    iss:   str

    @property
    def owner_id(self) -> UUID:
        return UUID(self.sub)


# ---------------------------------------------------------------------------
# Key set lookup
# ---------------------------------------------------------------------------

async def _fetch_jwks(issuer: str) -> dict:
    """GET <issuer>/.well-known/jwks.json. No caching here; see JwksCache."""
    url = f"{issuer.rstrip('/')}/.well-known/jwks.json"
    async with httpx.AsyncClient(timeout=10.0) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.json()


class JwksCache:
    """Key sets per issuer, kept for `ttl` seconds unless a refresh is forced."""

    def __init__(self, ttl: float = 3600.0) -> None:
        self._ttl = ttl
        self._entries: dict[str, tuple[float, list[dict]]] = {}

    def clear(self) -> None:
        self._entries.clear()

    async def keys(self, issuer: str, refresh: bool = False) -> list[dict]:
        entry = self._entries.get(issuer)
        if entry and not refresh and time.monotonic() - entry[0] < self._ttl:
            return entry[1]

        jwks = await _fetch_jwks(issuer)
        keys = list(jwks.get("keys", []))
        self._entries[issuer] = (time.monotonic(), keys)
        logger.debug("JWKS loaded | issuer=%s keys=%d", issuer, len(keys))
        return keys


_jwks_cache = JwksCache()


async def _signing_key_for(token: str) -> dict:
    """
    Resolve the JWK named by the token's `kid` header.

    A kid absent from the cached set triggers exactly one refetch, which is
    how rotated keys get picked up.
    """
    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except JWTError as exc:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Invalid token header") from exc

    issuer = settings.auth_issuer
    for refresh in (False, True):
        try:
            keys = await _jwks_cache.keys(issuer, refresh=refresh)
        except httpx.HTTPError as exc:
            logger.error("JWKS fetch failed | issuer=%s error=%s", issuer, exc)
            raise HTTPException(
                status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Identity provider unavailable",
            ) from exc

        match = next((k for k in keys if k.get("kid") == kid), None)
        if match is not None:
            return match

    raise HTTPException(
        status.HTTP_401_UNAUTHORIZED,
        detail=f"No signing key matches kid={kid}",
    )


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

async def verify_token(token: str) -> TokenPayload:
    """Check signature, expiry, issuer and audience; the subject must be a UUID."""
    signing_key = await _signing_key_for(token)

    try:
        claims = jwt.decode(
            token,
            signing_key,
            algorithms=["RS256"],
            audience=settings.auth_audience,
            issuer=settings.auth_issuer,
            options={"verify_exp": True},
        )
    except ExpiredSignatureError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Token has expired")
    except JWTError as exc:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {exc}")

    sub = claims.get("sub") or ""
    try:
        UUID(sub)
    except ValueError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Token subject is not a user id")

    return TokenPayload(
        sub=sub,
        email=claims.get("email", ""),
        exp=claims["exp"],
        iss=claims["iss"],
    )


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

async def get_current_user(
    request:     Request,
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> TokenPayload:
    """
    FastAPI dependency that extracts and validates the Bearer token.

        @router.get("/documents/")
        async def list_docs(user: CurrentUser):
            ...
    """
    payload = await verify_token(credentials.credentials)
    request.state.user_id = payload.sub
    return payload
