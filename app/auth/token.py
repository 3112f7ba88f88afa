"""
Bearer Token Verification

Access tokens are RS256 JWTs issued by an OIDC provider (Cognito user pool
or Auth0 tenant). Every request that touches documents carries one; the
organization the caller acts for is read from the token and nowhere else.

  Claim lookup order
  ──────────────────
    organization  custom:organization_id → <namespace>/organization_id → organization_id
    role          custom:role → <namespace>/role → role → cognito:groups[0]

  JWKS
  ────
    <issuer>/.well-known/jwks.json, cached per issuer for an hour. A kid
    missing from the cached set triggers one forced refresh (key rotation).

Roles, lowest to highest: viewer < member < admin < owner.
  viewer  read status and listings
  member  analyze and upload
  admin   re-run pipeline stages
  owner   organization administration
"""

from __future__ import annotations

import logging
import time
from typing import Annotated, Any
from uuid import UUID

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwk, jwt
from pydantic import BaseModel

from app.core.config import settings
from app.schemas.documents import UploadErrors

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=True)

VALID_ROLES = frozenset({"owner", "admin", "member", "viewer"})


class TokenPayload(BaseModel):
    """Verified claims handed to route handlers."""
    sub:             str
    email:           str
    organization_id: UUID
    role:            str
    exp:             int
    iss:             str


# ---------------------------------------------------------------------------
# JWKS cache
# ---------------------------------------------------------------------------

_JWKS_CACHE: dict[str, tuple[dict, float]] = {}
_JWKS_TTL_SECONDS = 3600


async def _fetch_jwks(issuer: str, force: bool = False) -> dict:
    now = time.monotonic()
    cached = _JWKS_CACHE.get(issuer)
    if cached and not force and now - cached[1] < _JWKS_TTL_SECONDS:
        return cached[0]

    async with httpx.AsyncClient(timeout=10.0) as client:
        resp = await client.get(f"{issuer.rstrip('/')}/.well-known/jwks.json")
        resp.raise_for_status()
        jwks = resp.json()

    _JWKS_CACHE[issuer] = (jwks, now)
    logger.debug("JWKS refreshed | issuer=%s keys=%d", issuer, len(jwks.get("keys", [])))
    return jwks


async def _get_signing_key(token: str):
    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except JWTError as exc:
        raise _unauthorized("Malformed token header") from exc

    for force in (False, True):
        jwks = await _fetch_jwks(settings.auth_issuer, force=force)
        for key_data in jwks.get("keys", []):
            if key_data.get("kid") == kid:
                return jwk.construct(key_data).public_key()

    logger.warning("Signing key not found | kid=%s", kid)
    raise _unauthorized(f"No signing key for kid={kid}")


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------

def _unauthorized(reason: str) -> HTTPException:
    detail = UploadErrors.unauthorized().model_dump(mode="json")
    detail["message"] = f"{detail['message']} ({reason})"
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _first_claim(claims: dict[str, Any], name: str) -> Any:
    for key in (f"custom:{name}", f"{settings.auth0_namespace}/{name}", name):
        value = claims.get(key)
        if value:
            return value
    return None


def _extract_organization_id(claims: dict[str, Any]) -> UUID:
    raw = _first_claim(claims, "organization_id")
    if not raw:
        raise _unauthorized("token has no organization_id claim")
    try:
        return UUID(str(raw))
    except ValueError as exc:
        raise _unauthorized(f"organization_id is not a UUID: {raw}") from exc


def _extract_role(claims: dict[str, Any]) -> str:
    role = _first_claim(claims, "role")
    if not role:
        groups = claims.get("cognito:groups") or []
        role = groups[0] if groups else None
    if role not in VALID_ROLES:
        logger.warning("Unknown role in token | role=%s → viewer", role)
        return "viewer"
    return role


async def verify_token(token: str) -> TokenPayload:
    """Signature, expiry, issuer and audience are all checked before any claim is read."""
    signing_key = await _get_signing_key(token)
    try:
        claims = jwt.decode(
            token,
            signing_key,
            algorithms=["RS256"],
            audience=settings.auth_audience,
            issuer=settings.auth_issuer,
            options={"verify_exp": True},
        )
    except ExpiredSignatureError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=UploadErrors.token_expired().model_dump(mode="json"),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    except JWTError as exc:
        raise _unauthorized(str(exc)) from exc

    return TokenPayload(
        sub=claims["sub"],
        email=claims.get("email", ""),
        organization_id=_extract_organization_id(claims),
        role=_extract_role(claims),
        exp=claims["exp"],
        iss=claims["iss"],
    )


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> TokenPayload:
    return await verify_token(credentials.credentials)
