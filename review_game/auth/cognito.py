from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
from cachetools import TTLCache
from jose import JWTError, jwt

from ..settings import settings


class CognitoAuthError(Exception):
    def __init__(self, message: str, *, status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class VerifiedUser:
    sub: str
    username: str
    email: str | None
    claims: dict[str, Any]


_JWKS_CACHE: TTLCache[str, dict[str, Any]] = TTLCache(maxsize=4, ttl=60 * 60)


def _issuer() -> str:
    if not settings.cognito_user_pool_id:
        raise CognitoAuthError("COGNITO_USER_POOL_ID is not set", status_code=500)
    region = settings.cognito_region or settings.aws_region
    return f"https://cognito-idp.{region}.amazonaws.com/{settings.cognito_user_pool_id}"


def _jwks_url() -> str:
    return f"{_issuer()}/.well-known/jwks.json"


def _get_jwks() -> dict[str, Any]:
    url = _jwks_url()
    cached = _JWKS_CACHE.get(url)
    if cached:
        return cached

    try:
        with httpx.Client(timeout=10.0) as client:
            resp = client.get(url)
            resp.raise_for_status()
            jwks = resp.json()
    except httpx.HTTPError as e:
        raise CognitoAuthError("Unable to load signing keys", status_code=503) from e

    _JWKS_CACHE[url] = jwks
    return jwks


def verify_bearer_token(token: str) -> VerifiedUser:
    if not token:
        raise CognitoAuthError("Missing bearer token")
    if not settings.cognito_client_id:
        raise CognitoAuthError("COGNITO_CLIENT_ID is not set", status_code=500)

    jwks = _get_jwks()
    issuer = _issuer()

    try:
        # Verifies signature, exp, aud and iss.
        claims = jwt.decode(
            token,
            jwks,
            algorithms=["RS256"],
            audience=settings.cognito_client_id,
            issuer=issuer,
            options={"verify_aud": True, "verify_iss": True},
        )
    except JWTError as e:
        raise CognitoAuthError("Invalid or expired token") from e

    token_use = claims.get("token_use")
    if token_use and token_use not in ("id", "access"):
        raise CognitoAuthError("Invalid token use")

    sub = str(claims.get("sub") or "")
    if not sub:
        raise CognitoAuthError("Token has no subject")

    email = claims.get("email")
    if email is not None:
        email = str(email)

    username = (
        str(claims.get("preferred_username") or "").strip()
        or str(claims.get("cognito:username") or "").strip()
        or (email or "")
    )

    return VerifiedUser(sub=sub, username=username, email=email, claims=claims)
