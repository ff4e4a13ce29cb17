"""
Bearer-token authentication for the certificate API.

Tokens are JWTs. HS256 tokens are checked against CERT_JWT_SECRET; asymmetric
tokens (RS256/ES256) are checked against the keys published at
CERT_JWKS_URL. The middleware in app_server.py applies this to every /api/*
route except /api/health; routes that need the caller's identity declare
`user: dict = Depends(get_current_user)`.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from settings import Settings

ANONYMOUS_USER = {"sub": "anonymous", "username": "anonymous"}

_bearer = HTTPBearer(auto_error=False)


@lru_cache(maxsize=8)
def _get_jwks_client(jwks_url: str) -> Optional[jwt.PyJWKClient]:
    if not jwks_url:
        return None
    return jwt.PyJWKClient(jwks_url, cache_keys=True)


def decode_bearer_token(token: str, settings: Settings) -> dict:
    """
    Decode and validate a JWT signed with either the shared secret or a JWKS
    key. Raises jwt.InvalidTokenError (or a subclass) on failure.
    """
    header = jwt.get_unverified_header(token)
    alg = header.get("alg", "HS256")

    if alg == "HS256":
        if not settings.jwt_secret:
            raise jwt.InvalidTokenError("CERT_JWT_SECRET is not set; cannot validate HS256 token.")
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )

    client = _get_jwks_client(settings.jwks_url)
    if client is None:
        raise jwt.InvalidTokenError(
            f"Token uses {alg} but CERT_JWKS_URL is not set; cannot verify asymmetric token."
        )
    signing_key = client.get_signing_key_from_jwt(token)
    return jwt.decode(
        token,
        signing_key.key,
        algorithms=[alg],
        options={"verify_aud": False},
    )


def username_from_claims(claims: dict) -> str | None:
    for key in ("username", "preferred_username", "email", "sub"):
        value = claims.get(key)
        if value:
            return str(value)
    return None


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> dict:
    """
    Return the decoded token claims for the caller.

    Raises HTTP 401 when the token is missing or invalid, unless auth is
    disabled in settings.
    """
    settings: Settings = request.app.state.settings
    if settings.auth_disabled:
        return dict(ANONYMOUS_USER)
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid Authorization header.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return decode_bearer_token(credentials.credentials, settings)
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {exc}",
            headers={"WWW-Authenticate": "Bearer"},
        )
