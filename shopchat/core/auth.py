"""Bearer token authentication for the chat API.

User accounts and sessions are managed by an external identity provider; this
module only validates the access token it issues and exposes the caller as an
opaque :class:`CurrentUser`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TypedDict, cast

import jwt
from fastapi import HTTPException, Request, status
from jwt import ExpiredSignatureError, InvalidTokenError

__all__ = [
    "AuthConfigurationError",
    "AuthTokenPayload",
    "AuthTokenValidationError",
    "CurrentUser",
    "decode_access_token",
    "get_current_user",
]


class AuthConfigurationError(RuntimeError):
    """Raised when token validation settings are missing."""


class AuthTokenValidationError(ValueError):
    """Raised when the provided access token cannot be validated."""


class _AuthTokenRequiredClaims(TypedDict):
    sub: str


class AuthTokenPayload(_AuthTokenRequiredClaims, total=False):
    """Decoded JWT payload issued by the identity provider."""

    aud: str | list[str]
    email: str
    exp: int
    iat: int
    iss: str
    user_type: str
    type: str


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    user_type: str | None = None
    email: str | None = None


def _get_env(name: str, *, required: bool = True, default: str | None = None) -> str:
    """Fetch an environment variable, raising when a required one is blank."""

    value = os.getenv(name, default)
    if required and (value is None or not value.strip()):
        raise AuthConfigurationError(
            f"Environment variable '{name}' must be set for token validation.",
        )
    if value is None:
        return ""
    return value.strip()


def decode_access_token(token: str) -> AuthTokenPayload:
    """Decode and validate an access token.

    Args:
        token: Encoded JWT from the ``Authorization`` header.

    Returns:
        AuthTokenPayload: Parsed payload containing at least ``sub``.

    Raises:
        AuthConfigurationError: If mandatory environment configuration is missing.
        AuthTokenValidationError: If signature, claims or expiry are invalid.
    """

    secret_key = _get_env("AUTH_TOKEN_SECRET")
    audience = _get_env("AUTH_TOKEN_AUDIENCE")
    issuer = _get_env("AUTH_TOKEN_ISSUER")
    algorithm = _get_env("AUTH_TOKEN_ALGORITHM", required=False, default="HS256")

    try:
        payload = jwt.decode(
            token,
            secret_key,
            algorithms=[algorithm],
            audience=audience,
            issuer=issuer,
            options={"require": ["exp", "aud", "iss", "sub"]},
        )
    except ExpiredSignatureError as exc:
        raise AuthTokenValidationError("Access token has expired.") from exc
    except InvalidTokenError as exc:
        raise AuthTokenValidationError("Access token is invalid.") from exc

    type_claim = payload.get("type")
    if type_claim and type_claim != "access":
        raise AuthTokenValidationError("Token must be an access token.")

    return cast(AuthTokenPayload, payload)


async def get_current_user(request: Request) -> CurrentUser:
    """FastAPI dependency resolving the caller from the bearer token.

    Raises:
        HTTPException: ``401`` when the header is missing or invalid, ``500``
            when token validation is misconfigured.
    """

    authorization = request.headers.get("Authorization")
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header.",
        )

    scheme, _, credentials = authorization.partition(" ")
    if not credentials or scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header must use Bearer scheme.",
        )

    try:
        payload = decode_access_token(credentials)
    except AuthConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    except AuthTokenValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc

    user = CurrentUser(
        user_id=str(payload["sub"]),
        user_type=payload.get("user_type"),
        email=payload.get("email"),
    )
    request.state.user_id = user.user_id
    return user
