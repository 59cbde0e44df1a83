"""Tests for bearer token authentication helpers."""

from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import issue_token
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient
from shopchat.core.auth import (
    AuthConfigurationError,
    AuthTokenValidationError,
    CurrentUser,
    decode_access_token,
    get_current_user,
)


def test_decode_access_token_success(auth_env: None) -> None:
    """A valid token returns the decoded payload."""

    token = issue_token("user-456", user_type="shopkeeper")

    payload = decode_access_token(token)

    assert payload["sub"] == "user-456"
    assert payload["user_type"] == "shopkeeper"


def test_decode_access_token_requires_subject(auth_env: None) -> None:
    """Tokens without a subject are rejected."""

    with pytest.raises(AuthTokenValidationError):
        decode_access_token(issue_token(None))


def test_decode_access_token_requires_access_type(auth_env: None) -> None:
    """Refresh tokens cannot be used as access tokens."""

    with pytest.raises(AuthTokenValidationError):
        decode_access_token(issue_token("user-456", type="refresh"))


def test_decode_access_token_expired(auth_env: None) -> None:
    token = issue_token("user-456", expires_in=timedelta(minutes=-1))

    with pytest.raises(AuthTokenValidationError, match="expired"):
        decode_access_token(token)


def test_decode_access_token_wrong_audience(auth_env: None) -> None:
    with pytest.raises(AuthTokenValidationError):
        decode_access_token(issue_token("user-456", audience="someone-else"))


def test_decode_access_token_configuration_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Missing configuration raises a configuration error."""

    monkeypatch.delenv("AUTH_TOKEN_SECRET", raising=False)
    monkeypatch.delenv("AUTH_TOKEN_AUDIENCE", raising=False)
    monkeypatch.delenv("AUTH_TOKEN_ISSUER", raising=False)

    with pytest.raises(AuthConfigurationError):
        decode_access_token("token")


def _create_test_client() -> TestClient:
    """Create a FastAPI application wired with the auth dependency."""

    app = FastAPI()

    @app.get("/me")
    async def read_me(user: CurrentUser = Depends(get_current_user)) -> dict:
        return {"user_id": user.user_id, "user_type": user.user_type}

    return TestClient(app)


def test_get_current_user_success(auth_env: None) -> None:
    client = _create_test_client()
    token = issue_token("user-456", user_type="customer")

    response = client.get("/me", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json() == {"user_id": "user-456", "user_type": "customer"}


def test_get_current_user_missing_header(auth_env: None) -> None:
    response = _create_test_client().get("/me")

    assert response.status_code == 401


def test_get_current_user_invalid_scheme(auth_env: None) -> None:
    token = issue_token("user-456")

    response = _create_test_client().get("/me", headers={"Authorization": f"Token {token}"})

    assert response.status_code == 401


def test_get_current_user_invalid_signature(auth_env: None) -> None:
    token = issue_token("user-456", secret="another-secret")

    response = _create_test_client().get("/me", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


def test_get_current_user_configuration_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Configuration issues propagate as HTTP 500 errors."""

    monkeypatch.delenv("AUTH_TOKEN_SECRET", raising=False)
    monkeypatch.setenv("AUTH_TOKEN_AUDIENCE", "shopchat")
    monkeypatch.setenv("AUTH_TOKEN_ISSUER", "auth.shopchat")

    response = _create_test_client().get("/me", headers={"Authorization": "Bearer token"})

    assert response.status_code == 500
