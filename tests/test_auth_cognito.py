from __future__ import annotations

import asyncio
from typing import Any, Dict

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from app.auth import deps
from app.core.settings import S


def build_request(headers: Dict[str, str] | None = None) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "scheme": "http",
        "server": ("testserver", 80),
    }

    async def receive() -> Dict[str, Any]:
        return {"type": "http.request", "body": b"", "more_body": False}

    return Request(scope, receive)


def run_async(coro):
    return asyncio.run(coro)


@pytest.fixture
def cognito():
    saved = (S.cognito_user_pool_id, S.cognito_app_client_id, S.cognito_region)
    object.__setattr__(S, "cognito_user_pool_id", "pool")
    object.__setattr__(S, "cognito_app_client_id", "client")
    object.__setattr__(S, "cognito_region", "us-east-1")
    yield
    object.__setattr__(S, "cognito_user_pool_id", saved[0])
    object.__setattr__(S, "cognito_app_client_id", saved[1])
    object.__setattr__(S, "cognito_region", saved[2])


def test_issuer_uses_cognito_region(cognito) -> None:
    assert deps._cognito_issuer() == "https://cognito-idp.us-east-1.amazonaws.com/pool"


def test_requires_bearer_token_when_cognito_enabled(cognito) -> None:
    with pytest.raises(HTTPException) as exc:
        run_async(deps.get_caller(build_request(headers={"x-user-sub": "spoofed"})))
    assert exc.value.status_code == 401


def test_uses_verified_claims(cognito, monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_verify(token: str) -> Dict[str, Any]:
        assert token == "token123"
        return {"sub": "user-abc", "email": "ada@example.com", "name": "Ada Lovelace"}

    monkeypatch.setattr(deps, "_verified_claims", fake_verify)
    caller = run_async(deps.get_caller(build_request(headers={"authorization": "Bearer token123"})))

    assert caller == deps.Caller(user_sub="user-abc", email="ada@example.com", name="Ada Lovelace")


def test_requires_subject(cognito, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(deps, "_verified_claims", lambda token: {})
    with pytest.raises(HTTPException) as exc:
        run_async(deps.get_caller(build_request(headers={"authorization": "Bearer token123"})))
    assert exc.value.status_code == 401


def test_malformed_token_header_is_401(cognito) -> None:
    with pytest.raises(HTTPException) as exc:
        deps._verified_claims("not-a-jwt")
    assert exc.value.status_code == 401
