from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional

import jwt
import requests
from fastapi import HTTPException, Request

from app.core.settings import S


@dataclass(frozen=True)
class Caller:
    user_sub: str
    email: Optional[str] = None
    name: Optional[str] = None


def _cognito_enabled() -> bool:
    return bool(S.cognito_user_pool_id and S.cognito_app_client_id)


def _cognito_issuer() -> str:
    region = S.cognito_region or S.aws_region
    return f"https://cognito-idp.{region}.amazonaws.com/{S.cognito_user_pool_id}"


@lru_cache(maxsize=1)
def _cognito_jwks() -> Dict[str, Any]:
    resp = requests.get(f"{_cognito_issuer()}/.well-known/jwks.json", timeout=10)
    resp.raise_for_status()
    return resp.json()


def _verified_claims(token: str) -> Dict[str, Any]:
    try:
        kid = jwt.get_unverified_header(token).get("kid", "")
    except jwt.PyJWTError as exc:
        raise HTTPException(401, "Invalid token header") from exc

    jwk = next((k for k in _cognito_jwks().get("keys", []) if k.get("kid") == kid), None)
    if jwk is None:
        raise HTTPException(401, "Unknown signing key")

    try:
        claims = jwt.decode(
            token,
            jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(jwk)),
            algorithms=["RS256"],
            audience=S.cognito_app_client_id if S.cognito_expected_token_use == "id" else None,
            issuer=_cognito_issuer(),
            options={"verify_aud": S.cognito_expected_token_use == "id"},
        )
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(401, "Token expired") from exc
    except jwt.PyJWTError as exc:
        raise HTTPException(401, "Invalid token") from exc

    if S.cognito_expected_token_use and claims.get("token_use") != S.cognito_expected_token_use:
        raise HTTPException(401, "Unexpected token use")
    return claims


def _unverified_claims(token: str) -> Dict[str, Any]:
    if token.count(".") != 2:
        return {}
    payload = token.split(".", 2)[1]
    if not payload:
        return {}
    try:
        data = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def extract_bearer_token(auth_header: Optional[str]) -> str:
    if not auth_header:
        raise HTTPException(401, "Missing Authorization header")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(401, "Invalid Authorization header")
    return token.strip()


def _caller_from_claims(claims: Dict[str, Any], fallback_sub: Optional[str] = None) -> Caller:
    sub = claims.get("sub") or claims.get("cognito:username") or claims.get("username") or fallback_sub
    if not isinstance(sub, str) or not sub.strip():
        raise HTTPException(401, "Token missing subject")
    email = claims.get("email")
    name = claims.get("name") or " ".join(p for p in (claims.get("given_name"), claims.get("family_name")) if p)
    return Caller(user_sub=sub.strip(), email=email or None, name=name or None)


async def get_caller(request: Request) -> Caller:
    """
    Cognito access/id tokens when a user pool is configured.

    Dev fallback: ``x-user-sub`` header, or ``Authorization: Bearer <jwt or user id>``.
    """
    if _cognito_enabled() and isinstance(request, Request):
        token = extract_bearer_token(request.headers.get("authorization"))
        return _caller_from_claims(_verified_claims(token))

    fallback_user = request.headers.get("x-user-sub")
    if fallback_user:
        return Caller(user_sub=fallback_user, email=request.headers.get("x-user-email"))

    token = extract_bearer_token(request.headers.get("authorization", ""))
    return _caller_from_claims(_unverified_claims(token), fallback_sub=token)
