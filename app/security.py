from __future__ import annotations

import base64
import binascii
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.hash import pbkdf2_sha512

from app.errors import ApiError
from app.models import Account, AccountRole
from app.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)

PASSWORD_SALT_BYTES = 32
ACCESS_TOKEN_TYPE = "access"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _salted_hasher(salt: bytes):  # type: ignore[no-untyped-def]
    rounds = max(1000, int(get_settings().password_hash_rounds))
    return pbkdf2_sha512.using(salt=salt, rounds=rounds)


def create_password_credential(secret: str) -> tuple[str, str]:
    """Hash ``secret`` under a fresh random salt.

    Returns ``(password_hash, password_salt)``; the salt is base64 text so it
    can live beside the hash in the accounts row.
    """
    salt = secrets.token_bytes(PASSWORD_SALT_BYTES)
    password_hash = _salted_hasher(salt).hash(secret)
    return password_hash, base64.b64encode(salt).decode("ascii")


def verify_password_credential(secret: str, password_hash: str, password_salt: str) -> bool:
    try:
        salt = base64.b64decode(password_salt.encode("ascii"), validate=True)
        # Rounds come from the stored hash so a rounds change keeps old credentials valid.
        rounds = pbkdf2_sha512.from_string(password_hash).rounds
        candidate = pbkdf2_sha512.using(salt=salt, rounds=rounds).hash(secret)
    except (ValueError, TypeError, AttributeError, binascii.Error):
        # Corrupt stored credentials must not crash the login flow.
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), (password_hash or "").encode("utf-8"))


def _signing_key() -> str:
    secret = (get_settings().jwt_secret or "").strip()
    if not secret:
        raise RuntimeError("JWT_SECRET is not configured")
    return secret


def create_access_token(account: Account) -> tuple[str, int, dict[str, Any]]:
    settings = get_settings()
    now = _utcnow()
    expires_delta = timedelta(hours=settings.access_token_hours)
    claims: dict[str, Any] = {
        "sub": str(account.id),
        "username": account.username,
        "role": AccountRole(account.role).value,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + expires_delta).timestamp()),
        "jti": str(uuid4()),
        "typ": ACCESS_TOKEN_TYPE,
    }
    token = jwt.encode(claims, _signing_key(), algorithm=settings.jwt_algorithm)
    return token, int(expires_delta.total_seconds()), claims


def decode_access_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            _signing_key(),
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    if payload.get("typ") != ACCESS_TOKEN_TYPE:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token type is invalid.")

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.isdigit():
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")

    if payload.get("role") not in {role.value for role in AccountRole}:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token role is invalid.")

    return payload


def principal_account_id(claims: dict[str, Any]) -> int:
    return int(claims["sub"])


def require_account(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> dict[str, Any]:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    payload = decode_access_token(credentials.credentials)

    request.state.actor = str(payload.get("role") or "account").lower()
    request.state.actor_id = str(payload.get("username") or payload.get("sub"))
    return payload


def require_roles(*roles: AccountRole) -> Callable[..., dict[str, Any]]:
    if not roles:
        raise ValueError("At least one role is required")
    allowed = {role.value for role in roles}

    def _dependency(claims: dict[str, Any] = Depends(require_account)) -> dict[str, Any]:
        if claims.get("role") not in allowed:
            raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
        return claims

    return _dependency
