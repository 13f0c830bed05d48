"""Password hashing and signed token helpers."""
from __future__ import annotations

import asyncio
import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Final

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from jwt import InvalidTokenError

from .config import AuthSettings
from .errors import TokenExpiredError, TokenInvalidError

_PASSWORD_HASHER: Final[PasswordHasher] = PasswordHasher()

ACCESS_TOKEN_TYPE: Final[str] = "access"
REFRESH_TOKEN_TYPE: Final[str] = "refresh"


def hash_password(password: str) -> str:
    """Hash a password using Argon2id."""

    return _PASSWORD_HASHER.hash(password)


def verify_password(stored_hash: str, candidate: str) -> bool:
    """Verify a plaintext password against the stored hash.

    Mismatches and malformed digests both yield ``False``.
    """

    if not stored_hash or candidate is None:
        return False
    try:
        return _PASSWORD_HASHER.verify(stored_hash, candidate)
    except VerifyMismatchError:
        return False
    except (InvalidHashError, VerificationError):
        return False


async def hash_password_async(password: str) -> str:
    """Run :func:`hash_password` on a worker thread."""

    return await asyncio.to_thread(hash_password, password)


async def verify_password_async(stored_hash: str, candidate: str) -> bool:
    """Run :func:`verify_password` on a worker thread."""

    return await asyncio.to_thread(verify_password, stored_hash, candidate)


def hash_refresh_token(token: str) -> str:
    """Hash refresh tokens before persistence to the database."""

    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def new_session_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class AccessClaims:
    """Validated access token payload."""

    user_id: int
    email: str
    role: str
    session_id: str | None
    expires_at: datetime


@dataclass(frozen=True)
class RefreshClaims:
    """Validated refresh token payload."""

    user_id: int
    session_id: str | None
    token_id: str
    expires_at: datetime


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


class TokenIssuer:
    """Sign and verify access and refresh JWTs with separate secrets."""

    def __init__(self, config: AuthSettings) -> None:
        self._config = config
        self._algorithm = config.jwt_algorithm

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _encode(self, payload: dict[str, Any], secret: str) -> str:
        return jwt.encode(payload, secret, algorithm=self._algorithm)

    def _decode(self, token: str, secret: str, expected_type: str) -> dict[str, Any]:
        if not token:
            raise TokenInvalidError("Token is empty")
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[self._algorithm],
                options={"require": ["sub", "exp", "type"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpiredError("Token expired") from exc
        except InvalidTokenError as exc:
            raise TokenInvalidError("Invalid token") from exc

        if payload.get("type") != expected_type:
            raise TokenInvalidError("Unexpected token type")
        return payload

    @staticmethod
    def _user_id(payload: dict[str, Any]) -> int:
        subject = payload.get("sub")
        try:
            return int(subject)
        except (TypeError, ValueError) as exc:
            raise TokenInvalidError("Token subject is invalid") from exc

    @staticmethod
    def _expiry(payload: dict[str, Any]) -> datetime:
        return datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)

    def generate_access_token(
        self,
        *,
        user_id: int,
        email: str,
        role: str,
        session_id: str | None = None,
    ) -> IssuedToken:
        now = self._now()
        expires_at = now + timedelta(seconds=self._config.access_token_ttl_seconds)
        payload: dict[str, Any] = {
            "sub": str(user_id),
            "userId": user_id,
            "email": email,
            "role": role,
            "type": ACCESS_TOKEN_TYPE,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        if session_id:
            payload["sid"] = session_id
        return IssuedToken(self._encode(payload, self._config.jwt_secret), expires_at)

    def generate_refresh_token(self, *, user_id: int, session_id: str | None = None) -> IssuedToken:
        now = self._now()
        expires_at = now + timedelta(seconds=self._config.refresh_token_ttl_seconds)
        payload: dict[str, Any] = {
            "sub": str(user_id),
            "userId": user_id,
            "type": REFRESH_TOKEN_TYPE,
            # Distinct per issue even within the same second.
            "jti": secrets.token_urlsafe(16),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        if session_id:
            payload["sid"] = session_id
        return IssuedToken(self._encode(payload, self._config.jwt_refresh_secret), expires_at)

    def verify_access_token(self, token: str) -> AccessClaims:
        payload = self._decode(token, self._config.jwt_secret, ACCESS_TOKEN_TYPE)
        return AccessClaims(
            user_id=self._user_id(payload),
            email=str(payload.get("email") or ""),
            role=str(payload.get("role") or "user"),
            session_id=payload.get("sid"),
            expires_at=self._expiry(payload),
        )

    def verify_refresh_token(self, token: str) -> RefreshClaims:
        """Check signature and expiry only; revocation is the store's concern."""

        payload = self._decode(token, self._config.jwt_refresh_secret, REFRESH_TOKEN_TYPE)
        return RefreshClaims(
            user_id=self._user_id(payload),
            session_id=payload.get("sid"),
            token_id=str(payload.get("jti") or ""),
            expires_at=self._expiry(payload),
        )


__all__ = [
    "AccessClaims",
    "IssuedToken",
    "RefreshClaims",
    "TokenIssuer",
    "hash_password",
    "hash_password_async",
    "hash_refresh_token",
    "new_session_id",
    "verify_password",
    "verify_password_async",
]
