"""Cross-site request forgery protection.

Two independent mechanisms are provided:

* :class:`DoubleSubmitCsrf` compares a script-readable cookie with an echoed
  header. It needs no server state and guards the cookie-authenticated
  endpoints (refresh, logout) that must work before a session exists.
* :class:`SessionCsrfService` binds a token to an authenticated session id in
  the cache and guards state-changing authenticated routes. It is wired in
  only when ``csrf.session_enabled`` is set; otherwise
  :class:`NoopSessionCsrfGuard` takes its place.
"""
from __future__ import annotations

import hmac
import secrets

from fastapi import Request, Response

from .audit import extract_client_ip
from .config import Settings
from .cookies import set_csrf_cookie
from .errors import CacheUnavailableError, CsrfError
from .logging import get_logger
from .storage import CacheBackend


logger = get_logger("livesales.csrf")

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def generate_csrf_token() -> str:
    """Return a 256-bit random token encoded as hex."""

    return secrets.token_hex(32)


def tokens_match(expected: str, candidate: str) -> bool:
    """Constant-time comparison of two token strings."""

    return hmac.compare_digest(expected.encode("utf-8"), candidate.encode("utf-8"))


class DoubleSubmitCsrf:
    """Cookie-to-header CSRF check for cookie-authenticated endpoints."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._cookie_name = settings.csrf.cookie_name
        self._header_name = settings.csrf.header_name

    def issue(self, request: Request, response: Response) -> str:
        """Return the request's CSRF token, minting and setting one if absent."""

        token = request.cookies.get(self._cookie_name)
        if not token:
            token = generate_csrf_token()
            set_csrf_cookie(response, request, self._settings, token)
        response.headers[self._header_name] = token
        return token

    async def protect(self, request: Request, response: Response) -> str:
        token = self.issue(request, response)
        if request.method.upper() in SAFE_METHODS:
            return token

        header_token = request.headers.get(self._header_name)
        if not header_token:
            logger.warning(
                "csrf_header_missing",
                mode="double_submit",
                path=request.url.path,
                method=request.method,
                ip=extract_client_ip(request),
            )
            raise CsrfError(
                "CSRF_TOKEN_REQUIRED",
                f"CSRF token required in {self._header_name} header",
            )
        if not tokens_match(token, header_token):
            logger.warning(
                "csrf_token_mismatch",
                mode="double_submit",
                path=request.url.path,
                method=request.method,
                ip=extract_client_ip(request),
                user_agent=request.headers.get("user-agent"),
            )
            raise CsrfError("CSRF_TOKEN_INVALID", "CSRF token invalid")
        return token


class NoopDoubleSubmitCsrf:
    """Stand-in used when refresh tokens travel in the request body."""

    async def protect(self, request: Request, response: Response) -> str | None:
        return None


class SessionCsrfService:
    """Session-bound CSRF tokens stored in the cache under ``csrf:{sid}``."""

    enabled = True

    def __init__(
        self,
        cache: CacheBackend,
        *,
        ttl_seconds: int = 86_400,
        namespace: str = "csrf",
        header_name: str = "X-CSRF-Token",
    ) -> None:
        self._cache = cache
        self._ttl = ttl_seconds
        self._namespace = namespace.rstrip(":")
        self._header_name = header_name

    def _key(self, session_id: str) -> str:
        return f"{self._namespace}:{session_id}"

    async def create(self, session_id: str) -> str:
        token = generate_csrf_token()
        await self._cache.set(self._key(session_id), token.encode("utf-8"), ttl=self._ttl)
        return token

    async def rotate(self, session_id: str) -> str:
        """Replace the session token, invalidating the previous value."""

        return await self.create(session_id)

    async def delete(self, session_id: str) -> None:
        await self._cache.delete(self._key(session_id))

    async def get(self, session_id: str) -> str | None:
        raw = await self._cache.get(self._key(session_id))
        if raw is None:
            return None
        return raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)

    async def verify(self, session_id: str, header_token: str | None) -> None:
        """Raise :class:`CsrfError` unless ``header_token`` matches the session."""

        if not header_token:
            raise CsrfError("CSRF_TOKEN_MISSING", "CSRF token required")
        try:
            stored = await self.get(session_id)
        except CacheUnavailableError as exc:
            logger.error("csrf_session_check_failed", error=str(exc))
            raise CsrfError("CSRF_ERROR", "CSRF validation failed") from exc
        if stored is None:
            raise CsrfError("CSRF_SESSION_EXPIRED", "CSRF session expired")
        if not tokens_match(stored, header_token):
            raise CsrfError("CSRF_TOKEN_INVALID", "Invalid CSRF token")

    async def protect(self, request: Request, session_id: str | None, user_id: int | None = None) -> None:
        if request.method.upper() in SAFE_METHODS:
            return
        # Tokens minted without a session carry nothing to bind against.
        if not session_id:
            return
        try:
            await self.verify(session_id, request.headers.get(self._header_name))
        except CsrfError as exc:
            logger.warning(
                "csrf_session_validation_failed",
                code=exc.code,
                user_id=user_id,
                path=request.url.path,
                method=request.method,
                ip=extract_client_ip(request),
                user_agent=request.headers.get("user-agent"),
            )
            raise


class NoopSessionCsrfGuard:
    """Session CSRF strategy used when the feature flag is off."""

    enabled = False

    async def create(self, session_id: str) -> None:
        return None

    async def rotate(self, session_id: str) -> None:
        return None

    async def delete(self, session_id: str) -> None:
        return None

    async def protect(self, request: Request, session_id: str | None, user_id: int | None = None) -> None:
        return None


__all__ = [
    "DoubleSubmitCsrf",
    "NoopDoubleSubmitCsrf",
    "NoopSessionCsrfGuard",
    "SAFE_METHODS",
    "SessionCsrfService",
    "generate_csrf_token",
    "tokens_match",
]
