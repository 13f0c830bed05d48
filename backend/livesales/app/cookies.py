"""Refresh and CSRF cookie handling."""
from __future__ import annotations

from fastapi import Request, Response

from .config import Settings


def is_secure_context(request: Request | None, settings: Settings) -> bool:
    """Return ``True`` when cookies must carry the ``Secure`` attribute."""

    if settings.is_production or settings.auth.force_https:
        return True
    if settings.auth.secure_domain:
        return True
    if request is None:
        return False
    if request.headers.get("x-forwarded-proto", "").lower() == "https":
        return True
    return request.url.scheme == "https"


def set_refresh_cookie(response: Response, request: Request, settings: Settings, token: str) -> None:
    auth = settings.auth
    response.set_cookie(
        key=auth.refresh_cookie_name,
        value=token,
        max_age=auth.refresh_token_ttl_seconds,
        path=auth.refresh_cookie_path,
        secure=is_secure_context(request, settings),
        httponly=True,
        samesite="strict",
    )


def clear_refresh_cookie(response: Response, request: Request, settings: Settings) -> None:
    auth = settings.auth
    response.delete_cookie(
        key=auth.refresh_cookie_name,
        path=auth.refresh_cookie_path,
        secure=is_secure_context(request, settings),
        httponly=True,
        samesite="strict",
    )


def set_csrf_cookie(response: Response, request: Request, settings: Settings, token: str) -> None:
    # Readable by scripts: the client echoes it in the CSRF header.
    response.set_cookie(
        key=settings.csrf.cookie_name,
        value=token,
        max_age=settings.csrf.cookie_ttl_seconds,
        path="/",
        secure=is_secure_context(request, settings),
        httponly=False,
        samesite="strict",
    )


def clear_csrf_cookie(response: Response, request: Request, settings: Settings) -> None:
    response.delete_cookie(
        key=settings.csrf.cookie_name,
        path="/",
        secure=is_secure_context(request, settings),
        httponly=False,
        samesite="strict",
    )


def read_refresh_cookie(request: Request, settings: Settings) -> str | None:
    value = request.cookies.get(settings.auth.refresh_cookie_name)
    return value or None


__all__ = [
    "clear_csrf_cookie",
    "clear_refresh_cookie",
    "is_secure_context",
    "read_refresh_cookie",
    "set_csrf_cookie",
    "set_refresh_cookie",
]
