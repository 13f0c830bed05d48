"""Session issuance shared by password and two-factor login."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from fastapi import Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import User
from .audit import extract_client_ip, extract_user_agent, record_audit_event
from .cookies import read_refresh_cookie, set_refresh_cookie
from .errors import CacheUnavailableError
from .logging import get_logger
from .refresh_tokens import RefreshTokenStore
from .resources import AuthResources
from .schemas import serialize_user
from .security import new_session_id


logger = get_logger("livesales.sessions")


def presented_refresh_token(
    request: Request, resources: AuthResources, body_token: str | None = None
) -> str | None:
    """Return the refresh token carried by the configured transport."""

    if resources.settings.auth.uses_refresh_cookie:
        return read_refresh_cookie(request, resources.settings)
    return (body_token or "").strip() or None


def attach_refresh_token(
    payload: dict[str, Any],
    request: Request,
    response: Response,
    resources: AuthResources,
    token: str,
) -> None:
    if resources.settings.auth.uses_refresh_cookie:
        set_refresh_cookie(response, request, resources.settings, token)
    else:
        payload["refreshToken"] = token


async def issue_session(
    db: AsyncSession,
    request: Request,
    response: Response,
    resources: AuthResources,
    user: User,
    *,
    action: str,
    message: str,
    metadata: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Open a new session for ``user`` and commit it.

    Updates the activity timestamps, persists a refresh token, records the
    audit event and returns the response payload with a fresh access token.
    """

    now = datetime.now(timezone.utc)
    session_id = new_session_id()
    user.last_login_at = now
    user.last_activity_at = now

    store = RefreshTokenStore(db, resources.tokens)
    refresh = await store.issue(
        user_id=user.id,
        session_id=session_id,
        user_agent=extract_user_agent(request),
        ip_address=extract_client_ip(request),
    )
    access = resources.tokens.generate_access_token(
        user_id=user.id,
        email=user.email,
        role=user.role.value,
        session_id=session_id,
    )
    await record_audit_event(
        db,
        action=action,
        result="success",
        actor_user_id=user.id,
        target_user_id=user.id,
        request=request,
        metadata=metadata,
    )
    await db.commit()

    payload: dict[str, Any] = {
        "message": message,
        "user": serialize_user(user),
        "accessToken": access.token,
        "expiresIn": resources.settings.auth.access_token_ttl_seconds,
    }
    attach_refresh_token(payload, request, response, resources, refresh.token)

    if resources.session_csrf.enabled:
        try:
            payload["csrfToken"] = await resources.session_csrf.create(session_id)
        except CacheUnavailableError as exc:
            # Mutating calls on this session will be denied until rotation succeeds.
            logger.error("csrf_session_create_failed", user_id=user.id, error=str(exc))
            payload["csrfToken"] = None

    logger.info("session_issued", user_id=user.id, action=action)
    return payload


__all__ = ["attach_refresh_token", "issue_session", "presented_refresh_token"]
