"""Common FastAPI dependency helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator

from fastapi import Depends, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import User
from .errors import ApiError, TokenExpiredError, TokenInvalidError
from .resources import AuthResources
from .security import AccessClaims


_bearer_scheme = HTTPBearer(auto_error=False)


def get_resources(request: Request) -> AuthResources:
    return request.app.state.resources


async def get_session(resources: AuthResources = Depends(get_resources)) -> AsyncIterator[AsyncSession]:
    """Provide an async SQLAlchemy session."""

    async with resources.database.session() as session:
        yield session


@dataclass
class CurrentUser:
    """Authenticated user together with the access token claims."""

    user: User
    claims: AccessClaims

    @property
    def session_id(self) -> str | None:
        return self.claims.session_id


def _access_claims(
    credentials: HTTPAuthorizationCredentials | None,
    resources: AuthResources,
) -> AccessClaims:
    if credentials is None or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "ACCESS_TOKEN_REQUIRED", "Access token required")
    try:
        return resources.tokens.verify_access_token(credentials.credentials)
    except TokenExpiredError as exc:
        raise ApiError(
            status.HTTP_401_UNAUTHORIZED, "ACCESS_TOKEN_EXPIRED", "Access token expired"
        ) from exc
    except TokenInvalidError as exc:
        raise ApiError(
            status.HTTP_401_UNAUTHORIZED, "INVALID_ACCESS_TOKEN", "Invalid access token"
        ) from exc


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    resources: AuthResources = Depends(get_resources),
    db: AsyncSession = Depends(get_session),
) -> CurrentUser:
    claims = _access_claims(credentials, resources)
    user = await db.get(User, claims.user_id)
    if user is None:
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "INVALID_ACCESS_TOKEN", "Invalid access token")
    if not user.is_active:
        raise ApiError(status.HTTP_403_FORBIDDEN, "ACCOUNT_DEACTIVATED", "Account deactivated")
    return CurrentUser(user=user, claims=claims)


async def require_session_csrf(
    request: Request,
    current: CurrentUser = Depends(get_current_user),
    resources: AuthResources = Depends(get_resources),
) -> CurrentUser:
    """Validate the session-bound CSRF token on mutating requests."""

    await resources.session_csrf.protect(request, current.session_id, current.user.id)
    return current


async def require_double_submit_csrf(
    request: Request,
    response: Response,
    resources: AuthResources = Depends(get_resources),
) -> str | None:
    return await resources.refresh_csrf.protect(request, response)


__all__ = [
    "CurrentUser",
    "get_current_user",
    "get_resources",
    "get_session",
    "require_double_submit_csrf",
    "require_session_csrf",
]
