"""Authentication API routes."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from fastapi import APIRouter, Body, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ...db.models import RefreshToken, User, UserRole
from ..audit import extract_client_ip, record_audit_event
from ..cookies import clear_csrf_cookie, clear_refresh_cookie
from ..dependencies import (
    CurrentUser,
    get_current_user,
    get_resources,
    get_session,
    require_double_submit_csrf,
    require_session_csrf,
)
from ..errors import ApiError, CacheUnavailableError, RefreshTokenRevokedError, TokenInvalidError
from ..logging import get_logger
from ..refresh_tokens import RefreshTokenStore
from ..resources import AuthResources
from ..schemas import (
    ChangePasswordRequest,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    serialize_user,
    serialize_user_detail,
)
from ..security import hash_password_async, verify_password_async
from ..sessions import attach_refresh_token, issue_session, presented_refresh_token


router = APIRouter(prefix="/auth", tags=["auth"])
csrf_cookie_router = APIRouter(prefix="/auth", tags=["auth"])
session_csrf_router = APIRouter(prefix="/auth", tags=["auth"])

logger = get_logger("livesales.routes.auth")
_optional_bearer = HTTPBearer(auto_error=False)


_dummy_hash: str | None = None


async def _dummy_password_hash() -> str:
    # Unknown emails still pay for one Argon2 verification.
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = await hash_password_async("livesales-unknown-account")
    return _dummy_hash


async def _record_auth_event(
    db: AsyncSession,
    request: Request,
    *,
    action: str,
    result: str,
    actor_user_id: int | None = None,
    target_user_id: int | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> None:
    await record_audit_event(
        db,
        action=action,
        result=result,
        actor_user_id=actor_user_id,
        target_user_id=target_user_id,
        request=request,
        metadata=dict(metadata or {}),
    )


async def _fetch_user_by_email(db: AsyncSession, email: str) -> User | None:
    stmt = select(User).where(func.lower(User.email) == email.strip().lower())
    result = await db.execute(stmt)
    return result.scalars().first()


def _ensure_password_strength(password: str, resources: AuthResources) -> None:
    minimum = resources.settings.auth.min_password_length
    if len(password) < minimum:
        raise ApiError(
            status.HTTP_400_BAD_REQUEST,
            "WEAK_PASSWORD",
            f"Password must be at least {minimum} characters long",
        )


def _refresh_failure(
    request: Request,
    resources: AuthResources,
    status_code: int,
    code: str,
    message: str,
) -> JSONResponse:
    response = JSONResponse(status_code=status_code, content={"error": message, "code": code})
    if resources.settings.auth.uses_refresh_cookie:
        clear_refresh_cookie(response, request, resources.settings)
    return response


def _clear_session_cookies(request: Request, response: Response, resources: AuthResources) -> None:
    if resources.settings.auth.uses_refresh_cookie:
        clear_refresh_cookie(response, request, resources.settings)
        clear_csrf_cookie(response, request, resources.settings)


async def _forget_session_csrf(resources: AuthResources, session_id: str | None) -> None:
    if not session_id:
        return
    try:
        await resources.session_csrf.delete(session_id)
    except CacheUnavailableError as exc:
        logger.warning("csrf_session_delete_failed", error=str(exc))


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(
    payload: RegisterRequest,
    request: Request,
    response: Response,
    resources: AuthResources = Depends(get_resources),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    _ensure_password_strength(payload.password, resources)

    if await _fetch_user_by_email(db, payload.email) is not None:
        raise ApiError(status.HTTP_409_CONFLICT, "USER_EXISTS", "User already exists")

    user = User(
        email=payload.email,
        password_hash=await hash_password_async(payload.password),
        role=UserRole.USER,
        is_active=True,
        email_verified=False,
    )
    db.add(user)
    try:
        await db.flush()
    except IntegrityError as exc:
        # Lost a race against a concurrent registration of the same email.
        await db.rollback()
        raise ApiError(status.HTTP_409_CONFLICT, "USER_EXISTS", "User already exists") from exc

    logger.info("user_registered", user_id=user.id)
    return await issue_session(
        db,
        request,
        response,
        resources,
        user,
        action="auth.register",
        message="Registration successful",
    )


@router.post("/login")
async def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    resources: AuthResources = Depends(get_resources),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    client_ip = extract_client_ip(request)
    user = await _fetch_user_by_email(db, payload.email)

    if user is None:
        await verify_password_async(await _dummy_password_hash(), payload.password)
        logger.warning(
            "login_failed",
            reason="unknown_email",
            ip=client_ip,
            user_agent=request.headers.get("user-agent"),
        )
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "INVALID_CREDENTIALS", "Invalid credentials")

    if not await verify_password_async(user.password_hash, payload.password):
        await _record_auth_event(
            db,
            request,
            action="auth.login",
            result="failure",
            target_user_id=user.id,
            metadata={"reason": "invalid_password"},
        )
        await db.commit()
        logger.warning(
            "login_failed",
            reason="invalid_password",
            user_id=user.id,
            ip=client_ip,
            user_agent=request.headers.get("user-agent"),
        )
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "INVALID_CREDENTIALS", "Invalid credentials")

    if not user.is_active:
        await _record_auth_event(
            db,
            request,
            action="auth.login",
            result="failure",
            target_user_id=user.id,
            metadata={"reason": "account_deactivated"},
        )
        await db.commit()
        logger.warning(
            "login_failed",
            reason="account_deactivated",
            user_id=user.id,
            ip=client_ip,
            user_agent=request.headers.get("user-agent"),
        )
        raise ApiError(status.HTTP_403_FORBIDDEN, "ACCOUNT_DEACTIVATED", "Account deactivated")

    if user.two_factor_enabled:
        if not resources.settings.two_factor.enabled:
            logger.warning("login_blocked_two_factor_unavailable", user_id=user.id)
            raise ApiError(
                status.HTTP_403_FORBIDDEN,
                "2FA_UNAVAILABLE",
                "Two-factor authentication is currently unavailable",
            )
        temp_token = await resources.temp_tokens.create(user.id)
        logger.info("login_two_factor_required", user_id=user.id)
        return {
            "requiresTwoFactor": True,
            "tempToken": temp_token,
            "expiresIn": resources.temp_tokens.ttl_seconds,
        }

    return await issue_session(
        db,
        request,
        response,
        resources,
        user,
        action="auth.login",
        message="Login successful",
        metadata={"method": "password"},
    )


@router.post("/refresh", response_model=None)
async def refresh(
    request: Request,
    response: Response,
    payload: RefreshRequest | None = Body(default=None),
    _csrf: str | None = Depends(require_double_submit_csrf),
    resources: AuthResources = Depends(get_resources),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any] | JSONResponse:
    token = presented_refresh_token(request, resources, payload.refresh_token if payload else None)
    if token is None:
        return _refresh_failure(
            request, resources, status.HTTP_401_UNAUTHORIZED, "NO_REFRESH_TOKEN", "No refresh token provided"
        )

    store = RefreshTokenStore(db, resources.tokens)
    try:
        record, _claims = await store.redeem(token)
    except TokenInvalidError:
        await db.rollback()
        logger.info("refresh_rejected", reason="invalid_signature_or_expired")
        return _refresh_failure(
            request, resources, status.HTTP_401_UNAUTHORIZED, "INVALID_REFRESH_TOKEN", "Invalid refresh token"
        )
    except RefreshTokenRevokedError as exc:
        await db.rollback()
        if exc.reused and exc.user_id is not None:
            await _handle_refresh_reuse(db, request, resources, exc.user_id)
        else:
            logger.info("refresh_rejected", reason=str(exc))
        return _refresh_failure(
            request, resources, status.HTTP_401_UNAUTHORIZED, "INVALID_REFRESH_TOKEN", "Invalid refresh token"
        )

    user = await db.get(User, record.user_id)
    if user is None or not user.is_active:
        await db.rollback()
        return _refresh_failure(
            request, resources, status.HTTP_403_FORBIDDEN, "ACCOUNT_DEACTIVATED", "Account deactivated"
        )

    issued = await store.issue(
        user_id=user.id,
        session_id=record.session_id,
        user_agent=request.headers.get("user-agent"),
        ip_address=extract_client_ip(request),
    )
    access = resources.tokens.generate_access_token(
        user_id=user.id,
        email=user.email,
        role=user.role.value,
        session_id=record.session_id,
    )
    user.last_activity_at = datetime.now(timezone.utc)
    await _record_auth_event(
        db,
        request,
        action="auth.refresh",
        result="success",
        actor_user_id=user.id,
        target_user_id=user.id,
    )
    await db.commit()
    logger.info("token_refreshed", user_id=user.id)

    body: dict[str, Any] = {
        "accessToken": access.token,
        "expiresIn": resources.settings.auth.access_token_ttl_seconds,
        "user": serialize_user(user),
    }
    attach_refresh_token(body, request, response, resources, issued.token)
    return body


async def _handle_refresh_reuse(
    db: AsyncSession,
    request: Request,
    resources: AuthResources,
    user_id: int,
) -> None:
    """Record a replayed refresh token; optionally revoke the whole family."""

    revoked = 0
    if resources.settings.auth.revoke_all_on_reuse:
        revoked = await RefreshTokenStore(db, resources.tokens).revoke_all_for_user(user_id)
    logger.warning(
        "refresh_token_reuse_detected",
        user_id=user_id,
        ip=extract_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        revoked_sessions=revoked,
    )
    await _record_auth_event(
        db,
        request,
        action="auth.refresh_reuse",
        result="failure",
        target_user_id=user_id,
        metadata={"revoked": revoked},
    )
    await db.commit()


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    payload: RefreshRequest | None = Body(default=None),
    credentials: HTTPAuthorizationCredentials | None = Depends(_optional_bearer),
    _csrf: str | None = Depends(require_double_submit_csrf),
    resources: AuthResources = Depends(get_resources),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    token = presented_refresh_token(request, resources, payload.refresh_token if payload else None)
    store = RefreshTokenStore(db, resources.tokens)
    try:
        record: RefreshToken | None = None
        if token:
            record = await store.revoke(token)
        if record is None and credentials is not None:
            record = await _revoke_bearer_session(store, resources, credentials.credentials)
        if record is not None:
            await _record_auth_event(
                db,
                request,
                action="auth.logout",
                result="success",
                actor_user_id=record.user_id,
                target_user_id=record.user_id,
            )
            await db.commit()
            await _forget_session_csrf(resources, record.session_id)
            logger.info("user_logged_out", user_id=record.user_id)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("logout_revocation_failed", error=str(exc))

    _clear_session_cookies(request, response, resources)
    return {"message": "Logout successful"}


async def _revoke_bearer_session(
    store: RefreshTokenStore, resources: AuthResources, access_token: str
) -> RefreshToken | None:
    try:
        claims = resources.tokens.verify_access_token(access_token)
    except TokenInvalidError:
        return None
    if not claims.session_id:
        return None
    return await store.revoke_session(claims.user_id, claims.session_id)


@router.post("/logout-all")
async def logout_all(
    request: Request,
    response: Response,
    current: CurrentUser = Depends(require_session_csrf),
    resources: AuthResources = Depends(get_resources),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    user = current.user
    revoked = await RefreshTokenStore(db, resources.tokens).revoke_all_for_user(user.id)
    await _record_auth_event(
        db,
        request,
        action="auth.logout_all",
        result="success",
        actor_user_id=user.id,
        target_user_id=user.id,
        metadata={"revoked": revoked},
    )
    await db.commit()
    await _forget_session_csrf(resources, current.session_id)
    logger.info("user_logged_out_everywhere", user_id=user.id, revoked_sessions=revoked)

    _clear_session_cookies(request, response, resources)
    return {"message": "Logged out from all sessions", "revokedSessions": revoked}


@router.get("/me")
async def me(
    current: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    user = current.user
    user.last_activity_at = datetime.now(timezone.utc)
    await db.commit()
    return {"user": serialize_user_detail(user)}


@router.post("/change-password")
async def change_password(
    payload: ChangePasswordRequest,
    request: Request,
    current: CurrentUser = Depends(require_session_csrf),
    resources: AuthResources = Depends(get_resources),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    user = current.user
    if not await verify_password_async(user.password_hash, payload.current_password):
        await _record_auth_event(
            db,
            request,
            action="auth.change_password",
            result="failure",
            actor_user_id=user.id,
            target_user_id=user.id,
            metadata={"reason": "invalid_current_password"},
        )
        await db.commit()
        logger.warning("change_password_failed", user_id=user.id, ip=extract_client_ip(request))
        raise ApiError(
            status.HTTP_401_UNAUTHORIZED, "INVALID_CURRENT_PASSWORD", "Current password is incorrect"
        )
    _ensure_password_strength(payload.new_password, resources)

    user.password_hash = await hash_password_async(payload.new_password)
    keep = presented_refresh_token(request, resources, payload.refresh_token)
    revoked = await RefreshTokenStore(db, resources.tokens).revoke_all_for_user(
        user.id, except_token=keep
    )
    await _record_auth_event(
        db,
        request,
        action="auth.change_password",
        result="success",
        actor_user_id=user.id,
        target_user_id=user.id,
        metadata={"revoked": revoked},
    )
    await db.commit()
    logger.info("password_changed", user_id=user.id, revoked_sessions=revoked)
    return {"message": "Password changed successfully", "revokedSessions": revoked}


@csrf_cookie_router.get("/csrf-token")
async def csrf_token(token: str | None = Depends(require_double_submit_csrf)) -> dict[str, Any]:
    return {"csrfToken": token}


@session_csrf_router.post("/csrf/rotate")
async def rotate_csrf_token(
    current: CurrentUser = Depends(get_current_user),
    resources: AuthResources = Depends(get_resources),
) -> dict[str, Any]:
    """Replace the session CSRF token; a missing or expired one is not required."""

    if not current.session_id:
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "INVALID_ACCESS_TOKEN", "Access token has no session")
    try:
        token = await resources.session_csrf.rotate(current.session_id)
    except CacheUnavailableError as exc:
        logger.error("csrf_session_rotate_failed", user_id=current.user.id, error=str(exc))
        raise ApiError(status.HTTP_403_FORBIDDEN, "CSRF_ERROR", "CSRF validation failed") from exc
    return {"csrfToken": token}


__all__ = ["csrf_cookie_router", "router", "session_csrf_router"]
