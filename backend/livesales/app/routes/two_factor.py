"""Two-factor authentication API routes."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from ...db.models import User
from ..audit import extract_client_ip, record_audit_event
from ..dependencies import CurrentUser, get_current_user, get_resources, get_session, require_session_csrf
from ..errors import ApiError
from ..logging import get_logger
from ..resources import AuthResources
from ..schemas import TwoFactorConfirmRequest, TwoFactorLoginRequest, TwoFactorSetupRequest
from ..security import verify_password_async
from ..sessions import issue_session


router = APIRouter(prefix="/auth/2fa", tags=["two-factor"])
logger = get_logger("livesales.routes.two_factor")


def _invalid_code(status_code: int = status.HTTP_400_BAD_REQUEST) -> ApiError:
    return ApiError(status_code, "INVALID_2FA_CODE", "Invalid verification code")


async def _confirm_password_and_code(
    db: AsyncSession,
    request: Request,
    resources: AuthResources,
    user: User,
    payload: TwoFactorConfirmRequest,
    *,
    action: str,
) -> None:
    """Require both the account password and a current TOTP code."""

    if not user.two_factor_enabled:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "2FA_NOT_ENABLED", "Two-factor authentication is not enabled")

    if not await verify_password_async(user.password_hash, payload.password):
        reason, error = "invalid_password", ApiError(
            status.HTTP_401_UNAUTHORIZED, "INVALID_PASSWORD", "Invalid password"
        )
    elif not resources.two_factor.verify_user_code(user, payload.code):
        reason, error = "invalid_code", _invalid_code()
    else:
        return

    await record_audit_event(
        db,
        action=action,
        result="failure",
        actor_user_id=user.id,
        target_user_id=user.id,
        request=request,
        metadata={"reason": reason},
    )
    await db.commit()
    logger.warning(
        "two_factor_confirmation_failed",
        action=action,
        reason=reason,
        user_id=user.id,
        ip=extract_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    raise error


@router.get("/status")
async def two_factor_status(
    current: CurrentUser = Depends(get_current_user),
    resources: AuthResources = Depends(get_resources),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    user = current.user
    remaining = 0
    if user.two_factor_enabled:
        remaining = await resources.two_factor.count_remaining_backup_codes(db, user.id)
    return {"enabled": user.two_factor_enabled, "remainingBackupCodes": remaining}


@router.post("/enable")
async def enable_two_factor(
    current: CurrentUser = Depends(require_session_csrf),
    resources: AuthResources = Depends(get_resources),
) -> dict[str, Any]:
    """Start setup: return a new secret that is not stored until verified."""

    user = current.user
    if user.two_factor_enabled:
        raise ApiError(
            status.HTTP_400_BAD_REQUEST, "2FA_ALREADY_ENABLED", "Two-factor authentication is already enabled"
        )
    pending = resources.two_factor.generate_secret(user.email)
    qr_code = await resources.two_factor.render_qr_code(pending.otpauth_url)
    logger.info("two_factor_setup_started", user_id=user.id)
    return {
        "secret": pending.secret,
        "otpauthUrl": pending.otpauth_url,
        "qrCode": qr_code,
    }


@router.post("/verify-setup")
async def verify_two_factor_setup(
    payload: TwoFactorSetupRequest,
    request: Request,
    current: CurrentUser = Depends(require_session_csrf),
    resources: AuthResources = Depends(get_resources),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    user = current.user
    if user.two_factor_enabled:
        raise ApiError(
            status.HTTP_400_BAD_REQUEST, "2FA_ALREADY_ENABLED", "Two-factor authentication is already enabled"
        )
    if not resources.two_factor.verify_code(payload.secret, payload.code):
        logger.warning("two_factor_setup_code_invalid", user_id=user.id, ip=extract_client_ip(request))
        raise _invalid_code()

    backup_codes = await resources.two_factor.activate(db, user, payload.secret)
    await record_audit_event(
        db,
        action="auth.2fa_enable",
        result="success",
        actor_user_id=user.id,
        target_user_id=user.id,
        request=request,
        metadata={"backup_codes": len(backup_codes)},
    )
    await db.commit()
    return {
        "message": "Two-factor authentication enabled",
        "backupCodes": backup_codes,
    }


@router.post("/disable")
async def disable_two_factor(
    payload: TwoFactorConfirmRequest,
    request: Request,
    current: CurrentUser = Depends(require_session_csrf),
    resources: AuthResources = Depends(get_resources),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    user = current.user
    await _confirm_password_and_code(db, request, resources, user, payload, action="auth.2fa_disable")

    await resources.two_factor.deactivate(db, user)
    await record_audit_event(
        db,
        action="auth.2fa_disable",
        result="success",
        actor_user_id=user.id,
        target_user_id=user.id,
        request=request,
    )
    await db.commit()
    return {"message": "Two-factor authentication disabled"}


@router.post("/backup-codes")
async def regenerate_backup_codes(
    payload: TwoFactorConfirmRequest,
    request: Request,
    current: CurrentUser = Depends(require_session_csrf),
    resources: AuthResources = Depends(get_resources),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    user = current.user
    await _confirm_password_and_code(
        db, request, resources, user, payload, action="auth.2fa_regenerate_backup_codes"
    )

    backup_codes = await resources.two_factor.replace_backup_codes(db, user)
    await record_audit_event(
        db,
        action="auth.2fa_regenerate_backup_codes",
        result="success",
        actor_user_id=user.id,
        target_user_id=user.id,
        request=request,
        metadata={"backup_codes": len(backup_codes)},
    )
    await db.commit()
    return {"backupCodes": backup_codes}


@router.post("/verify-login")
async def verify_two_factor_login(
    payload: TwoFactorLoginRequest,
    request: Request,
    response: Response,
    resources: AuthResources = Depends(get_resources),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Finish a login that stopped at the second factor.

    The temp token is consumed before the code is checked: a wrong code
    sends the client back to the password step.
    """

    client_ip = extract_client_ip(request)
    user_id = await resources.temp_tokens.consume(payload.temp_token)
    user = await db.get(User, user_id) if user_id is not None else None
    if user is None or not user.two_factor_enabled:
        logger.warning("two_factor_temp_token_invalid", ip=client_ip)
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "INVALID_TEMP_TOKEN", "Invalid or expired login session")
    if not user.is_active:
        raise ApiError(status.HTTP_403_FORBIDDEN, "ACCOUNT_DEACTIVATED", "Account deactivated")

    method = await resources.two_factor.verify_second_factor(db, user, payload.code)
    if method is None:
        await record_audit_event(
            db,
            action="auth.2fa_verify_login",
            result="failure",
            actor_user_id=user.id,
            target_user_id=user.id,
            request=request,
            metadata={"reason": "invalid_code"},
        )
        await db.commit()
        logger.warning(
            "two_factor_login_failed",
            user_id=user.id,
            ip=client_ip,
            user_agent=request.headers.get("user-agent"),
        )
        raise _invalid_code(status.HTTP_401_UNAUTHORIZED)

    remaining = await resources.two_factor.count_remaining_backup_codes(db, user.id)
    body = await issue_session(
        db,
        request,
        response,
        resources,
        user,
        action="auth.2fa_verify_login",
        message="Login successful",
        metadata={"method": method, "remaining_backup_codes": remaining},
    )
    body["usedBackupCode"] = method == "backup_code"
    body["remainingBackupCodes"] = remaining
    if remaining <= resources.settings.two_factor.low_backup_code_threshold:
        body["warning"] = f"Only {remaining} backup codes remaining. Consider regenerating them."
    return body


__all__ = ["router"]
