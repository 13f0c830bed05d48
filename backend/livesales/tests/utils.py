"""Testing utilities for auth API tests."""
from __future__ import annotations

from typing import Any

import pyotp
from httpx import AsyncClient, Response
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.livesales.app.security import hash_password
from backend.livesales.db.models import AuditEvent, RefreshToken, TwoFactorBackupCode, User, UserRole

API = "/api/auth"
CSRF_HEADER = "X-CSRF-Token"


async def create_user(
    session: AsyncSession,
    *,
    email: str,
    password: str,
    role: UserRole = UserRole.USER,
    active: bool = True,
) -> User:
    """Create a user directly in the database for integration tests."""

    user = User(
        email=email.lower(),
        password_hash=hash_password(password),
        role=role,
        is_active=active,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


async def prime_csrf(client: AsyncClient) -> str:
    """Obtain the double-submit cookie and return the header value to echo."""

    response = await client.get(f"{API}/csrf-token")
    assert response.status_code == 200
    token = response.json()["csrfToken"]
    assert token
    assert response.headers[CSRF_HEADER] == token
    return token


def csrf_headers(token: str) -> dict[str, str]:
    return {CSRF_HEADER: token}


def bearer(token: str, csrf_token: str | None = None) -> dict[str, str]:
    headers = {"Authorization": f"Bearer {token}"}
    if csrf_token:
        headers[CSRF_HEADER] = csrf_token
    return headers


async def login(client: AsyncClient, email: str, password: str) -> Response:
    return await client.post(f"{API}/login", json={"email": email, "password": password})


async def enable_two_factor(client: AsyncClient, access_token: str) -> tuple[str, list[str]]:
    """Run the two-step setup and return ``(secret, backup_codes)``."""

    setup = await client.post(f"{API}/2fa/enable", headers=bearer(access_token))
    assert setup.status_code == 200, setup.text
    secret = setup.json()["secret"]
    confirm = await client.post(
        f"{API}/2fa/verify-setup",
        headers=bearer(access_token),
        json={"secret": secret, "code": pyotp.TOTP(secret).now()},
    )
    assert confirm.status_code == 200, confirm.text
    return secret, confirm.json()["backupCodes"]


async def count_rows(session: AsyncSession, model: Any, *criteria: Any) -> int:
    stmt = select(func.count()).select_from(model)
    for criterion in criteria:
        stmt = stmt.where(criterion)
    return int((await session.execute(stmt)).scalar_one())


async def live_refresh_tokens(session: AsyncSession, user_id: int) -> int:
    return await count_rows(
        session,
        RefreshToken,
        RefreshToken.user_id == user_id,
        RefreshToken.revoked.is_(False),
    )


async def unused_backup_codes(session: AsyncSession, user_id: int) -> int:
    return await count_rows(
        session,
        TwoFactorBackupCode,
        TwoFactorBackupCode.user_id == user_id,
        TwoFactorBackupCode.used_at.is_(None),
    )


async def audit_actions(session: AsyncSession) -> list[tuple[str, str]]:
    result = await session.execute(select(AuditEvent.action, AuditEvent.result).order_by(AuditEvent.id))
    return [(action, outcome) for action, outcome in result.all()]
