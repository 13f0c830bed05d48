"""Authentication flow integration tests."""
from __future__ import annotations

import pytest
import structlog
from sqlalchemy import select

from backend.livesales.app.routes import auth as auth_routes
from backend.livesales.db.models import RefreshToken, User

from .utils import (
    API,
    audit_actions,
    bearer,
    count_rows,
    create_user,
    csrf_headers,
    live_refresh_tokens,
    login,
    prime_csrf,
)

COOKIE_NAME = "refreshToken"


@pytest.mark.asyncio
async def test_register_me_logout_then_refresh_fails(client, client_factory, session_factory):
    register = await client.post(
        f"{API}/register", json={"email": "Owner@Example.com", "password": "Sup3rSecret!"}
    )
    assert register.status_code == 201, register.text
    payload = register.json()
    assert payload["user"]["email"] == "owner@example.com"
    assert payload["user"]["role"] == "user"
    assert payload["expiresIn"] == 900
    assert "refreshToken" not in payload

    cookie_header = register.headers["set-cookie"]
    assert f"{COOKIE_NAME}=" in cookie_header
    assert "HttpOnly" in cookie_header
    assert "Path=/api/auth" in cookie_header
    assert "samesite=strict" in cookie_header.lower()
    assert "secure" in cookie_header.lower()
    refresh_cookie = register.cookies[COOKIE_NAME]

    me = await client.get(f"{API}/me", headers=bearer(payload["accessToken"]))
    assert me.status_code == 200
    session_secrets = {"accessToken", "refreshToken", "csrfToken"}
    assert not session_secrets & me.json().keys()
    profile = me.json()["user"]
    assert not session_secrets & profile.keys()
    assert profile["email"] == "owner@example.com"
    assert profile["isActive"] is True
    assert profile["twoFactorEnabled"] is False
    assert profile["lastLoginAt"] is not None

    csrf = await prime_csrf(client)
    logout = await client.post(f"{API}/logout", headers=csrf_headers(csrf))
    assert logout.status_code == 200
    assert logout.json() == {"message": "Logout successful"}

    async with client_factory(cookies={COOKIE_NAME: refresh_cookie, "csrf_token": csrf}) as replay:
        refreshed = await replay.post(f"{API}/refresh", headers=csrf_headers(csrf))
    assert refreshed.status_code == 401
    assert refreshed.json()["code"] == "INVALID_REFRESH_TOKEN"

    async with session_factory() as session:
        user_id = (await session.execute(select(User.id))).scalar_one()
        assert await live_refresh_tokens(session, user_id) == 0
        actions = await audit_actions(session)
    assert ("auth.register", "success") in actions
    assert ("auth.logout", "success") in actions


@pytest.mark.asyncio
async def test_refresh_rotates_and_replay_is_rejected(client, client_factory, session_factory):
    async with session_factory() as session:
        user = await create_user(session, email="rotate@example.com", password="Sup3rSecret!")
        user_id = user.id

    first = await login(client, "rotate@example.com", "Sup3rSecret!")
    assert first.status_code == 200
    original = first.cookies[COOKIE_NAME]

    csrf = await prime_csrf(client)
    rotated = await client.post(f"{API}/refresh", headers=csrf_headers(csrf))
    assert rotated.status_code == 200, rotated.text
    body = rotated.json()
    assert body["accessToken"]
    assert body["user"]["id"] == user_id
    replacement = rotated.cookies[COOKIE_NAME]
    assert replacement != original

    async with client_factory(cookies={COOKIE_NAME: original, "csrf_token": csrf}) as attacker:
        replay = await attacker.post(f"{API}/refresh", headers=csrf_headers(csrf))
    assert replay.status_code == 401
    assert replay.json()["code"] == "INVALID_REFRESH_TOKEN"
    assert f"{COOKIE_NAME}=" in replay.headers["set-cookie"]

    async with session_factory() as session:
        records = (
            await session.execute(select(RefreshToken).where(RefreshToken.user_id == user_id))
        ).scalars().all()
        actions = await audit_actions(session)
    assert len(records) == 2
    assert sum(1 for record in records if not record.revoked) == 1
    assert len({record.session_id for record in records}) == 1
    assert ("auth.refresh_reuse", "failure") in actions

    # Reuse detection does not revoke the rotated session unless configured to.
    follow_up = await client.post(f"{API}/refresh", headers=csrf_headers(csrf))
    assert follow_up.status_code == 200


@pytest.mark.asyncio
async def test_refresh_requires_token_and_csrf(client):
    csrf = await prime_csrf(client)

    missing = await client.post(f"{API}/refresh", headers=csrf_headers(csrf))
    assert missing.status_code == 401
    assert missing.json()["code"] == "NO_REFRESH_TOKEN"

    no_header = await client.post(f"{API}/refresh")
    assert no_header.status_code == 403
    assert no_header.json()["code"] == "CSRF_TOKEN_REQUIRED"


@pytest.mark.asyncio
async def test_duplicate_registration_conflicts(client, session_factory):
    body = {"email": "dup@example.com", "password": "Sup3rSecret!"}
    assert (await client.post(f"{API}/register", json=body)).status_code == 201

    again = await client.post(
        f"{API}/register", json={"email": "DUP@example.com", "password": "Different-Pa55word"}
    )
    assert again.status_code == 409
    assert again.json() == {"error": "User already exists", "code": "USER_EXISTS"}

    assert (await login(client, "dup@example.com", "Sup3rSecret!")).status_code == 200
    assert (await login(client, "dup@example.com", "Different-Pa55word")).status_code == 401
    async with session_factory() as session:
        assert await count_rows(session, User) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("body", "code"),
    [
        ({"email": "weak@example.com", "password": "short"}, "WEAK_PASSWORD"),
        ({"email": "not-an-email", "password": "Sup3rSecret!"}, "VALIDATION_ERROR"),
        ({"email": "missing@example.com"}, "VALIDATION_ERROR"),
    ],
)
async def test_registration_input_is_validated(client, body, code):
    response = await client.post(f"{API}/register", json=body)

    assert response.status_code == 400
    assert response.json()["code"] == code


@pytest.mark.asyncio
async def test_login_creates_exactly_one_live_refresh_token(client, session_factory):
    async with session_factory() as session:
        user = await create_user(session, email="single@example.com", password="Sup3rSecret!")
        user_id = user.id

    response = await login(client, "SINGLE@example.com", "Sup3rSecret!")
    assert response.status_code == 200
    assert response.json()["message"] == "Login successful"

    async with session_factory() as session:
        assert await live_refresh_tokens(session, user_id) == 1
        refreshed_user = await session.get(User, user_id)
        assert refreshed_user.last_login_at is not None


@pytest.mark.asyncio
async def test_login_failures(client, session_factory):
    async with session_factory() as session:
        await create_user(session, email="active@example.com", password="Sup3rSecret!")
        await create_user(session, email="disabled@example.com", password="Sup3rSecret!", active=False)

    unknown = await login(client, "ghost@example.com", "Sup3rSecret!")
    assert unknown.status_code == 401
    assert unknown.json()["code"] == "INVALID_CREDENTIALS"

    wrong = await login(client, "active@example.com", "nope-nope")
    assert wrong.status_code == 401
    assert wrong.json() == unknown.json()

    disabled = await login(client, "disabled@example.com", "Sup3rSecret!")
    assert disabled.status_code == 403
    assert disabled.json()["code"] == "ACCOUNT_DEACTIVATED"

    async with session_factory() as session:
        actions = await audit_actions(session)
    assert actions.count(("auth.login", "failure")) == 2


@pytest.mark.asyncio
async def test_unknown_email_placeholder_hash_is_built_once_off_the_loop(client, monkeypatch):
    calls: list[str] = []
    original = auth_routes.hash_password_async

    async def counting_hash(password: str) -> str:
        calls.append(password)
        return await original(password)

    monkeypatch.setattr(auth_routes, "_dummy_hash", None)
    monkeypatch.setattr(auth_routes, "hash_password_async", counting_hash)

    for _ in range(2):
        response = await login(client, "nobody@example.com", "Sup3rSecret!")
        assert response.status_code == 401
    assert len(calls) == 1
    assert auth_routes._dummy_hash.startswith("$argon2")


@pytest.mark.asyncio
async def test_login_failure_logs_carry_request_context(client, session_factory):
    async with session_factory() as session:
        await create_user(session, email="logged@example.com", password="Sup3rSecret!")

    capture = structlog.testing.LogCapture()
    structlog.configure(processors=[structlog.contextvars.merge_contextvars, capture])
    try:
        response = await client.post(
            f"{API}/login",
            json={"email": "logged@example.com", "password": "nope-nope"},
            headers={"User-Agent": "sales-console/2.1", "X-Request-ID": "req-42"},
        )
        anonymous = await client.post(
            f"{API}/login", json={"email": "ghost@example.com", "password": "nope-nope"}
        )
    finally:
        structlog.reset_defaults()

    assert response.status_code == 401
    assert response.headers["X-Request-ID"] == "req-42"
    assert anonymous.headers["X-Request-ID"] not in ("", "req-42")

    failures = [entry for entry in capture.entries if entry["event"] == "login_failed"]
    assert [entry["reason"] for entry in failures] == ["invalid_password", "unknown_email"]
    assert failures[0]["user_agent"] == "sales-console/2.1"
    assert failures[0]["request_id"] == "req-42"
    assert failures[1]["request_id"] == anonymous.headers["X-Request-ID"]
    assert "user_agent" in failures[1]


@pytest.mark.asyncio
async def test_me_requires_valid_access_token(client):
    missing = await client.get(f"{API}/me")
    assert missing.status_code == 401
    assert missing.json()["code"] == "ACCESS_TOKEN_REQUIRED"

    garbage = await client.get(f"{API}/me", headers=bearer("not-a-token"))
    assert garbage.status_code == 401
    assert garbage.json()["code"] == "INVALID_ACCESS_TOKEN"


@pytest.mark.asyncio
async def test_refresh_token_is_not_an_access_token(client, session_factory):
    async with session_factory() as session:
        await create_user(session, email="kinds@example.com", password="Sup3rSecret!")

    response = await login(client, "kinds@example.com", "Sup3rSecret!")
    refresh_token = response.cookies[COOKIE_NAME]

    me = await client.get(f"{API}/me", headers=bearer(refresh_token))
    assert me.status_code == 401
    assert me.json()["code"] == "INVALID_ACCESS_TOKEN"


@pytest.mark.asyncio
async def test_deactivated_user_cannot_refresh(client, session_factory):
    async with session_factory() as session:
        user = await create_user(session, email="later@example.com", password="Sup3rSecret!")
        user_id = user.id

    assert (await login(client, "later@example.com", "Sup3rSecret!")).status_code == 200

    async with session_factory() as session:
        stored = await session.get(User, user_id)
        stored.is_active = False
        await session.commit()

    csrf = await prime_csrf(client)
    response = await client.post(f"{API}/refresh", headers=csrf_headers(csrf))
    assert response.status_code == 403
    assert response.json()["code"] == "ACCOUNT_DEACTIVATED"


@pytest.mark.asyncio
async def test_logout_all_revokes_every_session(client, client_factory, session_factory):
    async with session_factory() as session:
        user = await create_user(session, email="many@example.com", password="Sup3rSecret!")
        user_id = user.id

    async with client_factory() as other_device:
        assert (await login(other_device, "many@example.com", "Sup3rSecret!")).status_code == 200
    access = (await login(client, "many@example.com", "Sup3rSecret!")).json()["accessToken"]

    response = await client.post(f"{API}/logout-all", headers=bearer(access))
    assert response.status_code == 200
    assert response.json()["revokedSessions"] == 2

    async with session_factory() as session:
        assert await live_refresh_tokens(session, user_id) == 0


@pytest.mark.asyncio
async def test_logout_with_bearer_only_revokes_that_session(client_factory, session_factory):
    async with session_factory() as session:
        user = await create_user(session, email="bearer@example.com", password="Sup3rSecret!")
        user_id = user.id

    async with client_factory() as device:
        access = (await login(device, "bearer@example.com", "Sup3rSecret!")).json()["accessToken"]
    async with client_factory() as keeper:
        assert (await login(keeper, "bearer@example.com", "Sup3rSecret!")).status_code == 200

    # No refresh cookie: the session is found through the access token.
    async with client_factory() as cookieless:
        csrf = await prime_csrf(cookieless)
        response = await cookieless.post(f"{API}/logout", headers=bearer(access, csrf))
    assert response.status_code == 200

    async with session_factory() as session:
        assert await live_refresh_tokens(session, user_id) == 1


@pytest.mark.asyncio
async def test_change_password_revokes_other_sessions(client, client_factory, session_factory):
    async with session_factory() as session:
        user = await create_user(session, email="change@example.com", password="Sup3rSecret!")
        user_id = user.id

    async with client_factory() as other_device:
        assert (await login(other_device, "change@example.com", "Sup3rSecret!")).status_code == 200
    access = (await login(client, "change@example.com", "Sup3rSecret!")).json()["accessToken"]

    wrong = await client.post(
        f"{API}/change-password",
        headers=bearer(access),
        json={"currentPassword": "not-it-at-all", "newPassword": "N3wSecret!!"},
    )
    assert wrong.status_code == 401
    assert wrong.json()["code"] == "INVALID_CURRENT_PASSWORD"

    weak = await client.post(
        f"{API}/change-password",
        headers=bearer(access),
        json={"currentPassword": "Sup3rSecret!", "newPassword": "short"},
    )
    assert weak.status_code == 400
    assert weak.json()["code"] == "WEAK_PASSWORD"

    changed = await client.post(
        f"{API}/change-password",
        headers=bearer(access),
        json={"currentPassword": "Sup3rSecret!", "newPassword": "N3wSecret!!"},
    )
    assert changed.status_code == 200, changed.text
    assert changed.json()["revokedSessions"] == 1

    async with session_factory() as session:
        assert await live_refresh_tokens(session, user_id) == 1
        actions = await audit_actions(session)
    assert ("auth.change_password", "failure") in actions
    assert ("auth.change_password", "success") in actions

    assert (await login(client, "change@example.com", "Sup3rSecret!")).status_code == 401
    assert (await login(client, "change@example.com", "N3wSecret!!")).status_code == 200


@pytest.mark.asyncio
async def test_csrf_token_endpoint_reuses_cookie(client):
    first = await prime_csrf(client)
    second = await prime_csrf(client)

    assert first == second
    assert len(first) == 64
