"""Session-bound CSRF protection on authenticated routes."""
from __future__ import annotations

from typing import Any

import pytest
from fastapi import FastAPI, Request
from httpx import ASGITransport, AsyncClient

from backend.livesales.app.csrf import NoopSessionCsrfGuard, SessionCsrfService
from backend.livesales.app.errors import CacheUnavailableError, CsrfError
from backend.livesales.app.storage import MemoryCache

from .utils import API, bearer

PASSWORD = "Sup3rSecret!"


@pytest.fixture
def settings_overrides() -> dict[str, Any]:
    return {"csrf": {"session_enabled": True}}


async def _register(client: AsyncClient, email: str) -> dict[str, Any]:
    response = await client.post(f"{API}/register", json={"email": email, "password": PASSWORD})
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_session_token_is_issued_and_required(client):
    session = await _register(client, "csrf@example.com")
    access, csrf_token = session["accessToken"], session["csrfToken"]
    assert len(csrf_token) == 64

    missing = await client.post(f"{API}/2fa/enable", headers=bearer(access))
    assert missing.status_code == 403
    assert missing.json()["code"] == "CSRF_TOKEN_MISSING"

    wrong = await client.post(f"{API}/2fa/enable", headers=bearer(access, "0" * 64))
    assert wrong.status_code == 403
    assert wrong.json()["code"] == "CSRF_TOKEN_INVALID"

    allowed = await client.post(f"{API}/2fa/enable", headers=bearer(access, csrf_token))
    assert allowed.status_code == 200

    # Safe methods need no token.
    assert (await client.get(f"{API}/2fa/status", headers=bearer(access))).status_code == 200


@pytest.mark.asyncio
async def test_rotation_invalidates_previous_token(client):
    session = await _register(client, "rotate-csrf@example.com")
    access, original = session["accessToken"], session["csrfToken"]

    rotated = await client.post(f"{API}/csrf/rotate", headers=bearer(access, original))
    assert rotated.status_code == 200
    replacement = rotated.json()["csrfToken"]
    assert replacement != original

    stale = await client.post(f"{API}/2fa/enable", headers=bearer(access, original))
    assert stale.status_code == 403
    assert stale.json()["code"] == "CSRF_TOKEN_INVALID"

    fresh = await client.post(f"{API}/2fa/enable", headers=bearer(access, replacement))
    assert fresh.status_code == 200


@pytest.mark.asyncio
async def test_tokens_are_bound_to_their_session(client, client_factory):
    first = await _register(client, "bound@example.com")
    async with client_factory() as other:
        second = (
            await other.post(f"{API}/login", json={"email": "bound@example.com", "password": PASSWORD})
        ).json()

    crossed = await client.post(f"{API}/2fa/enable", headers=bearer(first["accessToken"], second["csrfToken"]))
    assert crossed.status_code == 403
    assert crossed.json()["code"] == "CSRF_TOKEN_INVALID"


@pytest.mark.asyncio
async def test_logout_all_forgets_session_token(client):
    session = await _register(client, "forget@example.com")
    access, csrf_token = session["accessToken"], session["csrfToken"]

    response = await client.post(f"{API}/logout-all", headers=bearer(access, csrf_token))
    assert response.status_code == 200

    # The access token stays valid until it expires but its CSRF session is gone.
    after = await client.post(f"{API}/2fa/enable", headers=bearer(access, csrf_token))
    assert after.status_code == 403
    assert after.json()["code"] == "CSRF_SESSION_EXPIRED"


@pytest.mark.asyncio
async def test_rotation_recovers_an_expired_session_token(client, resources):
    session = await _register(client, "recover@example.com")
    access, original = session["accessToken"], session["csrfToken"]
    session_id = resources.tokens.verify_access_token(access).session_id
    await resources.session_csrf.delete(session_id)

    expired = await client.post(f"{API}/2fa/enable", headers=bearer(access, original))
    assert expired.status_code == 403
    assert expired.json()["code"] == "CSRF_SESSION_EXPIRED"

    rotated = await client.post(f"{API}/csrf/rotate", headers=bearer(access))
    assert rotated.status_code == 200, rotated.text
    replacement = rotated.json()["csrfToken"]

    recovered = await client.post(f"{API}/2fa/enable", headers=bearer(access, replacement))
    assert recovered.status_code == 200


@pytest.mark.asyncio
async def test_rotation_requires_a_valid_access_token(client):
    response = await client.post(f"{API}/csrf/rotate", headers=bearer("not-a-token"))
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_service_verify_failure_codes():
    cache = MemoryCache()
    service = SessionCsrfService(cache, ttl_seconds=60)

    token = await service.create("sid-1")
    await service.verify("sid-1", token)

    with pytest.raises(CsrfError) as missing:
        await service.verify("sid-1", None)
    assert missing.value.code == "CSRF_TOKEN_MISSING"

    with pytest.raises(CsrfError) as expired:
        await service.verify("sid-unknown", token)
    assert expired.value.code == "CSRF_SESSION_EXPIRED"

    await service.delete("sid-1")
    with pytest.raises(CsrfError) as deleted:
        await service.verify("sid-1", token)
    assert deleted.value.code == "CSRF_SESSION_EXPIRED"


class _BrokenCache(MemoryCache):
    async def get(self, key):
        raise CacheUnavailableError("cache down")


@pytest.mark.asyncio
async def test_cache_failure_denies_request():
    service = SessionCsrfService(_BrokenCache())

    with pytest.raises(CsrfError) as excinfo:
        await service.verify("sid-1", "a" * 64)
    assert excinfo.value.code == "CSRF_ERROR"


@pytest.mark.asyncio
async def test_protect_skips_safe_methods_and_sessionless_tokens():
    service = SessionCsrfService(MemoryCache())
    app = FastAPI()
    outcomes: list[str] = []

    @app.api_route("/guarded", methods=["GET", "POST"])
    async def guarded(request: Request, sid: str | None = None) -> dict[str, bool]:
        try:
            await service.protect(request, sid)
        except CsrfError as exc:
            outcomes.append(exc.code)
            return {"allowed": False}
        return {"allowed": True}

    async with AsyncClient(transport=ASGITransport(app=app), base_url="https://testserver") as client:
        assert (await client.get("/guarded", params={"sid": "sid-1"})).json() == {"allowed": True}
        assert (await client.post("/guarded")).json() == {"allowed": True}
        assert (await client.post("/guarded", params={"sid": "sid-1"})).json() == {"allowed": False}
    assert outcomes == ["CSRF_TOKEN_MISSING"]


@pytest.mark.asyncio
async def test_noop_guard_is_inert():
    guard = NoopSessionCsrfGuard()

    assert guard.enabled is False
    assert await guard.create("sid") is None
    assert await guard.rotate("sid") is None
