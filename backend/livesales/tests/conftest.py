"""Common test fixtures for the auth service tests."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from backend.livesales.app.config import (
    AuthSettings,
    CsrfSettings,
    Settings,
    StorageSettings,
    TwoFactorSettings,
)
from backend.livesales.app.main import create_app
from backend.livesales.app.resources import AuthResources
from backend.livesales.app.storage import MemoryCache

TEST_ENCRYPTION_KEY = "ab" * 32
BASE_URL = "https://testserver"


def build_settings(database_url: str, **overrides: Any) -> Settings:
    """Return isolated settings; nested sections accept plain dicts."""

    auth = {
        "jwt_secret": "test-access-secret-0123456789",
        "jwt_refresh_secret": "test-refresh-secret-0123456789",
        **overrides.pop("auth", {}),
    }
    return Settings(
        _env_file=None,
        env="test",
        auth=AuthSettings(**auth),
        csrf=CsrfSettings(**overrides.pop("csrf", {})),
        two_factor=TwoFactorSettings(**overrides.pop("two_factor", {})),
        storage=StorageSettings(database_url=database_url, sqlalchemy_echo=False),
        security={"encryption_key_hex": TEST_ENCRYPTION_KEY},
        **overrides,
    )


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    """Return a SQLite database URL located in a temporary directory."""

    return f"sqlite+aiosqlite:///{tmp_path / 'auth.sqlite3'}"


@pytest.fixture
def settings_overrides() -> dict[str, Any]:
    """Override in a test module to change configuration for its app."""

    return {}


@pytest.fixture
def settings(db_url: str, settings_overrides: dict[str, Any]) -> Settings:
    return build_settings(db_url, **settings_overrides)


@pytest_asyncio.fixture
async def resources(settings: Settings) -> AsyncIterator[AuthResources]:
    """Initialise resources explicitly; ASGITransport skips the lifespan."""

    container = AuthResources(settings, cache=MemoryCache())
    await container.init(create_schema=True)
    try:
        yield container
    finally:
        await container.close()


@pytest.fixture
def session_factory(resources: AuthResources) -> Callable[[], AsyncSession]:
    """Provide fresh sessions; use them as ``async with`` blocks."""

    return resources.database.create_session


@pytest.fixture
def app(settings: Settings, resources: AuthResources) -> FastAPI:
    return create_app(settings, resources=resources)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url=BASE_URL) as http_client:
        yield http_client


@pytest.fixture
def client_factory(app: FastAPI) -> Callable[..., AsyncClient]:
    """Build additional clients, e.g. to replay a captured cookie."""

    def factory(**kwargs: Any) -> AsyncClient:
        return AsyncClient(transport=ASGITransport(app=app), base_url=BASE_URL, **kwargs)

    return factory
