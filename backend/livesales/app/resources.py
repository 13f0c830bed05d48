"""Explicitly constructed service container for the auth application."""
from __future__ import annotations

from typing import Any

from ..db.base import Database
from .config import Settings
from .crypto import SecretBox
from .csrf import DoubleSubmitCsrf, NoopDoubleSubmitCsrf, NoopSessionCsrfGuard, SessionCsrfService
from .logging import get_logger
from .security import TokenIssuer
from .storage import CacheBackend, MemoryCache, build_cache
from .temp_tokens import TempLoginTokenStore
from .two_factor import TwoFactorService


logger = get_logger("livesales.resources")


class AuthResources:
    """Owns the database, the cache and the services built on them.

    Strategy objects for the refresh-token CSRF check and the session CSRF
    guard are chosen here, once, from ``settings``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        database: Database | None = None,
        cache: CacheBackend | None = None,
        **engine_options: Any,
    ) -> None:
        self.settings = settings
        self.database = database or Database(
            settings.database_url,
            echo=settings.sqlalchemy_echo,
            **engine_options,
        )
        self.cache = cache if cache is not None else build_cache(settings.redis_url)
        if not self.cache.shared:
            logger.warning("cache_not_shared", detail="short lived security state is process local")

        self.tokens = TokenIssuer(settings.auth)
        self.secret_box = SecretBox(settings.encryption_key)
        self.two_factor = TwoFactorService(
            self.secret_box,
            issuer=settings.two_factor.issuer,
            backup_code_count=settings.two_factor.backup_code_count,
        )
        self.temp_tokens = TempLoginTokenStore(
            self.cache,
            ttl_seconds=settings.two_factor.temp_token_ttl_seconds,
            namespace=settings.two_factor.temp_token_namespace,
            fallback=self.cache if isinstance(self.cache, MemoryCache) else None,
        )

        self.refresh_csrf: DoubleSubmitCsrf | NoopDoubleSubmitCsrf
        if settings.auth.uses_refresh_cookie:
            self.refresh_csrf = DoubleSubmitCsrf(settings)
        else:
            self.refresh_csrf = NoopDoubleSubmitCsrf()

        self.session_csrf: SessionCsrfService | NoopSessionCsrfGuard
        if settings.csrf.session_enabled:
            self.session_csrf = SessionCsrfService(
                self.cache,
                ttl_seconds=settings.csrf.session_ttl_seconds,
                namespace=settings.csrf.session_namespace,
                header_name=settings.csrf.header_name,
            )
        else:
            self.session_csrf = NoopSessionCsrfGuard()

    async def init(self, *, create_schema: bool = False) -> None:
        """Open the database engine; optionally create tables."""

        await self.database.connect()
        if create_schema:
            await self.database.create_all()
        logger.info(
            "auth_resources_initialised",
            refresh_transport=self.settings.auth.refresh_token_transport,
            session_csrf=self.settings.csrf.session_enabled,
            two_factor=self.settings.two_factor.enabled,
        )

    async def close(self) -> None:
        await self.cache.close()
        await self.database.dispose()


__all__ = ["AuthResources"]
