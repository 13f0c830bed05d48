"""FastAPI application factory for the auth service."""
from __future__ import annotations

from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, load_settings
from .errors import register_exception_handlers
from .logging import bind_contextvars, clear_contextvars, setup_logging
from .resources import AuthResources
from .routes import auth, two_factor


def create_app(
    settings: Settings | None = None,
    *,
    resources: AuthResources | None = None,
    api_prefix: str | None = "/api",
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Parameters
    ----------
    settings:
        Configuration to build the app from; read from the environment when
        omitted.
    resources:
        Pre-built service container. Callers that pass one own its
        lifecycle; otherwise the lifespan creates, initialises and closes it.
    api_prefix:
        Path prefix under which the routers are mounted.
    """

    settings = settings or (resources.settings if resources is not None else load_settings())
    owns_resources = resources is None
    resources = resources or AuthResources(settings)

    @asynccontextmanager
    async def _lifespan(app: FastAPI):  # pragma: no cover - exercised via ASGI servers
        if owns_resources:
            await resources.init()
        try:
            yield
        finally:
            if owns_resources:
                await resources.close()

    app = FastAPI(title="Live Sales Auth", version="1.0", lifespan=_lifespan)
    app.state.resources = resources
    app.state.settings = settings
    register_exception_handlers(app)

    @app.middleware("http")
    async def _bind_request_context(request: Request, call_next):
        # Every log line written while handling the request carries its id.
        request_id = (request.headers.get("x-request-id") or uuid4().hex)[:64]
        clear_contextvars()
        bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            clear_contextvars()
        response.headers["X-Request-ID"] = request_id
        return response

    if settings.env == "dev":
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["http://localhost:5173"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=[settings.csrf.header_name],
        )

    prefix = (api_prefix or "").rstrip("/")
    if prefix and not prefix.startswith("/"):
        prefix = f"/{prefix}"

    app.include_router(auth.router, prefix=prefix)
    if settings.auth.uses_refresh_cookie:
        app.include_router(auth.csrf_cookie_router, prefix=prefix)
    if settings.csrf.session_enabled:
        app.include_router(auth.session_csrf_router, prefix=prefix)
    if settings.two_factor.enabled:
        app.include_router(two_factor.router, prefix=prefix)

    return app


def build_default_app() -> FastAPI:
    """Entry point for ``uvicorn --factory``."""

    setup_logging()
    return create_app()


__all__ = ["build_default_app", "create_app"]
