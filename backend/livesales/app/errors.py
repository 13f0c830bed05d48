"""Exception types and the handlers that render them as JSON."""
from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .logging import get_logger


logger = get_logger("livesales.errors")


class ApiError(HTTPException):
    """HTTP error carrying a machine readable ``code``."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        *,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=message, headers=headers)
        self.code = code
        self.message = message


class DecryptionError(Exception):
    """Raised when an encrypted payload fails authentication or is malformed."""


class TokenInvalidError(Exception):
    """Raised when a signed token is malformed, forged or of the wrong type."""


class TokenExpiredError(TokenInvalidError):
    """Raised when a signed token is well formed but past its expiry."""


class RefreshTokenRevokedError(Exception):
    """Raised when a refresh token is unknown, revoked or already rotated."""

    def __init__(self, message: str = "Refresh token revoked", *, reused: bool = False, user_id: int | None = None) -> None:
        super().__init__(message)
        self.reused = reused
        self.user_id = user_id


class CsrfError(Exception):
    """Raised when CSRF validation fails; ``code`` names the failure."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class CacheUnavailableError(RuntimeError):
    """Raised when the key-value cache cannot be reached."""


async def _api_error_handler(_: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.code},
        headers=exc.headers,
    )


async def _csrf_error_handler(_: Request, exc: CsrfError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content={"error": exc.message, "code": exc.code},
    )


async def _http_error_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    content: dict[str, Any] = {"error": str(exc.detail), "code": f"HTTP_{exc.status_code}"}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


async def _validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "Invalid request",
            "code": "VALIDATION_ERROR",
            "details": jsonable_encoder(exc.errors()),
        },
    )


async def _decryption_error_handler(request: Request, exc: DecryptionError) -> JSONResponse:
    logger.error("stored_secret_unreadable", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error", "code": "INTERNAL_ERROR"},
    )


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error", "code": "INTERNAL_ERROR"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, _api_error_handler)
    app.add_exception_handler(CsrfError, _csrf_error_handler)
    app.add_exception_handler(DecryptionError, _decryption_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)


__all__ = [
    "ApiError",
    "CacheUnavailableError",
    "CsrfError",
    "DecryptionError",
    "RefreshTokenRevokedError",
    "TokenExpiredError",
    "TokenInvalidError",
    "register_exception_handlers",
]
