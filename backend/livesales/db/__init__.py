"""Database helpers for the authentication service."""
from __future__ import annotations

from . import models as _models
from .base import (
    AsyncEngine,
    AsyncSession,
    Base,
    Database,
    DatabaseNotAvailable,
    metadata,
)
from .models import *  # noqa: F401,F403

__all__ = [
    "AsyncEngine",
    "AsyncSession",
    "Base",
    "Database",
    "DatabaseNotAvailable",
    "metadata",
] + _models.__all__
