"""Utilities for recording audit trail events."""
from __future__ import annotations

import weakref
from datetime import datetime, timezone
from typing import Any, Mapping

from fastapi import Request
from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import AuditEvent
from .logging import get_logger


logger = get_logger("livesales.audit")
_audit_table_state: "weakref.WeakKeyDictionary[Engine, bool]" = weakref.WeakKeyDictionary()


def extract_client_ip(request: Request | None) -> str | None:
    """Return the originating client address, honouring ``X-Forwarded-For``."""

    if request is None:
        return None
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",", 1)[0].strip()
        if candidate:
            return candidate
    if request.client and request.client.host:
        return request.client.host
    return None


def extract_user_agent(request: Request | None) -> str | None:
    if request is None:
        return None
    value = request.headers.get("user-agent")
    if not value:
        return None
    return value[:255]


async def _ensure_audit_table(session: AsyncSession) -> bool:
    """Return ``True`` when the audit events table is available."""

    try:
        bind = session.get_bind()
    except SQLAlchemyError as exc:  # pragma: no cover - unbound session
        logger.warning("audit_event_table_check_failed", error=str(exc))
        return False

    engine = getattr(bind, "engine", bind)
    cached = _audit_table_state.get(engine)
    if cached is not None:
        return cached

    table_name = AuditEvent.__table__.name
    try:
        if bind.dialect.name == "postgresql":
            # Single catalog lookup instead of the inspector's several queries.
            exists = await session.scalar(
                text("SELECT to_regclass(:table_identifier) IS NOT NULL"),
                {"table_identifier": table_name},
            )
        else:
            exists = await session.run_sync(
                lambda sync_session: inspect(sync_session.connection()).has_table(table_name)
            )
    except SQLAlchemyError as exc:  # pragma: no cover - catalog unavailable
        logger.warning("audit_event_table_check_failed", error=str(exc))
        return False

    _audit_table_state[engine] = bool(exists)
    if not exists:
        logger.warning("audit_event_table_missing")
    return bool(exists)


async def record_audit_event(
    session: AsyncSession,
    *,
    action: str,
    result: str,
    actor_user_id: int | None = None,
    target_user_id: int | None = None,
    request: Request | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: Mapping[str, Any] | None = None,
    occurred_at: datetime | None = None,
) -> AuditEvent | None:
    """Stage a new audit event on ``session``.

    The event is flushed but not committed so it shares the caller's
    transaction. Returns ``None`` when the audit table is unavailable so the
    caller can carry on with the current transaction.
    """

    if not await _ensure_audit_table(session):
        return None

    event = AuditEvent(
        action=action,
        result=result,
        actor_user_id=actor_user_id,
        target_user_id=target_user_id,
        ip_address=ip_address or extract_client_ip(request),
        user_agent=user_agent or extract_user_agent(request),
        occurred_at=occurred_at or datetime.now(timezone.utc),
        metadata_json=dict(metadata or {}),
    )
    session.add(event)
    await session.flush()
    return event


__all__ = ["extract_client_ip", "extract_user_agent", "record_audit_event"]
