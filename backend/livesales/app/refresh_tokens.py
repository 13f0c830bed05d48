"""Persistence and rotation of refresh tokens."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import models as db_models
from .errors import RefreshTokenRevokedError
from .security import RefreshClaims, TokenIssuer, hash_refresh_token


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class IssuedRefreshToken:
    token: str
    record: db_models.RefreshToken

    @property
    def expires_at(self) -> datetime:
        return _aware(self.record.expires_at)

    @property
    def session_id(self) -> str:
        return self.record.session_id


class RefreshTokenStore:
    """Issue, look up, rotate and revoke persisted refresh tokens.

    Only SHA-256 digests are stored. Methods flush but never commit, so a
    rotation's revoke and insert share the caller's transaction.
    """

    def __init__(self, session: AsyncSession, issuer: TokenIssuer) -> None:
        self._session = session
        self._issuer = issuer

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def issue(
        self,
        *,
        user_id: int,
        session_id: str,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> IssuedRefreshToken:
        issued = self._issuer.generate_refresh_token(user_id=user_id, session_id=session_id)
        record = db_models.RefreshToken(
            user_id=user_id,
            token_hash=hash_refresh_token(issued.token),
            session_id=session_id,
            expires_at=issued.expires_at,
            revoked=False,
            user_agent=user_agent[:255] if user_agent else None,
            ip_address=ip_address,
        )
        self._session.add(record)
        await self._session.flush()
        return IssuedRefreshToken(token=issued.token, record=record)

    async def lookup(self, token: str) -> db_models.RefreshToken | None:
        stmt = select(db_models.RefreshToken).where(
            db_models.RefreshToken.token_hash == hash_refresh_token(token)
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def redeem(self, token: str) -> tuple[db_models.RefreshToken, RefreshClaims]:
        """Verify ``token`` and mark its record revoked exactly once.

        Raises :class:`~.errors.TokenInvalidError` for signature or expiry
        failures and :class:`RefreshTokenRevokedError` when the record is
        unknown, already revoked, or revoked concurrently by another caller.
        """

        claims = self._issuer.verify_refresh_token(token)
        record = await self.lookup(token)
        if record is None:
            raise RefreshTokenRevokedError("Refresh token not recognised")
        if record.user_id != claims.user_id:
            raise RefreshTokenRevokedError("Refresh token subject mismatch")
        if record.revoked:
            raise RefreshTokenRevokedError(
                "Refresh token already used", reused=True, user_id=record.user_id
            )
        now = self._now()
        if _aware(record.expires_at) <= now:
            raise RefreshTokenRevokedError("Refresh token expired")

        # Conditional revoke: of two concurrent redemptions only one matches.
        result = await self._session.execute(
            update(db_models.RefreshToken)
            .where(
                db_models.RefreshToken.id == record.id,
                db_models.RefreshToken.revoked.is_(False),
            )
            .values(revoked=True, revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise RefreshTokenRevokedError(
                "Refresh token already used", reused=True, user_id=record.user_id
            )
        await self._session.refresh(record)
        return record, claims

    async def revoke(self, token: str) -> db_models.RefreshToken | None:
        """Revoke ``token`` if it is live; return the record when found."""

        record = await self.lookup(token)
        if record is None:
            return None
        if not record.revoked:
            record.revoked = True
            record.revoked_at = self._now()
            await self._session.flush()
        return record

    async def revoke_session(self, user_id: int, session_id: str) -> db_models.RefreshToken | None:
        """Revoke the live tokens of one session; return one of the records."""

        stmt = select(db_models.RefreshToken).where(
            db_models.RefreshToken.user_id == user_id,
            db_models.RefreshToken.session_id == session_id,
            db_models.RefreshToken.revoked.is_(False),
        )
        records = list((await self._session.execute(stmt)).scalars())
        if not records:
            return None
        now = self._now()
        for record in records:
            record.revoked = True
            record.revoked_at = now
        await self._session.flush()
        return records[0]

    async def revoke_all_for_user(self, user_id: int, *, except_token: str | None = None) -> int:
        """Revoke every live token of ``user_id``, optionally sparing one."""

        stmt = (
            update(db_models.RefreshToken)
            .where(
                db_models.RefreshToken.user_id == user_id,
                db_models.RefreshToken.revoked.is_(False),
            )
            .values(revoked=True, revoked_at=self._now())
            .execution_options(synchronize_session=False)
        )
        if except_token:
            stmt = stmt.where(db_models.RefreshToken.token_hash != hash_refresh_token(except_token))
        result = await self._session.execute(stmt)
        return int(result.rowcount or 0)

    async def count_active(self, user_id: int) -> int:
        stmt = select(func.count(db_models.RefreshToken.id)).where(
            db_models.RefreshToken.user_id == user_id,
            db_models.RefreshToken.revoked.is_(False),
            db_models.RefreshToken.expires_at > self._now(),
        )
        return int((await self._session.execute(stmt)).scalar_one())


__all__ = ["IssuedRefreshToken", "RefreshTokenStore"]
