"""TOTP two-factor authentication with hashed single-use backup codes."""
from __future__ import annotations

import asyncio
import base64
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from io import BytesIO

import pyotp
import qrcode
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import models as db_models
from .crypto import SecretBox
from .logging import get_logger
from .security import hash_password, verify_password


logger = get_logger("livesales.two_factor")

TOTP_DIGITS = 6
BACKUP_CODE_BYTES = 4


@dataclass(frozen=True)
class PendingSecret:
    """A freshly generated secret that has not been activated yet."""

    secret: str
    otpauth_url: str


def clean_totp_code(code: str | None) -> str:
    """Drop spaces and dashes; any other non-digit yields an empty code."""

    cleaned = "".join(ch for ch in (code or "") if not ch.isspace() and ch != "-")
    return cleaned if cleaned.isascii() and cleaned.isdigit() else ""


def normalise_backup_code(code: str | None) -> str:
    """Strip whitespace and separators and upper-case ``code``."""

    return "".join(ch for ch in (code or "").strip() if ch.isalnum()).upper()


def generate_backup_code() -> str:
    return secrets.token_hex(BACKUP_CODE_BYTES).upper()


def render_qr_data_url(payload: str) -> str:
    """Render ``payload`` as a PNG QR code encoded in a ``data:`` URL."""

    image = qrcode.make(payload)
    buffer = BytesIO()
    image.save(buffer, "PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


class TwoFactorService:
    """TOTP secrets, backup codes and their persistence.

    Database methods flush but never commit; activation and disable
    touch the user row and the backup codes inside the caller's
    transaction so both changes land together or not at all.
    """

    def __init__(self, secret_box: SecretBox, *, issuer: str = "Live Sales", backup_code_count: int = 8) -> None:
        self._box = secret_box
        self._issuer = issuer
        self._backup_code_count = backup_code_count

    @property
    def backup_code_count(self) -> int:
        return self._backup_code_count

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # -- TOTP -------------------------------------------------------------

    def generate_secret(self, label: str) -> PendingSecret:
        secret = pyotp.random_base32(length=32)
        uri = pyotp.TOTP(secret, digits=TOTP_DIGITS).provisioning_uri(
            name=label, issuer_name=self._issuer
        )
        return PendingSecret(secret=secret, otpauth_url=uri)

    async def render_qr_code(self, otpauth_url: str) -> str:
        return await asyncio.to_thread(render_qr_data_url, otpauth_url)

    @staticmethod
    def verify_code(secret: str | None, code: str | None) -> bool:
        """Check a TOTP code allowing one 30 second step of clock drift."""

        if not secret:
            return False
        cleaned = clean_totp_code(code)
        if len(cleaned) != TOTP_DIGITS:
            return False
        try:
            return bool(pyotp.TOTP(secret, digits=TOTP_DIGITS).verify(cleaned, valid_window=1))
        except (TypeError, ValueError):
            # Malformed base32 secret.
            return False

    def encrypt_secret(self, secret: str) -> str:
        return self._box.encrypt_text(secret)

    def decrypt_secret(self, blob: str) -> str:
        return self._box.decrypt_text(blob)

    def user_secret(self, user: db_models.User) -> str | None:
        """Return the decrypted secret of ``user`` or ``None`` when unset.

        Raises :class:`~.errors.DecryptionError` if the stored blob is corrupt.
        """

        if not user.two_factor_secret:
            return None
        return self.decrypt_secret(user.two_factor_secret)

    def verify_user_code(self, user: db_models.User, code: str | None) -> bool:
        return self.verify_code(self.user_secret(user), code)

    # -- Backup codes -----------------------------------------------------

    def generate_backup_codes(self) -> list[str]:
        return [generate_backup_code() for _ in range(self._backup_code_count)]

    @staticmethod
    async def hash_backup_code(code: str) -> str:
        return await asyncio.to_thread(hash_password, normalise_backup_code(code))

    @staticmethod
    async def verify_backup_code(code: str, code_hash: str) -> bool:
        return await asyncio.to_thread(verify_password, code_hash, normalise_backup_code(code))

    async def replace_backup_codes(self, session: AsyncSession, user: db_models.User) -> list[str]:
        """Delete the user's backup codes and store a fresh set; return plaintext."""

        codes = self.generate_backup_codes()
        hashes = await asyncio.gather(*(self.hash_backup_code(code) for code in codes))
        await session.execute(
            delete(db_models.TwoFactorBackupCode).where(db_models.TwoFactorBackupCode.user_id == user.id)
        )
        for code_hash in hashes:
            session.add(db_models.TwoFactorBackupCode(user_id=user.id, code_hash=code_hash))
        await session.flush()
        return codes

    async def consume_backup_code(self, session: AsyncSession, user_id: int, code: str | None) -> bool:
        """Mark the first unused backup code matching ``code`` as used."""

        cleaned = normalise_backup_code(code)
        if not cleaned:
            return False
        stmt = select(db_models.TwoFactorBackupCode).where(
            db_models.TwoFactorBackupCode.user_id == user_id,
            db_models.TwoFactorBackupCode.used_at.is_(None),
        )
        records = list((await session.execute(stmt)).scalars())
        for record in records:
            if not await self.verify_backup_code(cleaned, record.code_hash):
                continue
            result = await session.execute(
                update(db_models.TwoFactorBackupCode)
                .where(
                    db_models.TwoFactorBackupCode.id == record.id,
                    db_models.TwoFactorBackupCode.used_at.is_(None),
                )
                .values(used_at=self._now())
                .execution_options(synchronize_session=False)
            )
            # A concurrent redemption of the same code already won.
            return result.rowcount == 1
        return False

    async def count_remaining_backup_codes(self, session: AsyncSession, user_id: int) -> int:
        stmt = select(func.count(db_models.TwoFactorBackupCode.id)).where(
            db_models.TwoFactorBackupCode.user_id == user_id,
            db_models.TwoFactorBackupCode.used_at.is_(None),
        )
        return int((await session.execute(stmt)).scalar_one())

    # -- State transitions ------------------------------------------------

    async def activate(self, session: AsyncSession, user: db_models.User, secret: str) -> list[str]:
        """Persist the verified ``secret`` and a new backup code set."""

        user.two_factor_secret = self.encrypt_secret(secret)
        user.two_factor_enabled = True
        codes = await self.replace_backup_codes(session, user)
        logger.info("two_factor_activated", user_id=user.id)
        return codes

    async def deactivate(self, session: AsyncSession, user: db_models.User) -> None:
        user.two_factor_enabled = False
        user.two_factor_secret = None
        await session.execute(
            delete(db_models.TwoFactorBackupCode).where(db_models.TwoFactorBackupCode.user_id == user.id)
        )
        await session.flush()
        logger.info("two_factor_deactivated", user_id=user.id)

    async def verify_second_factor(
        self, session: AsyncSession, user: db_models.User, code: str | None
    ) -> str | None:
        """Try TOTP first, then the backup codes.

        Returns ``"totp"`` or ``"backup_code"`` naming the factor that matched,
        or ``None``.
        """

        if self.verify_user_code(user, code):
            return "totp"
        if await self.consume_backup_code(session, user.id, code):
            return "backup_code"
        return None


__all__ = [
    "PendingSecret",
    "TwoFactorService",
    "clean_totp_code",
    "generate_backup_code",
    "normalise_backup_code",
    "render_qr_data_url",
]
