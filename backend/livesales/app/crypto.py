"""AES-256-GCM helpers for secrets stored at rest."""
from __future__ import annotations

import base64
import binascii
import os
from typing import Final, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import DecryptionError

__all__ = ["SecretBox", "decrypt", "encrypt"]


_NONCE_SIZE: Final[int] = 12
_KEY_SIZE: Final[int] = 32
_TAG_SIZE: Final[int] = 16


def _normalise_key(key: bytes) -> bytes:
    if len(key) != _KEY_SIZE:
        raise ValueError("AES-256-GCM requires a 32-byte key")
    return key


def encrypt(
    plaintext: bytes | str,
    *,
    key: bytes,
    associated_data: Optional[bytes] = None,
) -> bytes:
    """Encrypt *plaintext* with AES-256-GCM returning nonce + ciphertext + tag."""

    material = plaintext.encode("utf-8") if isinstance(plaintext, str) else bytes(plaintext)
    nonce = os.urandom(_NONCE_SIZE)
    cipher = AESGCM(_normalise_key(key))
    encrypted = cipher.encrypt(nonce, material, associated_data)
    return nonce + encrypted


def decrypt(
    payload: bytes,
    *,
    key: bytes,
    associated_data: Optional[bytes] = None,
) -> bytes:
    """Decrypt *payload* produced by :func:`encrypt`.

    Raises :class:`DecryptionError` when the payload is truncated or fails
    authentication, never returning altered plaintext.
    """

    if len(payload) < _NONCE_SIZE + _TAG_SIZE:
        raise DecryptionError("Encrypted payload is too short")
    nonce, ciphertext = payload[:_NONCE_SIZE], payload[_NONCE_SIZE:]
    cipher = AESGCM(_normalise_key(key))
    try:
        return cipher.decrypt(nonce, ciphertext, associated_data)
    except InvalidTag as exc:
        raise DecryptionError("Encrypted payload failed authentication") from exc


class SecretBox:
    """Encrypts text secrets into base64 blobs suitable for a text column."""

    def __init__(self, key: bytes) -> None:
        self._key = _normalise_key(key)

    def encrypt_text(self, plaintext: str) -> str:
        blob = encrypt(plaintext, key=self._key)
        return base64.b64encode(blob).decode("ascii")

    def decrypt_text(self, token: str) -> str:
        try:
            blob = base64.b64decode(token.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as exc:
            raise DecryptionError("Encrypted payload is not valid base64") from exc
        plaintext = decrypt(blob, key=self._key)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted payload is not valid UTF-8") from exc
