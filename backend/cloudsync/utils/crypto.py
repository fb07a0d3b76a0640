from __future__ import annotations

"""Encryption helpers for remote connection strings stored at rest.

:func:`encrypt` and :func:`decrypt` wrap AES-256-GCM. Every call to
:func:`encrypt` uses a fresh random nonce, and the payload is packed as a
single base64 string:

    base64(nonce || tag || ciphertext)

where:
- ``nonce`` is 12 random bytes per encryption
- ``tag`` is the 16-byte GCM authentication tag
- ``ciphertext`` is the encrypted UTF-8 plaintext

Segments are unpacked by fixed offsets. Note that
:class:`cryptography.hazmat.primitives.ciphers.aead.AESGCM` returns and
expects ``ciphertext || tag``, so the tag is moved to the front on encrypt and
back to the end on decrypt.

KEY SOURCE:
    ``CLOUD_SYNC_ENCRYPTION_KEY`` (UTF-8, zero-padded or truncated to 32
    bytes). When the variable is not set, a fixed fallback key is used and a
    warning is logged. Ciphertexts are NOT protected in deployments that
    forget to set the variable.
"""

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from cloudsync.config import settings
from cloudsync.exceptions import DecryptionError
from cloudsync.utils.logger import logger


_NONCE_SIZE = 12  # 96-bit nonce recommended for AES-GCM
_TAG_SIZE = 16
_KEY_SIZE = 32    # 256-bit AES key

_FALLBACK_KEY = "default-encryption-key-change-me-in-production"

_fallback_warned = False


def _fit_key(secret: str) -> bytes:
    raw = secret.encode("utf-8")[:_KEY_SIZE]
    return raw.ljust(_KEY_SIZE, b"\0")


def _get_key() -> bytes:
    global _fallback_warned

    secret = settings.CLOUD_SYNC_ENCRYPTION_KEY
    if not secret:
        if not _fallback_warned:
            logger.warning(
                "[cloud-sync] CLOUD_SYNC_ENCRYPTION_KEY not set, using default key. "
                "Set this environment variable in production!"
            )
            _fallback_warned = True
        return _fit_key(_FALLBACK_KEY)
    return _fit_key(secret)


def encrypt(plaintext: str) -> str:
    """Encrypt ``plaintext`` and return the packed base64 payload."""

    nonce = os.urandom(_NONCE_SIZE)
    sealed = AESGCM(_get_key()).encrypt(nonce, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-_TAG_SIZE], sealed[-_TAG_SIZE:]
    return base64.b64encode(nonce + tag + ciphertext).decode("ascii")


def decrypt(payload: str) -> str:
    """Decrypt a payload produced by :func:`encrypt`.

    Raises :class:`DecryptionError` on malformed input or when the
    authentication tag does not verify (wrong key, tampered data).
    """

    try:
        raw = base64.b64decode(payload.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, AttributeError) as exc:
        raise DecryptionError(f"Malformed ciphertext: {exc}") from exc

    if len(raw) < _NONCE_SIZE + _TAG_SIZE:
        raise DecryptionError("Malformed ciphertext: payload too short")

    nonce = raw[:_NONCE_SIZE]
    tag = raw[_NONCE_SIZE:_NONCE_SIZE + _TAG_SIZE]
    ciphertext = raw[_NONCE_SIZE + _TAG_SIZE:]

    try:
        plain = AESGCM(_get_key()).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as exc:
        raise DecryptionError("Authentication tag mismatch") from exc

    try:
        return plain.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError("Decrypted payload is not valid UTF-8") from exc
