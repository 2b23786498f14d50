from __future__ import annotations

"""Encryption helpers for Shopee shop tokens stored in ``shopee_shops``.

Access and refresh tokens are written through :func:`encrypt` and read back
through :func:`decrypt`. The format is versioned so plain-text rows written by
older tooling can still be read:

    ENC:v1:<base64(nonce || ciphertext || tag)>

``nonce`` is 12 random bytes per message and ``ciphertext||tag`` comes from
:class:`cryptography.hazmat.primitives.ciphers.aead.AESGCM`. The AES key is
derived from ``settings.secret_key`` with HKDF-SHA256.
"""

import base64
import os
from typing import Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from shopee_sync.config import settings


_PREFIX = "ENC:v1:"
_NONCE_SIZE = 12
_KEY_SIZE = 32


def _get_key() -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=_KEY_SIZE,
        salt=None,
        info=b"shopee-token-encryption",
    )
    return hkdf.derive(settings.secret_key.encode("utf-8"))


def is_encrypted(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.startswith(_PREFIX)


def encrypt(plaintext: Optional[str]) -> Optional[str]:
    """Encrypt a string value using AES-GCM. ``None`` passes through."""

    if plaintext is None:
        return None
    if not isinstance(plaintext, str):
        plaintext = str(plaintext)

    aesgcm = AESGCM(_get_key())
    nonce = os.urandom(_NONCE_SIZE)
    ct = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), associated_data=None)

    return _PREFIX + base64.b64encode(nonce + ct).decode("ascii")


def decrypt(value: Optional[str]) -> Optional[str]:
    """Decrypt a value produced by :func:`encrypt`.

    Values without the ``ENC:v1:`` prefix are legacy plain-text and are
    returned unchanged. A value that carries the prefix but cannot be
    decrypted is also returned unchanged and logged, so a rotated secret shows
    up as an auth failure against Shopee rather than a crash.
    """

    if value is None:
        return None
    if not is_encrypted(value):
        return value

    try:
        raw = base64.b64decode(value[len(_PREFIX):].encode("ascii"))
        if len(raw) <= _NONCE_SIZE:
            return value
        nonce, ct = raw[:_NONCE_SIZE], raw[_NONCE_SIZE:]
        return AESGCM(_get_key()).decrypt(nonce, ct, associated_data=None).decode("utf-8")
    except Exception as e:
        from shopee_sync.utils.logger import logger
        logger.error(f"Crypto decryption failed: {type(e).__name__}: {e}")
        return value
