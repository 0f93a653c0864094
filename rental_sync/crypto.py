"""Helpers for site credentials stored encrypted inside the app_config JSON."""

from __future__ import annotations

import base64
import binascii
import hashlib
from itertools import cycle

ENCRYPTED_PREFIX = "enc:"


def _derived_key(secret_key: str) -> bytes:
    return hashlib.sha256(secret_key.encode("utf-8")).digest()


def _xor(secret_key: str, data: bytes) -> bytes:
    key_stream = cycle(_derived_key(secret_key))
    return bytes(b ^ next(key_stream) for b in data)


def encrypt_secret(secret_key: str, plaintext: str) -> str:
    cipher_bytes = _xor(secret_key, plaintext.encode("utf-8"))
    return ENCRYPTED_PREFIX + base64.urlsafe_b64encode(cipher_bytes).decode("utf-8")


def decrypt_secret(secret_key: str, value: str) -> str:
    """Return the plaintext for ``value``.

    Values without the ``enc:`` prefix are treated as plaintext so operators
    can paste a password into the config while setting a site up.
    """

    if not value.startswith(ENCRYPTED_PREFIX):
        return value
    payload = value[len(ENCRYPTED_PREFIX):]
    try:
        data = base64.urlsafe_b64decode(payload.encode("utf-8"))
        return _xor(secret_key, data).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ValueError("Encrypted secret could not be decoded") from exc
