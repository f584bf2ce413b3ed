"""AES-256-GCM tokens for identifiers embedded in callback URLs.

Push contact ids and message ids are never exposed in clear inside the
event endpoints handed to browsers. Tokens are ``nonce || ciphertext``
encoded with URL-safe base64 without padding, so they can be dropped
straight into a path segment.
"""

from __future__ import annotations

import base64
import binascii
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_SIZE = 32
NONCE_SIZE = 12


class EncryptionError(Exception):
    """Raised when a key is malformed or a token cannot be decrypted."""


def generate_key() -> str:
    """Return a new random key, base64 encoded."""
    return base64.b64encode(os.urandom(KEY_SIZE)).decode("ascii")


def load_key(value: str | bytes) -> bytes:
    """Decode a base64 key (or accept raw bytes) and check its size."""
    if isinstance(value, str):
        try:
            value = base64.b64decode(value, validate=True)
        except binascii.Error as exc:
            raise EncryptionError("Encryption key is not valid base64") from exc
    _check_key(value)
    return value


def _check_key(key: bytes) -> None:
    if len(key) != KEY_SIZE:
        raise EncryptionError(f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}")


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(token: str) -> bytes:
    padding = "=" * (-len(token) % 4)
    return base64.urlsafe_b64decode(token + padding)


def encrypt_token(plaintext: Optional[str], key: bytes) -> Optional[str]:
    """Encrypt ``plaintext`` into a URL-safe token. Empty values pass through."""
    _check_key(key)
    if not plaintext:
        return plaintext
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return _b64url_encode(nonce + ciphertext)


def decrypt_token(token: Optional[str], key: bytes) -> Optional[str]:
    """Reverse :func:`encrypt_token`."""
    _check_key(key)
    if not token:
        return token
    try:
        raw = _b64url_decode(token)
        if len(raw) <= NONCE_SIZE:
            raise ValueError("token too short")
        plaintext = AESGCM(key).decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], None)
    except (InvalidTag, ValueError, binascii.Error) as exc:
        raise EncryptionError("Decryption failed") from exc
    return plaintext.decode("utf-8")
