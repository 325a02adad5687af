"""AES-256-GCM encryption of credentials at rest.

Blob layout (hex): 16-byte IV || 16-byte authentication tag || ciphertext.
"""

from __future__ import annotations

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

IV_LENGTH = 16
AUTH_TAG_LENGTH = 16
KEY_LENGTH = 32


class CryptoError(ValueError):
    """Raised when a blob cannot be decrypted with the given key."""


def parse_key(key_hex: str) -> bytes:
    """Validate a 64-char hex key and return its 32 raw bytes."""
    if len(key_hex) != KEY_LENGTH * 2:
        raise ValueError(f"Encryption key must be {KEY_LENGTH * 2} hex chars.")
    try:
        return bytes.fromhex(key_hex)
    except ValueError as exc:
        raise ValueError("Encryption key must be hex encoded.") from exc


def generate_key() -> str:
    return AESGCM.generate_key(bit_length=KEY_LENGTH * 8).hex()


def encrypt(plaintext: str, key: bytes) -> str:
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    # AESGCM appends the tag; the stored layout puts it before the ciphertext
    ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
    return (iv + tag + ciphertext).hex()


def decrypt(blob: str, key: bytes) -> str:
    try:
        raw = bytes.fromhex(blob)
    except ValueError as exc:
        raise CryptoError("Encrypted data is not valid hex.") from exc

    if len(raw) < IV_LENGTH + AUTH_TAG_LENGTH:
        raise CryptoError("Invalid encrypted data format.")

    iv = raw[:IV_LENGTH]
    tag = raw[IV_LENGTH:IV_LENGTH + AUTH_TAG_LENGTH]
    ciphertext = raw[IV_LENGTH + AUTH_TAG_LENGTH:]
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise CryptoError("Authentication failed: wrong key or tampered data.") from exc
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CryptoError("Decrypted data is not valid UTF-8.") from exc
