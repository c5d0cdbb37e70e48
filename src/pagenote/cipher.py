"""
Encryption at rest for the note document.

AES-256-GCM with a fresh 96-bit nonce per call. The stored form is
base64(nonce || ciphertext+tag), so a blob is a plain string that fits
in any JSON store or remote file.

The key is generated once and kept in the synced scope, which travels
with the user's other devices so every device can read every blob.

Usage:
    cipher = Cipher(synced_store)
    key = cipher.get_or_create_key()
    blob = cipher.encrypt('{"v": 1}', key)
    text = cipher.decrypt(blob, key)
"""

from __future__ import annotations

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .storage import KeyValueStore

logger = logging.getLogger("pagenote.cipher")

KEY_SLOT = "_pagenote_enc_key"
KEY_BITS = 256
NONCE_BYTES = 12


class DecryptionError(Exception):
    """Raised when a blob cannot be decrypted (bad key or corrupted data)."""


def generate_key() -> str:
    """Create a new random AES-256 key, base64-encoded."""
    raw = AESGCM.generate_key(bit_length=KEY_BITS)
    return base64.b64encode(raw).decode("ascii")


def _load_key(key: str) -> AESGCM:
    try:
        raw = base64.b64decode(key, validate=True)
        return AESGCM(raw)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError(f"Invalid key material: {exc}") from exc


def encrypt(plaintext: str, key: str) -> str:
    """Encrypt a string.

    Args:
        plaintext: Text to protect. Empty text yields an empty blob.
        key: Base64 AES-256 key.

    Returns:
        Base64 of ``nonce || ciphertext``.
    """
    if not plaintext:
        return ""
    aead = _load_key(key)
    nonce = os.urandom(NONCE_BYTES)
    sealed = aead.encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + sealed).decode("ascii")


def decrypt(blob: str, key: str) -> str:
    """Decrypt a blob produced by :func:`encrypt`.

    Raises:
        DecryptionError: If the blob is malformed, truncated, tampered
            with, or was sealed under a different key.
    """
    if not blob:
        return ""
    aead = _load_key(key)
    try:
        combined = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError(f"Blob is not valid base64: {exc}") from exc
    if len(combined) <= NONCE_BYTES:
        raise DecryptionError("Blob too short to hold a nonce and tag")

    nonce, sealed = combined[:NONCE_BYTES], combined[NONCE_BYTES:]
    try:
        plain = aead.decrypt(nonce, sealed, None)
    except InvalidTag as exc:
        raise DecryptionError("Authentication failed (wrong key or corrupted blob)") from exc
    try:
        return plain.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError(f"Decrypted data is not UTF-8: {exc}") from exc


class Cipher:
    """Encrypts with the installation key held in the synced scope.

    Args:
        synced: The cross-device scope that stores the key.
    """

    def __init__(self, synced: KeyValueStore) -> None:
        self._synced = synced

    def get_or_create_key(self) -> str:
        """Return the installation key, creating it on first use.

        Concurrent first callers may each generate a candidate, but only
        the first write lands; everyone else adopts the stored key.
        """
        existing = self._synced.get(KEY_SLOT)
        if existing:
            return existing
        candidate = generate_key()
        stored = self._synced.set_if_absent(KEY_SLOT, candidate)
        if stored == candidate:
            logger.info("Generated new encryption key")
        return stored

    def encrypt(self, plaintext: str) -> str:
        """Encrypt with the installation key."""
        return encrypt(plaintext, self.get_or_create_key())

    def decrypt(self, blob: str) -> str:
        """Decrypt with the installation key."""
        return decrypt(blob, self.get_or_create_key())
