"""
AEAD sealing for session cookies and values stored at rest.

Why: The session cookie is the only identity carrier (no server-side session
table), so it must be confidential and tamper evident. The same primitive
optionally protects OAuth state and token records in the store backends.

Security:
- AES-256-GCM with a fresh 16-byte nonce per seal and a 16-byte tag.
- The key is derived once from the server secret with scrypt; each purpose
  (session, store) uses its own salt so blobs cannot be swapped between them.
- `open()` returns None for anything that does not authenticate; callers never
  see partially decrypted data.
"""
from __future__ import annotations

import base64
import binascii
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

NONCE_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32


def derive_key(secret: str, salt: bytes) -> bytes:
    kdf = Scrypt(salt=salt, length=KEY_LENGTH, n=2**14, r=8, p=1)
    return kdf.derive(secret.encode("utf-8"))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


class Sealer:
    """Seal/open opaque base64url blobs laid out as nonce | tag | ciphertext."""

    def __init__(self, secret: str, *, purpose: str = "session"):
        if not secret:
            raise ValueError("secret required")
        self._aead = AESGCM(derive_key(secret, f"homemail.{purpose}".encode("utf-8")))

    def seal(self, plaintext: bytes) -> str:
        nonce = os.urandom(NONCE_LENGTH)
        # AESGCM appends the tag to the ciphertext; move it in front.
        sealed = self._aead.encrypt(nonce, plaintext, None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return _b64url_encode(nonce + tag + ciphertext)

    def open(self, blob: Optional[str]) -> Optional[bytes]:
        if not blob:
            return None
        try:
            raw = _b64url_decode(blob)
        except (ValueError, UnicodeEncodeError, binascii.Error):
            return None
        if len(raw) < NONCE_LENGTH + TAG_LENGTH:
            return None
        nonce = raw[:NONCE_LENGTH]
        tag = raw[NONCE_LENGTH:NONCE_LENGTH + TAG_LENGTH]
        ciphertext = raw[NONCE_LENGTH + TAG_LENGTH:]
        try:
            return self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            return None
