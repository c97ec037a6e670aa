"""
Encryption of OAuth tokens stored on linked accounts.

Envelope format:
    enc:v1:<keyId>:<base64url(nonce + ciphertext)>

Without a configured key, tokens are stored as-is and read back unchanged.
"""
from __future__ import annotations

import base64
import os
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.config import Settings, get_settings


_ENVELOPE_PREFIX = "enc:v1"
_NONCE_SIZE = 12


def _parse_key(raw: str) -> bytes:
    candidate = raw.strip()
    if not candidate:
        raise ValueError("Encryption key cannot be empty.")

    # Hex keys are accepted for operational convenience.
    if len(candidate) == 64 and all(ch in "0123456789abcdefABCDEF" for ch in candidate):
        return bytes.fromhex(candidate)

    try:
        decoded = _b64decode(candidate)
    except ValueError as exc:
        raise ValueError("Invalid base64 data encryption key.") from exc
    if len(decoded) != 32:
        raise ValueError("Data encryption key must decode to exactly 32 bytes.")
    return decoded


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _b64decode(raw: str) -> bytes:
    padded = raw + ("=" * ((4 - len(raw) % 4) % 4))
    return base64.urlsafe_b64decode(padded.encode("utf-8"))


@dataclass(frozen=True)
class TokenCipher:
    current_key: Optional[bytes]
    previous_key: Optional[bytes]
    key_id: str

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "TokenCipher":
        settings = settings or get_settings()
        current = settings.data_encryption_key_current.strip()
        previous = settings.data_encryption_key_previous.strip()
        return cls(
            current_key=_parse_key(current) if current else None,
            previous_key=_parse_key(previous) if previous else None,
            key_id=settings.data_encryption_key_id.strip() or "k1",
        )

    @property
    def enabled(self) -> bool:
        return self.current_key is not None

    def encrypt(self, token: Optional[str]) -> Optional[str]:
        if token is None or not self.enabled:
            return token

        nonce = os.urandom(_NONCE_SIZE)
        sealed = AESGCM(self.current_key).encrypt(nonce, token.encode("utf-8"), None)
        return f"{_ENVELOPE_PREFIX}:{self.key_id}:{_b64encode(nonce + sealed)}"

    def decrypt(self, stored: Optional[str]) -> Optional[str]:
        if stored is None or not stored.startswith(f"{_ENVELOPE_PREFIX}:"):
            # Plaintext rows written before a key was configured.
            return stored

        parts = stored.split(":", 3)
        if len(parts) != 4:
            raise ValueError("Invalid encrypted token format.")
        embedded_key_id, payload = parts[2], parts[3]

        if not self.enabled:
            raise ValueError("Encrypted token found but DATA_ENCRYPTION_KEY_CURRENT is not configured.")

        blob = _b64decode(payload)
        if len(blob) <= _NONCE_SIZE:
            raise ValueError("Encrypted token payload is too short.")
        nonce, sealed = blob[:_NONCE_SIZE], blob[_NONCE_SIZE:]

        keys = [self.current_key, self.previous_key]
        if embedded_key_id != self.key_id:
            keys.reverse()

        for key in keys:
            if key is None:
                continue
            try:
                return AESGCM(key).decrypt(nonce, sealed, None).decode("utf-8")
            except InvalidTag:
                continue

        raise ValueError("Failed to decrypt token with configured keys.")
