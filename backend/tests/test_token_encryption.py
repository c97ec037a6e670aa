"""
Unit tests for OAuth token encryption at rest.
"""
import base64

import pytest

from app.config import Settings
from app.security.token_encryption import TokenCipher


def _b64_key(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _cipher(current: bytes, key_id: str = "k1", previous: bytes = None) -> TokenCipher:
    return TokenCipher.from_settings(Settings(
        data_encryption_key_current=_b64_key(current),
        data_encryption_key_previous=_b64_key(previous) if previous else "",
        data_encryption_key_id=key_id,
    ))


def test_roundtrip() -> None:
    cipher = _cipher(b"0" * 32)
    encrypted = cipher.encrypt("access-token-123")

    assert encrypted.startswith("enc:v1:k1:")
    assert "access-token-123" not in encrypted
    assert cipher.decrypt(encrypted) == "access-token-123"


def test_nonce_differs_per_encryption() -> None:
    cipher = _cipher(b"0" * 32)
    assert cipher.encrypt("same") != cipher.encrypt("same")


def test_without_key_tokens_pass_through() -> None:
    cipher = TokenCipher.from_settings(Settings(data_encryption_key_current=""))
    assert not cipher.enabled
    assert cipher.encrypt("plain") == "plain"
    assert cipher.decrypt("plain") == "plain"
    assert cipher.encrypt(None) is None


def test_plaintext_rows_still_readable_with_key() -> None:
    assert _cipher(b"1" * 32).decrypt("legacy-plain-token") == "legacy-plain-token"


def test_rotated_key_decrypts_with_previous() -> None:
    old = _cipher(b"1" * 32, key_id="k1")
    encrypted = old.encrypt("token")

    rotated = _cipher(b"2" * 32, key_id="k2", previous=b"1" * 32)
    assert rotated.decrypt(encrypted) == "token"
    assert rotated.encrypt("token").startswith("enc:v1:k2:")


def test_wrong_key_fails() -> None:
    encrypted = _cipher(b"1" * 32).encrypt("token")
    with pytest.raises(ValueError):
        _cipher(b"3" * 32).decrypt(encrypted)


def test_hex_key_accepted() -> None:
    cipher = TokenCipher.from_settings(Settings(data_encryption_key_current="ab" * 32))
    assert cipher.decrypt(cipher.encrypt("token")) == "token"


def test_invalid_key_length_rejected() -> None:
    with pytest.raises(ValueError):
        TokenCipher.from_settings(Settings(data_encryption_key_current=_b64_key(b"short")))
