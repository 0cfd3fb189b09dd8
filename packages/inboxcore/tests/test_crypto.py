"""
Tests for AES-GCM field encryption.
"""

import base64

import pytest

from inboxcore.crypto import EncryptionError, FieldEncryptor, generate_key, get_field_encryptor
from inboxcore.settings import get_settings


@pytest.fixture
def encryptor():
    return FieldEncryptor(generate_key())


class TestFieldEncryptor:
    def test_roundtrip(self, encryptor):
        token = encryptor.encrypt("EAAG-access-token")
        assert token.startswith("v1:")
        assert encryptor.decrypt(token) == "EAAG-access-token"

    def test_nonce_is_random(self, encryptor):
        """The same plaintext never encrypts to the same value."""
        assert encryptor.encrypt("secret") != encryptor.encrypt("secret")

    def test_tampered_value_fails_authentication(self, encryptor):
        token = encryptor.encrypt("secret")
        version, encoded = token.split(":", 1)
        data = bytearray(base64.b64decode(encoded))
        data[-1] ^= 0x01
        tampered = f"{version}:{base64.b64encode(bytes(data)).decode('ascii')}"

        with pytest.raises(EncryptionError) as exc_info:
            encryptor.decrypt(tampered)
        assert exc_info.value.code == "AUTH_TAG_VERIFICATION_FAILED"

    def test_wrong_key_fails_authentication(self, encryptor):
        token = encryptor.encrypt("secret")
        with pytest.raises(EncryptionError) as exc_info:
            FieldEncryptor(generate_key()).decrypt(token)
        assert exc_info.value.code == "AUTH_TAG_VERIFICATION_FAILED"

    def test_short_key_rejected(self):
        short_key = base64.b64encode(b"x" * 16).decode("ascii")
        with pytest.raises(EncryptionError) as exc_info:
            FieldEncryptor(short_key)
        assert exc_info.value.code == "INVALID_KEY_LENGTH"

    def test_hex_key_accepted(self):
        hex_key = bytes(range(32)).hex()
        base64_key = base64.b64encode(bytes(range(32))).decode("ascii")

        token = FieldEncryptor(hex_key).encrypt("secret")

        assert FieldEncryptor(base64_key).decrypt(token) == "secret"
        assert FieldEncryptor(hex_key.upper()).decrypt(token) == "secret"

    def test_short_hex_key_rejected(self):
        with pytest.raises(EncryptionError) as exc_info:
            FieldEncryptor(bytes(range(16)).hex())
        assert exc_info.value.code == "INVALID_KEY_LENGTH"

    def test_non_base64_key_rejected(self):
        with pytest.raises(EncryptionError) as exc_info:
            FieldEncryptor("not base64!!")
        assert exc_info.value.code == "INVALID_KEY_FORMAT"

    def test_version_mismatch(self):
        key = generate_key()
        token = FieldEncryptor(key, version="v1").encrypt("secret")
        with pytest.raises(EncryptionError) as exc_info:
            FieldEncryptor(key, version="v2").decrypt(token)
        assert exc_info.value.code == "KEY_VERSION_MISMATCH"

    def test_malformed_values(self, encryptor):
        for value in ("plaintext", "v1:", "v1:@@@", "v1:" + base64.b64encode(b"short").decode()):
            with pytest.raises(EncryptionError) as exc_info:
                encryptor.decrypt(value)
            assert exc_info.value.code == "INVALID_FORMAT"

    def test_is_encrypted(self, encryptor):
        assert FieldEncryptor.is_encrypted(encryptor.encrypt("secret")) is True
        assert FieldEncryptor.is_encrypted("EAAG-plain-token") is False
        assert FieldEncryptor.is_encrypted("") is False
        assert FieldEncryptor.is_encrypted(None) is False

    def test_re_encrypt_rotates_key(self, encryptor):
        new = FieldEncryptor(generate_key(), version="v2")
        rotated = encryptor.re_encrypt(encryptor.encrypt("secret"), new)
        assert rotated.startswith("v2:")
        assert new.decrypt(rotated) == "secret"


class TestGetFieldEncryptor:
    def test_missing_key(self, monkeypatch):
        monkeypatch.setenv("ENCRYPTION_KEY", "")
        get_settings.cache_clear()
        with pytest.raises(EncryptionError) as exc_info:
            get_field_encryptor()
        assert exc_info.value.code == "MISSING_KEY"
        get_settings.cache_clear()

    def test_configured_key(self, monkeypatch):
        monkeypatch.setenv("ENCRYPTION_KEY", generate_key())
        monkeypatch.setenv("ENCRYPTION_KEY_VERSION", "v3")
        get_settings.cache_clear()
        encryptor = get_field_encryptor()
        assert encryptor.version == "v3"
        get_settings.cache_clear()
