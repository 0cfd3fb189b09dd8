"""
Field-level encryption.

AES-256-GCM with a random 96-bit nonce per value. Keys are 32 bytes, configured as
64 hex characters or base64. Encrypted values are stored as
"<key version>:<base64(nonce || ciphertext || tag)>" so keys can be rotated.
"""

import base64
import binascii
import logging
import os
import string

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from inboxcore.settings import get_settings

logger = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


class EncryptionError(Exception):
    """Encryption or decryption failed."""

    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code


def generate_key() -> str:
    """Generate a new base64 encoded 256-bit key."""
    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")


def _decode_key(key: str) -> bytes:
    """
    Decode a 256-bit key given as 64 hex characters or as base64.

    Hex is tried first: a 64 character hex string is also valid base64 but
    would decode to 48 bytes.
    """
    key = key.strip()
    if len(key) == KEY_SIZE * 2 and all(c in string.hexdigits for c in key):
        return bytes.fromhex(key)

    try:
        raw = base64.b64decode(key, validate=True)
    except (binascii.Error, ValueError):
        raise EncryptionError("Encryption key is neither hex nor base64", "INVALID_KEY_FORMAT")

    if len(raw) != KEY_SIZE:
        raise EncryptionError(
            f"Encryption key must be {KEY_SIZE} bytes, got {len(raw)}",
            "INVALID_KEY_LENGTH",
        )
    return raw


class FieldEncryptor:
    """Encrypts and decrypts individual column values."""

    def __init__(self, key: str, version: str = "v1"):
        if ":" in version:
            raise EncryptionError("Key version cannot contain ':'", "INVALID_VERSION")
        self._aesgcm = AESGCM(_decode_key(key))
        self.version = version

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return f"{self.version}:{base64.b64encode(nonce + sealed).decode('ascii')}"

    def decrypt(self, token: str) -> str:
        version, _, encoded = token.partition(":")
        if not encoded:
            raise EncryptionError("Malformed encrypted value", "INVALID_FORMAT")
        if version != self.version:
            raise EncryptionError(
                f"Value was encrypted with key {version}, this key is {self.version}",
                "KEY_VERSION_MISMATCH",
            )

        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            raise EncryptionError("Malformed encrypted value", "INVALID_FORMAT")

        if len(data) < NONCE_SIZE + TAG_SIZE:
            raise EncryptionError("Encrypted value is too short", "INVALID_FORMAT")

        nonce, sealed = data[:NONCE_SIZE], data[NONCE_SIZE:]
        try:
            return self._aesgcm.decrypt(nonce, sealed, None).decode("utf-8")
        except InvalidTag:
            logger.warning("Encrypted value failed authentication", extra={"version": version})
            raise EncryptionError(
                "Encrypted value failed authentication", "AUTH_TAG_VERIFICATION_FAILED"
            )

    @staticmethod
    def is_encrypted(value: str | None) -> bool:
        """Check whether a value looks like the output of encrypt()."""
        if not value or ":" not in value:
            return False
        version, _, encoded = value.partition(":")
        if not version or not encoded:
            return False
        try:
            return len(base64.b64decode(encoded, validate=True)) >= NONCE_SIZE + TAG_SIZE
        except (binascii.Error, ValueError):
            return False

    def re_encrypt(self, token: str, new_encryptor: "FieldEncryptor") -> str:
        """Decrypt with this key and encrypt with another (key rotation)."""
        return new_encryptor.encrypt(self.decrypt(token))


def get_field_encryptor() -> FieldEncryptor:
    """Build the encryptor configured through ENCRYPTION_KEY."""
    settings = get_settings()
    if not settings.ENCRYPTION_KEY:
        raise EncryptionError("ENCRYPTION_KEY is not configured", "MISSING_KEY")
    return FieldEncryptor(settings.ENCRYPTION_KEY, settings.ENCRYPTION_KEY_VERSION)
