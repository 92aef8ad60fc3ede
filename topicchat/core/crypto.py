"""Versioned encryption helpers for chat message bodies."""

from __future__ import annotations

import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import settings

logger = logging.getLogger(__name__)

_FERNET_INSTANCE: Optional[Fernet] = None
_FERNET_KEY: Optional[str] = None
_AES_KEY: Optional[bytes] = None
_AES_KEY_SOURCE: Optional[str] = None

# Current format first; everything after it is decrypt-only.
AESGCM_PREFIX = "v2:"
FERNET_PREFIX = "v1:"
LEGACY_SALTED_PREFIX = "ENC2_"
LEGACY_PREFIX = "ENC_"

VERSION_CURRENT = "v2"
VERSION_FERNET = "v1"
VERSION_LEGACY_SALTED = "enc2"
VERSION_LEGACY = "enc"
VERSION_PLAIN = "plain"
VERSION_NONE = "none"

DEPRECATED_VERSIONS = frozenset({VERSION_FERNET, VERSION_LEGACY_SALTED, VERSION_LEGACY})

_NONCE_LEN = 12
_SALT_LEN = 8


def validate_message_encryption_key(key: str | None) -> None:
    """Raise RuntimeError when the configured encryption key is unusable."""

    if not key:
        raise RuntimeError("MESSAGE_ENCRYPTION_KEY must be configured when running in production.")

    try:
        decoded = base64.urlsafe_b64decode(key.encode("utf-8"))
    except (binascii.Error, ValueError) as exc:
        raise RuntimeError("MESSAGE_ENCRYPTION_KEY is invalid (not urlsafe base64).") from exc

    if len(decoded) != 32:
        raise RuntimeError("MESSAGE_ENCRYPTION_KEY must decode to 32 bytes.")


def _decoded_key() -> Optional[bytes]:
    """Decode the configured key for AES-GCM; None when encryption is disabled."""

    global _AES_KEY, _AES_KEY_SOURCE

    key = settings.message_encryption_key
    if not key:
        _AES_KEY = None
        _AES_KEY_SOURCE = None
        return None

    if _AES_KEY is not None and _AES_KEY_SOURCE == key:
        return _AES_KEY

    try:
        key_bytes = base64.urlsafe_b64decode(key.encode("utf-8"))
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Invalid MESSAGE_ENCRYPTION_KEY; expected urlsafe base64 string") from exc

    if len(key_bytes) != 32:
        raise ValueError("Invalid MESSAGE_ENCRYPTION_KEY; expected decoded length of 32 bytes")

    _AES_KEY = key_bytes
    _AES_KEY_SOURCE = key
    return key_bytes


def _aesgcm() -> Optional[AESGCM]:
    key_bytes = _decoded_key()
    if key_bytes is None:
        return None
    return AESGCM(key_bytes)


def _fernet() -> Optional[Fernet]:
    """Return a memoized Fernet instance for tokens written by the v1 format."""

    global _FERNET_INSTANCE, _FERNET_KEY

    key = settings.message_encryption_key
    if not key:
        return None

    if _FERNET_INSTANCE is not None and _FERNET_KEY == key:
        return _FERNET_INSTANCE

    try:
        _FERNET_INSTANCE = Fernet(key.encode("utf-8"))
    except ValueError as exc:
        raise ValueError("Invalid MESSAGE_ENCRYPTION_KEY; expected base64-encoded 32-byte key") from exc
    _FERNET_KEY = key
    return _FERNET_INSTANCE


def _b64u_encode(data: bytes) -> str:
    """Encode bytes to urlsafe base64 without newlines."""

    return base64.urlsafe_b64encode(data).decode("utf-8")


def _b64u_decode(payload: str) -> bytes:
    """Decode urlsafe base64 string, tolerating missing padding."""

    padding_len = (-len(payload)) % 4
    padded = payload + ("=" * padding_len)
    return base64.urlsafe_b64decode(padded.encode("utf-8"))


def _xor(data: bytes, key: bytes) -> bytes:
    return bytes(b ^ key[i % len(key)] for i, b in enumerate(data))


def _legacy_secret() -> bytes:
    return settings.legacy_encryption_secret.encode("utf-8")


def _encrypt_legacy(plain: str, *, salted: bool = True) -> str:
    """
    Produce ``ENC2_``/``ENC_`` ciphertext.

    Only used to build fixtures and by the migration command's dry runs; new
    messages are never written in these formats.
    """

    data = plain.encode("utf-8")
    if not salted:
        return LEGACY_PREFIX + base64.b64encode(_xor(data, _legacy_secret())).decode("ascii")
    salt = os.urandom(_SALT_LEN)
    body = _xor(data, _legacy_secret() + salt)
    return LEGACY_SALTED_PREFIX + base64.b64encode(salt + body).decode("ascii")


def _decrypt_legacy(token: str) -> str:
    if token.startswith(LEGACY_SALTED_PREFIX):
        combined = base64.b64decode(token[len(LEGACY_SALTED_PREFIX) :], validate=True)
        if len(combined) < _SALT_LEN:
            raise ValueError("Malformed legacy message token")
        salt, body = combined[:_SALT_LEN], combined[_SALT_LEN:]
        return _xor(body, _legacy_secret() + salt).decode("utf-8")

    body = base64.b64decode(token[len(LEGACY_PREFIX) :], validate=True)
    return _xor(body, _legacy_secret()).decode("utf-8")


def _decrypt_aesgcm(token: str) -> Optional[str]:
    cipher = _aesgcm()
    if cipher is None:
        return None

    payload = _b64u_decode(token[len(AESGCM_PREFIX) :])
    if len(payload) <= _NONCE_LEN:
        raise ValueError("Malformed message token")

    nonce = payload[:_NONCE_LEN]
    ciphertext = payload[_NONCE_LEN:]
    return cipher.decrypt(nonce, ciphertext, associated_data=None).decode("utf-8")


def _decrypt_fernet(token: str) -> Optional[str]:
    cipher = _fernet()
    if cipher is None:
        return None
    decrypted: bytes = cipher.decrypt(token[len(FERNET_PREFIX) :].encode("utf-8"))
    return decrypted.decode("utf-8")


def encryption_available() -> bool:
    """Return True when message encryption is configured."""

    try:
        return _aesgcm() is not None
    except ValueError:
        return False


def get_encryption_version(value: str | None) -> str:
    """Classify a stored message body by its version tag."""

    if not value:
        return VERSION_NONE
    if value.startswith(AESGCM_PREFIX):
        return VERSION_CURRENT
    if value.startswith(FERNET_PREFIX):
        return VERSION_FERNET
    if value.startswith(LEGACY_SALTED_PREFIX):
        return VERSION_LEGACY_SALTED
    if value.startswith(LEGACY_PREFIX):
        return VERSION_LEGACY
    return VERSION_PLAIN


def is_encrypted(value: str | None) -> bool:
    return get_encryption_version(value) not in (VERSION_PLAIN, VERSION_NONE)


def needs_upgrade(value: str | None) -> bool:
    """True when ``value`` uses a deprecated format and a current key is configured."""

    return get_encryption_version(value) in DEPRECATED_VERSIONS and encryption_available()


def encrypt_message(plain: str) -> str:
    """Encrypt a message body with AES-GCM; return it unchanged when no key is set."""

    if plain == "":
        return plain

    cipher = _aesgcm()
    if cipher is None:
        return plain

    nonce = os.urandom(_NONCE_LEN)
    ciphertext = cipher.encrypt(nonce, plain.encode("utf-8"), associated_data=None)
    return f"{AESGCM_PREFIX}{_b64u_encode(nonce + ciphertext)}"


def decrypt_message(value: str) -> str:
    """
    Decrypt any supported message format.

    Never raises: unrecognized input, a missing key, or a corrupt/forged token
    all return ``value`` unchanged so the caller can still display something.
    """

    version = get_encryption_version(value)
    if version in (VERSION_PLAIN, VERSION_NONE):
        return value

    try:
        if version == VERSION_CURRENT:
            decrypted = _decrypt_aesgcm(value)
        elif version == VERSION_FERNET:
            decrypted = _decrypt_fernet(value)
        else:
            decrypted = _decrypt_legacy(value)
    except (ValueError, InvalidTag, InvalidToken) as exc:
        # binascii.Error and UnicodeDecodeError are both ValueError subclasses
        logger.warning("[CRYPTO] Unable to decrypt %s message body: %s", version, type(exc).__name__)
        return value

    if decrypted is None:
        logger.debug("[CRYPTO] No message key configured; leaving %s body as-is", version)
        return value
    return decrypted


def upgrade_encryption(value: str) -> str:
    """Re-encrypt a deprecated ciphertext with the current format."""

    if not needs_upgrade(value):
        return value

    plain = decrypt_message(value)
    if plain == value:
        return value
    return encrypt_message(plain)


def reset_key_cache() -> None:
    """Forget memoized ciphers (used after settings change)."""

    global _FERNET_INSTANCE, _FERNET_KEY, _AES_KEY, _AES_KEY_SOURCE
    _FERNET_INSTANCE = None
    _FERNET_KEY = None
    _AES_KEY = None
    _AES_KEY_SOURCE = None


__all__ = [
    "encrypt_message",
    "decrypt_message",
    "is_encrypted",
    "needs_upgrade",
    "upgrade_encryption",
    "get_encryption_version",
    "encryption_available",
    "validate_message_encryption_key",
    "reset_key_cache",
]
