"""
Symmetric encryption for OAuth credentials stored at rest.

Tokens are sealed with AES-256-GCM. The stored value is
``base64(nonce || tag || ciphertext)`` with a 12 byte nonce and 16 byte tag.
"""

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.core.settings import settings
from src.shared.exceptions import ConfigurationError

NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32


class TokenDecryptionError(Exception):
    """Ciphertext was tampered with, truncated, or sealed with another key."""


def _load_key(raw: str | None) -> bytes:
    if not raw:
        raise ConfigurationError("TOKEN_ENCRYPTION_KEY is not configured")

    if len(raw) == KEY_LENGTH:
        return raw.encode("utf-8")

    if len(raw) == KEY_LENGTH * 2:
        try:
            return bytes.fromhex(raw)
        except ValueError:
            pass

    try:
        decoded = base64.b64decode(raw, validate=True)
    except binascii.Error:
        decoded = b""
    if len(decoded) == KEY_LENGTH:
        return decoded

    raise ConfigurationError(
        "TOKEN_ENCRYPTION_KEY must be 32 bytes (raw, 64 hex chars, or base64)"
    )


def encrypt_token(plaintext: str) -> str:
    """
    Encrypt a credential for storage.

    Raises:
        ConfigurationError: If the encryption key is missing or invalid
    """
    key = _load_key(settings.TOKEN_ENCRYPTION_KEY)
    nonce = os.urandom(NONCE_LENGTH)
    # AESGCM appends the tag to the ciphertext
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return base64.b64encode(nonce + tag + ciphertext).decode("ascii")


def decrypt_token(ciphertext: str) -> str:
    """
    Decrypt a credential previously produced by ``encrypt_token``.

    Raises:
        ConfigurationError: If the encryption key is missing or invalid
        TokenDecryptionError: If the value cannot be authenticated
    """
    key = _load_key(settings.TOKEN_ENCRYPTION_KEY)
    try:
        packed = base64.b64decode(ciphertext, validate=True)
    except (binascii.Error, ValueError) as e:
        raise TokenDecryptionError(f"Malformed encrypted token: {e}") from e

    if len(packed) < NONCE_LENGTH + TAG_LENGTH:
        raise TokenDecryptionError("Encrypted token is truncated")

    nonce = packed[:NONCE_LENGTH]
    tag = packed[NONCE_LENGTH : NONCE_LENGTH + TAG_LENGTH]
    body = packed[NONCE_LENGTH + TAG_LENGTH :]
    try:
        plaintext = AESGCM(key).decrypt(nonce, body + tag, None)
    except InvalidTag as e:
        raise TokenDecryptionError("Encrypted token failed authentication") from e
    return plaintext.decode("utf-8")
