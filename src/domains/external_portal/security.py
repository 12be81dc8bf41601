# src/domains/external_portal/security.py
import asyncio
import hashlib
import hmac
import secrets

import bcrypt

from src.core.settings import settings
from src.shared.exceptions import ConfigurationError

SESSION_TOKEN_BYTES = 32


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_bid_token(token: str) -> str:
    """
    HMAC-SHA256 of a raw bid link token, as stored in ``bid_access_tokens``.

    Raises:
        ConfigurationError: If BID_PORTAL_SECRET is not set
    """
    if not settings.BID_PORTAL_SECRET:
        raise ConfigurationError("BID_PORTAL_SECRET is not configured")
    return hmac.new(
        settings.BID_PORTAL_SECRET.encode("utf-8"),
        token.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def generate_session_token() -> str:
    """Random 256-bit session token, hex encoded. Only its hash is stored."""
    return secrets.token_hex(SESSION_TOKEN_BYTES)


def _hash_secret(value: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.PASSWORD_BCRYPT_ROUNDS)
    return bcrypt.hashpw(value.encode("utf-8"), salt).decode("utf-8")


def _check_secret(value: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(value.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


async def hash_secret(value: str) -> str:
    """bcrypt a password or PIN off the event loop."""
    return await asyncio.to_thread(_hash_secret, value)


async def verify_secret(value: str, hashed: str) -> bool:
    return await asyncio.to_thread(_check_secret, value, hashed)
