"""Security utilities for password hashing and verification."""
import bcrypt
import hashlib
import hmac
from typing import Optional

from relay.core.config import settings


def _prehash(password: str) -> bytes:
    """bcrypt only reads 72 bytes; secrets may be up to 128 characters."""
    return hashlib.sha256(password.encode('utf-8')).hexdigest().encode('ascii')


def hash_password(password: str, rounds: Optional[int] = None) -> str:
    """
    Hash a password using bcrypt.

    Args:
        password: Plain text password
        rounds: bcrypt cost factor (defaults to PASSWORD_HASH_ROUNDS)

    Returns:
        Bcrypt hash string
    """
    password_bytes = _prehash(password)
    salt = bcrypt.gensalt(rounds=rounds or settings.PASSWORD_HASH_ROUNDS)
    hashed = bcrypt.hashpw(password_bytes, salt)
    return hashed.decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against a bcrypt hash.

    Args:
        plain_password: Plain text password to verify
        hashed_password: Bcrypt hash to verify against

    Returns:
        True if password matches, False otherwise
    """
    try:
        return bcrypt.checkpw(
            _prehash(plain_password),
            hashed_password.encode('utf-8')
        )
    except ValueError:
        # Malformed stored hash
        return False


def hash_token(token: str) -> str:
    """
    Hash a token using SHA-256.

    Args:
        token: Token to hash

    Returns:
        Hex-encoded SHA-256 hash
    """
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def constant_time_equals(left: str, right: str) -> bool:
    """Compare two strings without leaking the mismatch position."""
    return hmac.compare_digest(left.encode('utf-8'), right.encode('utf-8'))
