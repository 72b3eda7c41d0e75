"""
Password hashing with bcrypt.

Hashes are salted per password and carry their own work factor, so
verification needs only the stored hash. bcrypt reads at most 72 bytes of
input, so every password is first reduced to the base64 form of its
SHA-256 digest (44 bytes) and bcrypt hashes that.
"""

import base64
import hashlib
import logging

import bcrypt

from heartgame.config import settings


logger = logging.getLogger(__name__)


def _prehash(plain_password: str) -> bytes:
    """Fixed-length bcrypt input that depends on every byte of the password."""
    return base64.b64encode(hashlib.sha256(plain_password.encode("utf-8")).digest())


def hash_password(plain_password: str, rounds: int | None = None) -> str:
    """Hash a plaintext password of any length. Raises ValueError if it is empty."""
    if not plain_password:
        logger.error("Attempted to hash null or empty password")
        raise ValueError("Password cannot be empty")

    salt = bcrypt.gensalt(rounds=rounds or settings.BCRYPT_ROUNDS)
    hashed = bcrypt.hashpw(_prehash(plain_password), salt)
    logger.debug("Password hashed successfully")
    return hashed.decode("ascii")


def verify_password(plain_password: str, hashed_password: str | None) -> bool:
    """Check a plaintext password against a stored hash. Never raises."""
    if not plain_password:
        logger.warning("Attempted to verify null or empty password")
        return False
    if not hashed_password:
        logger.warning("Attempted to verify against null or empty hash")
        return False

    try:
        matches = bcrypt.checkpw(_prehash(plain_password), hashed_password.encode("ascii"))
    except (ValueError, UnicodeEncodeError) as e:
        logger.error(f"Error verifying password: {e}")
        return False

    logger.debug(f"Password verification: {'success' if matches else 'failed'}")
    return matches
