from __future__ import annotations

import asyncio
import string
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from trustcore.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 12
MAX_PASSWORD_LENGTH = 128
MAX_EMAIL_LENGTH = 254


def validate_password_strength(value: str) -> str:
    """Return ``value`` unchanged or raise ``ValueError`` naming the first failed rule."""
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not any(ch.islower() for ch in value):
        raise ValueError("password must contain a lowercase letter")
    if not any(ch.isupper() for ch in value):
        raise ValueError("password must contain an uppercase letter")
    if not any(ch.isdigit() for ch in value):
        raise ValueError("password must contain a digit")
    if not any(ch in string.punctuation or ch == " " for ch in value):
        raise ValueError("password must contain a symbol")
    return value


def normalize_email(value: str) -> str:
    email = (value or "").strip().lower()
    if not email or len(email) > MAX_EMAIL_LENGTH:
        raise ValueError(f"email must be between 1 and {MAX_EMAIL_LENGTH} characters")
    local, sep, domain = email.rpartition("@")
    if not sep or not local or "." not in domain:
        raise ValueError("email address is malformed")
    return email


class PasswordService:
    """argon2id hashing off the event loop."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    async def hash(self, password: str) -> str:
        return await asyncio.to_thread(self._hasher.hash, password)

    def _verify_sync(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    async def verify(self, password_hash: str, password: str) -> bool:
        return await asyncio.to_thread(self._verify_sync, password_hash, password)

    async def verify_dummy(self, password: str) -> None:
        """Spend the same work as a real verification for accounts that do not exist."""
        if self._dummy_hash is None:
            self._dummy_hash = await self.hash("trustcore-dummy-password")
        await self.verify(self._dummy_hash, password)
