from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from trustcore.config import Settings
from trustcore.logging import fingerprint, get_logger
from trustcore.service.errors import (
    ConsumedError,
    InvalidTokenError,
    TokenExpiredError,
    translates_storage_errors,
)
from trustcore.service.revocation import RevocationCache
from trustcore.storage.base import AuthStore
from trustcore.storage.common import hash_secret
from trustcore.storage.errors import CacheUnavailable
from trustcore.storage.models import SecurityToken, TokenPurpose, as_utc, utcnow

logger = get_logger(__name__)

TOKEN_KIND = "token"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    record: SecurityToken


class TokenIssuer:
    """Single-use, expiring security tokens.

    Only SHA-256 digests reach the store; the raw value is returned once by
    ``issue``. At most one unconsumed token exists per (purpose, identifier).
    """

    def __init__(
        self,
        store: AuthStore,
        revocations: RevocationCache,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.revocations = revocations
        self.settings = settings
        self._clock = clock

    def ttl_for(self, purpose: TokenPurpose) -> timedelta:
        if purpose == TokenPurpose.VERIFICATION:
            return timedelta(hours=self.settings.verification_token_ttl_hours)
        if purpose == TokenPurpose.PASSWORD_RESET:
            return timedelta(minutes=self.settings.password_reset_token_ttl_minutes)
        if purpose == TokenPurpose.ACCOUNT_DELETION:
            return timedelta(minutes=self.settings.account_deletion_token_ttl_minutes)
        return timedelta(minutes=self.settings.email_change_token_ttl_minutes)

    @staticmethod
    def _cache_key(purpose: TokenPurpose, token_hash: str) -> str:
        return f"{purpose.value}:{token_hash}"

    @translates_storage_errors
    async def issue(
        self, purpose: TokenPurpose, identifier: str, *, payload: Optional[Dict] = None
    ) -> IssuedToken:
        raw = secrets.token_urlsafe(32)
        record = SecurityToken.new(
            purpose,
            identifier,
            hash_secret(raw),
            self.ttl_for(purpose),
            payload=payload,
            now=self._clock(),
        )
        stored = self.store.issue_token(record)
        logger.info(
            "security_token_issued",
            token_purpose=purpose.value,
            identifier_fp=fingerprint(identifier),
            token_id=stored.id,
        )
        return IssuedToken(token=raw, record=stored)

    @translates_storage_errors
    async def redeem(self, purpose: TokenPurpose, token: str) -> SecurityToken:
        token_hash = hash_secret(token or "")
        if await self.revocations.is_revoked(TOKEN_KIND, self._cache_key(purpose, token_hash)):
            logger.info("security_token_replay", token_purpose=purpose.value)
            raise ConsumedError()

        now = self._clock()
        redeemed = self.store.redeem_token(purpose, token_hash, now)
        if redeemed:
            try:
                await self.revocations.publish(
                    TOKEN_KIND, self._cache_key(purpose, token_hash), redeemed.expires_at
                )
            except CacheUnavailable:
                logger.warning("token_consumption_publish_failed", token_id=redeemed.id)
            logger.info("security_token_redeemed", token_purpose=purpose.value, token_id=redeemed.id)
            return redeemed

        existing = self.store.get_token(purpose, token_hash)
        if existing is None:
            logger.info("security_token_unknown", token_purpose=purpose.value)
            raise InvalidTokenError()
        if existing.consumed_at is not None:
            logger.info("security_token_replay", token_purpose=purpose.value, token_id=existing.id)
            raise ConsumedError()
        if as_utc(existing.expires_at) <= now:
            self.store.delete_token(existing.id)
            logger.info("security_token_expired", token_purpose=purpose.value, token_id=existing.id)
            raise TokenExpiredError()
        # row changed between the update and the read
        raise ConsumedError()

    @translates_storage_errors
    def lookup_by_identifier(
        self, purpose: TokenPurpose, identifier: str
    ) -> Optional[SecurityToken]:
        return self.store.get_live_token(purpose, identifier, self._clock())

    @translates_storage_errors
    def lookup_by_token(self, purpose: TokenPurpose, token: str) -> Optional[SecurityToken]:
        record = self.store.get_token(purpose, hash_secret(token or ""))
        if record is None or record.consumed_at is not None:
            return None
        if as_utc(record.expires_at) <= self._clock():
            return None
        return record
