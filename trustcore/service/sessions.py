from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from trustcore.config import Settings
from trustcore.logging import get_logger
from trustcore.service.errors import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    translates_storage_errors,
)
from trustcore.service.revocation import RevocationCache
from trustcore.storage.base import AuthStore
from trustcore.storage.common import hash_secret
from trustcore.storage.errors import CacheUnavailable
from trustcore.storage.models import DeviceInfo, Session, utcnow

logger = get_logger(__name__)

SESSION_KIND = "session"


@dataclass(frozen=True)
class IssuedSession:
    session: Session
    token: str


class SessionRegistry:
    """Multi-device sessions with one current session per user.

    The store is authoritative for revoked and expired state. Revocations are
    mirrored into the cache so other nodes can deny without a store round trip.
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

    @translates_storage_errors
    async def create_session(
        self, user_id: str, device: Optional[DeviceInfo] = None
    ) -> IssuedSession:
        device = device or DeviceInfo()
        raw = secrets.token_urlsafe(32)
        session = Session.new(
            user_id,
            hash_secret(raw),
            timedelta(days=self.settings.session_ttl_days),
            device.user_agent,
            device.ip_address,
            now=self._clock(),
        )
        stored = self.store.create_session(session)
        logger.info("session_created", user_id=user_id, session_id=stored.id)
        return IssuedSession(session=stored, token=raw)

    @translates_storage_errors
    def list_sessions(self, user_id: str) -> List[Session]:
        return self.store.list_sessions(user_id, self._clock())

    async def touch(self, session_token: str) -> bool:
        try:
            return self.store.touch_session(hash_secret(session_token), self._clock())
        except Exception as exc:
            logger.warning("session_touch_failed", error_type=type(exc).__name__)
            return False

    @translates_storage_errors
    async def revoke(self, session_id: str, requesting_user_id: str) -> Session:
        existing = self.store.get_session(session_id)
        if existing is None or existing.revoked_at is not None:
            raise NotFoundError("Session not found.")
        if existing.user_id != requesting_user_id:
            logger.warning(
                "session_revoke_forbidden",
                session_id=session_id,
                user_id=requesting_user_id,
            )
            raise AuthorizationError()
        revoked = self.store.revoke_session(session_id, requesting_user_id, self._clock())
        if revoked is None:
            raise NotFoundError("Session not found.")
        await self._publish(revoked)
        logger.info("session_revoked", session_id=session_id, user_id=requesting_user_id)
        return revoked

    @translates_storage_errors
    async def revoke_all(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        revoked = self.store.revoke_user_sessions(
            user_id, self._clock(), except_session_id=except_session_id
        )
        for session in revoked:
            await self._publish(session)
        logger.info("sessions_revoked", user_id=user_id, count=len(revoked))
        return len(revoked)

    @translates_storage_errors
    async def resolve(self, session_token: str) -> Session:
        if not session_token:
            raise AuthenticationError()
        token_hash = hash_secret(session_token)
        # a cache hit can only deny
        if await self.revocations.is_revoked(SESSION_KIND, token_hash):
            raise AuthenticationError("Session is no longer valid.")
        session = self.store.get_session_by_token_hash(token_hash)
        if session is None or not session.is_live(self._clock()):
            raise AuthenticationError("Session is no longer valid.")
        return session

    async def _publish(self, session: Session) -> None:
        try:
            await self.revocations.publish(SESSION_KIND, session.token_hash, session.expires_at)
        except CacheUnavailable:
            logger.warning("session_revocation_publish_failed", session_id=session.id)
