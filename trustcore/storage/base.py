from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, Sequence, Tuple

from trustcore.storage.models import (
    PendingTicket,
    RecoveryCode,
    SecurityToken,
    Session,
    TokenPurpose,
    TwoFactorCredential,
    User,
)


class AuthStore(Protocol):
    """Authoritative relational store.

    Every method that guards a multi-row invariant is atomic: callers never
    read, decide, and write back.
    """

    def verify_connection(self) -> None: ...

    # users
    def create_user(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        email_verified_at: Optional[datetime] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def mark_email_verified(self, user_id: str, verified_at: datetime) -> Optional[User]: ...

    def update_email(
        self, user_id: str, new_email: str, *, verified_at: datetime
    ) -> Optional[User]: ...

    def schedule_deletion(self, user_id: str, at: datetime) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    # two-factor
    def save_two_factor_secret(self, user_id: str, secret: str) -> TwoFactorCredential: ...

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorCredential]: ...

    def enable_two_factor(
        self, user_id: str, code_hashes: Sequence[str], now: datetime
    ) -> bool: ...

    def delete_two_factor(self, user_id: str) -> bool: ...

    def redeem_recovery_code(
        self, ticket_hash: str, code_hash: str, now: datetime
    ) -> Optional[PendingTicket]: ...

    def list_recovery_codes(self, user_id: str) -> List[RecoveryCode]: ...

    def count_unused_recovery_codes(self, user_id: str) -> int: ...

    def create_pending_ticket(
        self, user_id: str, ticket_hash: str, expires_at: datetime
    ) -> PendingTicket: ...

    def get_pending_ticket(self, ticket_hash: str) -> Optional[PendingTicket]: ...

    def consume_pending_ticket(
        self, ticket_hash: str, now: datetime
    ) -> Optional[PendingTicket]: ...

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]: ...

    def list_sessions(self, user_id: str, now: datetime) -> List[Session]: ...

    def touch_session(self, token_hash: str, now: datetime) -> bool: ...

    def revoke_session(
        self, session_id: str, user_id: str, now: datetime
    ) -> Optional[Session]: ...

    def revoke_user_sessions(
        self, user_id: str, now: datetime, except_session_id: Optional[str] = None
    ) -> List[Session]: ...

    # security tokens
    def issue_token(self, token: SecurityToken) -> SecurityToken: ...

    def redeem_token(
        self, purpose: TokenPurpose, token_hash: str, now: datetime
    ) -> Optional[SecurityToken]: ...

    def get_token(self, purpose: TokenPurpose, token_hash: str) -> Optional[SecurityToken]: ...

    def get_live_token(
        self, purpose: TokenPurpose, identifier: str, now: datetime
    ) -> Optional[SecurityToken]: ...

    def delete_token(self, token_id: str) -> None: ...


class CacheBackend(Protocol):
    """Distributed TTL cache. Every method raises ``CacheUnavailable`` on failure."""

    async def ping(self) -> bool: ...

    async def set_revoked(self, key: str, ttl_seconds: int) -> None: ...

    async def is_revoked(self, key: str) -> bool: ...

    async def revoked_count(self) -> int: ...

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]: ...

    async def close(self) -> None: ...
