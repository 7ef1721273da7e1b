from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize naive timestamps (as returned by some drivers) to aware UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TokenPurpose(str, Enum):
    VERIFICATION = "verification"
    PASSWORD_RESET = "password_reset"
    ACCOUNT_DELETION = "account_deletion"
    EMAIL_CHANGE = "email_change"


@dataclass
class User:
    id: str
    email: str
    password_hash: Optional[str] = None
    email_verified_at: Optional[datetime] = None
    deletion_scheduled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_federated_only(self) -> bool:
        return self.password_hash is None


@dataclass
class TwoFactorCredential:
    user_id: str
    secret: str
    enabled: bool = False
    backup_codes_generated: bool = False
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RecoveryCode:
    id: str
    user_id: str
    code_hash: str
    consumed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    token_hash: str
    created_at: datetime
    last_active_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    is_current_session: bool = False
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        ttl: timedelta,
        user_agent: str | None = None,
        ip_address: str | None = None,
        *,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            created_at=now,
            last_active_at=now,
            expires_at=now + ttl,
            user_agent=user_agent,
            ip_address=ip_address,
            is_current_session=True,
        )

    def is_live(self, now: datetime) -> bool:
        return self.revoked_at is None and as_utc(self.expires_at) > now


@dataclass
class SecurityToken:
    id: str
    purpose: TokenPurpose
    identifier: str
    token_hash: str
    expires_at: datetime
    consumed_at: Optional[datetime] = None
    payload: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        purpose: TokenPurpose,
        identifier: str,
        token_hash: str,
        ttl: timedelta,
        *,
        payload: Dict | None = None,
        now: Optional[datetime] = None,
    ) -> "SecurityToken":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            purpose=purpose,
            identifier=identifier,
            token_hash=token_hash,
            expires_at=now + ttl,
            payload=payload,
            created_at=now,
        )


@dataclass
class PendingTicket:
    id: str
    user_id: str
    ticket_hash: str
    expires_at: datetime
    consumed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class DeviceInfo:
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
