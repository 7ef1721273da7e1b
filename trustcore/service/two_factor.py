from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import pyotp

from trustcore.config import Settings
from trustcore.logging import get_logger
from trustcore.service.errors import (
    ConflictError,
    InvalidCodeError,
    InvalidCredentials,
    NotFoundError,
    translates_storage_errors,
)
from trustcore.service.passwords import PasswordService
from trustcore.service.rate_limit import RateLimiter, user_identity
from trustcore.service.sessions import IssuedSession, SessionRegistry
from trustcore.storage.base import AuthStore
from trustcore.storage.common import hash_secret
from trustcore.storage.models import DeviceInfo, PendingTicket, as_utc, utcnow

logger = get_logger(__name__)

RECOVERY_CODE_COUNT = 16


def generate_recovery_code() -> str:
    """XXXX-XXXX-XXXX, uppercase hex."""
    return "-".join(secrets.token_hex(2).upper() for _ in range(3))


def normalize_recovery_code(code: str) -> str:
    compact = "".join(ch for ch in (code or "").upper() if ch.isalnum())
    return "-".join(compact[i : i + 4] for i in range(0, len(compact), 4))


@dataclass(frozen=True)
class Enrollment:
    secret: str
    provisioning_uri: str


@dataclass(frozen=True)
class RecoveryCodeStatus:
    total: int
    used: int
    unused: int
    code_status: List[bool] = field(default_factory=list)


class TwoFactorManager:
    """TOTP enrollment, login challenges and recovery codes.

    Per-user lifecycle: not enrolled -> pending verification -> enabled -> not
    enrolled. Login challenges exchange a pending ticket (issued after the
    password check) for a session.
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionRegistry,
        limiter: RateLimiter,
        passwords: PasswordService,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.limiter = limiter
        self.passwords = passwords
        self.settings = settings
        self._clock = clock

    def verify_totp(self, secret: str, code: str) -> bool:
        candidate = (code or "").replace(" ", "").strip()
        if len(candidate) != 6 or not candidate.isdigit():
            return False
        return pyotp.TOTP(secret).verify(candidate, for_time=self._clock(), valid_window=1)

    @translates_storage_errors
    def is_enabled(self, user_id: str) -> bool:
        cfg = self.store.get_two_factor(user_id)
        return bool(cfg and cfg.enabled)

    @translates_storage_errors
    def issue_pending_ticket(self, user_id: str) -> str:
        raw = secrets.token_urlsafe(32)
        expires_at = self._clock() + timedelta(seconds=self.settings.pending_ticket_ttl_seconds)
        self.store.create_pending_ticket(user_id, hash_secret(raw), expires_at)
        logger.info("two_factor_ticket_issued", user_id=user_id)
        return raw

    @translates_storage_errors
    async def enroll(self, user_id: str) -> Enrollment:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        if self.is_enabled(user_id):
            raise ConflictError("Two-factor authentication is already enabled.")
        secret = pyotp.random_base32()
        self.store.save_two_factor_secret(user_id, secret)
        uri = pyotp.TOTP(secret).provisioning_uri(
            name=user.email, issuer_name=self.settings.totp_issuer
        )
        logger.info("two_factor_enrollment_started", user_id=user_id)
        return Enrollment(secret=secret, provisioning_uri=uri)

    @translates_storage_errors
    async def verify_enrollment(self, user_id: str, code: str) -> List[str]:
        await self.limiter.enforce(user_identity(user_id), "two_factor_enroll")
        cfg = self.store.get_two_factor(user_id)
        if cfg is None:
            raise ConflictError("Two-factor enrollment has not been started.")
        if cfg.enabled:
            raise ConflictError("Two-factor authentication is already enabled.")
        if not self.verify_totp(cfg.secret, code):
            logger.info("two_factor_enrollment_code_rejected", user_id=user_id)
            raise InvalidCodeError()

        codes: List[str] = []
        while len(codes) < RECOVERY_CODE_COUNT:
            candidate = generate_recovery_code()
            if candidate not in codes:
                codes.append(candidate)
        enabled = self.store.enable_two_factor(
            user_id, [hash_secret(c) for c in codes], self._clock()
        )
        if not enabled:
            raise ConflictError("Two-factor authentication is already enabled.")
        logger.info("two_factor_enabled", user_id=user_id, recovery_codes=len(codes))
        return codes

    def _open_ticket(self, ticket: str) -> tuple[str, PendingTicket]:
        ticket_hash = hash_secret(ticket or "")
        pending = self.store.get_pending_ticket(ticket_hash)
        if (
            pending is None
            or pending.consumed_at is not None
            or as_utc(pending.expires_at) <= self._clock()
        ):
            logger.info("two_factor_ticket_rejected")
            raise InvalidCodeError()
        return ticket_hash, pending

    def _consume_ticket(self, ticket_hash: str, user_id: str) -> None:
        if self.store.consume_pending_ticket(ticket_hash, self._clock()) is None:
            logger.info("two_factor_ticket_replayed", user_id=user_id)
            raise InvalidCodeError()

    @translates_storage_errors
    async def challenge(
        self, ticket: str, code: str, *, device: Optional[DeviceInfo] = None
    ) -> IssuedSession:
        ticket_hash, pending = self._open_ticket(ticket)
        user_id = pending.user_id
        await self.limiter.enforce(user_identity(user_id), "two_factor_challenge")
        cfg = self.store.get_two_factor(user_id)
        if cfg is None or not cfg.enabled:
            raise InvalidCodeError()
        if not self.verify_totp(cfg.secret, code):
            logger.info("two_factor_challenge_failed", user_id=user_id)
            raise InvalidCodeError()
        self._consume_ticket(ticket_hash, user_id)
        logger.info("two_factor_challenge_passed", user_id=user_id)
        return await self.sessions.create_session(user_id, device)

    @translates_storage_errors
    async def redeem_recovery_code(
        self, ticket: str, code: str, *, device: Optional[DeviceInfo] = None
    ) -> IssuedSession:
        ticket_hash, pending = self._open_ticket(ticket)
        user_id = pending.user_id
        await self.limiter.enforce(user_identity(user_id), "recovery_code")
        if not self.is_enabled(user_id):
            raise InvalidCodeError()
        code_hash = hash_secret(normalize_recovery_code(code))
        if self.store.redeem_recovery_code(ticket_hash, code_hash, self._clock()) is None:
            logger.info("recovery_code_rejected", user_id=user_id)
            raise InvalidCodeError()
        logger.info(
            "recovery_code_redeemed",
            user_id=user_id,
            remaining=self.store.count_unused_recovery_codes(user_id),
        )
        return await self.sessions.create_session(user_id, device)

    @translates_storage_errors
    async def disable(self, user_id: str, current_password: str) -> None:
        await self.limiter.enforce(user_identity(user_id), "two_factor_disable")
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        if user.password_hash is None or not await self.passwords.verify(
            user.password_hash, current_password or ""
        ):
            logger.info("two_factor_disable_password_rejected", user_id=user_id)
            raise InvalidCredentials()
        if not self.store.delete_two_factor(user_id):
            raise ConflictError("Two-factor authentication is not enabled.")
        logger.info("two_factor_disabled", user_id=user_id)

    @translates_storage_errors
    def recovery_code_status(self, user_id: str) -> RecoveryCodeStatus:
        codes = self.store.list_recovery_codes(user_id)
        code_status = [code.consumed_at is None for code in codes]
        unused = sum(code_status)
        return RecoveryCodeStatus(
            total=len(codes),
            used=len(codes) - unused,
            unused=unused,
            code_status=code_status,
        )
