from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from trustcore.config import Settings
from trustcore.logging import fingerprint, get_logger
from trustcore.service.errors import (
    AccountScheduledForDeletion,
    AccountUnverified,
    InvalidCredentials,
    UserNotFound,
    translates_storage_errors,
)
from trustcore.service.passwords import PasswordService, normalize_email
from trustcore.service.sessions import IssuedSession, SessionRegistry
from trustcore.service.two_factor import TwoFactorManager
from trustcore.storage.base import AuthStore
from trustcore.storage.models import DeviceInfo, User, utcnow


@dataclass(frozen=True)
class LoginOutcome:
    """Either a live session or a pending ticket awaiting the second factor."""

    user_id: str
    session: Optional[IssuedSession] = None
    pending_ticket: Optional[str] = None

    @property
    def requires_two_factor(self) -> bool:
        return self.pending_ticket is not None


class PasswordAuthenticator:
    """Password login front door.

    Every failure surfaces the same message; the distinguishing ``reason``
    only reaches the logs.
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionRegistry,
        two_factor: TwoFactorManager,
        passwords: PasswordService,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.two_factor = two_factor
        self.passwords = passwords
        self.settings = settings
        self._clock = clock
        self.logger = get_logger(__name__)

    def _check_account_state(self, user: User) -> None:
        if user.deletion_scheduled_at is not None:
            self.logger.info("login_rejected", reason="scheduled_for_deletion", user_id=user.id)
            raise AccountScheduledForDeletion()
        if self.settings.require_email_verification and user.email_verified_at is None:
            self.logger.info("login_rejected", reason="unverified", user_id=user.id)
            raise AccountUnverified()

    @translates_storage_errors
    async def authenticate(
        self, email: str, password: str, *, device: Optional[DeviceInfo] = None
    ) -> LoginOutcome:
        try:
            normalized = normalize_email(email)
        except ValueError:
            normalized = None
        user = self.store.get_user_by_email(normalized) if normalized else None
        if user is None:
            await self.passwords.verify_dummy(password or "")
            self.logger.info(
                "login_rejected", reason="user_not_found", email_fp=fingerprint(normalized)
            )
            raise UserNotFound()
        if user.password_hash is None:
            await self.passwords.verify_dummy(password or "")
            self.logger.info("login_rejected", reason="federated_only", user_id=user.id)
            raise InvalidCredentials()
        if not await self.passwords.verify(user.password_hash, password or ""):
            self.logger.info("login_rejected", reason="bad_password", user_id=user.id)
            raise InvalidCredentials()
        self._check_account_state(user)

        if self.two_factor.is_enabled(user.id):
            ticket = self.two_factor.issue_pending_ticket(user.id)
            self.logger.info("login_pending_two_factor", user_id=user.id)
            return LoginOutcome(user_id=user.id, pending_ticket=ticket)

        issued = await self.sessions.create_session(user.id, device)
        self.logger.info("login_succeeded", user_id=user.id, session_id=issued.session.id)
        return LoginOutcome(user_id=user.id, session=issued)

    @translates_storage_errors
    async def authenticate_federated(
        self, user_id: str, *, device: Optional[DeviceInfo] = None
    ) -> IssuedSession:
        """Mint a session for an identity already proven by an external provider."""
        user = self.store.get_user(user_id)
        if user is None:
            self.logger.info("federated_login_rejected", reason="user_not_found", user_id=user_id)
            raise UserNotFound()
        self._check_account_state(user)
        issued = await self.sessions.create_session(user.id, device)
        self.logger.info("federated_login_succeeded", user_id=user.id, session_id=issued.session.id)
        return issued
