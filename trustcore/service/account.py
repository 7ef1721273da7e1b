from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from trustcore.config import Settings
from trustcore.logging import fingerprint, get_logger
from trustcore.service.email import EmailService
from trustcore.service.errors import (
    AuthorizationError,
    ConflictError,
    InvalidCredentials,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
    translates_storage_errors,
)
from trustcore.service.jobs import JobScheduler
from trustcore.service.passwords import (
    PasswordService,
    normalize_email,
    validate_password_strength,
)
from trustcore.service.rate_limit import RateLimiter, ip_identity, user_identity
from trustcore.service.sessions import SessionRegistry
from trustcore.service.tokens import TokenIssuer
from trustcore.storage.base import AuthStore
from trustcore.storage.errors import ConstraintViolation
from trustcore.storage.models import TokenPurpose, User, as_utc, utcnow

logger = get_logger(__name__)

SEND_EMAIL_JOB = "email.send"
DELETE_ACCOUNT_JOB = "account.delete"
PASSWORD_CHANGED_JOB = "email.password_changed"

PROVIDER_ACCOUNT_MESSAGE = "Password cannot be changed for accounts signed in with a provider."

_EMAIL_SENDERS = {
    TokenPurpose.VERIFICATION: "send_verification",
    TokenPurpose.PASSWORD_RESET: "send_password_reset",
    TokenPurpose.ACCOUNT_DELETION: "send_account_deletion",
    TokenPurpose.EMAIL_CHANGE: "send_email_change",
}


def _validated_email(value: str) -> str:
    try:
        return normalize_email(value)
    except ValueError as exc:
        raise ValidationError(str(exc), detail={"field": "email"}) from exc


def _validated_password(value: str) -> str:
    try:
        return validate_password_strength(value or "")
    except ValueError as exc:
        raise ValidationError(str(exc), detail={"field": "password"}) from exc


class AccountService:
    """Signup and the token-confirmed account flows."""

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenIssuer,
        sessions: SessionRegistry,
        limiter: RateLimiter,
        passwords: PasswordService,
        jobs: JobScheduler,
        email: Callable[[], EmailService],
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.sessions = sessions
        self.limiter = limiter
        self.passwords = passwords
        self.jobs = jobs
        self._email = email
        self.settings = settings
        self._clock = clock

    def register_jobs(self) -> None:
        self.jobs.register(SEND_EMAIL_JOB, self._run_send_email)
        self.jobs.register(DELETE_ACCOUNT_JOB, self._run_delete_account)
        self.jobs.register(PASSWORD_CHANGED_JOB, self._run_password_changed)

    async def _run_send_email(self, payload: Dict[str, Any]) -> None:
        sender = getattr(self._email(), _EMAIL_SENDERS[TokenPurpose(payload["purpose"])])
        await asyncio.to_thread(sender, payload["to"], payload["token"])

    async def _run_password_changed(self, payload: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._email().send_password_changed, payload["to"])

    async def _run_delete_account(self, payload: Dict[str, Any]) -> None:
        await self.purge_account(payload["user_id"])

    async def _send(self, purpose: TokenPurpose, to_email: str, token: str) -> None:
        await self.jobs.enqueue(
            SEND_EMAIL_JOB, {"purpose": purpose.value, "to": to_email, "token": token}
        )

    async def _verify_password(self, user: User, password: Optional[str]) -> None:
        if user.password_hash is None or not await self.passwords.verify(
            user.password_hash, password or ""
        ):
            logger.info("password_recheck_failed", user_id=user.id)
            raise InvalidCredentials()

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        return user

    # signup and verification
    @translates_storage_errors
    async def signup(self, email: str, password: str, *, ip_address: Optional[str] = None) -> User:
        if not self.settings.allow_signup:
            raise AuthorizationError("Signup is disabled.")
        await self.limiter.enforce(ip_identity(ip_address), "signup")
        normalized = _validated_email(email)
        _validated_password(password)
        password_hash = await self.passwords.hash(password)
        verified_at = None if self.settings.require_email_verification else self._clock()
        try:
            user = self.store.create_user(
                normalized, password_hash=password_hash, email_verified_at=verified_at
            )
        except ConstraintViolation as exc:
            raise ConflictError("An account with this email already exists.") from exc
        if user.email_verified_at is None:
            issued = await self.tokens.issue(TokenPurpose.VERIFICATION, user.email)
            await self._send(TokenPurpose.VERIFICATION, user.email, issued.token)
        logger.info("signup_completed", user_id=user.id)
        return user

    @translates_storage_errors
    async def request_email_verification(
        self, email: str, *, ip_address: Optional[str] = None
    ) -> None:
        await self.limiter.enforce(ip_identity(ip_address), "email_verification")
        try:
            normalized = normalize_email(email)
        except ValueError:
            return
        user = self.store.get_user_by_email(normalized)
        if user is None or user.email_verified_at is not None:
            logger.info("email_verification_request_ignored", email_fp=fingerprint(normalized))
            return
        issued = await self.tokens.issue(TokenPurpose.VERIFICATION, user.email)
        await self._send(TokenPurpose.VERIFICATION, user.email, issued.token)

    @translates_storage_errors
    async def verify_email(self, token: str) -> User:
        record = await self.tokens.redeem(TokenPurpose.VERIFICATION, token)
        user = self.store.get_user_by_email(record.identifier)
        if user is None:
            raise InvalidTokenError()
        verified = self.store.mark_email_verified(user.id, self._clock())
        logger.info("email_verified", user_id=user.id)
        return verified or user

    # password reset
    @translates_storage_errors
    async def request_password_reset(
        self, email: str, *, ip_address: Optional[str] = None
    ) -> None:
        await self.limiter.enforce(ip_identity(ip_address), "password_reset")
        try:
            normalized = normalize_email(email)
        except ValueError:
            return
        user = self.store.get_user_by_email(normalized)
        if user is None:
            logger.info("password_reset_request_ignored", email_fp=fingerprint(normalized))
            return
        issued = await self.tokens.issue(TokenPurpose.PASSWORD_RESET, user.email)
        await self._send(TokenPurpose.PASSWORD_RESET, user.email, issued.token)

    @translates_storage_errors
    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        """Replace the password and sign out every other session.

        Returns the number of sessions revoked.
        """
        await self.limiter.enforce(user_identity(user_id), "password_change")
        user = self._require_user(user_id)
        if user.password_hash is None:
            raise ValidationError(PROVIDER_ACCOUNT_MESSAGE)
        await self._verify_password(user, current_password)
        _validated_password(new_password)
        self.store.set_password_hash(user.id, await self.passwords.hash(new_password))
        revoked = await self.sessions.revoke_all(user.id, except_session_id=except_session_id)
        await self.jobs.enqueue(PASSWORD_CHANGED_JOB, {"to": user.email})
        logger.info("password_changed", user_id=user.id, sessions_revoked=revoked)
        return revoked

    @translates_storage_errors
    async def reset_password(self, token: str, new_password: str) -> User:
        _validated_password(new_password)
        record = await self.tokens.redeem(TokenPurpose.PASSWORD_RESET, token)
        user = self.store.get_user_by_email(record.identifier)
        if user is None:
            raise InvalidTokenError()
        self.store.set_password_hash(user.id, await self.passwords.hash(new_password))
        revoked = await self.sessions.revoke_all(user.id)
        logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return user

    # account deletion
    @translates_storage_errors
    async def request_account_deletion(self, user_id: str, password: Optional[str] = None) -> None:
        await self.limiter.enforce(user_identity(user_id), "account_deletion")
        user = self._require_user(user_id)
        if user.password_hash is not None:
            await self._verify_password(user, password)
        issued = await self.tokens.issue(TokenPurpose.ACCOUNT_DELETION, user.id)
        await self._send(TokenPurpose.ACCOUNT_DELETION, user.email, issued.token)
        logger.info("account_deletion_requested", user_id=user.id)

    @translates_storage_errors
    async def confirm_account_deletion(self, token: str) -> datetime:
        record = await self.tokens.redeem(TokenPurpose.ACCOUNT_DELETION, token)
        user = self.store.get_user(record.identifier)
        if user is None:
            raise InvalidTokenError()
        delete_at = self._clock() + timedelta(days=self.settings.deletion_grace_period_days)
        self.store.schedule_deletion(user.id, delete_at)
        await self.jobs.enqueue(DELETE_ACCOUNT_JOB, {"user_id": user.id}, run_at=delete_at)
        revoked = await self.sessions.revoke_all(user.id)
        logger.info(
            "account_deletion_scheduled",
            user_id=user.id,
            delete_at=delete_at.isoformat(),
            sessions_revoked=revoked,
        )
        return delete_at

    @translates_storage_errors
    async def purge_account(self, user_id: str) -> bool:
        user = self.store.get_user(user_id)
        if user is None or user.deletion_scheduled_at is None:
            return False
        if as_utc(user.deletion_scheduled_at) > self._clock():
            logger.info("account_purge_deferred", user_id=user_id)
            return False
        deleted = self.store.delete_user(user_id)
        logger.info("account_purged", user_id=user_id, deleted=deleted)
        return deleted

    # email change
    @translates_storage_errors
    async def request_email_change(
        self, user_id: str, new_email: str, password: Optional[str]
    ) -> None:
        await self.limiter.enforce(user_identity(user_id), "email_change")
        user = self._require_user(user_id)
        if user.password_hash is None:
            raise ValidationError("Email change requires a password account.")
        await self._verify_password(user, password)
        normalized = _validated_email(new_email)
        if normalized == user.email:
            raise ValidationError("New email must differ from the current email.")
        if self.store.get_user_by_email(normalized) is not None:
            raise ConflictError("Email is already in use.")
        issued = await self.tokens.issue(
            TokenPurpose.EMAIL_CHANGE, user.id, payload={"new_email": normalized}
        )
        await self._send(TokenPurpose.EMAIL_CHANGE, normalized, issued.token)
        logger.info("email_change_requested", user_id=user.id)

    @translates_storage_errors
    async def confirm_email_change(self, token: str) -> User:
        record = await self.tokens.redeem(TokenPurpose.EMAIL_CHANGE, token)
        new_email = (record.payload or {}).get("new_email")
        user = self.store.get_user(record.identifier)
        if user is None or not new_email:
            raise InvalidTokenError()
        holder = self.store.get_user_by_email(new_email)
        if holder is not None and holder.id != user.id:
            raise ConflictError("Email is already in use.")
        try:
            updated = self.store.update_email(user.id, new_email, verified_at=self._clock())
        except ConstraintViolation as exc:
            raise ConflictError("Email is already in use.") from exc
        logger.info("email_changed", user_id=user.id)
        return updated or user
