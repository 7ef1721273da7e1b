from __future__ import annotations

from typing import Dict, List, Optional

from trustcore.service.auth import LoginOutcome, PasswordAuthenticator
from trustcore.service.errors import ValidationError
from trustcore.service.rate_limit import RateLimitDecision, RateLimiter, ip_identity
from trustcore.service.results import Result, returns_result
from trustcore.service.sessions import IssuedSession, SessionRegistry
from trustcore.service.tokens import IssuedToken, TokenIssuer
from trustcore.service.two_factor import (
    Enrollment,
    RecoveryCodeStatus,
    TwoFactorManager,
)
from trustcore.storage.models import DeviceInfo, SecurityToken, Session, TokenPurpose


class TrustCore:
    """Calling-layer facade.

    Each operation returns a ``Result``. Domain failures (bad credentials,
    expired tokens, rate limits, missing or foreign resources) come back as
    ``Result.fail``; ``InfrastructureError`` is raised.
    """

    def __init__(
        self,
        authenticator: PasswordAuthenticator,
        two_factor: TwoFactorManager,
        sessions: SessionRegistry,
        tokens: TokenIssuer,
        limiter: RateLimiter,
    ) -> None:
        self.authenticator = authenticator
        self.two_factor = two_factor
        self.sessions = sessions
        self.tokens = tokens
        self.limiter = limiter

    @returns_result
    async def authenticate(
        self, email: str, password: str, *, device: Optional[DeviceInfo] = None
    ) -> LoginOutcome:
        device = device or DeviceInfo()
        await self.limiter.enforce(ip_identity(device.ip_address), "login")
        return await self.authenticator.authenticate(email, password, device=device)

    @returns_result
    async def authenticate_federated(
        self, user_id: str, *, device: Optional[DeviceInfo] = None
    ) -> IssuedSession:
        return await self.authenticator.authenticate_federated(user_id, device=device)

    @returns_result
    async def enroll_two_factor(self, user_id: str) -> Enrollment:
        return await self.two_factor.enroll(user_id)

    @returns_result
    async def verify_enrollment(self, user_id: str, code: str) -> List[str]:
        return await self.two_factor.verify_enrollment(user_id, code)

    @returns_result
    async def challenge_two_factor(
        self, ticket: str, code: str, *, device: Optional[DeviceInfo] = None
    ) -> IssuedSession:
        return await self.two_factor.challenge(ticket, code, device=device)

    @returns_result
    async def redeem_recovery_code(
        self, ticket: str, code: str, *, device: Optional[DeviceInfo] = None
    ) -> IssuedSession:
        return await self.two_factor.redeem_recovery_code(ticket, code, device=device)

    @returns_result
    async def disable_two_factor(self, user_id: str, current_password: str) -> None:
        await self.two_factor.disable(user_id, current_password)

    @returns_result
    async def recovery_code_status(self, user_id: str) -> RecoveryCodeStatus:
        return self.two_factor.recovery_code_status(user_id)

    @returns_result
    async def issue_token(
        self, purpose: TokenPurpose, identifier: str, *, payload: Optional[Dict] = None
    ) -> IssuedToken:
        return await self.tokens.issue(purpose, identifier, payload=payload)

    @returns_result
    async def redeem_token(self, purpose: TokenPurpose, token: str) -> SecurityToken:
        return await self.tokens.redeem(purpose, token)

    @returns_result
    async def list_sessions(self, user_id: str) -> List[Session]:
        return self.sessions.list_sessions(user_id)

    @returns_result
    async def revoke_session(self, session_id: str, requesting_user_id: str) -> Session:
        return await self.sessions.revoke(session_id, requesting_user_id)

    @returns_result
    async def revoke_all_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        return await self.sessions.revoke_all(user_id, except_session_id=except_session_id)

    async def check_rate_limit(self, identity: str, action: str) -> Result[RateLimitDecision]:
        """Report the decision without raising; a denial is still ``Result.ok``."""
        try:
            decision = await self.limiter.limit(identity, action)
        except KeyError:
            return Result.fail(ValidationError("Unknown rate-limited action."))
        return Result.ok(decision)
