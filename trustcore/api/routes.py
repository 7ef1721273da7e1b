from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from fastapi import APIRouter, Cookie, Depends, Header, Request, Response

from trustcore.api.schemas import (
    AccountDeletionRequest,
    DeletionScheduledResponse,
    EmailChangeRequest,
    EmailRequest,
    EnrollmentResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordChangeRequest,
    PasswordConfirmRequest,
    PasswordResetConfirm,
    RecoveryCodeRequest,
    RecoveryCodesResponse,
    RecoveryCodeStatusResponse,
    RevokeAllRequest,
    RevokeResponse,
    SessionInfo,
    SessionListResponse,
    SignupRequest,
    TokenRequest,
    TwoFactorChallengeRequest,
    TwoFactorVerifyRequest,
    UserResponse,
)
from trustcore.logging import get_logger
from trustcore.service.errors import AuthenticationError
from trustcore.service.results import Result
from trustcore.service.runtime import Runtime
from trustcore.service.sessions import IssuedSession
from trustcore.storage.models import DeviceInfo, User, as_utc

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SESSION_COOKIE = "session_token"

_UNIFORM_REQUEST_MESSAGE = "If the address belongs to an account, a message is on its way."


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


@dataclass(frozen=True)
class Principal:
    user_id: str
    session_id: str


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def get_principal(
    runtime: Runtime = Depends(get_runtime),
    authorization: Optional[str] = Header(None),
    session_token: Optional[str] = Cookie(None),
) -> Principal:
    token = _extract_bearer(authorization) or session_token
    if not token:
        raise AuthenticationError()
    session = await runtime.sessions.resolve(token)
    await runtime.sessions.touch(token)
    return Principal(user_id=session.user_id, session_id=session.id)


def _device(request: Request) -> DeviceInfo:
    return DeviceInfo(
        user_agent=(request.headers.get("user-agent") or "")[:512] or None,
        ip_address=request.client.host if request.client else None,
    )


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _unwrap(result: Result[Any]) -> Any:
    if result.error is not None:
        raise result.error
    return result.data


def _apply_session_cookie(response: Response, issued: IssuedSession) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        issued.token,
        httponly=True,
        secure=True,
        samesite="lax",
        expires=as_utc(issued.session.expires_at),
        path="/",
    )


def _session_payload(user_id: str, issued: IssuedSession) -> LoginResponse:
    return LoginResponse(
        user_id=user_id,
        session_id=issued.session.id,
        session_token=issued.token,
        session_expires_at=issued.session.expires_at,
    )


def _user_payload(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        email_verified=user.email_verified_at is not None,
        deletion_scheduled_at=user.deletion_scheduled_at,
    )


# signup and login


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(
    body: SignupRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    user = await runtime.accounts.signup(
        body.email, body.password, ip_address=_client_ip(request)
    )
    return Envelope(status="ok", data=_user_payload(user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    outcome = _unwrap(
        await runtime.core.authenticate(body.email, body.password, device=_device(request))
    )
    if outcome.requires_two_factor:
        data = LoginResponse(
            user_id=outcome.user_id,
            requires_two_factor=True,
            pending_ticket=outcome.pending_ticket,
        )
        return Envelope(status="ok", data=data)
    _apply_session_cookie(response, outcome.session)
    return Envelope(status="ok", data=_session_payload(outcome.user_id, outcome.session))


@router.post("/auth/2fa/challenge", response_model=Envelope, tags=["two-factor"])
async def two_factor_challenge(
    body: TwoFactorChallengeRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    issued = _unwrap(
        await runtime.core.challenge_two_factor(body.ticket, body.code, device=_device(request))
    )
    _apply_session_cookie(response, issued)
    return Envelope(status="ok", data=_session_payload(issued.session.user_id, issued))


@router.post("/auth/2fa/recovery", response_model=Envelope, tags=["two-factor"])
async def two_factor_recovery(
    body: RecoveryCodeRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    issued = _unwrap(
        await runtime.core.redeem_recovery_code(body.ticket, body.code, device=_device(request))
    )
    _apply_session_cookie(response, issued)
    return Envelope(status="ok", data=_session_payload(issued.session.user_id, issued))


# two-factor management


@router.post("/auth/2fa/enroll", response_model=Envelope, tags=["two-factor"])
async def two_factor_enroll(
    principal: Principal = Depends(get_principal), runtime: Runtime = Depends(get_runtime)
):
    enrollment = _unwrap(await runtime.core.enroll_two_factor(principal.user_id))
    return Envelope(
        status="ok",
        data=EnrollmentResponse(
            secret=enrollment.secret, provisioning_uri=enrollment.provisioning_uri
        ),
    )


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["two-factor"])
async def two_factor_verify(
    body: TwoFactorVerifyRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    codes = _unwrap(await runtime.core.verify_enrollment(principal.user_id, body.code))
    return Envelope(status="ok", data=RecoveryCodesResponse(recovery_codes=codes))


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["two-factor"])
async def two_factor_disable(
    body: PasswordConfirmRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    _unwrap(await runtime.core.disable_two_factor(principal.user_id, body.password))
    return Envelope(
        status="ok", data=MessageResponse(message="Two-factor authentication disabled.")
    )


@router.get("/auth/2fa/recovery-codes", response_model=Envelope, tags=["two-factor"])
async def recovery_code_status(
    principal: Principal = Depends(get_principal), runtime: Runtime = Depends(get_runtime)
):
    status = _unwrap(await runtime.core.recovery_code_status(principal.user_id))
    return Envelope(
        status="ok",
        data=RecoveryCodeStatusResponse(
            total=status.total,
            used=status.used,
            unused=status.unused,
            code_status=status.code_status,
        ),
    )


# sessions


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(
    principal: Principal = Depends(get_principal), runtime: Runtime = Depends(get_runtime)
):
    sessions = _unwrap(await runtime.core.list_sessions(principal.user_id))
    return Envelope(
        status="ok",
        data=SessionListResponse(
            sessions=[
                SessionInfo(
                    id=sess.id,
                    user_agent=sess.user_agent,
                    ip_address=sess.ip_address,
                    created_at=sess.created_at,
                    last_active_at=sess.last_active_at,
                    expires_at=sess.expires_at,
                    is_current_session=sess.is_current_session,
                    is_this_device=sess.id == principal.session_id,
                )
                for sess in sessions
            ]
        ),
    )


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    _unwrap(await runtime.core.revoke_session(session_id, principal.user_id))
    return Envelope(status="ok", data=RevokeResponse(revoked=1))


@router.post("/sessions/revoke-all", response_model=Envelope, tags=["sessions"])
async def revoke_all_sessions(
    body: Optional[RevokeAllRequest] = None,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    include_current = bool(body and body.include_current)
    revoked = _unwrap(
        await runtime.core.revoke_all_sessions(
            principal.user_id,
            except_session_id=None if include_current else principal.session_id,
        )
    )
    return Envelope(status="ok", data=RevokeResponse(revoked=revoked))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    _unwrap(await runtime.core.revoke_session(principal.session_id, principal.user_id))
    response.delete_cookie(SESSION_COOKIE, path="/")
    return Envelope(status="ok", data=MessageResponse(message="Signed out."))


# account token flows


@router.post("/auth/verify-email/request", response_model=Envelope, tags=["account"])
async def request_email_verification(
    body: EmailRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    await runtime.accounts.request_email_verification(body.email, ip_address=_client_ip(request))
    return Envelope(status="ok", data=MessageResponse(message=_UNIFORM_REQUEST_MESSAGE))


@router.post("/auth/verify-email", response_model=Envelope, tags=["account"])
async def verify_email(body: TokenRequest, runtime: Runtime = Depends(get_runtime)):
    user = await runtime.accounts.verify_email(body.token)
    return Envelope(status="ok", data=_user_payload(user))


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["account"])
async def request_password_reset(
    body: EmailRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    await runtime.accounts.request_password_reset(body.email, ip_address=_client_ip(request))
    return Envelope(status="ok", data=MessageResponse(message=_UNIFORM_REQUEST_MESSAGE))


@router.post("/auth/password-reset", response_model=Envelope, tags=["account"])
async def confirm_password_reset(
    body: PasswordResetConfirm, runtime: Runtime = Depends(get_runtime)
):
    await runtime.accounts.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data=MessageResponse(message="Password updated."))


@router.post("/auth/password/change", response_model=Envelope, tags=["account"])
async def change_password(
    body: PasswordChangeRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    revoked = await runtime.accounts.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        except_session_id=principal.session_id,
    )
    return Envelope(status="ok", data=RevokeResponse(revoked=revoked))


@router.post("/account/deletion/request", response_model=Envelope, tags=["account"])
async def request_account_deletion(
    body: AccountDeletionRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.accounts.request_account_deletion(principal.user_id, body.password)
    return Envelope(
        status="ok", data=MessageResponse(message="Check your email to confirm deletion.")
    )


@router.post("/account/deletion/confirm", response_model=Envelope, tags=["account"])
async def confirm_account_deletion(body: TokenRequest, runtime: Runtime = Depends(get_runtime)):
    delete_at = await runtime.accounts.confirm_account_deletion(body.token)
    return Envelope(status="ok", data=DeletionScheduledResponse(delete_at=delete_at))


@router.post("/account/email-change/request", response_model=Envelope, tags=["account"])
async def request_email_change(
    body: EmailChangeRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.accounts.request_email_change(principal.user_id, body.new_email, body.password)
    return Envelope(
        status="ok", data=MessageResponse(message="Check the new address to confirm the change.")
    )


@router.post("/account/email-change/confirm", response_model=Envelope, tags=["account"])
async def confirm_email_change(body: TokenRequest, runtime: Runtime = Depends(get_runtime)):
    user = await runtime.accounts.confirm_email_change(body.token)
    return Envelope(status="ok", data=_user_payload(user))
