from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from trustcore.service.passwords import normalize_email, validate_password_strength

_ERROR_CODES = frozenset(
    {
        "validation_error",
        "unauthorized",
        "forbidden",
        "not_found",
        "conflict",
        "rate_limited",
        "unavailable",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _ERROR_CODES:
            raise ValueError(f"unknown error code '{value}'")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# requests


class SignupRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=128)


class TwoFactorChallengeRequest(BaseModel):
    ticket: str = Field(..., min_length=1, max_length=256)
    code: str = Field(..., min_length=1, max_length=16)


class RecoveryCodeRequest(BaseModel):
    ticket: str = Field(..., min_length=1, max_length=256)
    code: str = Field(..., min_length=1, max_length=32)


class TwoFactorVerifyRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)


class PasswordConfirmRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class EmailRequest(BaseModel):
    email: str = Field(..., max_length=254)


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return validate_password_strength(value)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return validate_password_strength(value)


class AccountDeletionRequest(BaseModel):
    password: Optional[str] = Field(default=None, max_length=128)


class EmailChangeRequest(BaseModel):
    new_email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("new_email")
    @classmethod
    def _validate_new_email(cls, value: str) -> str:
        return normalize_email(value)


class RevokeAllRequest(BaseModel):
    include_current: bool = False


# responses


class UserResponse(BaseModel):
    id: str
    email: str
    email_verified: bool
    deletion_scheduled_at: Optional[datetime] = None


class LoginResponse(BaseModel):
    user_id: str
    requires_two_factor: bool = False
    pending_ticket: Optional[str] = None
    session_id: Optional[str] = None
    session_token: Optional[str] = None
    session_expires_at: Optional[datetime] = None


class EnrollmentResponse(BaseModel):
    secret: str
    provisioning_uri: str


class RecoveryCodesResponse(BaseModel):
    recovery_codes: List[str]


class RecoveryCodeStatusResponse(BaseModel):
    total: int
    used: int
    unused: int
    code_status: List[bool]


class SessionInfo(BaseModel):
    id: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    last_active_at: datetime
    expires_at: datetime
    is_current_session: bool
    is_this_device: bool = False


class SessionListResponse(BaseModel):
    sessions: List[SessionInfo]


class RevokeResponse(BaseModel):
    revoked: int


class DeletionScheduledResponse(BaseModel):
    delete_at: datetime


class MessageResponse(BaseModel):
    message: str
