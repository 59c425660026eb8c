"""Pydantic schemas for inputs, stored records and structured results."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from .models import MfaMethod


class Message(BaseModel):
    detail: str


class RequestContext(BaseModel):
    """Immutable per-request context passed explicitly through every call."""

    ip_address: str
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)


class UserRead(BaseModel):
    id: str
    email: EmailStr
    status: str
    email_verified: bool
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResendVerificationRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str
    new_password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class MfaLoginRequest(BaseModel):
    user_id: str
    pending_session_ref: str
    code: str
    config_id: Optional[str] = None
    method: Optional[str] = None
    is_backup_code: bool = False
    challenge_id: Optional[str] = None


class MfaSetupRequest(BaseModel):
    method: MfaMethod
    phone_number: Optional[str] = None
    email: Optional[EmailStr] = None
    public_key: Optional[str] = None


class MfaConfirmRequest(BaseModel):
    config_id: Optional[str] = None
    code: str
    challenge_id: Optional[str] = None


class MfaDisableRequest(BaseModel):
    config_id: str
    password: str


class PasswordConfirmation(BaseModel):
    password: str


class MfaPrimaryRequest(BaseModel):
    config_id: str


class MfaChallengeRequest(BaseModel):
    pending_session_ref: str
    method: Optional[str] = None


class AuditLogRead(BaseModel):
    id: str
    event_type: str
    created_at: datetime
    details: Optional[dict[str, Any]]

    model_config = ConfigDict(from_attributes=True)


# -------------------- Tokens --------------------
class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    family_id: str
    session_id: str


class TokenValidation(BaseModel):
    valid: bool
    payload: Optional[dict[str, Any]] = None
    reason: Optional[str] = None


# -------------------- Sessions --------------------
class SessionData(BaseModel):
    """Session record as stored in the key-value store."""

    id: str
    user_id: str
    session_token: str
    family_id: Optional[str] = None
    ip_address: str
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    mfa_verified: bool = False
    mfa_verified_at: Optional[datetime] = None
    risk_score: int = 0
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime


class SessionInfo(BaseModel):
    id: str
    ip_address: str
    user_agent: Optional[str]
    device_fingerprint: Optional[str]
    mfa_verified: bool
    risk_score: int
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    current: bool = False


class SecurityAlertType(str, Enum):
    SUSPICIOUS_IP = "SUSPICIOUS_IP"
    SUSPICIOUS_DEVICE = "SUSPICIOUS_DEVICE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class SecurityAlert(BaseModel):
    type: SecurityAlertType
    message: str
    risk_score: int
    blocked: bool = False


class SessionValidation(BaseModel):
    is_valid: bool
    session: Optional[SessionData] = None
    security_alert: Optional[SecurityAlert] = None


class SessionRotation(BaseModel):
    new_session_token: str
    expires_at: datetime


# -------------------- MFA --------------------
class VerificationOutcome(str, Enum):
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
    RATE_LIMITED = "RATE_LIMITED"
    EXPIRED = "EXPIRED"


class MfaMethodInfo(BaseModel):
    config_id: str
    method: str
    is_primary: bool
    masked_destination: Optional[str] = None
    last_used: Optional[datetime] = None


class MfaChallengeInfo(BaseModel):
    config_id: str
    method: str
    masked_destination: Optional[str] = None
    challenge_id: Optional[str] = None
    nonce: Optional[str] = None
    expires_at: Optional[datetime] = None


class MfaVerificationRequest(BaseModel):
    user_id: str
    code: str
    context: RequestContext
    config_id: Optional[str] = None
    method: Optional[str] = None
    is_backup_code: bool = False
    challenge_id: Optional[str] = None


class MfaVerificationResult(BaseModel):
    outcome: VerificationOutcome
    success: bool
    error: Optional[str] = None
    rate_limited: bool = False
    retry_after_seconds: Optional[int] = None
    config_id: Optional[str] = None
    method: Optional[str] = None
    remaining_backup_codes: Optional[int] = None


class MfaSetupResponse(BaseModel):
    config_id: str
    method: str
    otpauth_uri: Optional[str] = None
    masked_destination: Optional[str] = None
    challenge: Optional[MfaChallengeInfo] = None


class MfaSetupVerification(BaseModel):
    config_id: str
    method: str
    is_primary: bool
    backup_codes: Optional[list[str]] = None


class BackupCodes(BaseModel):
    codes: list[str]


# -------------------- Risk --------------------
class RiskAssessment(BaseModel):
    blocked: bool
    risk_score: int
    level: Literal["low", "medium", "high", "critical"] = "low"
    reasons: list[str] = Field(default_factory=list)


# -------------------- Orchestrator results --------------------
class LoginState(str, Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    CREDENTIALS_VERIFIED = "CREDENTIALS_VERIFIED"
    MFA_PENDING = "MFA_PENDING"
    MFA_VERIFIED = "MFA_VERIFIED"
    SESSION_ESTABLISHED = "SESSION_ESTABLISHED"


class RegistrationResult(BaseModel):
    user: UserRead
    verification_required: bool = True


class SessionEstablished(BaseModel):
    kind: Literal["session"] = "session"
    state: LoginState = LoginState.SESSION_ESTABLISHED
    user: UserRead
    session_id: str
    session_token: str
    tokens: TokenPair
    security_warnings: list[str] = Field(default_factory=list)


class MfaChallengeRequired(BaseModel):
    kind: Literal["mfa_required"] = "mfa_required"
    state: LoginState = LoginState.MFA_PENDING
    mfa_required: Literal[True] = True
    user_id: str
    pending_session_ref: str
    expires_at: datetime
    methods: list[MfaMethodInfo]
    challenge: Optional[MfaChallengeInfo] = None


LoginResult = Annotated[Union[SessionEstablished, MfaChallengeRequired], Field(discriminator="kind")]


class AuthenticatedPrincipal(BaseModel):
    user_id: str
    session: SessionData
    scope: str
    claims: dict[str, Any]
