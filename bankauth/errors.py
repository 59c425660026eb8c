"""Error taxonomy shared by every authentication component."""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class AuthErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_NOT_ACTIVE = "account_not_active"
    EMAIL_EXISTS = "email_exists"
    WEAK_PASSWORD = "weak_password"
    INVALID_MFA_CODE = "invalid_mfa_code"
    MFA_RATE_LIMITED = "mfa_rate_limited"
    MFA_CHALLENGE_EXPIRED = "mfa_challenge_expired"
    MFA_NOT_CONFIGURED = "mfa_not_configured"
    MFA_ALREADY_ENABLED = "mfa_already_enabled"
    MFA_REQUIRED = "mfa_required"
    TOKEN_INVALID = "token_invalid"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_REUSE_DETECTED = "token_reuse_detected"
    INVALID_TOKEN = "invalid_one_time_token"
    SESSION_INVALID = "session_invalid"
    SESSION_REVOKED = "session_revoked"
    RATE_LIMITED = "rate_limited"
    REQUEST_BLOCKED = "request_blocked"
    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"
    SERVICE_UNAVAILABLE = "service_unavailable"


RETRYABLE_KINDS = frozenset(
    {
        AuthErrorKind.SERVICE_UNAVAILABLE,
        AuthErrorKind.RATE_LIMITED,
        AuthErrorKind.MFA_RATE_LIMITED,
        AuthErrorKind.ACCOUNT_LOCKED,
    }
)

# Authentication failures share generic messages so callers cannot enumerate
# accounts; validation failures carry their own specific message instead.
PUBLIC_MESSAGES = {
    AuthErrorKind.INVALID_CREDENTIALS: "Credenciales inválidas",
    AuthErrorKind.ACCOUNT_LOCKED: "Cuenta bloqueada temporalmente",
    AuthErrorKind.ACCOUNT_NOT_ACTIVE: "Cuenta no disponible",
    AuthErrorKind.EMAIL_EXISTS: "El correo ya existe",
    AuthErrorKind.INVALID_MFA_CODE: "Código inválido",
    AuthErrorKind.MFA_RATE_LIMITED: "Demasiados intentos de verificación",
    AuthErrorKind.MFA_CHALLENGE_EXPIRED: "El desafío MFA expiró",
    AuthErrorKind.MFA_NOT_CONFIGURED: "MFA no configurada",
    AuthErrorKind.MFA_ALREADY_ENABLED: "El método MFA ya está habilitado",
    AuthErrorKind.MFA_REQUIRED: "Se requiere verificación MFA",
    AuthErrorKind.TOKEN_INVALID: "Token inválido",
    AuthErrorKind.TOKEN_EXPIRED: "Token expirado",
    AuthErrorKind.TOKEN_REUSE_DETECTED: "Token comprometido",
    AuthErrorKind.INVALID_TOKEN: "Token inválido o expirado",
    AuthErrorKind.SESSION_INVALID: "Sesión inválida",
    AuthErrorKind.SESSION_REVOKED: "La sesión fue revocada",
    AuthErrorKind.RATE_LIMITED: "Demasiados intentos",
    AuthErrorKind.REQUEST_BLOCKED: "Solicitud bloqueada",
    AuthErrorKind.NOT_FOUND: "Recurso no encontrado",
    AuthErrorKind.VALIDATION_ERROR: "Datos inválidos",
    AuthErrorKind.SERVICE_UNAVAILABLE: "Servicio no disponible, inténtelo más tarde",
}


class AuthError(Exception):
    """Raised by the authentication core with a machine-readable kind.

    ``message`` is safe to show to end users. ``reason`` is an internal
    sub-reason meant for logs only (e.g. ``"suspended"`` for
    ``ACCOUNT_NOT_ACTIVE``). ``retry_after`` is expressed in seconds.
    """

    def __init__(
        self,
        kind: AuthErrorKind,
        message: Optional[str] = None,
        *,
        retry_after: Optional[int] = None,
        reason: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.kind = kind
        self.message = message or PUBLIC_MESSAGES.get(kind, kind.value)
        self.retry_after = retry_after
        self.reason = reason
        self.details = details or {}
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def __repr__(self) -> str:
        return f"AuthError(kind={self.kind.value!r}, reason={self.reason!r}, retry_after={self.retry_after!r})"


def service_unavailable(component: str, exc: BaseException) -> AuthError:
    return AuthError(
        AuthErrorKind.SERVICE_UNAVAILABLE,
        reason=f"{component}: {exc.__class__.__name__}",
    )
