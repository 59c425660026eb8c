"""Business logic for the authentication flows."""
from __future__ import annotations

import json
import logging
import secrets
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import models, schemas
from ..audit import AuditLogger, AuthEvent
from ..clock import Clock, SystemClock
from ..config import Settings, get_settings
from ..database import create_engine_for, create_session_factory
from ..email_service import EmailDispatcher, EmailService
from ..errors import AuthError, AuthErrorKind
from ..kvstore import KeyValueStore, MemoryKeyValueStore, RedisKeyValueStore
from ..rate_limiter import RateLimiter
from ..security import PasswordHasher, SecretCipher, validate_password_strength
from ..sms_service import OutboxSmsSender, SmsSender
from .credential_store import CredentialStore
from .mfa_service import MfaService
from .risk_service import SecurityAnalyzer
from .session_service import SessionManager
from .token_service import TokenService

logger = logging.getLogger(__name__)


class AuthService:
    """Composes the stores and engines into the authentication protocols.

    Login walks ``UNAUTHENTICATED -> CREDENTIALS_VERIFIED -> (MFA_PENDING ->
    MFA_VERIFIED) -> SESSION_ESTABLISHED``. Newly registered accounts receive
    no tokens; they must verify their email before the first login.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        clock: Clock,
        kv: KeyValueStore,
        credentials: CredentialStore,
        hasher: PasswordHasher,
        tokens: TokenService,
        mfa: MfaService,
        sessions: SessionManager,
        analyzer: SecurityAnalyzer,
        rate_limiter: RateLimiter,
        audit: AuditLogger,
        email_service: EmailDispatcher,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.kv = kv
        self.credentials = credentials
        self.hasher = hasher
        self.tokens = tokens
        self.mfa = mfa
        self.sessions = sessions
        self.analyzer = analyzer
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.email_service = email_service

    # -------------------- Registration --------------------
    async def register(self, payload: schemas.UserCreate, context: schemas.RequestContext) -> schemas.RegistrationResult:
        email = payload.email.lower()
        if await self.credentials.get_user_by_email(email):
            raise AuthError(AuthErrorKind.EMAIL_EXISTS)

        validate_password_strength(payload.password, min_length=self.settings.password_min_length)
        user = await self.credentials.create_user(email, await self.hasher.hash(payload.password))
        await self.audit.log_event(
            event_type=AuthEvent.REGISTERED,
            user_id=user.id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        await self._send_verification_email(user, context)
        return schemas.RegistrationResult(user=schemas.UserRead.model_validate(user))

    async def resend_verification(self, email: str, context: schemas.RequestContext) -> None:
        user = await self.credentials.get_user_by_email(email)
        if not user or user.email_verified:
            return
        await self._send_verification_email(user, context)

    async def verify_email(self, token: str, context: schemas.RequestContext) -> schemas.UserRead:
        user_id = await self.credentials.consume_verification_token(token)
        await self.credentials.activate(user_id)
        await self.audit.log_event(
            event_type=AuthEvent.EMAIL_VERIFIED,
            user_id=user_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        return schemas.UserRead.model_validate(await self.credentials.get_user(user_id))

    # -------------------- Login --------------------
    async def login(self, payload: schemas.LoginRequest, context: schemas.RequestContext) -> schemas.LoginResult:
        decision = await self.rate_limiter.hit(
            f"login:ip:{context.ip_address}",
            limit=self.settings.login_rate_limit_attempts,
            window_seconds=self.settings.login_rate_limit_window_seconds,
        )
        if not decision.allowed:
            await self._log(AuthEvent.LOGIN_BLOCKED, None, context, reason="rate_limited")
            raise AuthError(AuthErrorKind.RATE_LIMITED, retry_after=decision.retry_after_seconds)

        email = payload.email.lower()
        user = await self.credentials.get_user_by_email(email)
        risk = await self.analyzer.analyze_request(context, user.id if user else None)
        if risk.blocked:
            await self._log(
                AuthEvent.LOGIN_BLOCKED, user.id if user else None, context, reason="risk", reasons=risk.reasons
            )
            raise AuthError(AuthErrorKind.REQUEST_BLOCKED, reason=",".join(risk.reasons))

        matched = await self.credentials.verify_user_password(user, payload.password)
        if user is None:
            await self.analyzer.record_failure(context.ip_address)
            await self._log(AuthEvent.LOGIN_FAILURE, None, context, reason="unknown_email", email=email)
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS)

        if self.credentials.is_locked(user):
            retry_after = self.credentials.lock_remaining_seconds(user)
            await self._log(AuthEvent.LOGIN_BLOCKED, user.id, context, reason="locked", retry_after=retry_after)
            raise AuthError(AuthErrorKind.ACCOUNT_LOCKED, retry_after=retry_after)

        if not matched:
            await self._register_failed_attempt(user, context)
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS)

        if user.status != models.UserStatus.ACTIVE.value:
            await self._log(AuthEvent.LOGIN_FAILURE, user.id, context, reason=f"status_{user.status}")
            raise AuthError(AuthErrorKind.ACCOUNT_NOT_ACTIVE, reason=user.status)

        await self.credentials.reset_failed_attempts(user.id, record_login=False)

        methods = await self.mfa.get_user_mfa_methods(user.id)
        if any(config.method != models.MfaMethod.BACKUP_CODES.value for config in methods):
            return await self._begin_mfa(user, methods, risk, context)
        return await self._establish_session(user, context, mfa_verified=False, risk=risk)

    async def _register_failed_attempt(self, user: models.User, context: schemas.RequestContext) -> None:
        count = await self.credentials.increment_failed_attempts(user.id)
        await self.analyzer.record_failure(context.ip_address)
        await self._log(AuthEvent.LOGIN_FAILURE, user.id, context, reason="bad_password", failed_attempts=count)
        if count >= self.settings.max_failed_login_attempts:
            await self._log(AuthEvent.ACCOUNT_LOCKED, user.id, context, failed_attempts=count)

    # -------------------- MFA login --------------------
    def _pending_key(self, ref: str) -> str:
        return f"mfa:pending:{ref}"

    def _pending_attempts_key(self, ref: str) -> str:
        return f"mfa:pending_attempts:{ref}"

    async def _begin_mfa(
        self,
        user: models.User,
        methods: list[models.MfaConfig],
        risk: schemas.RiskAssessment,
        context: schemas.RequestContext,
    ) -> schemas.MfaChallengeRequired:
        ref = secrets.token_urlsafe(32)
        ttl = self.settings.mfa_pending_exp_minutes * 60
        record = {"user_id": user.id, "risk_score": risk.risk_score, "reasons": risk.reasons}
        await self.kv.set(self._pending_key(ref), json.dumps(record), ttl=ttl)

        challenge = await self._issue_challenge(ref, user.id, context)
        await self._log(AuthEvent.MFA_CHALLENGE_ISSUED, user.id, context, method=challenge.method)
        return schemas.MfaChallengeRequired(
            user_id=user.id,
            pending_session_ref=ref,
            expires_at=self.clock.now() + timedelta(seconds=ttl),
            methods=[self.mfa.describe(config) for config in methods],
            challenge=challenge,
        )

    async def _load_pending(self, ref: str, user_id: Optional[str] = None) -> dict:
        raw = await self.kv.get(self._pending_key(ref))
        if raw is None:
            raise AuthError(AuthErrorKind.MFA_CHALLENGE_EXPIRED)
        pending = json.loads(raw)
        if user_id is not None and pending["user_id"] != user_id:
            raise AuthError(AuthErrorKind.MFA_CHALLENGE_EXPIRED, reason="user_mismatch")
        return pending

    async def send_mfa_challenge(
        self, pending_ref: str, context: schemas.RequestContext, method: Optional[str] = None
    ) -> schemas.MfaChallengeInfo:
        pending = await self._load_pending(pending_ref)
        challenge = await self._issue_challenge(pending_ref, pending["user_id"], context, method)
        await self._log(AuthEvent.MFA_CHALLENGE_ISSUED, pending["user_id"], context, method=challenge.method)
        return challenge

    async def _issue_challenge(
        self, ref: str, user_id: str, context: schemas.RequestContext, method: Optional[str] = None
    ) -> schemas.MfaChallengeInfo:
        try:
            return await self.mfa.send_challenge(user_id, context, method)
        except AuthError as exc:
            if exc.kind is AuthErrorKind.MFA_RATE_LIMITED:
                await self._log(AuthEvent.MFA_RATE_LIMITED, user_id, context, stage="challenge", method=method)
                await self.kv.delete(self._pending_key(ref), self._pending_attempts_key(ref))
            raise

    async def complete_mfa_login(
        self, request: schemas.MfaLoginRequest, context: schemas.RequestContext
    ) -> schemas.SessionEstablished:
        ref = request.pending_session_ref
        pending = await self._load_pending(ref, request.user_id)

        result = await self.mfa.verify_code(
            schemas.MfaVerificationRequest(
                user_id=request.user_id,
                code=request.code,
                context=context,
                config_id=request.config_id,
                method=request.method,
                is_backup_code=request.is_backup_code,
                challenge_id=request.challenge_id,
            )
        )
        if not result.success:
            await self._handle_mfa_failure(ref, request.user_id, result, context)

        if await self.kv.getdel(self._pending_key(ref)) is None:
            raise AuthError(AuthErrorKind.MFA_CHALLENGE_EXPIRED, reason="pending_consumed")
        await self.kv.delete(self._pending_attempts_key(ref))

        user = await self.credentials.get_user(request.user_id)
        if user is None or user.status != models.UserStatus.ACTIVE.value:
            raise AuthError(AuthErrorKind.ACCOUNT_NOT_ACTIVE, reason=user.status if user else "missing")

        await self._log(
            AuthEvent.MFA_VERIFIED,
            user.id,
            context,
            method=result.method,
            remaining_backup_codes=result.remaining_backup_codes,
        )
        risk = schemas.RiskAssessment(blocked=False, risk_score=pending["risk_score"], reasons=pending["reasons"])
        return await self._establish_session(user, context, mfa_verified=True, risk=risk)

    async def _handle_mfa_failure(
        self,
        ref: str,
        user_id: str,
        result: schemas.MfaVerificationResult,
        context: schemas.RequestContext,
    ) -> None:
        if result.rate_limited:
            await self._log(AuthEvent.MFA_RATE_LIMITED, user_id, context, config_id=result.config_id)
            raise AuthError(AuthErrorKind.MFA_RATE_LIMITED, retry_after=result.retry_after_seconds)

        attempts = await self.kv.incr(
            self._pending_attempts_key(ref), ttl=self.settings.mfa_pending_exp_minutes * 60
        )
        await self._log(
            AuthEvent.MFA_REJECTED,
            user_id,
            context,
            outcome=result.outcome.value,
            config_id=result.config_id,
            attempts=attempts,
        )
        if attempts >= self.settings.mfa_max_attempts:
            await self.kv.delete(self._pending_key(ref), self._pending_attempts_key(ref))
        if result.outcome is schemas.VerificationOutcome.EXPIRED:
            raise AuthError(AuthErrorKind.MFA_CHALLENGE_EXPIRED)
        raise AuthError(AuthErrorKind.INVALID_MFA_CODE)

    async def _establish_session(
        self,
        user: models.User,
        context: schemas.RequestContext,
        *,
        mfa_verified: bool,
        risk: schemas.RiskAssessment,
    ) -> schemas.SessionEstablished:
        session = await self.sessions.create_session(
            user.id, context, mfa_verified=mfa_verified, risk_score=risk.risk_score
        )
        tokens = await self.tokens.issue_token_pair(user.id, session.id)
        await self.sessions.attach_family(session.id, tokens.family_id)
        await self.credentials.reset_failed_attempts(user.id)
        await self.analyzer.record_success(user.id, context.ip_address)
        await self._log(AuthEvent.LOGIN_SUCCESS, user.id, context, session_id=session.id, mfa=mfa_verified)

        warnings = risk.reasons if risk.risk_score >= self.settings.risk_warn_threshold else []
        refreshed = await self.credentials.get_user(user.id)
        return schemas.SessionEstablished(
            user=schemas.UserRead.model_validate(refreshed or user),
            session_id=session.id,
            session_token=session.session_token,
            tokens=tokens,
            security_warnings=warnings,
        )

    # -------------------- Refresh --------------------
    async def refresh_tokens(self, refresh_token: str, context: schemas.RequestContext) -> schemas.TokenPair:
        try:
            pair = await self.tokens.rotate_refresh_token(refresh_token)
        except AuthError as exc:
            user_id = exc.details.get("user_id")
            if exc.kind is AuthErrorKind.TOKEN_REUSE_DETECTED:
                await self.sessions.revoke_session_by_id(exc.details["session_id"])
                await self._log(
                    AuthEvent.TOKEN_REUSE_DETECTED,
                    user_id,
                    context,
                    family_id=exc.details.get("family_id"),
                    session_id=exc.details.get("session_id"),
                )
            else:
                await self._log(AuthEvent.TOKEN_REFRESH_FAILURE, user_id, context, reason=exc.reason)
            raise

        session = await self.sessions.get_session(pair.session_id)
        if session is None:
            await self.tokens.revoke_family(pair.family_id)
            await self._log(AuthEvent.TOKEN_REFRESH_FAILURE, None, context, reason="session_missing")
            raise AuthError(AuthErrorKind.SESSION_INVALID)

        user = await self.credentials.get_user(session.user_id)
        if user is None or user.status != models.UserStatus.ACTIVE.value:
            await self.sessions.revoke_session_by_id(session.id)
            raise AuthError(AuthErrorKind.ACCOUNT_NOT_ACTIVE, reason=user.status if user else "missing")

        await self._log(AuthEvent.TOKEN_REFRESH, user.id, context, session_id=session.id)
        return pair

    # -------------------- Logout --------------------
    async def logout(
        self, access_token: str, context: schemas.RequestContext, *, all_devices: bool = False
    ) -> int:
        """Revoke the current session (or every session) and return how many were revoked."""

        payload = await self._validated_payload(access_token)
        user_id = payload["sub"]
        if all_devices:
            revoked = await self.sessions.revoke_all_user_sessions(user_id)
        else:
            revoked = int(await self.sessions.revoke_session_by_id(payload["sid"]))
        await self.tokens.revoke_token(access_token)
        await self._log(AuthEvent.LOGOUT, user_id, context, all_devices=all_devices, revoked_sessions=revoked)
        return revoked

    # -------------------- Password change --------------------
    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        context: schemas.RequestContext,
    ) -> int:
        user = await self.credentials.get_user(user_id)
        if user is None:
            raise AuthError(AuthErrorKind.NOT_FOUND)
        if not await self.credentials.verify_user_password(user, current_password):
            await self._log(AuthEvent.LOGIN_FAILURE, user.id, context, reason="change_password_mismatch")
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS, "La contraseña actual no es válida")

        validate_password_strength(new_password, min_length=self.settings.password_min_length)
        if new_password == current_password:
            raise AuthError(AuthErrorKind.WEAK_PASSWORD, "La nueva contraseña debe ser distinta", reason="reused")
        await self.credentials.update_password(user.id, await self.hasher.hash(new_password))

        revoked = await self.sessions.revoke_all_user_sessions(user.id)
        await self._log(AuthEvent.PASSWORD_CHANGED, user.id, context, revoked_sessions=revoked)
        return revoked

    # -------------------- Password reset --------------------
    async def initiate_password_reset(self, email: str, context: schemas.RequestContext) -> None:
        """Send a reset link when the account exists; the caller sees the same result either way."""

        decision = await self.rate_limiter.hit(
            f"reset:ip:{context.ip_address}",
            limit=self.settings.login_rate_limit_attempts,
            window_seconds=self.settings.login_rate_limit_window_seconds,
        )
        if not decision.allowed:
            raise AuthError(AuthErrorKind.RATE_LIMITED, retry_after=decision.retry_after_seconds)

        user = await self.credentials.get_user_by_email(email)
        if not user or user.status != models.UserStatus.ACTIVE.value:
            return

        token = await self.credentials.create_password_reset_token(
            user.id, ip_address=context.ip_address, user_agent=context.user_agent
        )
        await self._log(AuthEvent.PASSWORD_RESET_REQUESTED, user.id, context)
        await self._deliver_email(
            user.email,
            "password_reset",
            {
                "link": f"{self.settings.password_reset_base_url}?token={token}",
                "minutes": self.settings.password_reset_token_exp_minutes,
            },
        )

    async def reset_password(self, token: str, new_password: str, context: schemas.RequestContext) -> int:
        validate_password_strength(new_password, min_length=self.settings.password_min_length)
        user_id = await self.credentials.consume_password_reset_token(token)
        await self.credentials.update_password(user_id, await self.hasher.hash(new_password))
        await self.credentials.reset_failed_attempts(user_id, record_login=False)

        revoked = await self.sessions.revoke_all_user_sessions(user_id)
        await self._log(AuthEvent.PASSWORD_RESET_SUCCESS, user_id, context, revoked_sessions=revoked)
        return revoked

    # -------------------- Account --------------------
    async def close_account(self, user_id: str, password: str, context: schemas.RequestContext) -> int:
        """Soft-close the account: the row stays for the audit trail, every session is revoked."""

        await self._require_password(user_id, password, context)
        await self.credentials.set_status(user_id, models.UserStatus.CLOSED)
        revoked = await self.sessions.revoke_all_user_sessions(user_id)
        await self._log(AuthEvent.ACCOUNT_CLOSED, user_id, context, revoked_sessions=revoked)
        return revoked

    # -------------------- Sessions --------------------
    async def list_sessions(self, user_id: str, current_session_id: Optional[str] = None) -> list[schemas.SessionInfo]:
        return await self.sessions.list_user_sessions(user_id, current_session_id)

    async def revoke_session(self, user_id: str, session_id: str, context: schemas.RequestContext) -> None:
        session = await self.sessions.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise AuthError(AuthErrorKind.NOT_FOUND, "Sesión no encontrada")
        await self.sessions.revoke_session_by_id(session_id)
        await self._log(AuthEvent.SESSION_REVOKED, user_id, context, session_id=session_id)

    async def authenticate(
        self,
        access_token: str,
        context: schemas.RequestContext,
        *,
        session_token: Optional[str] = None,
        require_mfa: bool = False,
    ) -> schemas.AuthenticatedPrincipal:
        """Resolve a bearer token to its user and live session.

        The session is always validated against the request context (drift
        detection, heartbeat). It is looked up by the opaque session token
        when one is supplied, otherwise by the token's ``sid`` claim.
        """

        payload = await self._validated_payload(access_token)
        if session_token is not None:
            validation = await self.sessions.validate_session(session_token, context)
        else:
            validation = await self.sessions.validate_session_by_id(payload["sid"], context)
        alert = validation.security_alert
        if not validation.is_valid:
            if alert is not None and alert.blocked:
                await self._log(
                    AuthEvent.SESSION_BLOCKED,
                    payload["sub"],
                    context,
                    alert=alert.type.value,
                    risk_score=alert.risk_score,
                )
                raise AuthError(AuthErrorKind.SESSION_REVOKED, reason=alert.type.value)
            raise AuthError(AuthErrorKind.SESSION_INVALID)
        session = validation.session
        if session.id != payload["sid"]:
            raise AuthError(AuthErrorKind.SESSION_INVALID, reason="session_mismatch")

        user = await self.credentials.get_user(payload["sub"])
        if user is None or user.status != models.UserStatus.ACTIVE.value:
            raise AuthError(AuthErrorKind.ACCOUNT_NOT_ACTIVE, reason=user.status if user else "missing")
        if require_mfa and await self.mfa.has_mfa(user.id) and self.sessions.requires_mfa_reverification(session):
            raise AuthError(AuthErrorKind.MFA_REQUIRED)
        return schemas.AuthenticatedPrincipal(
            user_id=user.id, session=session, scope=payload.get("scope", "full"), claims=payload
        )

    async def step_up(
        self, principal: schemas.AuthenticatedPrincipal, request: schemas.MfaConfirmRequest, context: schemas.RequestContext
    ) -> schemas.SessionData:
        """Re-verify MFA on an existing session for sensitive operations."""

        result = await self.mfa.verify_code(
            schemas.MfaVerificationRequest(
                user_id=principal.user_id,
                code=request.code,
                context=context,
                config_id=request.config_id,
                challenge_id=request.challenge_id,
            )
        )
        if not result.success:
            event = AuthEvent.MFA_RATE_LIMITED if result.rate_limited else AuthEvent.MFA_REJECTED
            await self._log(event, principal.user_id, context, outcome=result.outcome.value, step_up=True)
            if result.rate_limited:
                raise AuthError(AuthErrorKind.MFA_RATE_LIMITED, retry_after=result.retry_after_seconds)
            raise AuthError(AuthErrorKind.INVALID_MFA_CODE)
        await self._log(AuthEvent.MFA_VERIFIED, principal.user_id, context, step_up=True)
        return await self.sessions.mark_mfa_verified(principal.session.id)

    # -------------------- MFA management --------------------
    async def start_mfa_setup(
        self,
        user_id: str,
        request: schemas.MfaSetupRequest,
        context: schemas.RequestContext,
    ) -> schemas.MfaSetupResponse:
        user = await self.credentials.get_user(user_id)
        if user is None:
            raise AuthError(AuthErrorKind.NOT_FOUND)
        method = request.method
        if method == models.MfaMethod.TOTP:
            response = await self.mfa.setup_totp(user.id, user.email)
        elif method == models.MfaMethod.SMS:
            response = await self.mfa.setup_sms(user.id, request.phone_number or "")
        elif method == models.MfaMethod.EMAIL:
            response = await self.mfa.setup_email(user.id, request.email or user.email)
        elif method == models.MfaMethod.BIOMETRIC:
            response = await self.mfa.setup_biometric(user.id, request.public_key or "")
        else:
            raise AuthError(AuthErrorKind.VALIDATION_ERROR, "Método MFA no soportado")
        await self._log(AuthEvent.MFA_SETUP, user.id, context, method=method.value)
        return response

    async def confirm_mfa_setup(
        self, user_id: str, request: schemas.MfaConfirmRequest, context: schemas.RequestContext
    ) -> schemas.MfaSetupVerification:
        if not request.config_id:
            raise AuthError(AuthErrorKind.VALIDATION_ERROR, "Falta la configuración MFA a confirmar")
        try:
            result = await self.mfa.verify_setup(
                user_id, request.config_id, request.code, context, challenge_id=request.challenge_id
            )
        except AuthError as exc:
            if exc.kind in (AuthErrorKind.INVALID_MFA_CODE, AuthErrorKind.MFA_RATE_LIMITED):
                await self._log(AuthEvent.MFA_REJECTED, user_id, context, config_id=request.config_id, setup=True)
            raise
        await self._log(AuthEvent.MFA_ENABLED, user_id, context, method=result.method)
        return result

    async def disable_mfa(
        self, user_id: str, request: schemas.MfaDisableRequest, context: schemas.RequestContext
    ) -> None:
        await self._require_password(user_id, request.password, context)
        await self.mfa.disable_method(user_id, request.config_id)
        await self._log(AuthEvent.MFA_DISABLED, user_id, context, config_id=request.config_id)

    async def set_primary_mfa(self, user_id: str, config_id: str, context: schemas.RequestContext) -> None:
        await self.mfa.set_primary(user_id, config_id)
        await self._log(AuthEvent.MFA_PRIMARY_CHANGED, user_id, context, config_id=config_id)

    async def regenerate_backup_codes(
        self, user_id: str, password: str, context: schemas.RequestContext
    ) -> schemas.BackupCodes:
        await self._require_password(user_id, password, context)
        if not await self.mfa.has_mfa(user_id):
            raise AuthError(AuthErrorKind.MFA_NOT_CONFIGURED)
        codes = await self.mfa.regenerate_backup_codes(user_id)
        await self._log(AuthEvent.BACKUP_CODES_REGENERATED, user_id, context)
        return schemas.BackupCodes(codes=codes)

    # -------------------- Helpers --------------------
    async def _validated_payload(self, access_token: str) -> dict:
        validation = await self.tokens.validate_access_token(access_token)
        if validation.valid:
            return validation.payload
        if validation.reason == "expired":
            raise AuthError(AuthErrorKind.TOKEN_EXPIRED)
        if validation.reason == "revoked":
            raise AuthError(AuthErrorKind.SESSION_REVOKED, reason="token_revoked")
        raise AuthError(AuthErrorKind.TOKEN_INVALID, reason=validation.reason)

    async def _require_password(self, user_id: str, password: str, context: schemas.RequestContext) -> None:
        user = await self.credentials.get_user(user_id)
        if not await self.credentials.verify_user_password(user, password):
            await self._log(AuthEvent.LOGIN_FAILURE, user_id, context, reason="reauth_mismatch")
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS)

    async def _send_verification_email(self, user: models.User, context: schemas.RequestContext) -> None:
        token = await self.credentials.create_verification_token(user.id)
        if await self._deliver_email(
            user.email, "verify_email", {"link": f"{self.settings.verification_base_url}?token={token}"}
        ):
            await self._log(AuthEvent.EMAIL_VERIFICATION_SENT, user.id, context)

    async def _deliver_email(self, address: str, template: str, params: dict) -> bool:
        """Email delivery is best-effort: failures are logged and never fail the caller."""

        try:
            await self.email_service.send(address, template, params)
        except Exception:
            logger.exception("No se pudo enviar el correo '%s'", template)
            return False
        return True

    async def _log(
        self,
        event_type: AuthEvent,
        user_id: Optional[str],
        context: schemas.RequestContext,
        **metadata,
    ) -> None:
        await self.audit.log_event(
            event_type=event_type,
            user_id=user_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            metadata=metadata or None,
        )


def create_auth_service(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    kv: KeyValueStore | None = None,
    clock: Clock | None = None,
    email_service: EmailDispatcher | None = None,
    sms_sender: SmsSender | None = None,
) -> AuthService:
    """Wire every component from settings; explicit arguments replace the defaults."""

    settings = settings or get_settings()
    clock = clock or SystemClock()
    if session_factory is None:
        session_factory = create_session_factory(create_engine_for(settings.database_url))
    if kv is None:
        if settings.redis_url:
            kv = RedisKeyValueStore.from_url(settings.redis_url)
        else:
            logger.warning("BANKAUTH_REDIS_URL no configurada; se usa el almacén en memoria")
            kv = MemoryKeyValueStore(clock)
    email_service = email_service or EmailService(settings)
    sms_sender = sms_sender or OutboxSmsSender(settings)

    hasher = PasswordHasher(settings)
    rate_limiter = RateLimiter(kv, clock)
    tokens = TokenService(settings, kv, clock)
    return AuthService(
        settings=settings,
        clock=clock,
        kv=kv,
        credentials=CredentialStore(session_factory, settings, clock, hasher),
        hasher=hasher,
        tokens=tokens,
        mfa=MfaService(
            session_factory,
            kv,
            settings,
            clock,
            cipher=SecretCipher(settings),
            rate_limiter=rate_limiter,
            email_service=email_service,
            sms_sender=sms_sender,
        ),
        sessions=SessionManager(kv, settings, clock, tokens),
        analyzer=SecurityAnalyzer(kv, settings, clock),
        rate_limiter=rate_limiter,
        audit=AuditLogger(session_factory, clock),
        email_service=email_service,
    )
