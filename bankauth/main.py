"""FastAPI entrypoint exposing the authentication core over HTTP.

Run with ``uvicorn bankauth.main:create_app --factory``.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import schemas
from .config import Settings, configure_logging, get_settings
from .database import create_engine_for, create_session_factory, init_db
from .dependencies import (
    SESSION_HEADER,
    get_access_token,
    get_auth_service,
    get_principal,
    get_request_context,
    require_mfa_principal,
)
from .errors import AuthError, AuthErrorKind
from .services.auth_service import AuthService, create_auth_service

STATUS_BY_KIND = {
    AuthErrorKind.INVALID_CREDENTIALS: status.HTTP_401_UNAUTHORIZED,
    AuthErrorKind.ACCOUNT_LOCKED: status.HTTP_423_LOCKED,
    AuthErrorKind.ACCOUNT_NOT_ACTIVE: status.HTTP_403_FORBIDDEN,
    AuthErrorKind.EMAIL_EXISTS: status.HTTP_409_CONFLICT,
    AuthErrorKind.WEAK_PASSWORD: status.HTTP_400_BAD_REQUEST,
    AuthErrorKind.INVALID_MFA_CODE: status.HTTP_401_UNAUTHORIZED,
    AuthErrorKind.MFA_RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    AuthErrorKind.MFA_CHALLENGE_EXPIRED: status.HTTP_401_UNAUTHORIZED,
    AuthErrorKind.MFA_NOT_CONFIGURED: status.HTTP_400_BAD_REQUEST,
    AuthErrorKind.MFA_ALREADY_ENABLED: status.HTTP_409_CONFLICT,
    AuthErrorKind.MFA_REQUIRED: status.HTTP_403_FORBIDDEN,
    AuthErrorKind.TOKEN_INVALID: status.HTTP_401_UNAUTHORIZED,
    AuthErrorKind.TOKEN_EXPIRED: status.HTTP_401_UNAUTHORIZED,
    AuthErrorKind.TOKEN_REUSE_DETECTED: status.HTTP_401_UNAUTHORIZED,
    AuthErrorKind.INVALID_TOKEN: status.HTTP_400_BAD_REQUEST,
    AuthErrorKind.SESSION_INVALID: status.HTTP_401_UNAUTHORIZED,
    AuthErrorKind.SESSION_REVOKED: status.HTTP_401_UNAUTHORIZED,
    AuthErrorKind.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    AuthErrorKind.REQUEST_BLOCKED: status.HTTP_403_FORBIDDEN,
    AuthErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    AuthErrorKind.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    AuthErrorKind.SERVICE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def create_app(settings: Settings | None = None, auth_service: Optional[AuthService] = None) -> FastAPI:
    """Build the application; tests pass a pre-wired ``auth_service``."""

    settings = settings or get_settings()
    configure_logging(settings)
    engine = None
    if auth_service is None:
        engine = create_engine_for(settings.database_url)
        auth_service = create_auth_service(settings, session_factory=create_session_factory(engine))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if engine is not None:
            await init_db(engine)
        yield
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title=settings.app_name, version="1.0.0", lifespan=lifespan)
    app.state.auth_service = auth_service

    # CORS can be restricted per deployment; defaults target localhost for demos.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["https://localhost", "http://localhost", "http://127.0.0.1"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError) -> JSONResponse:
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
        return JSONResponse(
            status_code=STATUS_BY_KIND.get(exc.kind, status.HTTP_400_BAD_REQUEST),
            content={"detail": exc.message, "error": exc.kind.value, "retryable": exc.retryable},
            headers=headers,
        )

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict:
        return {"status": "ok"}

    @app.post("/auth/register", response_model=schemas.RegistrationResult, status_code=status.HTTP_201_CREATED)
    async def register_user(
        payload: schemas.UserCreate,
        context: schemas.RequestContext = Depends(get_request_context),
        service: AuthService = Depends(get_auth_service),
    ) -> schemas.RegistrationResult:
        return await service.register(payload, context)

    @app.get("/auth/verify-email", response_model=schemas.Message)
    async def verify_email(
        token: str,
        context: schemas.RequestContext = Depends(get_request_context),
        service: AuthService = Depends(get_auth_service),
    ) -> schemas.Message:
        await service.verify_email(token, context)
        return schemas.Message(detail="Correo verificado")

    @app.post("/auth/login", response_model=schemas.LoginResult)
    async def login(
        payload: schemas.LoginRequest,
        context: schemas.RequestContext = Depends(get_request_context),
        service: AuthService = Depends(get_auth_service),
    ):
        return await service.login(payload, context)

    @app.post("/auth/mfa/challenge", response_model=schemas.MfaChallengeInfo)
    async def mfa_challenge(
        payload: schemas.MfaChallengeRequest,
        context: schemas.RequestContext = Depends(get_request_context),
        service: AuthService = Depends(get_auth_service),
    ) -> schemas.MfaChallengeInfo:
        return await service.send_mfa_challenge(payload.pending_session_ref, context, payload.method)

    @app.post("/auth/mfa/verify", response_model=schemas.SessionEstablished)
    async def mfa_verify(
        payload: schemas.MfaLoginRequest,
        context: schemas.RequestContext = Depends(get_request_context),
        service: AuthService = Depends(get_auth_service),
    ) -> schemas.SessionEstablished:
        return await service.complete_mfa_login(payload, context)

    @app.post("/auth/refresh", response_model=schemas.TokenPair)
    async def refresh_token(
        payload: schemas.RefreshRequest,
        context: schemas.RequestContext = Depends(get_request_context),
        service: AuthService = Depends(get_auth_service),
    ) -> schemas.TokenPair:
        return await service.refresh_tokens(payload.refresh_token, context)

    @app.post("/auth/logout", response_model=schemas.Message)
    async def logout(
        all_devices: bool = False,
        token: str = Depends(get_access_token),
        context: schemas.RequestContext = Depends(get_request_context),
        service: AuthService = Depends(get_auth_service),
    ) -> schemas.Message:
        await service.logout(token, context, all_devices=all_devices)
        return schemas.Message(detail="Sesión finalizada")

    @app.post("/auth/change-password", response_model=schemas.Message)
    async def change_password(
        payload: schemas.ChangePasswordRequest,
        principal: schemas.AuthenticatedPrincipal = Depends(require_mfa_principal),
        context: schemas.RequestContext = Depends(get_request_context),
        service: AuthService = Depends(get_auth_service),
    ) -> schemas.Message:
        await service.change_password(principal.user_id, payload.current_password, payload.new_password, context)
        return schemas.Message(detail="Contraseña actualizada")

    @app.post("/auth/resend-verification", response_model=schemas.Message)
    async def resend_verification(
        payload: schemas.ResendVerificationRequest,
        context: schemas.RequestContext = Depends(get_request_context),
        service: AuthService = Depends(get_auth_service),
    ) -> schemas.Message:
        await service.resend_verification(payload.email, context)
        return schemas.Message(detail="Si la cuenta está pendiente, se ha reenviado el correo de verificación")

    @app.post("/auth/close-account", response_model=schemas.Message)
    async def close_account(
        payload: schemas.PasswordConfirmation,
        principal: schemas.AuthenticatedPrincipal = Depends(require_mfa_principal),
        context: schemas.RequestContext = Depends(get_request_context),
        service: AuthService = Depends(get_auth_service),
    ) -> schemas.Message:
        await service.close_account(principal.user_id, payload.password, context)
        return schemas.Message(detail="Cuenta cerrada")

    @app.post("/auth/forgot-password", response_model=schemas.Message)
    async def forgot_password(
        payload: schemas.ForgotPasswordRequest,
        context: schemas.RequestContext = Depends(get_request_context),
        service: AuthService = Depends(get_auth_service),
    ) -> schemas.Message:
        await service.initiate_password_reset(payload.email, context)
        return schemas.Message(detail="Si el correo existe, se ha enviado un enlace de recuperación")

    @app.post("/auth/reset-password", response_model=schemas.Message)
    async def reset_password(
        payload: schemas.ResetPasswordRequest,
        context: schemas.RequestContext = Depends(get_request_context),
        service: AuthService = Depends(get_auth_service),
    ) -> schemas.Message:
        await service.reset_password(payload.token, payload.new_password, context)
        return schemas.Message(detail="Contraseña restablecida")

    @app.get("/auth/sessions", response_model=List[schemas.SessionInfo])
    async def list_sessions(
        principal: schemas.AuthenticatedPrincipal = Depends(get_principal),
        service: AuthService = Depends(get_auth_service),
    ) -> List[schemas.SessionInfo]:
        return await service.list_sessions(principal.user_id, principal.session.id)

    @app.delete("/auth/sessions/{session_id}", response_model=schemas.Message)
    async def revoke_session(
        session_id: str,
        principal: schemas.AuthenticatedPrincipal = Depends(get_principal),
        context: schemas.RequestContext = Depends(get_request_context),
        service: AuthService = Depends(get_auth_service),
    ) -> schemas.Message:
        await service.revoke_session(principal.user_id, session_id, context)
        return schemas.Message(detail="Sesión revocada")

    @app.post("/auth/session/rotate", response_model=schemas.SessionRotation)
    async def rotate_session(
        request: Request,
        principal: schemas.AuthenticatedPrincipal = Depends(get_principal),
        service: AuthService = Depends(get_auth_service),
    ) -> schemas.SessionRotation:
        token = request.headers.get(SESSION_HEADER)
        if not token:
            raise AuthError(AuthErrorKind.SESSION_INVALID, "Token de sesión faltante")
        return await service.sessions.rotate_session(token)

    @app.get("/auth/mfa/methods", response_model=List[schemas.MfaMethodInfo])
    async def mfa_methods(
        principal: schemas.AuthenticatedPrincipal = Depends(get_principal),
        service: AuthService = Depends(get_auth_service),
    ) -> List[schemas.MfaMethodInfo]:
        return [service.mfa.describe(config) for config in await service.mfa.get_user_mfa_methods(principal.user_id)]

    @app.post("/auth/mfa/setup", response_model=schemas.MfaSetupResponse)
    async def mfa_setup(
        payload: schemas.MfaSetupRequest,
        principal: schemas.AuthenticatedPrincipal = Depends(require_mfa_principal),
        context: schemas.RequestContext = Depends(get_request_context),
        service: AuthService = Depends(get_auth_service),
    ) -> schemas.MfaSetupResponse:
        return await service.start_mfa_setup(principal.user_id, payload, context)

    @app.post("/auth/mfa/confirm", response_model=schemas.MfaSetupVerification)
    async def mfa_confirm(
        payload: schemas.MfaConfirmRequest,
        principal: schemas.AuthenticatedPrincipal = Depends(get_principal),
        context: schemas.RequestContext = Depends(get_request_context),
        service: AuthService = Depends(get_auth_service),
    ) -> schemas.MfaSetupVerification:
        return await service.confirm_mfa_setup(principal.user_id, payload, context)

    @app.post("/auth/mfa/step-up", response_model=schemas.Message)
    async def mfa_step_up(
        payload: schemas.MfaConfirmRequest,
        principal: schemas.AuthenticatedPrincipal = Depends(get_principal),
        context: schemas.RequestContext = Depends(get_request_context),
        service: AuthService = Depends(get_auth_service),
    ) -> schemas.Message:
        await service.step_up(principal, payload, context)
        return schemas.Message(detail="Verificación MFA completada")

    @app.post("/auth/mfa/disable", response_model=schemas.Message)
    async def mfa_disable(
        payload: schemas.MfaDisableRequest,
        principal: schemas.AuthenticatedPrincipal = Depends(require_mfa_principal),
        context: schemas.RequestContext = Depends(get_request_context),
        service: AuthService = Depends(get_auth_service),
    ) -> schemas.Message:
        await service.disable_mfa(principal.user_id, payload, context)
        return schemas.Message(detail="MFA deshabilitado")

    @app.post("/auth/mfa/primary", response_model=schemas.Message)
    async def mfa_primary(
        payload: schemas.MfaPrimaryRequest,
        principal: schemas.AuthenticatedPrincipal = Depends(require_mfa_principal),
        context: schemas.RequestContext = Depends(get_request_context),
        service: AuthService = Depends(get_auth_service),
    ) -> schemas.Message:
        await service.set_primary_mfa(principal.user_id, payload.config_id, context)
        return schemas.Message(detail="Método MFA principal actualizado")

    @app.post("/auth/mfa/backup-codes", response_model=schemas.BackupCodes)
    async def mfa_backup_codes(
        payload: schemas.PasswordConfirmation,
        principal: schemas.AuthenticatedPrincipal = Depends(require_mfa_principal),
        context: schemas.RequestContext = Depends(get_request_context),
        service: AuthService = Depends(get_auth_service),
    ) -> schemas.BackupCodes:
        return await service.regenerate_backup_codes(principal.user_id, payload.password, context)

    @app.get("/auth/me", response_model=schemas.UserRead)
    async def read_profile(
        principal: schemas.AuthenticatedPrincipal = Depends(get_principal),
        service: AuthService = Depends(get_auth_service),
    ) -> schemas.UserRead:
        return schemas.UserRead.model_validate(await service.credentials.get_user(principal.user_id))

    @app.get("/auth/logs", response_model=List[schemas.AuditLogRead])
    async def read_logs(
        principal: schemas.AuthenticatedPrincipal = Depends(get_principal),
        service: AuthService = Depends(get_auth_service),
    ) -> List[schemas.AuditLogRead]:
        rows = await service.audit.recent_events(principal.user_id)
        return [schemas.AuditLogRead.model_validate(row) for row in rows]

