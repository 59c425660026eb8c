"""MFA engine: method setup, challenges, rate limiting and code verification.

Supported methods are TOTP, SMS and email one-time codes, single-use backup
codes and biometric challenge-response (ECDSA P-256 signatures over a
server nonce). Every verification attempt consumes a rate-limit slot before
the code is looked at, so malformed and wrong codes cost the same, and every
attempt is appended to ``mfa_verification_attempts``.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import secrets
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Optional

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
import pyotp
from pyotp.utils import strings_equal
from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import models
from ..clock import Clock
from ..config import Settings
from ..email_service import EmailDispatcher
from ..errors import AuthError, AuthErrorKind, service_unavailable
from ..kvstore import KeyValueStore
from ..rate_limiter import RateLimitDecision, RateLimiter
from ..schemas import (
    MfaChallengeInfo,
    MfaMethodInfo,
    MfaSetupResponse,
    MfaSetupVerification,
    MfaVerificationRequest,
    MfaVerificationResult,
    RequestContext,
    VerificationOutcome,
)
from ..security import (
    SecretCipher,
    TokenError,
    constant_time_equals,
    generate_backup_code,
    generate_numeric_code,
    hash_token,
    mask_email,
    mask_phone,
)
from ..sms_service import SmsSender

logger = logging.getLogger(__name__)

NUMERIC_CODE = re.compile(r"^\d{6}$")
BACKUP_CODE = re.compile(r"^[0-9A-F]{8}$")
PHONE_NUMBER = re.compile(r"^\+?[1-9]\d{7,14}$")
EMAIL_ADDRESS = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

CHALLENGE_METHODS = (models.MfaMethod.TOTP, models.MfaMethod.SMS, models.MfaMethod.EMAIL, models.MfaMethod.BIOMETRIC)


class MfaService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        kv: KeyValueStore,
        settings: Settings,
        clock: Clock,
        *,
        cipher: SecretCipher,
        rate_limiter: RateLimiter,
        email_service: EmailDispatcher,
        sms_sender: SmsSender,
    ) -> None:
        self.session_factory = session_factory
        self.kv = kv
        self.settings = settings
        self.clock = clock
        self.cipher = cipher
        self.rate_limiter = rate_limiter
        self.email_service = email_service
        self.sms_sender = sms_sender
        self.window_seconds = settings.mfa_window_minutes * 60

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_factory() as db:
                yield db
        except SQLAlchemyError as exc:
            logger.error("Fallo del almacén MFA: %s", exc)
            raise service_unavailable("mfa_store", exc) from exc

    # -------------------- Queries --------------------
    async def get_user_mfa_methods(self, user_id: str) -> list[models.MfaConfig]:
        """Enabled configurations, primary first."""

        async with self._session() as db:
            result = await db.execute(
                select(models.MfaConfig)
                .where(models.MfaConfig.user_id == user_id, models.MfaConfig.is_enabled.is_(True))
                .order_by(models.MfaConfig.is_primary.desc(), models.MfaConfig.created_at)
            )
            return list(result.scalars())

    async def has_mfa(self, user_id: str) -> bool:
        methods = await self.get_user_mfa_methods(user_id)
        return any(config.method != models.MfaMethod.BACKUP_CODES.value for config in methods)

    def describe(self, config: models.MfaConfig) -> MfaMethodInfo:
        return MfaMethodInfo(
            config_id=config.id,
            method=config.method,
            is_primary=config.is_primary,
            masked_destination=self._masked_destination(config),
            last_used=config.last_used,
        )

    async def _get_config(self, user_id: str, config_id: str) -> models.MfaConfig:
        async with self._session() as db:
            config = await db.get(models.MfaConfig, config_id)
        if config is None or config.user_id != user_id:
            raise AuthError(AuthErrorKind.NOT_FOUND, "Configuración MFA no encontrada")
        return config

    async def _get_config_by_method(self, user_id: str, method: models.MfaMethod) -> Optional[models.MfaConfig]:
        async with self._session() as db:
            result = await db.execute(
                select(models.MfaConfig).where(
                    models.MfaConfig.user_id == user_id, models.MfaConfig.method == method.value
                )
            )
            return result.scalar_one_or_none()

    async def mfa_stats(self) -> dict:
        """Enabled configurations per method and attempts per outcome over the last 24 hours."""

        since = self.clock.now() - timedelta(hours=24)
        async with self._session() as db:
            methods = await db.execute(
                select(models.MfaConfig.method, func.count())
                .where(models.MfaConfig.is_enabled.is_(True))
                .group_by(models.MfaConfig.method)
            )
            outcomes = await db.execute(
                select(models.MfaVerificationAttempt.outcome, func.count())
                .where(models.MfaVerificationAttempt.created_at >= since)
                .group_by(models.MfaVerificationAttempt.outcome)
            )
            return {
                "enabled_methods": {method: count for method, count in methods.all()},
                "attempts_24h": {outcome: count for outcome, count in outcomes.all()},
            }

    # -------------------- Setup --------------------
    async def setup_totp(self, user_id: str, account_name: str) -> MfaSetupResponse:
        secret = pyotp.random_base32()
        config = await self._upsert_config(
            user_id, models.MfaMethod.TOTP, secret_encrypted=self.cipher.encrypt(secret)
        )
        otpauth_uri = pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=self.settings.mfa_issuer)
        return MfaSetupResponse(config_id=config.id, method=config.method, otpauth_uri=otpauth_uri)

    async def setup_sms(self, user_id: str, phone_number: str) -> MfaSetupResponse:
        phone_number = re.sub(r"[\s\-()]", "", phone_number)
        if not PHONE_NUMBER.match(phone_number):
            raise AuthError(AuthErrorKind.VALIDATION_ERROR, "Número de teléfono inválido")
        config = await self._upsert_config(user_id, models.MfaMethod.SMS, phone_number=phone_number)
        challenge = await self._issue_otp(config)
        return MfaSetupResponse(
            config_id=config.id, method=config.method, masked_destination=challenge.masked_destination, challenge=challenge
        )

    async def setup_email(self, user_id: str, email: str) -> MfaSetupResponse:
        email = email.strip().lower()
        if not EMAIL_ADDRESS.match(email):
            raise AuthError(AuthErrorKind.VALIDATION_ERROR, "Correo inválido")
        config = await self._upsert_config(user_id, models.MfaMethod.EMAIL, email=email)
        challenge = await self._issue_otp(config)
        return MfaSetupResponse(
            config_id=config.id, method=config.method, masked_destination=challenge.masked_destination, challenge=challenge
        )

    async def setup_biometric(self, user_id: str, public_key_pem: str) -> MfaSetupResponse:
        try:
            key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
        except (ValueError, UnsupportedAlgorithm) as exc:
            raise AuthError(AuthErrorKind.VALIDATION_ERROR, "Clave pública inválida") from exc
        if not isinstance(key, ec.EllipticCurvePublicKey):
            raise AuthError(AuthErrorKind.VALIDATION_ERROR, "Se requiere una clave de curva elíptica")
        config = await self._upsert_config(user_id, models.MfaMethod.BIOMETRIC, public_key=public_key_pem)
        challenge = await self._issue_biometric_challenge(config)
        return MfaSetupResponse(config_id=config.id, method=config.method, challenge=challenge)

    async def _upsert_config(self, user_id: str, method: models.MfaMethod, **fields) -> models.MfaConfig:
        existing = await self._get_config_by_method(user_id, method)
        if existing is not None and existing.is_enabled:
            raise AuthError(AuthErrorKind.MFA_ALREADY_ENABLED)
        values = dict(secret_encrypted=None, phone_number=None, email=None, public_key=None)
        values.update(fields)
        async with self._session() as db:
            if existing is None:
                config = models.MfaConfig(
                    user_id=user_id,
                    method=method.value,
                    is_enabled=False,
                    is_primary=False,
                    last_used=None,
                    verified_at=None,
                    created_at=self.clock.now(),
                    **values,
                )
                db.add(config)
            else:
                config = await db.get(models.MfaConfig, existing.id)
                for name, value in fields.items():
                    setattr(config, name, value)
                config.verified_at = None
            self._validate_fields(config)
            await db.commit()
        logger.info("Configuración MFA %s preparada para %s", method.value, user_id)
        return config

    @staticmethod
    def _validate_fields(config: models.MfaConfig) -> None:
        required = {
            models.MfaMethod.TOTP.value: "secret_encrypted",
            models.MfaMethod.SMS.value: "phone_number",
            models.MfaMethod.EMAIL.value: "email",
            models.MfaMethod.BIOMETRIC.value: "public_key",
        }.get(config.method)
        if required and not getattr(config, required):
            raise AuthError(
                AuthErrorKind.VALIDATION_ERROR,
                f"El método {config.method} requiere {required}",
            )

    async def verify_setup(
        self,
        user_id: str,
        config_id: str,
        code: str,
        context: RequestContext,
        *,
        challenge_id: Optional[str] = None,
    ) -> MfaSetupVerification:
        """Confirm a pending method with its first code and enable it."""

        config = await self._get_config(user_id, config_id)
        if config.is_enabled:
            raise AuthError(AuthErrorKind.MFA_ALREADY_ENABLED)
        result = await self._verify_against(
            config,
            MfaVerificationRequest(
                user_id=user_id, code=code, context=context, config_id=config_id, challenge_id=challenge_id
            ),
        )
        self._raise_for_result(result)

        now = self.clock.now()
        async with self._session() as db:
            has_primary = await db.scalar(
                select(func.count())
                .select_from(models.MfaConfig)
                .where(models.MfaConfig.user_id == user_id, models.MfaConfig.is_primary.is_(True))
            )
            await db.execute(
                update(models.MfaConfig)
                .where(models.MfaConfig.id == config_id)
                .values(is_enabled=True, verified_at=now, is_primary=not has_primary)
            )
            await db.commit()

        backup_codes = None
        backup_config = await self._get_config_by_method(user_id, models.MfaMethod.BACKUP_CODES)
        if backup_config is None or not backup_config.is_enabled:
            backup_codes = await self.regenerate_backup_codes(user_id)
        logger.info("MFA %s habilitado para %s", config.method, user_id)
        return MfaSetupVerification(
            config_id=config_id, method=config.method, is_primary=not has_primary, backup_codes=backup_codes
        )

    async def set_primary(self, user_id: str, config_id: str) -> None:
        config = await self._get_config(user_id, config_id)
        if not config.is_enabled or config.method == models.MfaMethod.BACKUP_CODES.value:
            raise AuthError(AuthErrorKind.VALIDATION_ERROR, "El método no puede ser primario")
        async with self._session() as db:
            await db.execute(
                update(models.MfaConfig).where(models.MfaConfig.user_id == user_id).values(is_primary=False)
            )
            await db.execute(
                update(models.MfaConfig).where(models.MfaConfig.id == config_id).values(is_primary=True)
            )
            await db.commit()

    async def disable_method(self, user_id: str, config_id: str) -> None:
        config = await self._get_config(user_id, config_id)
        async with self._session() as db:
            await db.execute(
                update(models.MfaConfig)
                .where(models.MfaConfig.id == config_id)
                .values(is_enabled=False, is_primary=False)
            )
            await db.commit()
        remaining = [
            c for c in await self.get_user_mfa_methods(user_id)
            if c.method != models.MfaMethod.BACKUP_CODES.value
        ]
        if not remaining:
            backup_config = await self._get_config_by_method(user_id, models.MfaMethod.BACKUP_CODES)
            if backup_config is not None and backup_config.is_enabled:
                await self.disable_method(user_id, backup_config.id)
        elif config.is_primary:
            await self.set_primary(user_id, remaining[0].id)
        logger.info("MFA %s deshabilitado para %s", config.method, user_id)

    async def regenerate_backup_codes(self, user_id: str) -> list[str]:
        """Replace every backup code; the plaintext codes are returned exactly once."""

        codes = [generate_backup_code() for _ in range(self.settings.backup_codes_count)]
        config = await self._get_config_by_method(user_id, models.MfaMethod.BACKUP_CODES)
        now = self.clock.now()
        async with self._session() as db:
            if config is None:
                config = models.MfaConfig(
                    user_id=user_id,
                    method=models.MfaMethod.BACKUP_CODES.value,
                    is_enabled=True,
                    is_primary=False,
                    last_used=None,
                    verified_at=now,
                    created_at=now,
                )
                db.add(config)
                await db.flush()
            else:
                await db.execute(
                    update(models.MfaConfig)
                    .where(models.MfaConfig.id == config.id)
                    .values(is_enabled=True, verified_at=now)
                )
                await db.execute(
                    update(models.MfaBackupCode)
                    .where(models.MfaBackupCode.config_id == config.id, models.MfaBackupCode.used_at.is_(None))
                    .values(used_at=now)
                )
            await db.execute(
                insert(models.MfaBackupCode),
                [
                    {"config_id": config.id, "code_hash": self._hash_backup_code(code), "created_at": now}
                    for code in codes
                ],
            )
            await db.commit()
        return codes

    async def remaining_backup_codes(self, user_id: str) -> int:
        config = await self._get_config_by_method(user_id, models.MfaMethod.BACKUP_CODES)
        if config is None:
            return 0
        async with self._session() as db:
            return await db.scalar(
                select(func.count())
                .select_from(models.MfaBackupCode)
                .where(models.MfaBackupCode.config_id == config.id, models.MfaBackupCode.used_at.is_(None))
            )

    # -------------------- Challenges --------------------
    async def send_challenge(
        self, user_id: str, context: RequestContext, method: Optional[str] = None
    ) -> MfaChallengeInfo:
        """Pick the requested (or primary) method and issue its challenge."""

        candidates = [
            c for c in await self.get_user_mfa_methods(user_id)
            if c.method != models.MfaMethod.BACKUP_CODES.value
        ]
        if not candidates:
            raise AuthError(AuthErrorKind.MFA_NOT_CONFIGURED)
        selected = next((c for c in candidates if c.is_primary), candidates[0])
        if method:
            selected = next((c for c in candidates if c.method == method), None)
            if selected is None:
                raise AuthError(AuthErrorKind.MFA_NOT_CONFIGURED, reason=f"method_{method}_missing")

        decision = await self.check_rate_limit(selected.id, context.ip_address)
        if not decision.allowed:
            raise AuthError(AuthErrorKind.MFA_RATE_LIMITED, retry_after=decision.retry_after_seconds)

        if selected.method in (models.MfaMethod.SMS.value, models.MfaMethod.EMAIL.value):
            return await self._issue_otp(selected)
        if selected.method == models.MfaMethod.BIOMETRIC.value:
            return await self._issue_biometric_challenge(selected)
        return MfaChallengeInfo(config_id=selected.id, method=selected.method)

    def _otp_key(self, config_id: str) -> str:
        return f"mfa:otp:{config_id}"

    def _otp_failures_key(self, config_id: str) -> str:
        return f"mfa:otp_failures:{config_id}"

    def _otp_minutes(self, config: models.MfaConfig) -> int:
        if config.method == models.MfaMethod.SMS.value:
            return self.settings.sms_code_exp_minutes
        return self.settings.email_code_exp_minutes

    async def _issue_otp(self, config: models.MfaConfig) -> MfaChallengeInfo:
        code = generate_numeric_code()
        minutes = self._otp_minutes(config)
        await self.kv.set(self._otp_key(config.id), self._hash_code(code), ttl=minutes * 60)
        await self.kv.delete(self._otp_failures_key(config.id))
        try:
            if config.method == models.MfaMethod.SMS.value:
                await self.sms_sender.send_code(config.phone_number, code, expires_minutes=minutes)
            else:
                await self.email_service.send(config.email, "mfa_code", {"code": code, "minutes": minutes})
        except Exception as exc:
            logger.exception("No se pudo entregar el código MFA (%s)", config.method)
            raise service_unavailable(f"{config.method}_delivery", exc) from exc
        return MfaChallengeInfo(
            config_id=config.id,
            method=config.method,
            masked_destination=self._masked_destination(config),
            expires_at=self.clock.now() + timedelta(minutes=minutes),
        )

    async def _issue_biometric_challenge(self, config: models.MfaConfig) -> MfaChallengeInfo:
        challenge_id = secrets.token_urlsafe(16)
        nonce = secrets.token_urlsafe(32)
        minutes = self.settings.biometric_challenge_exp_minutes
        await self.kv.set(
            f"mfa:biometric:{challenge_id}",
            json.dumps({"config_id": config.id, "nonce": nonce}),
            ttl=minutes * 60,
        )
        return MfaChallengeInfo(
            config_id=config.id,
            method=config.method,
            challenge_id=challenge_id,
            nonce=nonce,
            expires_at=self.clock.now() + timedelta(minutes=minutes),
        )

    # -------------------- Rate limiting --------------------
    async def check_rate_limit(self, config_id: str, ip_address: str) -> RateLimitDecision:
        """Report whether another attempt would be accepted, without consuming a slot."""

        per_config = await self.rate_limiter.check(
            f"mfa:config:{config_id}", limit=self.settings.mfa_max_attempts, window_seconds=self.window_seconds
        )
        per_ip = await self.rate_limiter.check(
            f"mfa:ip:{ip_address}", limit=self.settings.mfa_ip_max_attempts, window_seconds=self.window_seconds
        )
        return self._combine(per_config, per_ip)

    async def _consume_rate_limit(self, config_id: str, ip_address: str) -> RateLimitDecision:
        per_config = await self.rate_limiter.hit(
            f"mfa:config:{config_id}", limit=self.settings.mfa_max_attempts, window_seconds=self.window_seconds
        )
        per_ip = await self.rate_limiter.hit(
            f"mfa:ip:{ip_address}", limit=self.settings.mfa_ip_max_attempts, window_seconds=self.window_seconds
        )
        return self._combine(per_config, per_ip)

    @staticmethod
    def _combine(*decisions: RateLimitDecision) -> RateLimitDecision:
        blocked = [d for d in decisions if not d.allowed]
        if not blocked:
            return RateLimitDecision(True)
        return RateLimitDecision(False, max(d.retry_after_seconds for d in blocked))

    # -------------------- Verification --------------------
    async def verify_code(self, request: MfaVerificationRequest) -> MfaVerificationResult:
        config = await self._resolve_config(request)
        if config is None:
            await self._record_attempt(request, None, VerificationOutcome.REJECTED, "config_not_found")
            return MfaVerificationResult(
                outcome=VerificationOutcome.REJECTED, success=False, error="Configuración MFA no encontrada"
            )
        return await self._verify_against(config, request)

    async def _resolve_config(self, request: MfaVerificationRequest) -> Optional[models.MfaConfig]:
        enabled = await self.get_user_mfa_methods(request.user_id)
        if request.is_backup_code:
            return next((c for c in enabled if c.method == models.MfaMethod.BACKUP_CODES.value), None)
        if request.config_id:
            return next((c for c in enabled if c.id == request.config_id), None)
        if request.method:
            return next((c for c in enabled if c.method == request.method), None)
        return next((c for c in enabled if c.is_primary), None)

    async def _verify_against(
        self, config: models.MfaConfig, request: MfaVerificationRequest
    ) -> MfaVerificationResult:
        decision = await self._consume_rate_limit(config.id, request.context.ip_address)
        if not decision.allowed:
            await self._record_attempt(request, config, VerificationOutcome.RATE_LIMITED, "rate_limited")
            return MfaVerificationResult(
                outcome=VerificationOutcome.RATE_LIMITED,
                success=False,
                error="Demasiados intentos de verificación",
                rate_limited=True,
                retry_after_seconds=decision.retry_after_seconds,
                config_id=config.id,
                method=config.method,
            )

        is_backup = request.is_backup_code or config.method == models.MfaMethod.BACKUP_CODES.value
        if is_backup:
            outcome, reason = await self._check_backup_code(config, request.code)
        elif config.method == models.MfaMethod.TOTP.value:
            outcome, reason = await self._check_totp(config, request.code)
        elif config.method in (models.MfaMethod.SMS.value, models.MfaMethod.EMAIL.value):
            outcome, reason = await self._check_otp(config, request.code)
        elif config.method == models.MfaMethod.BIOMETRIC.value:
            outcome, reason = await self._check_biometric(config, request.code, request.challenge_id)
        else:
            outcome, reason = VerificationOutcome.REJECTED, "unsupported_method"

        await self._record_attempt(request, config, outcome, reason)
        if outcome is not VerificationOutcome.VERIFIED:
            errors = {
                VerificationOutcome.EXPIRED: "El desafío MFA expiró",
                VerificationOutcome.REJECTED: "Código inválido",
            }
            return MfaVerificationResult(
                outcome=outcome, success=False, error=errors[outcome], config_id=config.id, method=config.method
            )

        async with self._session() as db:
            await db.execute(
                update(models.MfaConfig).where(models.MfaConfig.id == config.id).values(last_used=self.clock.now())
            )
            await db.commit()
        remaining = await self.remaining_backup_codes(request.user_id) if is_backup else None
        return MfaVerificationResult(
            outcome=outcome,
            success=True,
            config_id=config.id,
            method=config.method,
            remaining_backup_codes=remaining,
        )

    async def _check_totp(self, config: models.MfaConfig, code: str) -> tuple[VerificationOutcome, Optional[str]]:
        code = code.strip()
        if not NUMERIC_CODE.match(code):
            return VerificationOutcome.REJECTED, "invalid_format"
        try:
            secret = self.cipher.decrypt(config.secret_encrypted)
        except TokenError:
            logger.error("Secreto TOTP ilegible para la configuración %s", config.id)
            return VerificationOutcome.REJECTED, "secret_unreadable"
        totp = pyotp.TOTP(secret)
        now = self.clock.now()
        matched_step = None
        # Current step and one step either side; every candidate is compared.
        for offset in (-1, 0, 1):
            moment = now + timedelta(seconds=offset * totp.interval)
            if strings_equal(totp.at(moment), code):
                matched_step = totp.timecode(moment)
        if matched_step is None:
            return VerificationOutcome.REJECTED, "invalid_code"
        fresh = await self.kv.set(
            f"mfa:totp_used:{config.id}:{matched_step}", "1", ttl=totp.interval * 3, only_if_absent=True
        )
        if not fresh:
            return VerificationOutcome.REJECTED, "code_replayed"
        return VerificationOutcome.VERIFIED, None

    async def _check_otp(self, config: models.MfaConfig, code: str) -> tuple[VerificationOutcome, Optional[str]]:
        stored = await self.kv.get(self._otp_key(config.id))
        if stored is None:
            return VerificationOutcome.EXPIRED, "code_expired"
        code = code.strip()
        if NUMERIC_CODE.match(code) and constant_time_equals(self._hash_code(code), stored):
            consumed = await self.kv.getdel(self._otp_key(config.id))
            if consumed != stored:
                return VerificationOutcome.EXPIRED, "code_consumed"
            await self.kv.delete(self._otp_failures_key(config.id))
            return VerificationOutcome.VERIFIED, None
        failures = await self.kv.incr(
            self._otp_failures_key(config.id), ttl=self._otp_minutes(config) * 60
        )
        if failures >= self.settings.otp_max_failed_checks:
            await self.kv.delete(self._otp_key(config.id))
        return VerificationOutcome.REJECTED, "invalid_code" if NUMERIC_CODE.match(code) else "invalid_format"

    async def _check_backup_code(
        self, config: models.MfaConfig, code: str
    ) -> tuple[VerificationOutcome, Optional[str]]:
        normalized = re.sub(r"[\s-]", "", code).upper()
        if not BACKUP_CODE.match(normalized):
            return VerificationOutcome.REJECTED, "invalid_format"
        async with self._session() as db:
            result = await db.execute(
                update(models.MfaBackupCode)
                .where(
                    models.MfaBackupCode.config_id == config.id,
                    models.MfaBackupCode.code_hash == self._hash_backup_code(normalized),
                    models.MfaBackupCode.used_at.is_(None),
                )
                .values(used_at=self.clock.now())
                .returning(models.MfaBackupCode.id)
                .execution_options(synchronize_session=False)
            )
            consumed = result.scalar_one_or_none()
            await db.commit()
        if consumed is None:
            return VerificationOutcome.REJECTED, "invalid_code"
        return VerificationOutcome.VERIFIED, None

    async def _check_biometric(
        self, config: models.MfaConfig, code: str, challenge_id: Optional[str]
    ) -> tuple[VerificationOutcome, Optional[str]]:
        if not challenge_id:
            return VerificationOutcome.REJECTED, "missing_challenge"
        raw = await self.kv.getdel(f"mfa:biometric:{challenge_id}")
        if raw is None:
            return VerificationOutcome.EXPIRED, "challenge_expired"
        challenge = json.loads(raw)
        if challenge.get("config_id") != config.id:
            return VerificationOutcome.REJECTED, "challenge_mismatch"
        try:
            signature = base64.urlsafe_b64decode(code + "=" * (-len(code) % 4))
            key = serialization.load_pem_public_key(config.public_key.encode("utf-8"))
            key.verify(signature, challenge["nonce"].encode("utf-8"), ec.ECDSA(hashes.SHA256()))
        except (InvalidSignature, ValueError, binascii.Error):
            return VerificationOutcome.REJECTED, "invalid_signature"
        return VerificationOutcome.VERIFIED, None

    async def _record_attempt(
        self,
        request: MfaVerificationRequest,
        config: Optional[models.MfaConfig],
        outcome: VerificationOutcome,
        reason: Optional[str],
    ) -> None:
        async with self._session() as db:
            db.add(
                models.MfaVerificationAttempt(
                    user_id=request.user_id,
                    config_id=config.id if config else None,
                    method=config.method if config else request.method,
                    is_backup_code=request.is_backup_code,
                    outcome=outcome.value,
                    failure_reason=reason,
                    ip_address=request.context.ip_address,
                    user_agent=request.context.user_agent,
                    created_at=self.clock.now(),
                )
            )
            await db.commit()
        if outcome is not VerificationOutcome.VERIFIED:
            logger.warning(
                "Verificación MFA fallida user_id=%s config=%s outcome=%s reason=%s ip=%s",
                request.user_id,
                config.id if config else None,
                outcome.value,
                reason,
                request.context.ip_address,
            )

    # -------------------- Helpers --------------------
    @staticmethod
    def _raise_for_result(result: MfaVerificationResult) -> None:
        if result.success:
            return
        if result.outcome is VerificationOutcome.RATE_LIMITED:
            raise AuthError(AuthErrorKind.MFA_RATE_LIMITED, retry_after=result.retry_after_seconds)
        if result.outcome is VerificationOutcome.EXPIRED:
            raise AuthError(AuthErrorKind.MFA_CHALLENGE_EXPIRED)
        raise AuthError(AuthErrorKind.INVALID_MFA_CODE)

    def _hash_code(self, code: str) -> str:
        return hash_token(code, self.settings.jwt_secret_key)

    def _hash_backup_code(self, code: str) -> str:
        return hash_token(f"backup:{code}", self.settings.jwt_secret_key)

    @staticmethod
    def _masked_destination(config: models.MfaConfig) -> Optional[str]:
        if config.method == models.MfaMethod.SMS.value:
            return mask_phone(config.phone_number)
        if config.method == models.MfaMethod.EMAIL.value:
            return mask_email(config.email)
        return None
