"""Audit logging utilities."""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import models
from .clock import Clock
from .errors import service_unavailable

logger = logging.getLogger(__name__)


class AuthEvent(str, Enum):
    REGISTERED = "registered"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    LOGIN_BLOCKED = "login_blocked"
    MFA_CHALLENGE_ISSUED = "mfa_challenge_issued"
    MFA_VERIFIED = "mfa_verified"
    MFA_REJECTED = "mfa_rejected"
    MFA_RATE_LIMITED = "mfa_rate_limited"
    MFA_SETUP = "mfa_setup"
    MFA_ENABLED = "mfa_enabled"
    MFA_DISABLED = "mfa_disabled"
    MFA_PRIMARY_CHANGED = "mfa_primary_changed"
    BACKUP_CODES_REGENERATED = "backup_codes_regenerated"
    TOKEN_REFRESH = "token_refresh"
    TOKEN_REFRESH_FAILURE = "token_refresh_failure"
    TOKEN_REUSE_DETECTED = "token_reuse_detected"
    LOGOUT = "logout"
    SESSION_REVOKED = "session_revoked"
    SESSION_BLOCKED = "session_blocked"
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET_SUCCESS = "password_reset_success"
    EMAIL_VERIFICATION_SENT = "email_verification_sent"
    EMAIL_VERIFIED = "email_verified"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_CLOSED = "account_closed"


class AuditLogger:
    """Writes security events to ``auth_logs`` and mirrors them to the log stream."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: Clock) -> None:
        self.session_factory = session_factory
        self.clock = clock

    async def log_event(
        self,
        *,
        event_type: AuthEvent,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        logger.info(
            "auth_event=%s user_id=%s ip=%s details=%s",
            event_type.value,
            user_id,
            ip_address,
            metadata,
        )
        entry = models.AuthLog(
            user_id=user_id,
            event_type=event_type.value,
            ip_address=ip_address,
            user_agent=user_agent,
            details=metadata,
            created_at=self.clock.now(),
        )
        try:
            async with self.session_factory() as db:
                db.add(entry)
                await db.commit()
        except SQLAlchemyError as exc:
            logger.error("No se pudo registrar el evento de auditoría %s: %s", event_type.value, exc)
            raise service_unavailable("audit_log", exc) from exc

    async def recent_events(self, user_id: str, limit: int = 20) -> list[models.AuthLog]:
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(models.AuthLog)
                    .where(models.AuthLog.user_id == user_id)
                    .order_by(models.AuthLog.created_at.desc())
                    .limit(limit)
                )
                return list(result.scalars())
        except SQLAlchemyError as exc:
            raise service_unavailable("audit_log", exc) from exc
