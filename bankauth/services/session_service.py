"""Server-side sessions kept in the key-value store."""
from __future__ import annotations

import ipaddress
import logging
import math
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import uuid4

from ..clock import Clock
from ..config import Settings
from ..errors import AuthError, AuthErrorKind
from ..kvstore import KeyValueStore
from ..schemas import (
    RequestContext,
    SecurityAlert,
    SecurityAlertType,
    SessionData,
    SessionInfo,
    SessionRotation,
    SessionValidation,
)
from ..security import generate_session_token
from .token_service import TokenService

logger = logging.getLogger(__name__)

# Drift weights added to a session's risk score on validation.
IP_CHANGE_SCORE = 10
NETWORK_CHANGE_SCORE = 30
DEVICE_CHANGE_SCORE = 40
USER_AGENT_CHANGE_SCORE = 20


def same_network(left: str, right: str) -> bool:
    """True when both addresses share a /24 (IPv4) or /64 (IPv6) prefix."""

    try:
        a = ipaddress.ip_address(left)
        b = ipaddress.ip_address(right)
    except ValueError:
        return left == right
    if a.version != b.version:
        return False
    prefix = 24 if a.version == 4 else 64
    return ipaddress.ip_network(f"{a}/{prefix}", strict=False) == ipaddress.ip_network(
        f"{b}/{prefix}", strict=False
    )


class SessionManager:
    """Creates, validates, rotates and revokes sessions.

    Layout in the store: ``session:{id}`` holds the JSON record,
    ``session_token:{token}`` maps the opaque token to the id and
    ``user_sessions:{user_id}`` indexes a user's sessions. All keys expire
    with the session. Updates go through ``KeyValueStore.update``: each
    writer merges its own fields into the freshest stored copy, so a
    heartbeat never undoes a concurrent step-up or token rotation and a
    session revoked concurrently is never resurrected.
    """

    def __init__(self, kv: KeyValueStore, settings: Settings, clock: Clock, tokens: TokenService) -> None:
        self.kv = kv
        self.settings = settings
        self.clock = clock
        self.tokens = tokens
        self.ttl = timedelta(minutes=settings.session_ttl_minutes)

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"session:{session_id}"

    @staticmethod
    def _token_key(token: str) -> str:
        return f"session_token:{token}"

    @staticmethod
    def _user_key(user_id: str) -> str:
        return f"user_sessions:{user_id}"

    def _remaining(self, session: SessionData) -> int:
        return max(1, math.ceil((session.expires_at - self.clock.now()).total_seconds()))

    # -------------------- Lifecycle --------------------
    async def create_session(
        self,
        user_id: str,
        context: RequestContext,
        *,
        mfa_verified: bool = False,
        family_id: Optional[str] = None,
        risk_score: int = 0,
    ) -> SessionData:
        await self._enforce_session_limit(user_id)
        now = self.clock.now()
        session = SessionData(
            id=str(uuid4()),
            user_id=user_id,
            session_token=generate_session_token(),
            family_id=family_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            device_fingerprint=context.device_fingerprint,
            mfa_verified=mfa_verified,
            mfa_verified_at=now if mfa_verified else None,
            risk_score=risk_score,
            created_at=now,
            last_activity_at=now,
            expires_at=now + self.ttl,
        )
        ttl = self._remaining(session)
        await self.kv.set(self._session_key(session.id), session.model_dump_json(), ttl=ttl)
        await self.kv.set(self._token_key(session.session_token), session.id, ttl=ttl)
        await self.kv.sadd(self._user_key(user_id), session.id, ttl=ttl)
        logger.info("Sesión %s creada para %s", session.id, user_id)
        return session

    async def get_session(self, session_id: str) -> Optional[SessionData]:
        raw = await self.kv.get(self._session_key(session_id))
        if raw is None:
            return None
        return SessionData.model_validate_json(raw)

    async def _enforce_session_limit(self, user_id: str) -> None:
        """Evict the oldest sessions so a new one fits under the per-user cap."""

        live = await self.list_user_sessions(user_id)
        excess = len(live) - self.settings.max_concurrent_sessions + 1
        if excess <= 0:
            return
        for info in sorted(live, key=lambda item: item.created_at)[:excess]:
            await self.revoke_session_by_id(info.id)
            logger.info("Sesión %s expulsada por el límite de sesiones de %s", info.id, user_id)

    async def _update(self, session_id: str, mutate: Callable[[SessionData], None]) -> Optional[SessionData]:
        def apply(raw: str) -> str:
            session = SessionData.model_validate_json(raw)
            mutate(session)
            return session.model_dump_json()

        raw = await self.kv.update(self._session_key(session_id), apply)
        if raw is None:
            return None
        return SessionData.model_validate_json(raw)

    async def validate_session(self, token: str, context: RequestContext) -> SessionValidation:
        session_id = await self.kv.get(self._token_key(token))
        if session_id is None:
            return SessionValidation(is_valid=False)
        return await self.validate_session_by_id(session_id, context)

    async def validate_session_by_id(self, session_id: str, context: RequestContext) -> SessionValidation:
        """Drift check and heartbeat for a session addressed by id (the ``sid`` claim)."""

        session = await self.get_session(session_id)
        if session is None:
            # Revocation deletes the record; the session marker tells it apart from expiry.
            if await self.tokens.is_session_revoked(session_id):
                alert = SecurityAlert(type=SecurityAlertType.REVOKED, message="La sesión fue revocada", risk_score=0)
            else:
                alert = SecurityAlert(type=SecurityAlertType.EXPIRED, message="La sesión expiró", risk_score=0)
            return SessionValidation(is_valid=False, security_alert=alert)

        now = self.clock.now()
        if session.expires_at <= now:
            await self._discard(session)
            return SessionValidation(
                is_valid=False,
                security_alert=SecurityAlert(
                    type=SecurityAlertType.EXPIRED, message="La sesión expiró", risk_score=session.risk_score
                ),
            )

        alert = self._assess_drift(session, context)
        if alert is not None and alert.blocked:
            logger.warning(
                "Sesión %s bloqueada por actividad sospechosa (%s) ip=%s", session.id, alert.type.value, context.ip_address
            )
            await self.revoke_session_by_id(session.id)
            return SessionValidation(is_valid=False, session=session, security_alert=alert)

        def heartbeat(current: SessionData) -> None:
            current.last_activity_at = now
            if alert is not None:
                current.risk_score = max(current.risk_score, alert.risk_score)

        updated = await self._update(session.id, heartbeat)
        if updated is None:
            return SessionValidation(is_valid=False)
        return SessionValidation(is_valid=True, session=updated, security_alert=alert)

    def _assess_drift(self, session: SessionData, context: RequestContext) -> Optional[SecurityAlert]:
        ip_changed = context.ip_address != session.ip_address
        network_changed = ip_changed and not same_network(context.ip_address, session.ip_address)
        # No fingerprint on a fingerprinted session counts as an unknown device.
        device_changed = bool(
            session.device_fingerprint and context.device_fingerprint != session.device_fingerprint
        )
        ua_changed = bool(session.user_agent and context.user_agent != session.user_agent)
        if not (ip_changed or device_changed or ua_changed):
            return None

        score = 0
        if network_changed:
            score += NETWORK_CHANGE_SCORE
        elif ip_changed:
            score += IP_CHANGE_SCORE
        if device_changed:
            score += DEVICE_CHANGE_SCORE
        if ua_changed:
            score += USER_AGENT_CHANGE_SCORE

        strictness = self.settings.session_strictness
        if strictness == "strict":
            blocked = ip_changed or device_changed
        elif strictness == "standard":
            blocked = network_changed and (device_changed or ua_changed)
        else:
            blocked = False

        if device_changed or (ua_changed and not ip_changed):
            alert_type = SecurityAlertType.SUSPICIOUS_DEVICE
            message = "Se detectó un dispositivo distinto al de inicio de sesión"
        else:
            alert_type = SecurityAlertType.SUSPICIOUS_IP
            message = "Se detectó un cambio de dirección IP"
        return SecurityAlert(type=alert_type, message=message, risk_score=min(score, 100), blocked=blocked)

    async def rotate_session(self, token: str) -> SessionRotation:
        """Issue a new opaque token for the same session; the old one stops working at once."""

        session_id = await self.kv.getdel(self._token_key(token))
        if session_id is None:
            raise AuthError(AuthErrorKind.SESSION_INVALID, reason="unknown_session_token")
        session = await self.get_session(session_id)
        if session is None or session.expires_at <= self.clock.now():
            raise AuthError(AuthErrorKind.SESSION_INVALID, reason="session_expired")
        new_token = generate_session_token()
        now = self.clock.now()

        def rotate(current: SessionData) -> None:
            current.session_token = new_token
            current.last_activity_at = now

        updated = await self._update(session_id, rotate)
        if updated is None:
            raise AuthError(AuthErrorKind.SESSION_REVOKED)
        await self.kv.set(self._token_key(new_token), session_id, ttl=self._remaining(updated))
        return SessionRotation(new_session_token=new_token, expires_at=updated.expires_at)

    async def mark_mfa_verified(self, session_id: str) -> SessionData:
        now = self.clock.now()

        def verified(current: SessionData) -> None:
            current.mfa_verified = True
            current.mfa_verified_at = now

        updated = await self._update(session_id, verified)
        if updated is None:
            raise AuthError(AuthErrorKind.SESSION_INVALID)
        return updated

    def requires_mfa_reverification(self, session: SessionData) -> bool:
        """Step-up check for sensitive operations."""

        if not session.mfa_verified or session.mfa_verified_at is None:
            return True
        limit = timedelta(minutes=self.settings.mfa_reverify_minutes)
        return self.clock.now() - session.mfa_verified_at > limit

    async def attach_family(self, session_id: str, family_id: str) -> None:
        def attach(current: SessionData) -> None:
            current.family_id = family_id

        if await self._update(session_id, attach) is None:
            raise AuthError(AuthErrorKind.SESSION_INVALID)

    # -------------------- Revocation --------------------
    async def revoke_session(self, token: str) -> bool:
        session_id = await self.kv.get(self._token_key(token))
        if session_id is None:
            return False
        return await self.revoke_session_by_id(session_id)

    async def revoke_session_by_id(self, session_id: str) -> bool:
        """Remove the session and invalidate every token bound to it."""

        await self.tokens.mark_session_revoked(session_id)
        session = await self.get_session(session_id)
        if session is None:
            return False
        if session.family_id:
            await self.tokens.revoke_family(session.family_id)
        await self._discard(session)
        logger.info("Sesión %s revocada", session_id)
        return True

    async def revoke_all_user_sessions(self, user_id: str, except_session_id: Optional[str] = None) -> int:
        revoked = 0
        for session_id in await self.kv.smembers(self._user_key(user_id)):
            if session_id == except_session_id:
                continue
            if await self.revoke_session_by_id(session_id):
                revoked += 1
            else:
                await self.kv.srem(self._user_key(user_id), session_id)
        logger.info("%s sesiones revocadas para %s", revoked, user_id)
        return revoked

    async def _discard(self, session: SessionData) -> None:
        await self.kv.delete(self._session_key(session.id), self._token_key(session.session_token))
        await self.kv.srem(self._user_key(session.user_id), session.id)

    # -------------------- Listing --------------------
    async def list_user_sessions(
        self, user_id: str, current_session_id: Optional[str] = None
    ) -> list[SessionInfo]:
        sessions: list[SessionInfo] = []
        now: datetime = self.clock.now()
        for session_id in await self.kv.smembers(self._user_key(user_id)):
            session = await self.get_session(session_id)
            if session is None or session.expires_at <= now:
                await self.kv.srem(self._user_key(user_id), session_id)
                continue
            sessions.append(
                SessionInfo(
                    id=session.id,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    device_fingerprint=session.device_fingerprint,
                    mfa_verified=session.mfa_verified,
                    risk_score=session.risk_score,
                    created_at=session.created_at,
                    last_activity_at=session.last_activity_at,
                    expires_at=session.expires_at,
                    current=session.id == current_session_id,
                )
            )
        sessions.sort(key=lambda info: info.last_activity_at, reverse=True)
        return sessions
