"""Access/refresh token issuance, validation, rotation and revocation."""
from __future__ import annotations

import json
import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from ..clock import Clock
from ..config import Settings
from ..errors import AuthError, AuthErrorKind
from ..kvstore import KeyValueStore
from ..schemas import TokenPair, TokenValidation
from ..security import TokenError, decode_token, encode_token, generate_token_identifier

logger = logging.getLogger(__name__)

ACTIVE = "active"
USED = "used"
REVOKED = "revoked"


class TokenService:
    """Signs tokens with python-jose and tracks refresh families in the key-value store.

    Every refresh token belongs to a family created at login. Rotation swaps
    the presented token's state from ``active`` to ``used`` in a single
    atomic store call; presenting a ``used`` token again is treated as theft
    and revokes the whole family. Two legitimate refreshes racing with the
    same token therefore resolve as one success and one
    ``TOKEN_REUSE_DETECTED``.
    """

    def __init__(self, settings: Settings, kv: KeyValueStore, clock: Clock) -> None:
        self.settings = settings
        self.kv = kv
        self.clock = clock
        self.access_ttl = timedelta(minutes=settings.access_token_exp_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_exp_minutes)
        self.family_ttl = timedelta(minutes=max(settings.session_ttl_minutes, settings.refresh_token_exp_minutes))
        self.leeway = timedelta(seconds=settings.clock_skew_seconds)

    # -------------------- Keys --------------------
    @staticmethod
    def _refresh_key(jti: str) -> str:
        return f"token:refresh:{jti}"

    @staticmethod
    def _family_key(family_id: str) -> str:
        return f"token:family:{family_id}"

    @staticmethod
    def _revoked_jti_key(jti: str) -> str:
        return f"token:revoked:jti:{jti}"

    @staticmethod
    def _revoked_family_key(family_id: str) -> str:
        return f"token:revoked:family:{family_id}"

    @staticmethod
    def _revoked_session_key(session_id: str) -> str:
        return f"token:revoked:session:{session_id}"

    # -------------------- Issuance --------------------
    def _claims(self, *, user_id: str, session_id: str, family_id: str, scope: str, token_type: str, expires: datetime) -> Dict[str, Any]:
        now = self.clock.now()
        return {
            "iss": self.settings.jwt_issuer,
            "sub": user_id,
            "sid": session_id,
            "fam": family_id,
            "scope": scope,
            "type": token_type,
            "jti": generate_token_identifier(),
            "iat": int(now.timestamp()),
            "exp": int(expires.timestamp()),
        }

    def issue_access_token(self, user_id: str, session_id: str, family_id: str, scope: str = "full") -> tuple[str, datetime]:
        expires = self.clock.now() + self.access_ttl
        claims = self._claims(
            user_id=user_id, session_id=session_id, family_id=family_id, scope=scope, token_type="access", expires=expires
        )
        return encode_token(claims, self.settings), expires

    async def issue_refresh_token(
        self, user_id: str, session_id: str, family_id: str, scope: str = "full"
    ) -> tuple[str, datetime, str]:
        expires = self.clock.now() + self.refresh_ttl
        claims = self._claims(
            user_id=user_id, session_id=session_id, family_id=family_id, scope=scope, token_type="refresh", expires=expires
        )
        jti = claims["jti"]
        await self.kv.set(self._refresh_key(jti), ACTIVE, ttl=self._ttl_seconds(self.refresh_ttl))
        return encode_token(claims, self.settings), expires, jti

    async def issue_token_pair(
        self,
        user_id: str,
        session_id: str,
        *,
        scope: str = "full",
        family_id: Optional[str] = None,
    ) -> TokenPair:
        """Issue access + refresh tokens; a new family is started when none is given."""

        if family_id is None:
            family_id = str(uuid.uuid4())
        access_token, access_exp = self.issue_access_token(user_id, session_id, family_id, scope)
        refresh_token, refresh_exp, jti = await self.issue_refresh_token(user_id, session_id, family_id, scope)
        family = {"user_id": user_id, "session_id": session_id, "current_jti": jti}
        existing = await self.kv.get(self._family_key(family_id))
        if existing is None:
            await self.kv.set(self._family_key(family_id), json.dumps(family), ttl=self._ttl_seconds(self.family_ttl))
        else:
            # Keep the family's absolute expiry from the first issuance.
            await self.kv.swap(self._family_key(family_id), json.dumps(family))
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(self.access_ttl.total_seconds()),
            access_token_expires_at=access_exp,
            refresh_token_expires_at=refresh_exp,
            family_id=family_id,
            session_id=session_id,
        )

    # -------------------- Validation --------------------
    def _is_expired(self, payload: Dict[str, Any]) -> bool:
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)):
            return True
        return self.clock.now().timestamp() > exp + self.leeway.total_seconds()

    async def validate_access_token(self, token: str) -> TokenValidation:
        try:
            payload = decode_token(token, self.settings, expected_type="access")
        except TokenError as exc:
            return TokenValidation(valid=False, reason=f"invalid:{exc}")

        if self._is_expired(payload):
            return TokenValidation(valid=False, reason="expired")
        if await self._is_revoked(payload):
            return TokenValidation(valid=False, reason="revoked")
        return TokenValidation(valid=True, payload=payload)

    async def _is_revoked(self, payload: Dict[str, Any]) -> bool:
        checks = [self._revoked_jti_key(payload.get("jti", ""))]
        if payload.get("fam"):
            checks.append(self._revoked_family_key(payload["fam"]))
        if payload.get("sid"):
            checks.append(self._revoked_session_key(payload["sid"]))
        for key in checks:
            if await self.kv.get(key) is not None:
                return True
        return False

    async def is_family_revoked(self, family_id: str) -> bool:
        return await self.kv.get(self._revoked_family_key(family_id)) is not None

    async def is_session_revoked(self, session_id: str) -> bool:
        return await self.kv.get(self._revoked_session_key(session_id)) is not None

    # -------------------- Rotation --------------------
    async def rotate_refresh_token(self, refresh_token: str) -> TokenPair:
        try:
            payload = decode_token(refresh_token, self.settings, expected_type="refresh")
        except TokenError as exc:
            raise AuthError(AuthErrorKind.TOKEN_INVALID, reason="decode_error") from exc

        if self._is_expired(payload):
            raise AuthError(AuthErrorKind.TOKEN_EXPIRED, reason="refresh_expired")

        jti = payload.get("jti")
        family_id = payload.get("fam")
        session_id = payload.get("sid")
        user_id = payload.get("sub")
        if not jti or not family_id or not session_id or not user_id:
            raise AuthError(AuthErrorKind.TOKEN_INVALID, reason="missing_claims")
        details = {"family_id": family_id, "session_id": session_id, "user_id": user_id}

        if await self.is_family_revoked(family_id):
            raise AuthError(AuthErrorKind.TOKEN_INVALID, reason="family_revoked", details=details)
        if await self.is_session_revoked(session_id):
            raise AuthError(AuthErrorKind.TOKEN_INVALID, reason="session_revoked", details=details)
        if await self.kv.get(self._family_key(family_id)) is None:
            raise AuthError(AuthErrorKind.TOKEN_EXPIRED, reason="family_expired", details=details)

        previous = await self.kv.swap(self._refresh_key(jti), USED)
        if previous is None:
            raise AuthError(AuthErrorKind.TOKEN_INVALID, reason="unknown_token", details=details)
        if previous == REVOKED:
            raise AuthError(AuthErrorKind.TOKEN_INVALID, reason="token_revoked", details=details)
        if previous == USED:
            logger.warning("Refresh token reutilizado: familia %s", family_id)
            await self.revoke_family(family_id)
            await self.mark_session_revoked(session_id)
            raise AuthError(AuthErrorKind.TOKEN_REUSE_DETECTED, reason="reused_token", details=details)

        return await self.issue_token_pair(
            user_id, session_id, scope=payload.get("scope", "full"), family_id=family_id
        )

    # -------------------- Revocation --------------------
    async def revoke_token(self, token: str) -> None:
        """Revoke a single access or refresh token until its natural expiry."""

        payload: Optional[Dict[str, Any]] = None
        for token_type in ("access", "refresh"):
            try:
                payload = decode_token(token, self.settings, expected_type=token_type)
                break
            except TokenError:
                continue
        if payload is None:
            return
        jti = payload.get("jti", "")
        remaining = self._remaining_seconds(payload)
        if remaining <= 0:
            return
        await self.kv.set(self._revoked_jti_key(jti), "1", ttl=remaining)
        if payload.get("type") == "refresh":
            await self.kv.swap(self._refresh_key(jti), REVOKED)

    async def revoke_family(self, family_id: str) -> None:
        await self.kv.set(
            self._revoked_family_key(family_id), "1", ttl=self._ttl_seconds(self.family_ttl)
        )
        raw = await self.kv.get(self._family_key(family_id))
        if raw:
            current = json.loads(raw).get("current_jti")
            if current:
                await self.kv.swap(self._refresh_key(current), REVOKED)

    async def mark_session_revoked(self, session_id: str) -> None:
        await self.kv.set(
            self._revoked_session_key(session_id), "1", ttl=self._ttl_seconds(self.family_ttl)
        )

    # -------------------- Helpers --------------------
    def _remaining_seconds(self, payload: Dict[str, Any]) -> int:
        exp = payload.get("exp", 0)
        return math.ceil(exp + self.leeway.total_seconds() - self.clock.now().timestamp())

    @staticmethod
    def _ttl_seconds(delta: timedelta) -> int:
        return max(1, int(delta.total_seconds()))
