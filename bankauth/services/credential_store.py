"""Relational persistence for users, lockout counters and one-time tokens."""
from __future__ import annotations

import logging
import math
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import models
from ..clock import Clock, as_utc
from ..config import Settings
from ..errors import AuthError, AuthErrorKind, service_unavailable
from ..lockout import lockout_duration
from ..security import PasswordHasher, generate_random_token, hash_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CredentialCheck:
    user: Optional[models.User]
    matched: bool


class CredentialStore:
    """Adapter over the relational store; every failure of the store surfaces as SERVICE_UNAVAILABLE."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        clock: Clock,
        hasher: PasswordHasher,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock
        self.hasher = hasher

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_factory() as db:
                yield db
        except SQLAlchemyError as exc:
            logger.error("Fallo del almacén de credenciales: %s", exc)
            raise service_unavailable("credential_store", exc) from exc

    # -------------------- Users --------------------
    async def get_user_by_email(self, email: str) -> Optional[models.User]:
        async with self._session() as db:
            result = await db.execute(select(models.User).where(models.User.email == email.strip().lower()))
            return result.scalar_one_or_none()

    async def get_user(self, user_id: str) -> Optional[models.User]:
        async with self._session() as db:
            return await db.get(models.User, user_id)

    async def create_user(self, email: str, password_hash: str) -> models.User:
        now = self.clock.now()
        user = models.User(
            email=email.strip().lower(),
            password_hash=password_hash,
            status=models.UserStatus.PENDING.value,
            email_verified=False,
            failed_login_count=0,
            locked_until=None,
            last_login_at=None,
            password_changed_at=None,
            created_at=now,
            updated_at=now,
        )
        async with self._session() as db:
            db.add(user)
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise AuthError(AuthErrorKind.EMAIL_EXISTS, reason="unique_violation") from exc
        return user

    async def verify_password(self, email: str, plaintext: str) -> CredentialCheck:
        user = await self.get_user_by_email(email)
        return CredentialCheck(user=user, matched=await self.verify_user_password(user, plaintext))

    async def verify_user_password(self, user: Optional[models.User], plaintext: str) -> bool:
        """Check a password; a missing user still pays for one bcrypt verification."""

        matched = await self.hasher.verify(plaintext, user.password_hash if user else None)
        return matched and user is not None

    async def update_password(self, user_id: str, password_hash: str) -> None:
        async with self._session() as db:
            await db.execute(
                update(models.User)
                .where(models.User.id == user_id)
                .values(password_hash=password_hash, password_changed_at=self.clock.now())
            )
            await db.commit()

    async def activate(self, user_id: str) -> None:
        async with self._session() as db:
            await db.execute(
                update(models.User)
                .where(models.User.id == user_id)
                .values(email_verified=True)
            )
            await db.execute(
                update(models.User)
                .where(models.User.id == user_id, models.User.status == models.UserStatus.PENDING.value)
                .values(status=models.UserStatus.ACTIVE.value)
            )
            await db.commit()

    async def set_status(self, user_id: str, status: models.UserStatus) -> None:
        """Change the account status; closing is a soft delete kept for the audit trail."""

        async with self._session() as db:
            await db.execute(update(models.User).where(models.User.id == user_id).values(status=status.value))
            await db.commit()

    # -------------------- Lockout --------------------
    async def increment_failed_attempts(self, user_id: str) -> int:
        """Atomically bump the failure counter and apply the lockout policy in one transaction."""

        async with self._session() as db:
            result = await db.execute(
                update(models.User)
                .where(models.User.id == user_id)
                .values(failed_login_count=models.User.failed_login_count + 1)
                .returning(models.User.failed_login_count)
            )
            count = result.scalar_one()
            duration = lockout_duration(
                count,
                threshold=self.settings.max_failed_login_attempts,
                base=timedelta(minutes=self.settings.lockout_base_minutes),
                maximum=timedelta(minutes=self.settings.lockout_max_minutes),
            )
            if duration > timedelta(0):
                await db.execute(
                    update(models.User)
                    .where(models.User.id == user_id)
                    .values(locked_until=self.clock.now() + duration)
                )
            await db.commit()
        return count

    async def reset_failed_attempts(self, user_id: str, *, record_login: bool = True) -> None:
        values = {"failed_login_count": 0, "locked_until": None}
        if record_login:
            values["last_login_at"] = self.clock.now()
        async with self._session() as db:
            await db.execute(update(models.User).where(models.User.id == user_id).values(**values))
            await db.commit()

    def is_locked(self, user: models.User) -> bool:
        locked_until = as_utc(user.locked_until)
        return bool(locked_until and locked_until > self.clock.now())

    def lock_remaining_seconds(self, user: models.User) -> int:
        locked_until = as_utc(user.locked_until)
        if not locked_until:
            return 0
        return max(0, math.ceil((locked_until - self.clock.now()).total_seconds()))

    # -------------------- One-time tokens --------------------
    async def create_verification_token(self, user_id: str) -> str:
        token = generate_random_token()
        record = models.EmailVerificationToken(
            user_id=user_id,
            token_hash=hash_token(token, self.settings.jwt_secret_key),
            expires_at=self.clock.now() + timedelta(minutes=self.settings.verification_token_exp_minutes),
        )
        async with self._session() as db:
            db.add(record)
            await db.commit()
        return token

    async def consume_verification_token(self, token: str) -> str:
        return await self._consume_one_time_token(models.EmailVerificationToken, token)

    async def create_password_reset_token(
        self, user_id: str, *, ip_address: str | None, user_agent: str | None
    ) -> str:
        token = generate_random_token()
        record = models.PasswordResetToken(
            user_id=user_id,
            token_hash=hash_token(token, self.settings.jwt_secret_key),
            expires_at=self.clock.now() + timedelta(minutes=self.settings.password_reset_token_exp_minutes),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        async with self._session() as db:
            db.add(record)
            await db.commit()
        return token

    async def consume_password_reset_token(self, token: str) -> str:
        return await self._consume_one_time_token(models.PasswordResetToken, token)

    async def _consume_one_time_token(self, model, token: str) -> str:
        """Mark a one-time token used and return its user id; only one caller can win."""

        now: datetime = self.clock.now()
        async with self._session() as db:
            result = await db.execute(
                update(model)
                .where(
                    model.token_hash == hash_token(token, self.settings.jwt_secret_key),
                    model.used_at.is_(None),
                    model.expires_at > now,
                )
                .values(used_at=now)
                .returning(model.user_id)
            )
            user_id = result.scalar_one_or_none()
            await db.commit()
        if user_id is None:
            raise AuthError(AuthErrorKind.INVALID_TOKEN)
        return user_id
