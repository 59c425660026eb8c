"""SQLAlchemy models representing the authentication domain."""
from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import relationship

from .database import Base


class UserStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CLOSED = "closed"


class MfaMethod(str, Enum):
    TOTP = "totp"
    SMS = "sms"
    EMAIL = "email"
    BACKUP_CODES = "backup_codes"
    BIOMETRIC = "biometric"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    # Stored lower-cased; uniqueness is therefore case-insensitive.
    email = Column(String(320), unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    status = Column(String(16), default=UserStatus.PENDING.value, nullable=False)
    email_verified = Column(Boolean, default=False, nullable=False)
    failed_login_count = Column(Integer, default=0, nullable=False)
    locked_until = Column(DateTime(timezone=True))

    last_login_at = Column(DateTime(timezone=True))
    password_changed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    mfa_configs = relationship("MfaConfig", back_populates="user", lazy="raise")
    auth_logs = relationship("AuthLog", back_populates="user", lazy="raise")


class MfaConfig(Base):
    __tablename__ = "mfa_configs"
    __table_args__ = (
        UniqueConstraint("user_id", "method", name="uq_mfa_configs_user_method"),
        Index(
            "uq_mfa_configs_primary",
            "user_id",
            unique=True,
            sqlite_where=text("is_primary = 1"),
            postgresql_where=text("is_primary"),
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    method = Column(String(16), nullable=False)
    is_primary = Column(Boolean, default=False, nullable=False)
    is_enabled = Column(Boolean, default=False, nullable=False)
    secret_encrypted = Column(Text)
    phone_number = Column(String(32))
    email = Column(String(320))
    public_key = Column(Text)
    last_used = Column(DateTime(timezone=True))
    verified_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    user = relationship("User", back_populates="mfa_configs", lazy="raise")
    backup_codes = relationship("MfaBackupCode", back_populates="config", lazy="raise")


class MfaBackupCode(Base):
    __tablename__ = "mfa_backup_codes"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    config_id = Column(String(36), ForeignKey("mfa_configs.id"), nullable=False, index=True)
    code_hash = Column(String(128), nullable=False)
    used_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    config = relationship("MfaConfig", back_populates="backup_codes", lazy="raise")


class MfaVerificationAttempt(Base):
    """Append-only record of one MFA verification; never updated."""

    __tablename__ = "mfa_verification_attempts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    config_id = Column(String(36), ForeignKey("mfa_configs.id"), index=True)
    method = Column(String(16))
    is_backup_code = Column(Boolean, default=False, nullable=False)
    outcome = Column(String(16), nullable=False)
    failure_reason = Column(String(64))
    ip_address = Column(String(64))
    user_agent = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False)


class AuthLog(Base):
    __tablename__ = "auth_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    event_type = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    ip_address = Column(String(64))
    user_agent = Column(Text)
    details = Column(JSON)

    user = relationship("User", back_populates="auth_logs", lazy="raise")


class PasswordResetToken(Base):
    __tablename__ = "password_reset_tokens"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    token_hash = Column(String(128), nullable=False, unique=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)


class EmailVerificationToken(Base):
    __tablename__ = "email_verification_tokens"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    token_hash = Column(String(128), nullable=False, unique=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
