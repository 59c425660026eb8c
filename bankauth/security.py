"""Security helpers: password hashing, JWT handling, secret encryption and masking."""
from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import re
import secrets
from typing import Any, Dict

from cryptography.fernet import Fernet, InvalidToken
from jose import JWTError, jwt
from passlib.context import CryptContext

from .config import Settings
from .errors import AuthError, AuthErrorKind


class TokenError(Exception):
    """Raised when a JWT cannot be decoded or fails its signature check."""


class PasswordHasher:
    """bcrypt hashing through passlib, executed off the event loop."""

    def __init__(self, settings: Settings) -> None:
        self.context = CryptContext(
            schemes=["bcrypt"],
            deprecated="auto",
            bcrypt__rounds=settings.bcrypt_rounds,
        )
        # Verified against when the account does not exist so that response
        # timing does not depend on whether the email is registered.
        self._dummy_hash = self.context.hash(secrets.token_urlsafe(16))

    async def hash(self, password: str) -> str:
        return await asyncio.to_thread(self.context.hash, password)

    async def verify(self, password: str, hashed: str | None) -> bool:
        target = hashed or self._dummy_hash
        try:
            matched = await asyncio.to_thread(self.context.verify, password, target)
        except ValueError:
            return False
        return matched and hashed is not None


PASSWORD_RULES = (
    (r"[a-z]", "La contraseña debe incluir minúsculas"),
    (r"[A-Z]", "La contraseña debe incluir mayúsculas"),
    (r"\d", "La contraseña debe incluir dígitos"),
    (r"[^\w]", "La contraseña debe incluir símbolos"),
)


def validate_password_strength(password: str, *, min_length: int) -> None:
    if len(password) < min_length:
        raise AuthError(
            AuthErrorKind.WEAK_PASSWORD,
            f"La contraseña debe tener al menos {min_length} caracteres",
            reason="too_short",
        )
    for pattern, message in PASSWORD_RULES:
        if not re.search(pattern, password):
            raise AuthError(AuthErrorKind.WEAK_PASSWORD, message, reason=pattern)


def encode_token(claims: Dict[str, Any], settings: Settings) -> str:
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings, expected_type: str) -> Dict[str, Any]:
    """Check signature and token type; expiry is checked by the caller's clock."""

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            options={"verify_exp": False, "verify_nbf": False, "verify_aud": False},
        )
    except JWTError as exc:
        raise TokenError(str(exc)) from exc

    if payload.get("type") != expected_type:
        raise TokenError("Tipo de token inválido")

    return payload


def generate_token_identifier() -> str:
    return secrets.token_urlsafe(32)


def generate_random_token() -> str:
    """Generate a high-entropy one-time token for email and password reset flows."""

    return secrets.token_urlsafe(32)


def generate_session_token() -> str:
    """Opaque session token: 32 random bytes, hex encoded."""

    return secrets.token_hex(32)


def generate_numeric_code(digits: int = 6) -> str:
    return f"{secrets.randbelow(10**digits):0{digits}d}"


def generate_backup_code() -> str:
    return secrets.token_hex(4).upper()


def hash_token(token: str, secret: str) -> str:
    """Return an HMAC-SHA256 hash of a token so only the digest is stored."""

    return hmac.new(secret.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def constant_time_equals(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


class SecretCipher:
    """Fernet encryption for MFA secrets stored in the relational database."""

    def __init__(self, settings: Settings) -> None:
        key = settings.mfa_encryption_key
        if not key:
            # Derive a stable key from the JWT secret for development setups.
            digest = hashlib.sha256(f"mfa:{settings.jwt_secret_key}".encode("utf-8")).digest()
            key = base64.urlsafe_b64encode(digest).decode("ascii")
        self._fernet = Fernet(key.encode("ascii") if isinstance(key, str) else key)

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, value: str) -> str:
        try:
            return self._fernet.decrypt(value.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise TokenError("No se pudo descifrar el secreto MFA") from exc


def mask_email(email: str | None) -> str | None:
    if not email or "@" not in email:
        return email
    local, domain = email.split("@", 1)
    visible = local[0] if local else ""
    return f"{visible}{'*' * max(len(local) - 1, 3)}@{domain}"


def mask_phone(phone: str | None) -> str | None:
    if not phone:
        return phone
    digits = re.sub(r"\D", "", phone)
    if len(digits) <= 4:
        return "*" * len(digits)
    prefix = "+" if phone.strip().startswith("+") else ""
    return f"{prefix}{'*' * (len(digits) - 4)}{digits[-4:]}"
