"""Service-level tests that validate the authentication flows."""
from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pyotp
import pytest

from bankauth import models
from bankauth.audit import AuthEvent
from bankauth.errors import AuthError, AuthErrorKind
from bankauth.schemas import (
    LoginRequest,
    MfaChallengeRequired,
    MfaConfirmRequest,
    MfaDisableRequest,
    MfaLoginRequest,
    MfaVerificationRequest,
    SessionEstablished,
    UserCreate,
)

from conftest import PASSWORD, token_from_email

NEW_PASSWORD = "N3wer&Str0nger!"


async def _enable_totp(service, user_id: str, email: str, clock, context) -> pyotp.TOTP:
    setup = await service.mfa.setup_totp(user_id, email)
    totp = pyotp.TOTP(parse_qs(urlparse(setup.otpauth_uri).query)["secret"][0])
    await service.mfa.verify_setup(user_id, setup.config_id, totp.at(clock.now()), context)
    return totp


async def test_register_requires_email_verification(service, email_service, context) -> None:
    result = await service.register(UserCreate(email="alice@example.com", password=PASSWORD), context)
    assert result.verification_required is True
    assert result.user.status == models.UserStatus.PENDING.value
    assert email_service.last_message["to"] == "alice@example.com"

    with pytest.raises(AuthError) as exc:
        await service.login(LoginRequest(email="alice@example.com", password=PASSWORD), context)
    assert exc.value.kind is AuthErrorKind.ACCOUNT_NOT_ACTIVE

    verified = await service.verify_email(token_from_email(email_service), context)
    assert verified.status == models.UserStatus.ACTIVE.value
    assert verified.email_verified is True

    login = await service.login(LoginRequest(email="ALICE@example.com", password=PASSWORD), context)
    assert isinstance(login, SessionEstablished)
    assert login.tokens.access_token and login.tokens.refresh_token


async def test_register_duplicate_email_in_any_case(service, context) -> None:
    await service.register(UserCreate(email="alice@example.com", password=PASSWORD), context)
    with pytest.raises(AuthError) as exc:
        await service.register(UserCreate(email="Alice@Example.com", password=PASSWORD), context)
    assert exc.value.kind is AuthErrorKind.EMAIL_EXISTS


@pytest.mark.parametrize("password", ["short1!A", "alllowercase1234!", "NoDigitsHere!!!!", "NoSymbols12345abc"])
async def test_register_rejects_weak_passwords(service, context, password) -> None:
    with pytest.raises(AuthError) as exc:
        await service.register(UserCreate(email="weak@example.com", password=password), context)
    assert exc.value.kind is AuthErrorKind.WEAK_PASSWORD


async def test_registration_survives_email_failure(service, context) -> None:
    class FailingEmail:
        async def send(self, address, template, params):
            raise ConnectionError("smtp down")

    service.email_service = FailingEmail()
    result = await service.register(UserCreate(email="dave@example.com", password=PASSWORD), context)
    assert result.user.email == "dave@example.com"


async def test_unknown_email_and_wrong_password_look_the_same(service, active_user, context) -> None:
    await active_user()
    with pytest.raises(AuthError) as unknown:
        await service.login(LoginRequest(email="nobody@example.com", password=PASSWORD), context)
    with pytest.raises(AuthError) as wrong:
        await service.login(LoginRequest(email="alice@example.com", password="Wr0ng!Password"), context)
    assert unknown.value.kind is wrong.value.kind is AuthErrorKind.INVALID_CREDENTIALS
    assert unknown.value.message == wrong.value.message


async def test_account_lockout_after_multiple_failures(service, active_user, context, clock, settings) -> None:
    await active_user("bob@example.com")
    for _ in range(settings.max_failed_login_attempts):
        with pytest.raises(AuthError) as exc:
            await service.login(LoginRequest(email="bob@example.com", password="bad-password"), context)
        assert exc.value.kind is AuthErrorKind.INVALID_CREDENTIALS

    with pytest.raises(AuthError) as exc:
        await service.login(LoginRequest(email="bob@example.com", password=PASSWORD), context)
    assert exc.value.kind is AuthErrorKind.ACCOUNT_LOCKED
    assert exc.value.retry_after > 0
    assert exc.value.retryable is True

    clock.advance(minutes=1, seconds=1)
    login = await service.login(LoginRequest(email="bob@example.com", password=PASSWORD), context)
    assert isinstance(login, SessionEstablished)


async def test_login_rate_limited_per_ip(service, active_user, context, settings) -> None:
    await active_user()
    for _ in range(settings.login_rate_limit_attempts):
        with pytest.raises(AuthError):
            await service.login(LoginRequest(email="nobody@example.com", password="x"), context)
    with pytest.raises(AuthError) as exc:
        await service.login(LoginRequest(email="alice@example.com", password=PASSWORD), context)
    assert exc.value.kind is AuthErrorKind.RATE_LIMITED
    assert exc.value.retry_after > 0


async def test_totp_login_requires_second_factor(service, active_user, context, clock) -> None:
    user = await active_user()
    totp = await _enable_totp(service, user.id, user.email, clock, context)
    clock.advance(seconds=30)

    pending = await service.login(LoginRequest(email=user.email, password=PASSWORD), context)
    assert isinstance(pending, MfaChallengeRequired)
    assert pending.mfa_required is True
    assert not hasattr(pending, "tokens")
    assert pending.challenge.method == models.MfaMethod.TOTP.value

    established = await service.complete_mfa_login(
        MfaLoginRequest(user_id=user.id, pending_session_ref=pending.pending_session_ref, code=totp.at(clock.now())),
        context,
    )
    assert established.tokens.access_token
    principal = await service.authenticate(established.tokens.access_token, context)
    assert principal.session.mfa_verified is True

    with pytest.raises(AuthError) as exc:
        await service.complete_mfa_login(
            MfaLoginRequest(user_id=user.id, pending_session_ref=pending.pending_session_ref, code="123456"),
            context,
        )
    assert exc.value.kind is AuthErrorKind.MFA_CHALLENGE_EXPIRED


async def test_pending_mfa_login_is_dropped_after_max_attempts(
    service, active_user, context, clock, settings
) -> None:
    user = await active_user()
    totp = await _enable_totp(service, user.id, user.email, clock, context)
    clock.advance(minutes=settings.mfa_window_minutes, seconds=1)

    pending = await service.login(LoginRequest(email=user.email, password=PASSWORD), context)
    good = totp.at(clock.now())
    wrong = "000000" if good != "000000" else "111111"
    for _ in range(settings.mfa_max_attempts):
        with pytest.raises(AuthError) as exc:
            await service.complete_mfa_login(
                MfaLoginRequest(user_id=user.id, pending_session_ref=pending.pending_session_ref, code=wrong), context
            )
        assert exc.value.kind is AuthErrorKind.INVALID_MFA_CODE

    with pytest.raises(AuthError) as exc:
        await service.complete_mfa_login(
            MfaLoginRequest(user_id=user.id, pending_session_ref=pending.pending_session_ref, code=good), context
        )
    assert exc.value.kind is AuthErrorKind.MFA_CHALLENGE_EXPIRED


async def test_refresh_rotates_and_reuse_revokes_family(service, logged_in, context) -> None:
    login = await logged_in()
    first = login.tokens

    second = await service.refresh_tokens(first.refresh_token, context)
    assert second.refresh_token != first.refresh_token
    assert second.family_id == first.family_id

    with pytest.raises(AuthError) as exc:
        await service.refresh_tokens(first.refresh_token, context)
    assert exc.value.kind is AuthErrorKind.TOKEN_REUSE_DETECTED

    with pytest.raises(AuthError) as exc:
        await service.refresh_tokens(second.refresh_token, context)
    assert exc.value.kind is AuthErrorKind.TOKEN_INVALID
    with pytest.raises(AuthError) as exc:
        await service.authenticate(second.access_token, context)
    assert exc.value.kind is AuthErrorKind.SESSION_REVOKED
    assert await service.list_sessions(login.user.id) == []

    events = [log.event_type for log in await service.audit.recent_events(login.user.id)]
    assert AuthEvent.TOKEN_REUSE_DETECTED.value in events


async def test_change_password_revokes_sessions(service, logged_in, context) -> None:
    login = await logged_in()

    with pytest.raises(AuthError) as exc:
        await service.change_password(login.user.id, "Wr0ng!Password", NEW_PASSWORD, context)
    assert exc.value.kind is AuthErrorKind.INVALID_CREDENTIALS

    with pytest.raises(AuthError) as exc:
        await service.change_password(login.user.id, PASSWORD, PASSWORD, context)
    assert exc.value.kind is AuthErrorKind.WEAK_PASSWORD

    assert await service.change_password(login.user.id, PASSWORD, NEW_PASSWORD, context) == 1

    with pytest.raises(AuthError):
        await service.authenticate(login.tokens.access_token, context)
    with pytest.raises(AuthError):
        await service.refresh_tokens(login.tokens.refresh_token, context)
    with pytest.raises(AuthError) as exc:
        await service.login(LoginRequest(email=login.user.email, password=PASSWORD), context)
    assert exc.value.kind is AuthErrorKind.INVALID_CREDENTIALS

    again = await service.login(LoginRequest(email=login.user.email, password=NEW_PASSWORD), context)
    assert isinstance(again, SessionEstablished)


async def test_password_reset_flow(service, logged_in, email_service, context) -> None:
    login = await logged_in()
    email_service.last_message = None

    await service.initiate_password_reset("nobody@example.com", context)
    assert email_service.last_message is None

    await service.initiate_password_reset(login.user.email, context)
    token = token_from_email(email_service)
    assert await service.reset_password(token, NEW_PASSWORD, context) == 1

    with pytest.raises(AuthError) as exc:
        await service.reset_password(token, NEW_PASSWORD, context)
    assert exc.value.kind is AuthErrorKind.INVALID_TOKEN

    again = await service.login(LoginRequest(email=login.user.email, password=NEW_PASSWORD), context)
    assert isinstance(again, SessionEstablished)


async def test_logout_single_and_all_devices(service, logged_in, context) -> None:
    first = await logged_in()
    second = await service.login(LoginRequest(email=first.user.email, password=PASSWORD), context)
    third = await service.login(LoginRequest(email=first.user.email, password=PASSWORD), context)

    assert await service.logout(first.tokens.access_token, context) == 1
    with pytest.raises(AuthError):
        await service.authenticate(first.tokens.access_token, context)
    assert (await service.authenticate(second.tokens.access_token, context)).session.id == second.session_id

    assert await service.logout(second.tokens.access_token, context, all_devices=True) == 2
    with pytest.raises(AuthError):
        await service.authenticate(third.tokens.access_token, context)


async def test_revoke_session_of_another_user_is_not_found(service, logged_in, context) -> None:
    alice = await logged_in()
    bob = await logged_in("bob@example.com")
    with pytest.raises(AuthError) as exc:
        await service.revoke_session(alice.user.id, bob.session_id, context)
    assert exc.value.kind is AuthErrorKind.NOT_FOUND

    await service.revoke_session(alice.user.id, alice.session_id, context)
    assert await service.list_sessions(alice.user.id) == []


async def test_session_drift_revokes_session(service, logged_in, context) -> None:
    login = await logged_in()
    principal = await service.authenticate(login.tokens.access_token, context, session_token=login.session_token)
    assert principal.user_id == login.user.id

    hijacked = context.model_copy(update={"ip_address": "203.0.113.50", "device_fingerprint": "attacker"})
    with pytest.raises(AuthError) as exc:
        await service.authenticate(login.tokens.access_token, hijacked, session_token=login.session_token)
    assert exc.value.kind is AuthErrorKind.SESSION_REVOKED

    with pytest.raises(AuthError):
        await service.authenticate(login.tokens.access_token, context)


async def test_sensitive_operations_require_step_up(service, logged_in, context, clock) -> None:
    login = await logged_in()
    principal = await service.authenticate(login.tokens.access_token, context, require_mfa=True)

    totp = await _enable_totp(service, login.user.id, login.user.email, clock, context)
    with pytest.raises(AuthError) as exc:
        await service.authenticate(login.tokens.access_token, context, require_mfa=True)
    assert exc.value.kind is AuthErrorKind.MFA_REQUIRED

    clock.advance(seconds=30)
    with pytest.raises(AuthError) as exc:
        await service.step_up(principal, MfaConfirmRequest(code="12345x"), context)
    assert exc.value.kind is AuthErrorKind.INVALID_MFA_CODE

    session = await service.step_up(principal, MfaConfirmRequest(code=totp.at(clock.now())), context)
    assert session.mfa_verified is True
    await service.authenticate(login.tokens.access_token, context, require_mfa=True)


async def test_disable_mfa_requires_password(service, active_user, context, clock) -> None:
    user = await active_user()
    await _enable_totp(service, user.id, user.email, clock, context)
    config = next(m for m in await service.mfa.get_user_mfa_methods(user.id) if m.method == "totp")

    with pytest.raises(AuthError) as exc:
        await service.disable_mfa(user.id, MfaDisableRequest(config_id=config.id, password="nope"), context)
    assert exc.value.kind is AuthErrorKind.INVALID_CREDENTIALS

    await service.disable_mfa(user.id, MfaDisableRequest(config_id=config.id, password=PASSWORD), context)
    login = await service.login(LoginRequest(email=user.email, password=PASSWORD), context)
    assert isinstance(login, SessionEstablished)


async def test_suspended_and_closed_accounts_cannot_log_in(service, logged_in, context) -> None:
    login = await logged_in()
    await service.credentials.set_status(login.user.id, models.UserStatus.SUSPENDED)
    with pytest.raises(AuthError) as exc:
        await service.refresh_tokens(login.tokens.refresh_token, context)
    assert exc.value.kind is AuthErrorKind.ACCOUNT_NOT_ACTIVE
    with pytest.raises(AuthError) as exc:
        await service.login(LoginRequest(email=login.user.email, password=PASSWORD), context)
    assert exc.value.kind is AuthErrorKind.ACCOUNT_NOT_ACTIVE
    assert exc.value.reason == models.UserStatus.SUSPENDED.value
    assert exc.value.message == "Cuenta no disponible"

    await service.credentials.set_status(login.user.id, models.UserStatus.ACTIVE)
    again = await service.login(LoginRequest(email=login.user.email, password=PASSWORD), context)
    assert await service.close_account(login.user.id, PASSWORD, context) == 1
    with pytest.raises(AuthError):
        await service.authenticate(again.tokens.access_token, context)
    with pytest.raises(AuthError) as exc:
        await service.login(LoginRequest(email=login.user.email, password=PASSWORD), context)
    assert exc.value.reason == models.UserStatus.CLOSED.value


async def test_resend_verification_only_for_pending_users(service, email_service, active_user, context) -> None:
    await active_user()
    email_service.last_message = None
    await service.resend_verification("alice@example.com", context)
    await service.resend_verification("nobody@example.com", context)
    assert email_service.last_message is None

    await service.register(UserCreate(email="erin@example.com", password=PASSWORD), context)
    first = token_from_email(email_service)
    await service.resend_verification("Erin@Example.com", context)
    second = token_from_email(email_service)
    assert second != first
    assert (await service.verify_email(second, context)).email_verified is True


async def test_switch_primary_method_changes_login_challenge(service, active_user, sms_sender, context, clock) -> None:
    user = await active_user()
    await _enable_totp(service, user.id, user.email, clock, context)
    setup = await service.mfa.setup_sms(user.id, "+34600123456")
    code = sms_sender.last_message["body"].split()[5].rstrip(".")
    await service.mfa.verify_setup(user.id, setup.config_id, code, context)

    await service.set_primary_mfa(user.id, setup.config_id, context)
    pending = await service.login(LoginRequest(email=user.email, password=PASSWORD), context)
    assert pending.challenge.method == models.MfaMethod.SMS.value
    assert [m.method for m in pending.methods][0] == models.MfaMethod.SMS.value

    backup = next(m for m in await service.mfa.get_user_mfa_methods(user.id) if m.method == "backup_codes")
    with pytest.raises(AuthError) as exc:
        await service.set_primary_mfa(user.id, backup.id, context)
    assert exc.value.kind is AuthErrorKind.VALIDATION_ERROR


async def test_bearer_token_without_session_token_is_drift_checked(service, logged_in, context) -> None:
    login = await logged_in()
    hijacked = context.model_copy(update={"ip_address": "203.0.113.50", "device_fingerprint": None})
    with pytest.raises(AuthError) as exc:
        await service.authenticate(login.tokens.access_token, hijacked)
    assert exc.value.kind is AuthErrorKind.SESSION_REVOKED

    with pytest.raises(AuthError):
        await service.authenticate(login.tokens.access_token, context)
    events = [log.event_type for log in await service.audit.recent_events(login.user.id)]
    assert AuthEvent.SESSION_BLOCKED.value in events


async def test_rate_limited_challenge_is_audited_and_drops_pending_login(
    service, active_user, context, clock, settings
) -> None:
    user = await active_user()
    totp = await _enable_totp(service, user.id, user.email, clock, context)
    clock.advance(seconds=30)
    pending = await service.login(LoginRequest(email=user.email, password=PASSWORD), context)

    good = totp.at(clock.now())
    wrong = "000000" if good != "000000" else "111111"
    for _ in range(settings.mfa_max_attempts):
        result = await service.mfa.verify_code(MfaVerificationRequest(user_id=user.id, code=wrong, context=context))
        assert result.success is False

    with pytest.raises(AuthError) as exc:
        await service.send_mfa_challenge(pending.pending_session_ref, context)
    assert exc.value.kind is AuthErrorKind.MFA_RATE_LIMITED
    with pytest.raises(AuthError) as exc:
        await service.complete_mfa_login(
            MfaLoginRequest(user_id=user.id, pending_session_ref=pending.pending_session_ref, code=good), context
        )
    assert exc.value.kind is AuthErrorKind.MFA_CHALLENGE_EXPIRED

    with pytest.raises(AuthError) as exc:
        await service.login(LoginRequest(email=user.email, password=PASSWORD), context)
    assert exc.value.kind is AuthErrorKind.MFA_RATE_LIMITED

    events = [log.event_type for log in await service.audit.recent_events(user.id)]
    assert events.count(AuthEvent.MFA_RATE_LIMITED.value) == 2
