"""Tests for session lifecycle and drift detection."""
from __future__ import annotations

import asyncio

import pytest

from bankauth.errors import AuthError, AuthErrorKind
from bankauth.schemas import RequestContext, SecurityAlertType
from bankauth.services.session_service import SessionManager, same_network
from bankauth.services.token_service import TokenService


@pytest.fixture()
def kv(any_kv):
    return any_kv


@pytest.fixture()
def tokens(settings, kv, clock) -> TokenService:
    return TokenService(settings, kv, clock)


def _manager(settings, kv, clock, tokens, strictness: str = "standard") -> SessionManager:
    return SessionManager(kv, settings.model_copy(update={"session_strictness": strictness}), clock, tokens)


@pytest.fixture()
def sessions(settings, kv, clock, tokens) -> SessionManager:
    return _manager(settings, kv, clock, tokens)


def _moved(context: RequestContext, **changes) -> RequestContext:
    return context.model_copy(update=changes)


async def test_create_then_validate_round_trip(sessions, context, clock) -> None:
    session = await sessions.create_session("user-1", context)
    assert len(session.session_token) == 64
    int(session.session_token, 16)

    clock.advance(minutes=5)
    validation = await sessions.validate_session(session.session_token, context)
    assert validation.is_valid is True
    assert validation.security_alert is None
    assert validation.session.last_activity_at == clock.now()


async def test_ip_change_alone_only_warns(sessions, context) -> None:
    session = await sessions.create_session("user-1", context)
    validation = await sessions.validate_session(session.session_token, _moved(context, ip_address="10.0.0.77"))
    assert validation.is_valid is True
    assert validation.security_alert.type is SecurityAlertType.SUSPICIOUS_IP
    assert validation.security_alert.blocked is False


async def test_device_change_alone_only_warns(sessions, context) -> None:
    session = await sessions.create_session("user-1", context)
    validation = await sessions.validate_session(
        session.session_token, _moved(context, device_fingerprint="device-2")
    )
    assert validation.is_valid is True
    assert validation.security_alert.type is SecurityAlertType.SUSPICIOUS_DEVICE


async def test_network_and_device_change_blocks_and_revokes(sessions, context, tokens) -> None:
    session = await sessions.create_session("user-1", context)
    pair = await tokens.issue_token_pair("user-1", session.id)
    await sessions.attach_family(session.id, pair.family_id)

    validation = await sessions.validate_session(
        session.session_token, _moved(context, ip_address="203.0.113.9", device_fingerprint="device-2")
    )
    assert validation.is_valid is False
    assert validation.security_alert.blocked is True
    assert validation.security_alert.type is SecurityAlertType.SUSPICIOUS_DEVICE

    assert (await sessions.validate_session(session.session_token, context)).is_valid is False
    assert (await tokens.validate_access_token(pair.access_token)).valid is False


async def test_strictness_levels(settings, kv, clock, tokens, context) -> None:
    strict = _manager(settings, kv, clock, tokens, "strict")
    session = await strict.create_session("user-1", context)
    validation = await strict.validate_session(session.session_token, _moved(context, ip_address="10.0.0.2"))
    assert validation.is_valid is False

    lenient = _manager(settings, kv, clock, tokens, "lenient")
    session = await lenient.create_session("user-1", context)
    validation = await lenient.validate_session(
        session.session_token, _moved(context, ip_address="198.51.100.1", device_fingerprint="other")
    )
    assert validation.is_valid is True
    assert validation.security_alert is not None


async def test_expired_session_is_invalid(sessions, context, clock, settings) -> None:
    session = await sessions.create_session("user-1", context)
    clock.advance(minutes=settings.session_ttl_minutes + 1)
    assert (await sessions.validate_session(session.session_token, context)).is_valid is False


async def test_rotate_session_invalidates_old_token(sessions, context) -> None:
    session = await sessions.create_session("user-1", context)
    rotation = await sessions.rotate_session(session.session_token)
    assert rotation.new_session_token != session.session_token
    assert rotation.expires_at == session.expires_at

    assert (await sessions.validate_session(session.session_token, context)).is_valid is False
    validation = await sessions.validate_session(rotation.new_session_token, context)
    assert validation.is_valid is True
    assert validation.session.id == session.id

    with pytest.raises(AuthError) as exc:
        await sessions.rotate_session(session.session_token)
    assert exc.value.kind is AuthErrorKind.SESSION_INVALID


async def test_revoke_all_except_current(sessions, context) -> None:
    keep = await sessions.create_session("user-1", context)
    others = [await sessions.create_session("user-1", context) for _ in range(3)]
    await sessions.create_session("user-2", context)

    assert await sessions.revoke_all_user_sessions("user-1", except_session_id=keep.id) == 3
    listed = await sessions.list_user_sessions("user-1", current_session_id=keep.id)
    assert [info.id for info in listed] == [keep.id]
    assert listed[0].current is True
    for session in others:
        assert await sessions.get_session(session.id) is None
    assert len(await sessions.list_user_sessions("user-2")) == 1


async def test_mfa_reverification_window(sessions, context, clock, settings) -> None:
    session = await sessions.create_session("user-1", context)
    assert sessions.requires_mfa_reverification(session) is True

    verified = await sessions.mark_mfa_verified(session.id)
    assert sessions.requires_mfa_reverification(verified) is False

    clock.advance(minutes=settings.mfa_reverify_minutes + 1)
    assert sessions.requires_mfa_reverification(verified) is True


async def test_revoked_session_cannot_be_updated(sessions, context) -> None:
    session = await sessions.create_session("user-1", context)
    await sessions.revoke_session(session.session_token)
    assert await sessions.get_session(session.id) is None
    with pytest.raises(AuthError):
        await sessions.mark_mfa_verified(session.id)


async def test_missing_fingerprint_counts_as_unknown_device(sessions, context) -> None:
    session = await sessions.create_session("user-1", context)
    validation = await sessions.validate_session(
        session.session_token, _moved(context, ip_address="203.0.113.50", device_fingerprint=None)
    )
    assert validation.is_valid is False
    assert validation.security_alert.blocked is True
    assert validation.security_alert.type is SecurityAlertType.SUSPICIOUS_DEVICE


async def test_validate_by_id_applies_drift_rules(sessions, context) -> None:
    session = await sessions.create_session("user-1", context)
    assert (await sessions.validate_session_by_id(session.id, context)).is_valid is True

    validation = await sessions.validate_session_by_id(
        session.id, _moved(context, ip_address="198.51.100.7", device_fingerprint="device-9")
    )
    assert validation.is_valid is False
    assert validation.security_alert.blocked is True

    again = await sessions.validate_session_by_id(session.id, context)
    assert again.is_valid is False
    assert again.security_alert.type is SecurityAlertType.REVOKED


async def test_unknown_session_id_reports_expired(sessions, context) -> None:
    validation = await sessions.validate_session_by_id("missing", context)
    assert validation.is_valid is False
    assert validation.security_alert.type is SecurityAlertType.EXPIRED


class InterleavingStore:
    """Wraps a store so every call yields to the event loop before and after it runs."""

    def __init__(self, inner) -> None:
        self.inner = inner

    def __getattr__(self, name):
        method = getattr(self.inner, name)

        async def call(*args, **kwargs):
            await asyncio.sleep(0)
            result = await method(*args, **kwargs)
            await asyncio.sleep(0)
            return result

        return call


async def test_heartbeat_does_not_undo_concurrent_step_up(settings, kv, clock, context) -> None:
    store = InterleavingStore(kv)
    sessions = SessionManager(store, settings, clock, TokenService(settings, store, clock))
    session = await sessions.create_session("user-1", context)

    await asyncio.gather(
        sessions.validate_session(session.session_token, context),
        sessions.mark_mfa_verified(session.id),
    )
    stored = await sessions.get_session(session.id)
    assert stored.mfa_verified is True
    assert stored.mfa_verified_at == clock.now()


async def test_heartbeat_does_not_restore_rotated_token(settings, kv, clock, context) -> None:
    store = InterleavingStore(kv)
    sessions = SessionManager(store, settings, clock, TokenService(settings, store, clock))
    session = await sessions.create_session("user-1", context)

    _, rotation = await asyncio.gather(
        sessions.validate_session(session.session_token, context),
        sessions.rotate_session(session.session_token),
    )
    stored = await sessions.get_session(session.id)
    assert stored.session_token == rotation.new_session_token


async def test_session_cap_evicts_oldest(settings, kv, clock, tokens, context) -> None:
    capped = SessionManager(kv, settings.model_copy(update={"max_concurrent_sessions": 2}), clock, tokens)
    first = await capped.create_session("user-1", context)
    pair = await tokens.issue_token_pair("user-1", first.id)
    await capped.attach_family(first.id, pair.family_id)
    clock.advance(seconds=1)
    second = await capped.create_session("user-1", context)
    clock.advance(seconds=1)
    third = await capped.create_session("user-1", context)

    listed = {info.id for info in await capped.list_user_sessions("user-1")}
    assert listed == {second.id, third.id}
    assert (await capped.validate_session(first.session_token, context)).is_valid is False
    assert (await tokens.validate_access_token(pair.access_token)).valid is False


def test_same_network() -> None:
    assert same_network("10.0.0.1", "10.0.0.200") is True
    assert same_network("10.0.0.1", "10.0.1.1") is False
    assert same_network("2001:db8::1", "2001:db8::ffff") is True
    assert same_network("10.0.0.1", "2001:db8::1") is False
