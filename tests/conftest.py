"""Shared fixtures: frozen clock, temporary SQLite database and key-value stores."""
from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import fakeredis
import pytest

from bankauth.config import Settings
from bankauth.database import create_engine_for, create_session_factory, init_db
from bankauth.email_service import EmailService
from bankauth.kvstore import MemoryKeyValueStore, RedisKeyValueStore
from bankauth.schemas import LoginRequest, RequestContext, UserCreate
from bankauth.services.auth_service import create_auth_service
from bankauth.sms_service import OutboxSmsSender

BROWSER_UA = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
PASSWORD = "Str0ngP@ss!xyz"


class FrozenClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 2, 9, 0, 10, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        jwt_secret_key="test-secret-key",
        bcrypt_rounds=10,
        email_outbox_dir=None,
        sms_outbox_dir=None,
    )


@pytest.fixture()
async def engine(settings):
    engine = create_engine_for(settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture()
def kv(clock) -> MemoryKeyValueStore:
    return MemoryKeyValueStore(clock)


@pytest.fixture(params=["memory", "redis"])
async def any_kv(request, clock):
    """Both store implementations; BANKAUTH_TEST_REDIS_URL points the Redis run at a real server."""

    if request.param == "memory":
        yield MemoryKeyValueStore(clock)
        return
    url = os.environ.get("BANKAUTH_TEST_REDIS_URL")
    if url:
        store = RedisKeyValueStore.from_url(url)
        await store.redis.flushdb()
    else:
        client = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
        store = RedisKeyValueStore(client)
    yield store
    await store.redis.aclose()


@pytest.fixture()
def email_service(settings) -> EmailService:
    return EmailService(settings)


@pytest.fixture()
def sms_sender(settings) -> OutboxSmsSender:
    return OutboxSmsSender(settings)


@pytest.fixture()
def service(settings, session_factory, kv, clock, email_service, sms_sender):
    return create_auth_service(
        settings,
        session_factory=session_factory,
        kv=kv,
        clock=clock,
        email_service=email_service,
        sms_sender=sms_sender,
    )


@pytest.fixture()
def context() -> RequestContext:
    return RequestContext(ip_address="10.0.0.1", user_agent=BROWSER_UA, device_fingerprint="device-1")


def token_from_email(email_service: EmailService) -> str:
    link = email_service.last_message["body"].split("\n")
    url = next(line.strip() for line in link if "token=" in line)
    return parse_qs(urlparse(url).query)["token"][0]


@pytest.fixture()
def active_user(service, email_service, context):
    """Factory registering a user and verifying its email."""

    async def _create(email: str = "alice@example.com", password: str = PASSWORD):
        result = await service.register(UserCreate(email=email, password=password), context)
        await service.verify_email(token_from_email(email_service), context)
        return result.user

    return _create


@pytest.fixture()
def logged_in(service, active_user, context):
    """Factory returning an established session for a fresh active user."""

    async def _login(email: str = "alice@example.com", password: str = PASSWORD):
        await active_user(email, password)
        return await service.login(LoginRequest(email=email, password=password), context)

    return _login
