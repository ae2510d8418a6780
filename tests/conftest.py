"""Pytest configuration and fixtures for eventrelay tests."""

import os
import socket
import uuid
from collections.abc import AsyncGenerator, Generator
from pathlib import Path

import pytest

# Set required environment variables before any imports
os.environ.setdefault("EVENTRELAY_ROOT_API_KEY", "test_root_api_key_12345")
os.environ.setdefault("EVENTRELAY_WEBHOOK_SECRET_KEY", "test-webhook-secret-key")

import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventrelay.config import Settings, clear_settings_cache, get_settings
from eventrelay.crypto import SecretVault
from eventrelay.db.models import Base, WebhookSubscription
from eventrelay.db.session import create_database_engine, get_session, tenant_session
from eventrelay.main import create_app
from eventrelay.webhook.subscriptions import create_subscription

ROOT_API_KEY = "test_root_api_key_12345"
WEBHOOK_SECRET_KEY = "test-webhook-secret-key"

# Address that public test hostnames resolve to
PUBLIC_IP = "93.184.216.34"
PRIVATE_IP = "10.0.0.5"


@pytest.fixture(scope="session")
def postgres_url() -> Generator[str | None, None, None]:
    """PostgreSQL container URL when EVENTRELAY_TEST_POSTGRES=1, otherwise None."""
    if os.environ.get("EVENTRELAY_TEST_POSTGRES") != "1":
        yield None
        return

    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16-alpine") as postgres:
        # testcontainers returns psycopg2 URL, convert to asyncpg
        yield postgres.get_connection_url().replace("psycopg2", "asyncpg")


@pytest.fixture
def database_url(postgres_url: str | None, tmp_path: Path) -> str:
    if postgres_url:
        return postgres_url
    return f"sqlite+aiosqlite:///{tmp_path / 'eventrelay.db'}"


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings."""
    # Clear settings cache to ensure fresh settings
    clear_settings_cache()
    return Settings(
        database_url=database_url,
        root_api_key=ROOT_API_KEY,
        webhook_secret_key=WEBHOOK_SECRET_KEY,
        api_host="127.0.0.1",
        api_port=18000,
        instance_id="test-instance",
        worker_poll_interval=0.05,
        # Wide window so a test never straddles a rate limit boundary
        retry_rate_limit_window_seconds=3600,
    )


@pytest_asyncio.fixture
async def test_engine(test_settings: Settings):
    """Create test database engine with fresh tables."""
    engine = create_database_engine(test_settings.database_url)

    # Create all tables fresh for each test
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def test_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def vault() -> SecretVault:
    return SecretVault(WEBHOOK_SECRET_KEY)


@pytest.fixture
def tenant_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def fake_dns(monkeypatch) -> dict[str, str]:
    """Resolve test hostnames without the network.

    Hosts under example.com/example.org resolve to a public address unless
    listed in the returned mapping; hosts starting with ``unresolvable.``
    fail to resolve. Everything else goes to the real resolver.
    """
    overrides: dict[str, str] = {}
    real_getaddrinfo = socket.getaddrinfo

    def getaddrinfo(host, port, *args, **kwargs):
        if isinstance(host, bytes):
            host = host.decode("ascii")
        if isinstance(host, str) and host.endswith((".example.com", ".example.org")):
            if host.startswith("unresolvable."):
                raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")
            ip = overrides.get(host, PUBLIC_IP)
            return [(socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP, "", (ip, port))]
        return real_getaddrinfo(host, port, *args, **kwargs)

    monkeypatch.setattr(socket, "getaddrinfo", getaddrinfo)
    return overrides


@pytest.fixture
def make_subscription(session_factory, vault, test_settings, fake_dns):
    """Factory that creates a committed subscription and returns (subscription, secret)."""

    async def _make(
        tenant_id: uuid.UUID,
        event_types: list[str] | None = None,
        url: str = "https://hooks.example.com/receive",
        name: str = "Test hook",
    ) -> tuple[WebhookSubscription, str]:
        async with tenant_session(tenant_id, session_factory) as session:
            return await create_subscription(
                session,
                tenant_id,
                name,
                url,
                event_types or ["asset.created"],
                vault,
                settings=test_settings,
            )

    return _make


@pytest_asyncio.fixture
async def app(test_settings: Settings, session_factory) -> AsyncGenerator[FastAPI, None]:
    """Create test FastAPI application."""
    application = create_app(test_settings)

    async def override_get_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session
            await session.commit()

    application.dependency_overrides[get_session] = override_get_session
    application.dependency_overrides[get_settings] = lambda: test_settings

    yield application

    application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def auth_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create authenticated test HTTP client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-API-Key": ROOT_API_KEY},
    ) as ac:
        yield ac
