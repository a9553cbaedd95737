"""Pytest configuration and fixtures."""
import os

# The app module builds its engine at import time; keep it off Postgres and RabbitMQ.
os.environ.setdefault("DATABASE_DSN", "sqlite+aiosqlite://")
os.environ.setdefault("OUTBOX_ENABLED", "false")

from datetime import datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from services.escrow_service.app import (  # noqa: E402
    app,
    get_session,
    get_session_factory,
    get_settings,
)
from services.escrow_service.authorization import Actor, Role  # noqa: E402
from services.escrow_service.state_machine import EscrowEngine  # noqa: E402
from services.escrow_service.store import ProviderDirectory  # noqa: E402
from shared.config import Settings  # noqa: E402
from shared.database import Database  # noqa: E402

BUYER_ID = "buyer-001"
PROVIDER_ID = "provider-001"
OTHER_PROVIDER_ID = "provider-002"
HIDDEN_PROVIDER_ID = "provider-hidden"
ADMIN_ID = "admin-001"
GATEWAY_ID = "gateway-mpesa"


class FrozenClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def settings() -> Settings:
    """Settings with immediate release; events land in the outbox, nothing relays them."""
    return Settings(database_dsn="sqlite+aiosqlite://", outbox_enabled=True)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 14, 18, 0, 0))


@pytest.fixture
async def database(tmp_path):
    """Fresh SQLite database file per test."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}")
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
async def providers(database):
    """Two bookable providers and one hidden one."""
    async with database.session_factory() as session:
        directory = ProviderDirectory(session)
        await directory.upsert(PROVIDER_ID, approved_by=ADMIN_ID, display_name="Ana", price_per_hour=150000)
        await directory.upsert(OTHER_PROVIDER_ID, approved_by=ADMIN_ID, display_name="Bela")
        await directory.upsert(HIDDEN_PROVIDER_ID, approved_by=ADMIN_ID, is_visible=False)


@pytest.fixture
async def session(database, providers):
    async with database.session_factory() as session:
        yield session


@pytest.fixture
def engine(session, settings, clock) -> EscrowEngine:
    return EscrowEngine(session, settings, clock=clock)


@pytest.fixture
def buyer() -> Actor:
    return Actor(BUYER_ID)


@pytest.fixture
def provider() -> Actor:
    return Actor(PROVIDER_ID)


@pytest.fixture
def other_provider() -> Actor:
    return Actor(OTHER_PROVIDER_ID)


@pytest.fixture
def admin() -> Actor:
    return Actor(ADMIN_ID, frozenset({Role.ADMIN}))


@pytest.fixture
def gateway() -> Actor:
    return Actor(GATEWAY_ID, frozenset({Role.PAYMENT_GATEWAY}))


@pytest.fixture
async def held(engine, buyer, gateway):
    """A 1500 booking with PROVIDER_ID that is already in escrow."""
    transaction = await engine.create_booking(buyer, PROVIDER_ID, 1500, "mpesa")
    return await engine.authorize_payment(gateway, transaction.id)


@pytest.fixture
async def client(database, providers, settings):
    """HTTP client against the app, wired to the per-test database."""

    async def override_session():
        async with database.session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_session_factory] = lambda: database.session_factory
    app.dependency_overrides[get_settings] = lambda: settings

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def as_user():
    """Build identity headers: as_user("buyer-001") or as_user("admin-001", "admin")."""

    def _headers(user_id: str, roles: str = "user", **extra) -> dict:
        headers = {"X-User-Id": user_id, "X-User-Roles": roles}
        headers.update(extra)
        return headers

    return _headers
