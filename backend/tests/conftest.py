import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("TESTING", "true")
os.environ.setdefault("EMAIL_MODE", "off")
os.environ.setdefault("TRACING_ENABLED", "false")


def ensure_event_loop() -> asyncio.AbstractEventLoop:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    if loop.is_closed():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    return loop


ensure_event_loop()

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from wns_payments.domain.groups.db_models import Group, GroupAdmin, User
from wns_payments.domain.memberships.db_models import GroupMembershipTier
from wns_payments.domain.payouts.db_models import GroupPayoutSchedule
from wns_payments.infra.db import Base, get_db_session
from wns_payments.main import app
from wns_payments.settings import settings

_RESTORED_SETTINGS = (
    "app_env",
    "testing",
    "app_url",
    "stripe_secret_key",
    "stripe_webhook_secret",
    "stripe_cancel_superseded_subscriptions",
    "checkout_max_quantity",
    "earnings_default_limit",
    "earnings_max_limit",
    "email_mode",
    "metrics_enabled",
    "metrics_token",
)
_OVERRIDABLE_STATE = ("stripe_client", "webhook_dispatcher", "metrics")


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    original = {name: getattr(settings, name) for name in _RESTORED_SETTINGS}
    yield
    for name, value in original.items():
        setattr(settings, name, value)


@pytest.fixture(autouse=True)
def enable_test_mode():
    settings.testing = True
    settings.app_env = "dev"
    yield


@pytest.fixture(autouse=True)
def restore_app_state():
    """Drop per-test overrides so the next lifespan rebinds the real services."""
    yield
    for name in _OVERRIDABLE_STATE:
        if hasattr(app.state, name):
            delattr(app.state, name)


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture()
def client(async_session_maker):
    ensure_event_loop()

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


@pytest.fixture()
def client_no_raise(async_session_maker):
    """Test client that returns HTTP responses instead of raising server exceptions."""

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


@pytest.fixture()
def billing_world(async_session_maker):
    """One group with an owner, an admin, a member and three tiers."""
    world = SimpleNamespace(
        owner_id="user-owner",
        admin_id="user-admin",
        member_id="user-member",
        outsider_id="user-outsider",
        group_id="group-runners",
        group_slug="runners",
        monthly_tier_id="tier-monthly",
        yearly_tier_id="tier-yearly",
        once_tier_id="tier-once",
        schedule_id="schedule-runners",
        next_payout_at=datetime.now(tz=timezone.utc) + timedelta(days=7),
    )

    async def seed() -> None:
        async with async_session_maker() as session:
            session.add_all(
                [
                    User(user_id=world.owner_id, email="owner@example.com", name="Olive Owner"),
                    User(user_id=world.admin_id, email="admin@example.com", name="Ada Admin"),
                    User(user_id=world.member_id, email="member@example.com", name="Max Member"),
                    User(user_id=world.outsider_id, email="outsider@example.com", name="Oscar Outsider"),
                ]
            )
            await session.flush()
            session.add(
                Group(
                    group_id=world.group_id,
                    name="Sunday Runners",
                    slug=world.group_slug,
                    owner_id=world.owner_id,
                )
            )
            await session.flush()
            session.add_all(
                [
                    GroupAdmin(group_id=world.group_id, user_id=world.admin_id),
                    GroupMembershipTier(
                        tier_id=world.monthly_tier_id,
                        group_id=world.group_id,
                        name="Monthly",
                        price_cents=5000,
                        currency="EUR",
                        billing_period="month",
                    ),
                    GroupMembershipTier(
                        tier_id=world.yearly_tier_id,
                        group_id=world.group_id,
                        name="Yearly",
                        price_cents=50000,
                        currency="EUR",
                        billing_period="year",
                    ),
                    GroupMembershipTier(
                        tier_id=world.once_tier_id,
                        group_id=world.group_id,
                        name="Lifetime",
                        price_cents=2500,
                        currency="EUR",
                        billing_period="once",
                    ),
                    GroupPayoutSchedule(
                        schedule_id=world.schedule_id,
                        group_id=world.group_id,
                        next_payout_scheduled_at=world.next_payout_at,
                    ),
                ]
            )
            await session.commit()

    asyncio.run(seed())
    return world
