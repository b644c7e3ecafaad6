"""
Pytest configuration and fixtures for shipping engine tests.
"""
import os
from unittest.mock import MagicMock

import pytest

# Set test environment before importing package modules
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SHIPPO_API_KEY"] = "shippo_test_key_for_unit_tests_only"
os.environ["SHIPPO_WEBHOOK_TOKEN"] = "webhook-secret"

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from shipping_engine.core.config import Settings
from shipping_engine.core.database import Base
from shipping_engine.modules.shipping.carriers.base import BaseCarrier
import shipping_engine.models  # noqa: F401  registers tables

from tests.fakes import FIXED_NOW, FakeOrderRepository


@pytest.fixture
def settings() -> Settings:
    """Explicit settings object; never the cached global."""
    return Settings(
        ENVIRONMENT="test",
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        SHIPPO_API_KEY="shippo_test_key_for_unit_tests_only",
        SHIPPO_WEBHOOK_TOKEN="webhook-secret",
        SHIP_FROM_NAME="Warehouse",
        SHIP_FROM_LINE1="1 Depot Road",
        SHIP_FROM_CITY="Leeds",
        SHIP_FROM_POSTCODE="LS1 1AA",
        SHIP_FROM_COUNTRY="GB",
    )


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
async def engine():
    """In-memory database shared across connections of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_carrier() -> MagicMock:
    """
    Carrier gateway double.

    Coroutine methods of BaseCarrier become AsyncMocks via MagicMock(spec=...).
    """
    carrier = MagicMock(spec=BaseCarrier)
    carrier.get_tracking_url.return_value = None
    carrier.verify_webhook_token.return_value = True
    return carrier


@pytest.fixture
def orders() -> FakeOrderRepository:
    return FakeOrderRepository()
