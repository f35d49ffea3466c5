from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from apps.helpdesk.metrics import MetricsRegistry
from apps.helpdesk.services.notifications import NotificationTrigger
from apps.helpdesk.services.security import PasswordHasher


@pytest_asyncio.fixture
async def engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def registry() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def sender() -> AsyncMock:
    sender = AsyncMock()
    sender.send.return_value = "<message-id@test>"
    return sender


@pytest.fixture
def notifier(sender: AsyncMock, registry: MetricsRegistry) -> NotificationTrigger:
    return NotificationTrigger(sender, public_base_url="https://helpdesk.test", metrics=registry)


@pytest.fixture
def hasher() -> PasswordHasher:
    return PasswordHasher()
