"""Test configuration and fixtures for the agent-relay project."""

from __future__ import annotations

from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from agent_relay.bot.services.models import AgentProfile
from agent_relay.shared.config import Settings
from agent_relay.shared.config import override_settings
from agent_relay.shared.crypto import CredentialCipher
from agent_relay.shared.database import Base

import agent_relay.storage.models  # noqa: F401


# Test configuration
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
TEST_ENCRYPTION_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings."""
    return override_settings(
        environment="testing",
        database_url=TEST_DATABASE_URL,
        discord_bot_token="test_token",
        discord_application_id="123456789",
        encryption_key=TEST_ENCRYPTION_KEY,
        debug=True,
        log_level="DEBUG",
    )


@pytest.fixture
def cipher() -> CredentialCipher:
    """Cipher with a fixed test key."""
    return CredentialCipher.from_hex(TEST_ENCRYPTION_KEY)


@pytest.fixture
async def test_engine():
    """Create an in-memory test database with every table."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        echo=False,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine) -> async_sessionmaker[AsyncSession]:
    """Session maker bound to the test engine."""
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    session = session_maker()
    try:
        yield session
    finally:
        await session.close()


def make_agent(agent_id: int = 1, name: str = "Alice", **overrides) -> AgentProfile:
    """Build an agent profile for tests."""
    values = dict(
        id=agent_id,
        guild_id="guild-1",
        name=name,
        channel_id="channel-1",
        webhook_id=f"webhook-{agent_id}",
        webhook_token=f"token-{agent_id}",
        model="test-model",
        provider_name="openai",
        system_prompt="",
    )
    values.update(overrides)
    return AgentProfile(**values)


@pytest.fixture
def agent_factory():
    """Factory fixture for agent profiles."""
    return make_agent


