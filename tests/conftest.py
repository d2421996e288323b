"""
Pytest configuration and fixtures for SMS Forwarder tests.
"""

from datetime import datetime
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.config.settings import Settings
from app.domain.channel import ChannelType, DestinationChannel
from app.domain.message import Base, IncomingMessage
from app.domain.rule import ForwardRule, RuleDestination
from app.infrastructure.config_cache import ConfigCache
# Registers the remaining tables on Base.metadata
from app.infrastructure import database  # noqa: F401


# Use a separate in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def test_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async_session_factory = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def cache() -> ConfigCache:
    """A fresh configuration cache per test."""
    return ConfigCache()


@pytest.fixture
def test_settings() -> Settings:
    """Deterministic dispatch and retry policy."""
    return Settings(
        _env_file=None,
        retry_base_delay_seconds=30.0,
        retry_max_delay_seconds=600.0,
        max_retries=3,
        dispatch_timeout_seconds=5.0,
        delivery_lease_seconds=60,
        api_token="test-api-token",
        require_api_token=True,
    )


@pytest.fixture(autouse=True)
def mock_schedule_retry():
    """Keep retries out of the real job store; tests assert on this mock."""
    with patch(
        "app.usecases.delivery_tracker.schedule_delivery_retry",
        new_callable=AsyncMock,
    ) as mock:
        yield mock


@pytest.fixture
def make_message(test_session):
    """Factory persisting an IncomingMessage."""
    async def _make(
        body: str = "Status Report: All systems nominal.",
        endpoint_id: str = "sim-1",
        from_number: str = "+989121234567",
        to_number: str = "+989120001122",
        received_at: Optional[datetime] = None,
        processed: bool = False,
    ) -> IncomingMessage:
        message = IncomingMessage(
            endpoint_id=endpoint_id,
            from_number=from_number,
            to_number=to_number,
            body=body,
            raw_payload={"signal": -70, "voltage": 3.7},
            processed=processed,
        )
        if received_at is not None:
            message.received_at = received_at
        test_session.add(message)
        await test_session.commit()
        return message

    return _make


@pytest.fixture
def make_rule(test_session):
    """Factory persisting a ForwardRule."""
    async def _make(
        name: str = "General log",
        priority: int = 100,
        filters: Optional[dict] = None,
        stop_processing: bool = False,
        is_enabled: bool = True,
        rule_id: Optional[str] = None,
    ) -> ForwardRule:
        rule = ForwardRule(
            name=name,
            priority=priority,
            filters=filters or {},
            stop_processing=stop_processing,
            is_enabled=is_enabled,
        )
        if rule_id is not None:
            rule.id = rule_id
        test_session.add(rule)
        await test_session.commit()
        return rule

    return _make


@pytest.fixture
def make_channel(test_session):
    """Factory persisting a DestinationChannel."""
    async def _make(
        channel_type: ChannelType = ChannelType.TELEGRAM,
        config: Optional[dict] = None,
        name: str = "Warehouse ops group",
        is_enabled: bool = True,
    ) -> DestinationChannel:
        default_configs = {
            ChannelType.TELEGRAM: {"chat_id": "-100234234"},
            ChannelType.WEBHOOK: {"url": "https://api.company.com/hooks/sms"},
            ChannelType.EMAIL: {"email": "admin@company.com"},
            ChannelType.SMS: {"to_number": "+989120009999"},
        }
        channel = DestinationChannel(
            type=channel_type,
            name=name,
            is_enabled=is_enabled,
            config=config if config is not None else default_configs[channel_type],
        )
        test_session.add(channel)
        await test_session.commit()
        return channel

    return _make


@pytest.fixture
def make_destination(test_session):
    """Factory persisting a RuleDestination, positioned after existing ones."""
    positions = {}

    async def _make(
        rule: ForwardRule,
        channel: DestinationChannel,
        override_text_template: Optional[str] = None,
        action_config: Optional[dict] = None,
        is_enabled: bool = True,
    ) -> RuleDestination:
        position = positions.get(rule.id, 0)
        positions[rule.id] = position + 1
        destination = RuleDestination(
            rule_id=rule.id,
            channel_id=channel.id,
            override_text_template=override_text_template,
            action_config=action_config or {},
            is_enabled=is_enabled,
            position=position,
        )
        test_session.add(destination)
        await test_session.commit()
        return destination

    return _make
