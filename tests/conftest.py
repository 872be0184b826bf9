"""
Test configuration and fixtures.
Uses a file-backed SQLite database per test so separate sessions really run on
separate connections (the compare-and-set races are real). Mocks all external
delivery.
"""
import asyncio
from typing import Optional

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

import switchboard.models  # noqa: F401 - registers tables on Base.metadata
from switchboard.config import Settings
from switchboard.database import Base
from switchboard.services.delivery import ChannelUnavailable, DeliveryChannel, DeliveryFailure


class RecordingChannel(DeliveryChannel):
    """Fake delivery channel that records sends and fails on demand."""

    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []
        self.fail_contacts: set[str] = set()
        self.unavailable_contacts: set[str] = set()
        self.slow_contacts: set[str] = set()
        self.closed = False
        self.on_send = None  # optional async hook(contact)

    async def send(self, connection_id: str, contact: str, payload: str) -> Optional[str]:
        if self.on_send is not None:
            await self.on_send(contact)
        if contact in self.slow_contacts:
            await asyncio.sleep(60)
        if contact in self.unavailable_contacts:
            raise ChannelUnavailable("session closed", status_code=410)
        if contact in self.fail_contacts:
            raise DeliveryFailure("invalid number", status_code=400)
        self.sent.append((connection_id, contact, payload))
        return f"msg-{len(self.sent)}"

    async def aclose(self) -> None:
        self.closed = True

    @property
    def contacts(self) -> list[str]:
        return [contact for _, contact, _ in self.sent]


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite database for tests."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings(tmp_path):
    """Settings with zero pacing and short timeouts."""
    return Settings(
        app_env="test",
        log_level="WARNING",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        delivery_gateway_url="",
        delivery_timeout_seconds=0.5,
        campaign_delay_min_ms=0,
        campaign_delay_max_ms=0,
        campaign_lease_seconds=60,
        campaign_scheduler_enabled=False,
        warmup_dry_run=False,
        warmup_cycle_interval_seconds=3600,
        warmup_delay_min_ms=0,
        warmup_delay_max_ms=0,
        warmup_daily_limit_per_connection=30,
        warmup_fallback_contact="",
        warmup_min_interval_seconds=0,
        auto_assign_enabled=False,
    )


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def other_channel():
    """Delivery channel for a second runner sharing the same database."""
    return RecordingChannel()
