"""Shared test fixtures."""

import asyncio
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from party_ledger.core import Settings, close_db, create_engine, create_session_factory, init_db
from party_ledger.services.milestones import MilestoneEvent
from party_ledger.services.notifications import NotificationChannel
from party_ledger.services.realtime import ChangeFeed
from party_ledger.services.store import PartyStore, PlayerRecord


# =============================================================================
# HELPERS
# =============================================================================


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 12, 24, 20, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingChannel(NotificationChannel):
    """Channel that remembers every milestone it was asked to send."""

    name = "recording"

    def __init__(self):
        super().__init__()
        self.sent: list[MilestoneEvent] = []

    @property
    def enabled(self) -> bool:
        return True

    async def send_milestone(self, event: MilestoneEvent) -> bool:
        self.sent.append(event)
        return True


class ExplodingChannel(NotificationChannel):
    """Channel whose delivery always blows up."""

    name = "exploding"

    @property
    def enabled(self) -> bool:
        return True

    async def send_milestone(self, event: MilestoneEvent) -> bool:
        raise RuntimeError("chat service is down")


async def wait_for(condition, timeout: float = 2.0) -> None:
    """Yield to the event loop until condition() is truthy."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'party.db'}",
        slack_webhook_url=None,
        slack_alerts_webhook_url=None,
        twilio_account_sid=None,
        poll_interval_seconds=3600,
        sweep_interval_seconds=3600,
    )


@pytest.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_engine(settings)
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture
def store(engine: AsyncEngine, feed: ChangeFeed) -> PartyStore:
    return PartyStore(create_session_factory(engine), feed=feed)


@pytest.fixture
def silent_store(engine: AsyncEngine) -> PartyStore:
    """Writes to the same database without publishing realtime events."""
    return PartyStore(create_session_factory(engine))


@pytest.fixture
async def players(store: PartyStore) -> dict[str, PlayerRecord]:
    """The usual crew."""
    created = [
        await store.create_player("p1", "Neil", 3),
        await store.create_player("p2", "Jonny", 2),
        await store.create_player("p3", "Sarah", 1),
        await store.create_player("p4", "Alex", 0),
    ]
    return {p.id: p for p in created}


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def recorder() -> RecordingChannel:
    return RecordingChannel()
