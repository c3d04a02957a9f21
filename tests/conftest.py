"""
Fixtures wiring the in-memory fakes from `fakes.py` into SyncSessions.
"""

from typing import List

import pytest

from chatsync.config import Settings
from chatsync.services.permissions import MembershipPermission
from chatsync.sync.session import SyncSession
from chatsync.utils.realtime_bus import LocalBus

from fakes import (
    FakeClock,
    FakeConversationRepository,
    FakeGroupRepository,
    FakeMessageRepository,
    FakeProfileRepository,
    FakeWatermarkRepository,
    make_profile,
)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def bus() -> LocalBus:
    return LocalBus()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        SEND_TIMEOUT_SECONDS=1.0,
        SUBSCRIBE_TIMEOUT_SECONDS=1.0,
        RECONNECT_BASE_DELAY_SECONDS=0.01,
        RECONNECT_MAX_DELAY_SECONDS=0.05,
        RECOMPUTE_INTERVAL_SECONDS=0,
        ENRICHMENT_MAX_ATTEMPTS=2,
    )


@pytest.fixture
def messages(bus, clock) -> FakeMessageRepository:
    return FakeMessageRepository(bus, clock)


@pytest.fixture
def watermark_repo() -> FakeWatermarkRepository:
    return FakeWatermarkRepository()


@pytest.fixture
def profiles() -> FakeProfileRepository:
    return FakeProfileRepository({pid: make_profile(pid) for pid in ("A", "B", "C")})


@pytest.fixture
def groups(bus) -> FakeGroupRepository:
    return FakeGroupRepository(bus)


@pytest.fixture
def conversations() -> FakeConversationRepository:
    return FakeConversationRepository()


@pytest.fixture
async def make_session(bus, settings, clock, messages, watermark_repo, profiles, groups, conversations):
    sessions: List[SyncSession] = []

    async def _make(profile_id: str, start: bool = True) -> SyncSession:
        session = SyncSession(
            profiles.profiles[profile_id],
            messages=messages,
            watermarks=watermark_repo,
            profiles=profiles,
            memberships=groups,
            conversations=conversations,
            permissions=MembershipPermission(groups),
            bus=bus,
            settings=settings,
            clock=clock,
        )
        if start:
            await session.start()
        sessions.append(session)
        return session

    yield _make
    for session in sessions:
        await session.stop()
