"""
Tests for ProfileEnrichmentPatcher.
"""

import asyncio

import pytest

from chatsync.schemas.message import ConversationRef, Message
from chatsync.schemas.profile import PLACEHOLDER_PROFILE
from chatsync.sync.enrichment import ProfileEnrichmentPatcher
from chatsync.sync.store import ConversationStore

from fakes import T0, FakeProfileRepository, make_profile


REF = ConversationRef.group("G")


def remote(message_id, sender_id="B"):
    return Message(id=message_id, conversation=REF, sender_id=sender_id, content="hey", created_at=T0)


@pytest.fixture
def store():
    return ConversationStore(REF)


@pytest.fixture
def lookup():
    return FakeProfileRepository({"B": make_profile("B")})


@pytest.fixture
def enricher(store, lookup):
    patcher = ProfileEnrichmentPatcher(store, lookup, max_attempts=3, retry_delay=0)
    yield patcher
    patcher.close()


async def test_resolve_patches_every_message_from_sender(store, enricher):
    for i in range(3):
        store.insert(remote(f"m{i}"))
    store.insert(remote("other", sender_id="C"))

    profile = await enricher.resolve("B")

    assert profile.display_name == "User B"
    assert all(m.sender_profile == profile for m in store.messages() if m.sender_id == "B")
    assert store.get("other").sender_profile is None


async def test_lookups_are_memoized(store, enricher, lookup):
    store.insert(remote("m1"))
    await asyncio.gather(enricher.resolve("B"), enricher.resolve("B"), enricher.resolve("B"))

    store.insert(remote("m2"))
    enricher.schedule("B")

    assert lookup.calls["B"] == 1
    assert store.get("m2").sender_profile == enricher.cached("B")


async def test_transient_failures_are_retried(store, enricher, lookup):
    lookup.failures["B"] = 2
    store.insert(remote("m1"))

    profile = await enricher.resolve("B")

    assert profile is not None
    assert lookup.calls["B"] == 3
    assert store.get("m1").sender_profile == profile


async def test_gives_up_after_bounded_attempts(store, enricher, lookup):
    lookup.failures["B"] = 10
    store.insert(remote("m1"))

    assert await enricher.resolve("B") is None
    assert enricher.gave_up_on("B")
    assert lookup.calls["B"] == 3

    assert enricher.schedule("B") is None
    assert lookup.calls["B"] == 3
    assert store.get("m1").display_profile == PLACEHOLDER_PROFILE


async def test_unknown_sender_is_not_retried(store, enricher, lookup):
    store.insert(remote("m1", sender_id="ghost"))

    assert await enricher.resolve("ghost") is None
    assert lookup.calls["ghost"] == 1
    assert enricher.gave_up_on("ghost")


async def test_close_cancels_inflight_lookup(store):
    gate = asyncio.Event()

    class SlowLookup:
        async def get_profile(self, profile_id):
            await gate.wait()
            return make_profile(profile_id)

    patcher = ProfileEnrichmentPatcher(store, SlowLookup())
    task = patcher.schedule("B")
    patcher.close()

    with pytest.raises(asyncio.CancelledError):
        await task
