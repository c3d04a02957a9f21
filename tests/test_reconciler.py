"""
Tests for PushReconciler.

Tests cover:
- Own echo replaces the provisional entry (one entry, server id, profile kept)
- Rows from other participants are inserted and enriched
- Redelivery and malformed or misrouted rows
- Full history resync after a reconnect
"""

import asyncio
import json
from datetime import timedelta

import pytest

from chatsync.repositories.message_repository import to_payload
from chatsync.schemas.message import ConversationRef
from chatsync.sync.enrichment import ProfileEnrichmentPatcher
from chatsync.sync.reconciler import PushReconciler
from chatsync.sync.sender import OptimisticSendCoordinator
from chatsync.sync.store import ConversationStore

from fakes import T0, FakeMessageRepository, FakeProfileRepository, eventually, make_profile


REF = ConversationRef.direct("B")


def wire(row):
    """What a subscriber decodes off the bus."""
    return json.loads(to_payload(row))


@pytest.fixture
def repo(clock):
    return FakeMessageRepository(clock=clock)


@pytest.fixture
def lookup():
    return FakeProfileRepository({"B": make_profile("B")})


@pytest.fixture
def store():
    return ConversationStore(REF)


@pytest.fixture
def reconciler(store, repo, lookup):
    enricher = ProfileEnrichmentPatcher(store, lookup, max_attempts=2, retry_delay=0)
    yield PushReconciler(store, "A", repo, enricher)
    enricher.close()


class TestOwnEcho:

    async def test_echo_after_confirmation_leaves_one_entry(self, store, repo, reconciler, clock):
        repo.gate = asyncio.Event()
        sender = OptimisticSendCoordinator(repo, make_profile("A"), clock=clock)

        task = asyncio.create_task(sender.send(store, "Hello"))
        await asyncio.sleep(0)
        [provisional] = store.messages()
        assert provisional.created_at == T0

        clock.advance(1.2)
        repo.gate.set()
        await task
        [row] = repo.rows

        assert reconciler.on_event(wire(row)) is None

        [entry] = store.messages()
        assert entry.id == row["id"]
        assert not entry.is_provisional
        assert entry.created_at == T0 + timedelta(seconds=1.2)
        assert entry.sender_profile.id == "A"

    async def test_echo_redelivered_after_merge(self, store, repo, reconciler, clock):
        sender = OptimisticSendCoordinator(repo, make_profile("A"), clock=clock)
        await sender.send(store, "Hello")
        [row] = repo.rows

        reconciler.on_event(wire(row))
        reconciler.on_event(wire(row))

        assert [m.id for m in store.messages()] == [row["id"]]

    async def test_legacy_row_matched_by_window(self, store, repo, reconciler, clock):
        sender = OptimisticSendCoordinator(repo, make_profile("A"), clock=clock)
        await sender.send(store, "Hello")
        legacy = dict(repo.rows[0], client_message_id=None, created_at=T0 + timedelta(seconds=3))

        reconciler.on_event(wire(legacy))

        assert [m.id for m in store.messages()] == [legacy["id"]]


class TestRemoteRows:

    async def test_remote_insert_is_returned_and_enriched(self, store, repo, reconciler, lookup):
        row = repo.add(ConversationRef.direct("A"), "B", "Hi A", T0)

        message = reconciler.on_event(wire(row))

        assert message is not None
        assert message.sender_profile is None
        await eventually(lambda: store.get(row["id"]).sender_profile is not None)
        assert store.get(row["id"]).sender_profile.display_name == "User B"
        assert lookup.calls["B"] == 1

    async def test_row_carrying_profile_skips_lookup(self, store, repo, reconciler, lookup):
        row = repo.add(ConversationRef.direct("A"), "B", "Hi A", T0)
        payload = wire(row)
        payload["sender"] = make_profile("B").model_dump()

        reconciler.on_event(payload)
        await asyncio.sleep(0)

        assert store.get(row["id"]).sender_profile.id == "B"
        assert lookup.calls["B"] == 0

    async def test_malformed_rows_are_dropped(self, store, reconciler):
        assert reconciler.on_event({"kind": "direct", "sender_id": "B", "receiver_id": "A"}) is None
        assert reconciler.on_event({"id": "x", "kind": "direct", "receiver_id": "A"}) is None
        assert reconciler.on_event({"id": "x", "kind": "direct", "sender_id": "B", "receiver_id": "A",
                                    "created_at": "not a date"}) is None
        assert len(store) == 0

    async def test_row_for_other_conversation_is_ignored(self, store, repo, reconciler):
        row = repo.add(ConversationRef.direct("A"), "C", "wrong thread", T0)

        assert reconciler.on_event(wire(row)) is None
        assert len(store) == 0

    async def test_closed_store_ignores_rows(self, store, repo, reconciler):
        row = repo.add(ConversationRef.direct("A"), "B", "late", T0)
        store.close()

        assert reconciler.on_event(wire(row)) is None


class TestResync:

    async def test_resync_merges_history_once(self, store, repo, reconciler):
        repo.add(ConversationRef.direct("B"), "A", "one", T0)
        repo.add(ConversationRef.direct("A"), "B", "two", T0 + timedelta(seconds=1))
        repo.add(ConversationRef.direct("C"), "A", "elsewhere", T0)

        assert await reconciler.resync() == 2
        assert await reconciler.resync() == 0
        assert [m.content for m in store.messages()] == ["one", "two"]
