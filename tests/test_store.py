"""
Tests for ConversationStore.

Tests cover:
- Ordering by created_at with stable insertion order for ties
- Matching echoes by client_message_id and by the legacy time window
- Redelivery of an already stored id
- Profile patching, removal and listeners
"""

import asyncio
from datetime import timedelta

import pytest

from chatsync.schemas.message import ConversationRef, Message, new_temp_id
from chatsync.sync.store import DUPLICATE, INSERTED, MERGED, ConversationStore

from fakes import T0, eventually, make_profile


REF = ConversationRef.direct("B")


def make_message(message_id, content="hi", at=T0, sender_id="A", client_message_id=None, profile=None):
    return Message(
        id=message_id,
        conversation=REF,
        sender_id=sender_id,
        content=content,
        created_at=at,
        receiver_id="B",
        client_message_id=client_message_id,
        sender_profile=profile,
    )


@pytest.fixture
def store():
    return ConversationStore(REF)


class TestOrdering:
    """Entries are sorted by created_at, ties keep insertion order."""

    def test_sorted_by_created_at(self, store):
        store.insert(make_message("m2", at=T0 + timedelta(seconds=2)))
        store.insert(make_message("m1", at=T0 + timedelta(seconds=1)))
        store.insert(make_message("m3", at=T0 + timedelta(seconds=3)))

        assert [m.id for m in store.messages()] == ["m1", "m2", "m3"]

    def test_ties_keep_insertion_order_across_merges(self, store):
        first = store.insert(make_message(new_temp_id(), content="one", client_message_id="c1"))
        store.insert(make_message("x", content="other", sender_id="B"))
        store.insert(make_message(new_temp_id(), content="two", client_message_id="c2"))

        store.merge(make_message("s2", content="two", client_message_id="c2"))
        store.merge(make_message("s1", content="one", client_message_id="c1"))

        assert [m.content for m in store.messages()] == ["one", "other", "two"]
        assert first.id not in store
        assert [m.id for m in store.messages()] == ["s1", "x", "s2"]

    def test_merge_moves_entry_to_server_timestamp(self, store):
        store.insert(make_message("m1", content="earlier", sender_id="B", at=T0 + timedelta(seconds=1)))
        store.insert(make_message(new_temp_id(), content="mine", at=T0, client_message_id="c1"))

        store.merge(make_message("s1", content="mine", at=T0 + timedelta(seconds=2), client_message_id="c1"))

        assert [m.id for m in store.messages()] == ["m1", "s1"]


class TestMerge:

    def test_client_message_id_match(self, store):
        profile = make_profile("A")
        store.insert(make_message(new_temp_id(), client_message_id="c1", profile=profile))

        outcome, merged = store.merge(make_message("s1", at=T0 + timedelta(seconds=1), client_message_id="c1"))

        assert outcome == MERGED
        assert len(store) == 1
        assert merged.id == "s1"
        assert merged.created_at == T0 + timedelta(seconds=1)
        assert merged.sender_profile == profile

    def test_client_message_id_match_ignores_window(self, store):
        store.insert(make_message(new_temp_id(), client_message_id="c1"))

        outcome, _ = store.merge(make_message("s1", at=T0 + timedelta(minutes=5), client_message_id="c1"))

        assert outcome == MERGED
        assert len(store) == 1

    def test_different_client_ids_do_not_coalesce(self, store):
        store.insert(make_message(new_temp_id(), client_message_id="c1"))
        store.insert(make_message(new_temp_id(), client_message_id="c2"))

        store.merge(make_message("s2", client_message_id="c2"))
        store.merge(make_message("s1", client_message_id="c1"))

        assert sorted(m.id for m in store.messages()) == ["s1", "s2"]

    def test_window_match_for_rows_without_client_id(self, store):
        store.insert(make_message(new_temp_id()))

        outcome, merged = store.merge(make_message("s1", at=T0 + timedelta(seconds=4)))

        assert outcome == MERGED
        assert [m.id for m in store.messages()] == ["s1"]

    def test_window_miss_outside_tolerance(self, store):
        store.insert(make_message(new_temp_id()))

        outcome, _ = store.merge(make_message("s1", at=T0 + timedelta(seconds=6)))

        assert outcome == INSERTED
        assert len(store) == 2

    def test_window_requires_same_sender_and_content(self, store):
        store.insert(make_message(new_temp_id()))

        assert store.merge(make_message("s1", sender_id="B"))[0] == INSERTED
        assert store.merge(make_message("s2", content="hello"))[0] == INSERTED
        assert len(store) == 3

    def test_redelivery_is_duplicate(self, store):
        store.insert(make_message("s1"))

        outcome, existing = store.merge(make_message("s1", content="edited"))

        assert outcome == DUPLICATE
        assert existing.content == "hi"
        assert len(store) == 1

    def test_authoritative_entries_are_never_matched(self, store):
        store.insert(make_message("s1"))

        outcome, _ = store.merge(make_message("s2"))

        assert outcome == INSERTED
        assert len(store) == 2


class TestMutations:

    def test_remove(self, store):
        temp = store.insert(make_message(new_temp_id()))

        assert store.remove(temp.id) is True
        assert store.remove(temp.id) is False
        assert store.messages() == []

    def test_patch_profile_only_fills_missing(self, store):
        existing = make_profile("B", sector_id="sales")
        store.insert(make_message("m1", sender_id="B"))
        store.insert(make_message("m2", sender_id="B", profile=existing))
        store.insert(make_message("m3", sender_id="C"))

        patched = store.patch_profile("B", make_profile("B"))

        assert patched == 1
        assert store.get("m1").sender_profile.sector_id == "ops"
        assert store.get("m2").sender_profile.sector_id == "sales"
        assert store.get("m3").sender_profile is None

    def test_close_discards_entries(self, store):
        store.insert(make_message("m1"))
        store.close()

        assert store.closed
        assert store.messages() == []


class TestListeners:

    def test_listener_receives_snapshot(self, store):
        seen = []
        store.subscribe(lambda items: seen.append([m.id for m in items]))

        store.insert(make_message("m1"))
        store.remove("m1")

        assert seen == [["m1"], []]

    def test_unsubscribe(self, store):
        seen = []
        unsubscribe = store.subscribe(seen.append)
        unsubscribe()
        unsubscribe()

        store.insert(make_message("m1"))

        assert seen == []

    def test_failing_listener_does_not_break_store(self, store):
        def boom(_items):
            raise RuntimeError("listener bug")

        store.subscribe(boom)
        store.insert(make_message("m1"))

        assert "m1" in store

    async def test_async_listener_runs_to_completion(self, store, caplog):
        delivered = []

        async def forward(items):
            await asyncio.sleep(0)
            delivered.append([m.id for m in items])

        async def broken(_items):
            raise RuntimeError("send failed")

        store.subscribe(forward)
        store.subscribe(broken)
        store.insert(make_message("m1"))
        await eventually(lambda: delivered and "Messages listener failed" in caplog.text)

        assert delivered == [["m1"]]
        assert "send failed" in caplog.text
