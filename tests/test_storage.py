"""
Tests for the message log store adapters.

Every test in this module runs against both the in-memory and the SQL
store through the parametrized ``store`` fixture.
"""

import asyncio
from datetime import datetime

import pytest

from sms_pipeline import storage
from sms_pipeline.lifecycle import MessageState, WebhookEventStatus, can_transition, is_terminal


class TestLifecycleTable:
    """Test the transition table itself."""

    @pytest.mark.parametrize("current,target", [
        (MessageState.PENDING, MessageState.SENT),
        (MessageState.PENDING, MessageState.FAILED),
        (MessageState.PENDING, MessageState.DELIVERED),
        (MessageState.SENT, MessageState.DELIVERED),
        (MessageState.SENT, MessageState.FAILED),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (MessageState.SENT, MessageState.SENT),
        (MessageState.SENT, MessageState.PENDING),
        (MessageState.DELIVERED, MessageState.FAILED),
        (MessageState.DELIVERED, MessageState.SENT),
        (MessageState.FAILED, MessageState.DELIVERED),
        (MessageState.FAILED, MessageState.PENDING),
    ])
    def test_refused(self, current, target):
        assert not can_transition(current, target)

    def test_terminal_states(self):
        assert is_terminal(MessageState.DELIVERED)
        assert is_terminal(MessageState.FAILED)
        assert not is_terminal(MessageState.SENT)


class TestCreateAndLookup:
    """Test record creation and lookups."""

    async def test_create_pending_record(self, store):
        record = await store.create("+14155551234", "hello")

        assert record.state == MessageState.PENDING
        assert record.provider_message_id is None
        assert record.error_detail is None
        assert record.created_at == record.updated_at

        fetched = await store.get(record.id)
        assert fetched.recipient == "+14155551234"
        assert fetched.body == "hello"

    async def test_get_missing(self, store):
        assert await store.get("does-not-exist") is None

    async def test_find_by_provider_id(self, store):
        record = await store.create("+14155551234", "hello")
        await store.update_state(record.id, MessageState.SENT, provider_message_id="SM1")

        found = await store.find_by_provider_id("SM1")
        assert found.id == record.id
        assert found.state == MessageState.SENT
        assert await store.find_by_provider_id("SM2") is None


class TestUpdateState:
    """Test compare-and-set transitions."""

    async def test_sent_then_delivered(self, store):
        record = await store.create("+14155551234", "hello")

        assert await store.update_state(record.id, MessageState.SENT, provider_message_id="SM1")
        assert await store.update_state(record.id, MessageState.DELIVERED)

        updated = await store.get(record.id)
        assert updated.state == MessageState.DELIVERED
        assert updated.provider_message_id == "SM1"
        assert updated.updated_at >= record.updated_at

    async def test_failed_sets_error_detail(self, store):
        record = await store.create("+14155551234", "hello")

        assert await store.update_state(record.id, MessageState.FAILED, error_detail="timeout")

        updated = await store.get(record.id)
        assert updated.state == MessageState.FAILED
        assert updated.error_detail == "timeout"

    async def test_error_detail_only_kept_for_failed(self, store):
        record = await store.create("+14155551234", "hello")
        await store.update_state(record.id, MessageState.SENT, provider_message_id="SM1", error_detail="ignored")

        assert (await store.get(record.id)).error_detail is None

    async def test_terminal_state_is_final(self, store):
        record = await store.create("+14155551234", "hello")
        await store.update_state(record.id, MessageState.SENT, provider_message_id="SM1")
        await store.update_state(record.id, MessageState.FAILED, error_detail="undelivered")

        assert await store.update_state(record.id, MessageState.DELIVERED) is False
        assert await store.update_state(record.id, MessageState.SENT) is False

        final = await store.get(record.id)
        assert final.state == MessageState.FAILED
        assert final.error_detail == "undelivered"

    async def test_sent_to_sent_is_noop(self, store):
        record = await store.create("+14155551234", "hello")
        await store.update_state(record.id, MessageState.SENT, provider_message_id="SM1")

        assert await store.update_state(record.id, MessageState.SENT) is False

    async def test_pending_is_never_a_target(self, store):
        record = await store.create("+14155551234", "hello")
        assert await store.update_state(record.id, MessageState.PENDING) is False

    async def test_missing_record(self, store):
        assert await store.update_state("nope", MessageState.SENT, provider_message_id="SM1") is False

    async def test_provider_id_is_write_once(self, store):
        first = await store.create("+14155551234", "hello")
        await store.update_state(first.id, MessageState.SENT, provider_message_id="SM1")

        # a later transition cannot swap the provider id
        assert await store.update_state(first.id, MessageState.DELIVERED, provider_message_id="SM9") is False
        assert (await store.get(first.id)).provider_message_id == "SM1"

    async def test_provider_id_collision_refused(self, store):
        first = await store.create("+14155551234", "hello")
        second = await store.create("+14155551235", "hello")
        assert await store.update_state(first.id, MessageState.SENT, provider_message_id="SMDUP")

        assert await store.update_state(second.id, MessageState.SENT, provider_message_id="SMDUP") is False

        refused = await store.get(second.id)
        assert refused.state == MessageState.PENDING
        assert refused.provider_message_id is None
        assert (await store.find_by_provider_id("SMDUP")).id == first.id
        # the record can still be settled afterwards
        assert await store.update_state(second.id, MessageState.FAILED, error_detail="duplicate")


class TestConcurrentCallbacks:
    """Test racing transitions on one record."""

    async def test_racing_terminal_transitions_settle_once(self, store):
        record = await store.create("+14155551234", "hello")
        await store.update_state(record.id, MessageState.SENT, provider_message_id="SM1")

        results = await asyncio.gather(
            store.update_state(record.id, MessageState.DELIVERED),
            store.update_state(record.id, MessageState.FAILED, error_detail="undelivered"),
            store.update_state(record.id, MessageState.SENT),
            store.update_state(record.id, MessageState.DELIVERED),
        )

        assert results.count(True) == 1
        final = await store.get(record.id)
        assert is_terminal(final.state)
        winner = [MessageState.DELIVERED, MessageState.FAILED, None, MessageState.DELIVERED][results.index(True)]
        assert final.state == winner

    async def test_racing_sends_from_pending(self, store):
        record = await store.create("+14155551234", "hello")

        results = await asyncio.gather(*[
            store.update_state(record.id, MessageState.FAILED, error_detail=f"attempt {i}")
            for i in range(5)
        ])

        assert results.count(True) == 1
        final = await store.get(record.id)
        assert final.state == MessageState.FAILED
        assert final.error_detail == f"attempt {results.index(True)}"


class TestListingAndStats:
    """Test pagination and counts."""

    async def _seed(self, store):
        ids = []
        for i in range(5):
            record = await store.create(f"+1415555123{i}", f"message {i}")
            ids.append(record.id)
        await store.update_state(ids[0], MessageState.SENT, provider_message_id="SM0")
        await store.update_state(ids[1], MessageState.SENT, provider_message_id="SM1")
        await store.update_state(ids[1], MessageState.DELIVERED)
        await store.update_state(ids[2], MessageState.FAILED, error_detail="invalid phone number format")
        return ids

    async def test_list_newest_first(self, store):
        ids = await self._seed(store)

        records, total = await store.list_records(limit=2, offset=0)

        assert total == 5
        assert [r.id for r in records] == [ids[4], ids[3]]

    async def test_same_tick_keeps_insertion_order(self, store, monkeypatch):
        frozen = datetime(2024, 1, 1, 12, 0, 0)
        monkeypatch.setattr(storage, "_utcnow", lambda: frozen)

        ids = [(await store.create(f"+1415555123{i}", "hello")).id for i in range(4)]

        records, _ = await store.list_records()
        assert [r.id for r in records] == list(reversed(ids))
        assert len({r.created_at for r in records}) == 4

    async def test_list_offset(self, store):
        ids = await self._seed(store)

        records, total = await store.list_records(limit=10, offset=3)

        assert total == 5
        assert [r.id for r in records] == [ids[1], ids[0]]

    async def test_list_filter_by_state(self, store):
        ids = await self._seed(store)

        records, total = await store.list_records(state=MessageState.PENDING)

        assert total == 2
        assert {r.id for r in records} == {ids[3], ids[4]}

    async def test_stats(self, store):
        await self._seed(store)

        stats = await store.stats()

        assert stats.total == 5
        assert stats.pending == 2
        assert stats.sent == 1
        assert stats.delivered == 1
        assert stats.failed == 1
        assert stats.success_rate == 40.0

    async def test_stats_empty(self, store):
        stats = await store.stats()
        assert stats.total == 0
        assert stats.success_rate == 0.0


class TestWebhookEvents:
    """Test the webhook audit log."""

    async def test_create_and_update(self, store):
        event_id = await store.create_webhook_event("twilio", {"MessageSid": "SM1"})
        await store.update_webhook_event(event_id, WebhookEventStatus.INVALID, "bad payload")

        events = await store.list_webhook_events()

        assert len(events) == 1
        assert events[0].id == event_id
        assert events[0].source == "twilio"
        assert events[0].payload == {"MessageSid": "SM1"}
        assert events[0].status == WebhookEventStatus.INVALID
        assert events[0].error_message == "bad payload"
