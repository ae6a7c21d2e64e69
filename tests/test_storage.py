"""
Tests for the storage backends.
"""
from datetime import datetime, timedelta, timezone

import pytest

from unified_inbox.core.database import create_db_engine, init_db
from unified_inbox.core.deadline import Deadline
from unified_inbox.core.errors import DeadlineExceededError, ReservationLostError
from unified_inbox.ingestion.normalizer import Normalizer
from unified_inbox.schemas.message import Platform
from unified_inbox.storage.base import MessageQuery, utcnow
from unified_inbox.storage.sql import SqlMessageStore

from conftest import generic_payload, telegram_update


async def _persist(store, payload, platform="telegram", grouping_key=None):
    """Reserve, resolve and append one message the way the pipeline does."""
    message = Normalizer().normalize(payload, platform)
    reservation = await store.reserve_idempotency_key(message.platform, message.platform_message_id, message.id, 30)
    assert reservation.fresh
    resolved = await store.atomic_resolve_conversation(message.platform, grouping_key or f"chat:{message.thread_ref}")
    stamped = message.model_copy(update={
        "conversation_id": resolved.conversation_id,
        "sequence_number": resolved.next_sequence_number,
    })
    await store.append_message(stamped)
    return stamped


class TestMessageStore:
    """Behavior shared by both backends."""

    @pytest.mark.asyncio
    async def test_append_commits_key_and_advances_conversation(self, store):
        """One append updates the key, the conversation and its participants."""
        message = await _persist(store, telegram_update(message_id=1, sender_id=7))

        reservation = await store.get_reservation(Platform.TELEGRAM, "1")
        assert reservation.committed
        assert reservation.message_id == message.id

        conversation = await store.get_conversation(message.conversation_id)
        assert conversation.last_sequence_number == 1
        assert conversation.participant_ids == {"7"}
        assert conversation.last_activity_at == message.occurred_at

    @pytest.mark.asyncio
    async def test_committed_key_is_never_released(self, store):
        """Release is a no-op once the message is persisted."""
        message = await _persist(store, telegram_update(message_id=1))
        assert await store.release_idempotency_key(Platform.TELEGRAM, "1", message.id) is False
        reservation = await store.reserve_idempotency_key(Platform.TELEGRAM, "1", "other", 30)
        assert not reservation.fresh
        assert reservation.committed
        assert reservation.message_id == message.id

    @pytest.mark.asyncio
    async def test_append_without_reservation_fails(self, store):
        """A message whose reservation is gone is not written."""
        message = Normalizer().normalize(telegram_update(), "telegram")
        resolved = await store.atomic_resolve_conversation(Platform.TELEGRAM, "chat:42")
        stamped = message.model_copy(update={"conversation_id": resolved.conversation_id, "sequence_number": 1})

        with pytest.raises(ReservationLostError):
            await store.append_message(stamped)
        assert (await store.get_conversation(resolved.conversation_id)).last_sequence_number == 0

    @pytest.mark.asyncio
    async def test_expired_deadline_applies_nothing(self, store):
        """An append past its deadline leaves no trace."""
        message = Normalizer().normalize(telegram_update(), "telegram")
        await store.reserve_idempotency_key(Platform.TELEGRAM, "555", message.id, 30)
        resolved = await store.atomic_resolve_conversation(Platform.TELEGRAM, "chat:42")
        stamped = message.model_copy(update={"conversation_id": resolved.conversation_id, "sequence_number": 1})

        with pytest.raises(DeadlineExceededError):
            await store.append_message(stamped, Deadline(0))

        assert (await store.get_conversation(resolved.conversation_id)).last_sequence_number == 0
        assert not (await store.get_reservation(Platform.TELEGRAM, "555")).committed
        assert await store.fetch_recent_messages(resolved.conversation_id) == []

    @pytest.mark.asyncio
    async def test_fetch_recent_after_cursor(self, store):
        """History is paged by sequence number."""
        for i in range(1, 6):
            last = await _persist(store, telegram_update(message_id=i))
        page = await store.fetch_recent_messages(last.conversation_id, 2, 2)
        assert [m.sequence_number for m in page] == [3, 4]
        assert await store.fetch_recent_messages(last.conversation_id, 5) == []

    @pytest.mark.asyncio
    async def test_list_messages_filters(self, store):
        """Filters combine and totals ignore pagination."""
        await _persist(store, generic_payload("g-1", sender_id="a", text="Invoice due", timestamp="2025-01-15T10:00:00Z"), "other")
        await _persist(store, generic_payload("g-2", sender_id="b", text="lunch?", timestamp="2025-01-15T11:00:00Z"), "other")
        await _persist(store, generic_payload("g-3", sender_id="a", text="second invoice", timestamp="2025-01-15T12:00:00Z"), "other")

        data, total = await store.list_messages(MessageQuery(sender_id="a"))
        assert total == 2
        assert [m.platform_message_id for m in data] == ["g-1", "g-3"]

        data, total = await store.list_messages(MessageQuery(q="INVOICE"))
        assert total == 2

        since = datetime(2025, 1, 15, 11, tzinfo=timezone.utc)
        data, total = await store.list_messages(MessageQuery(since=since))
        assert [m.platform_message_id for m in data] == ["g-2", "g-3"]

        data, total = await store.list_messages(MessageQuery(limit=1, offset=1))
        assert total == 3
        assert [m.platform_message_id for m in data] == ["g-2"]

    @pytest.mark.asyncio
    async def test_since_is_compared_in_utc(self, store):
        """Naive since values are UTC; offset values are converted before comparing."""
        await _persist(store, generic_payload("g-1", timestamp="2025-01-15T10:00:00Z"), "other")

        data, total = await store.list_messages(MessageQuery(since=datetime(2025, 1, 15, 9)))
        assert total == 1

        plus_five = timezone(timedelta(hours=5))
        data, total = await store.list_messages(MessageQuery(since=datetime(2025, 1, 15, 10, 30, tzinfo=plus_five)))
        assert total == 1
        data, total = await store.list_messages(MessageQuery(since=datetime(2025, 1, 15, 15, 30, tzinfo=plus_five)))
        assert total == 0

    @pytest.mark.asyncio
    async def test_offset_timestamps_are_stored_as_utc(self, store):
        """A message carrying a non-UTC offset sorts and filters by its instant."""
        message = Normalizer().normalize(generic_payload("g-9"), "other")
        local = message.model_copy(update={
            "occurred_at": datetime(2025, 1, 15, 15, 0, tzinfo=timezone(timedelta(hours=5))),
        })
        await store.reserve_idempotency_key(local.platform, local.platform_message_id, local.id, 30)
        resolved = await store.atomic_resolve_conversation(local.platform, "thread:t-1")
        await store.append_message(local.model_copy(update={
            "conversation_id": resolved.conversation_id,
            "sequence_number": resolved.next_sequence_number,
        }))

        since = datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc)
        data, total = await store.list_messages(MessageQuery(since=since))
        assert total == 0

        data, total = await store.list_messages(MessageQuery(since=datetime(2025, 1, 15, 9, 30)))
        assert total == 1
        assert data[0].occurred_at == datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_stats(self, store):
        """Stats count messages, conversations and senders."""
        await _persist(store, telegram_update(message_id=1, sender_id=1, chat_id=1))
        await _persist(store, telegram_update(message_id=2, sender_id=1, chat_id=1))
        await _persist(store, telegram_update(message_id=3, sender_id=2, chat_id=2))

        stats = await store.stats()
        assert stats.total_messages == 3
        assert stats.total_conversations == 2
        assert stats.senders_count == 2
        assert stats.platforms == [(Platform.TELEGRAM, 3, 2)]
        assert stats.top_senders[0] == (Platform.TELEGRAM, "1", 2)

    @pytest.mark.asyncio
    async def test_list_conversations_by_platform(self, store):
        """Conversations can be filtered by platform."""
        await _persist(store, telegram_update(message_id=1))
        await _persist(store, generic_payload(), "other", grouping_key="thread:t-1")

        conversations, total = await store.list_conversations(platform=Platform.OTHER)
        assert total == 1
        assert conversations[0].grouping_key == "thread:t-1"

    @pytest.mark.asyncio
    async def test_get_message(self, store):
        """Stored messages are found by id; unknown ids are None."""
        message = await _persist(store, telegram_update(message_id=12, text="lookup"))

        found = await store.get_message(message.id)
        assert found.platform_message_id == "12"
        assert found.body == "lookup"
        assert found.sequence_number == 1
        assert await store.get_message("missing") is None

    @pytest.mark.asyncio
    async def test_ping(self, store):
        assert await store.ping()


class TestSqlMessageStore:
    """SQL-specific behavior."""

    @pytest.mark.asyncio
    async def test_survives_reopen(self, tmp_path):
        """State persists across engine instances."""
        url = f"sqlite:///{tmp_path}/persist.db"
        engine = create_db_engine(url)
        init_db(engine)
        message = await _persist(SqlMessageStore(engine), telegram_update(message_id=1))
        engine.dispose()

        engine = create_db_engine(url)
        init_db(engine)
        reopened = SqlMessageStore(engine)
        reservation = await reopened.reserve_idempotency_key(Platform.TELEGRAM, "1", "new-id", 30)
        history = await reopened.fetch_recent_messages(message.conversation_id)
        engine.dispose()

        assert not reservation.fresh
        assert reservation.message_id == message.id
        assert history[0].occurred_at.tzinfo is not None
        assert history[0].occurred_at == message.occurred_at

    @pytest.mark.asyncio
    async def test_expired_reservation_is_reclaimed(self, tmp_path):
        """A stale pending row is taken over by the next reservation."""
        now = [utcnow()]
        engine = create_db_engine(f"sqlite:///{tmp_path}/reclaim.db")
        init_db(engine)
        store = SqlMessageStore(engine, now=lambda: now[0])

        await store.reserve_idempotency_key(Platform.TELEGRAM, "1", "crashed", 5)
        now[0] += timedelta(seconds=10)
        reservation = await store.reserve_idempotency_key(Platform.TELEGRAM, "1", "retry", 5)
        engine.dispose()

        assert reservation.fresh
        assert reservation.message_id == "retry"

    @pytest.mark.asyncio
    async def test_attachments_round_trip(self, sql_store):
        """Attachments survive the JSON column."""
        update = telegram_update()
        update["message"]["photo"] = [{"file_id": "big", "file_size": 2048}]
        message = await _persist(sql_store, update)
        stored = (await sql_store.fetch_recent_messages(message.conversation_id))[0]
        assert stored.attachments == message.attachments
