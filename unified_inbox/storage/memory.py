"""
In-process storage backend.

All state lives in dictionaries guarded by a single asyncio.Lock, so each
primitive is atomic with respect to other coroutines on the same event
loop. Nothing survives a restart; use the SQL backend for that.
"""
import asyncio
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from unified_inbox.core.deadline import Deadline
from unified_inbox.core.errors import ReservationLostError, SequenceConflictError, StorageUnavailableError
from unified_inbox.schemas.message import Conversation, Platform, UnifiedMessage
from unified_inbox.storage.base import (
    MessageQuery,
    MessageStats,
    MessageStore,
    Reservation,
    ReservationState,
    ResolvedConversation,
    utcnow,
)


class _KeyEntry:
    __slots__ = ("message_id", "committed", "expires_at")

    def __init__(self, message_id: str, expires_at: datetime):
        self.message_id = message_id
        self.committed = False
        self.expires_at = expires_at


class InMemoryMessageStore(MessageStore):
    """Dictionary-backed MessageStore."""

    def __init__(self, now: Callable[[], datetime] = utcnow):
        self._now = now
        self._lock = asyncio.Lock()
        self._keys: Dict[Tuple[Platform, str], _KeyEntry] = {}
        self._conversations: Dict[str, Conversation] = {}
        self._by_grouping_key: Dict[Tuple[Platform, str], str] = {}
        self._messages: Dict[str, List[UnifiedMessage]] = {}
        self._by_id: Dict[str, UnifiedMessage] = {}

    async def reserve_idempotency_key(
        self,
        platform: Platform,
        platform_message_id: str,
        message_id: str,
        ttl_seconds: float,
        deadline: Optional[Deadline] = None,
    ) -> Reservation:
        async with self._lock:
            if deadline is not None:
                deadline.check("reservation")
            key = (platform, platform_message_id)
            now = self._now()
            entry = self._keys.get(key)
            if entry is None or (not entry.committed and entry.expires_at <= now):
                self._keys[key] = _KeyEntry(message_id, now + timedelta(seconds=ttl_seconds))
                return Reservation(fresh=True, message_id=message_id)
            return Reservation(fresh=False, message_id=entry.message_id, committed=entry.committed)

    async def get_reservation(self, platform: Platform, platform_message_id: str) -> Optional[ReservationState]:
        async with self._lock:
            entry = self._keys.get((platform, platform_message_id))
            if entry is None:
                return None
            return ReservationState(entry.message_id, entry.committed, entry.expires_at)

    async def release_idempotency_key(self, platform: Platform, platform_message_id: str, message_id: str) -> bool:
        async with self._lock:
            key = (platform, platform_message_id)
            entry = self._keys.get(key)
            if entry is None or entry.committed or entry.message_id != message_id:
                return False
            del self._keys[key]
            return True

    async def atomic_resolve_conversation(
        self,
        platform: Platform,
        grouping_key: str,
        deadline: Optional[Deadline] = None,
    ) -> ResolvedConversation:
        async with self._lock:
            if deadline is not None:
                deadline.check("conversation resolution")
            conversation_id = self._by_grouping_key.get((platform, grouping_key))
            if conversation_id is not None:
                conversation = self._conversations[conversation_id]
                return ResolvedConversation(conversation_id, conversation.last_sequence_number + 1)

            conversation = Conversation(
                id=uuid.uuid4().hex,
                platform=platform,
                grouping_key=grouping_key,
                created_at=self._now(),
            )
            self._conversations[conversation.id] = conversation
            self._by_grouping_key[(platform, grouping_key)] = conversation.id
            self._messages[conversation.id] = []
            return ResolvedConversation(conversation.id, 1, created=True)

    async def append_message(self, message: UnifiedMessage, deadline: Optional[Deadline] = None) -> None:
        if message.conversation_id is None or message.sequence_number is None:
            raise ValueError("message must be stamped with a conversation and sequence number")

        async with self._lock:
            conversation = self._conversations.get(message.conversation_id)
            if conversation is None:
                raise StorageUnavailableError(f"unknown conversation {message.conversation_id}")
            if conversation.last_sequence_number != message.sequence_number - 1:
                raise SequenceConflictError(
                    f"expected last_sequence_number {message.sequence_number - 1}, "
                    f"found {conversation.last_sequence_number}"
                )
            entry = self._keys.get(message.idempotency_key)
            if entry is None or entry.committed or entry.message_id != message.id:
                raise ReservationLostError(f"reservation for {message.platform_message_id} no longer held")
            if deadline is not None:
                deadline.check("append")

            # Validation done; apply everything
            entry.committed = True
            conversation.last_sequence_number = message.sequence_number
            conversation.participant_ids.add(message.sender_id)
            if conversation.last_activity_at is None or message.occurred_at > conversation.last_activity_at:
                conversation.last_activity_at = message.occurred_at
            self._messages[conversation.id].append(message)
            self._by_id[message.id] = message

    async def fetch_recent_messages(
        self,
        conversation_id: str,
        after_sequence_number: int = 0,
        limit: int = 50,
    ) -> List[UnifiedMessage]:
        async with self._lock:
            messages = self._messages.get(conversation_id, [])
            # Appends are in sequence order; index directly past the cursor
            return list(messages[max(after_sequence_number, 0):max(after_sequence_number, 0) + limit])

    async def get_message(self, message_id: str) -> Optional[UnifiedMessage]:
        async with self._lock:
            return self._by_id.get(message_id)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            return conversation.model_copy(deep=True) if conversation else None

    async def list_conversations(
        self,
        platform: Optional[Platform] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Conversation], int]:
        async with self._lock:
            conversations = [
                c for c in self._conversations.values()
                if platform is None or c.platform == platform
            ]
            conversations.sort(
                key=lambda c: (c.last_activity_at or c.created_at).timestamp(),
                reverse=True,
            )
            page = conversations[offset:offset + limit]
            return [c.model_copy(deep=True) for c in page], len(conversations)

    async def list_messages(self, query: MessageQuery) -> Tuple[List[UnifiedMessage], int]:
        async with self._lock:
            messages = [m for batch in self._messages.values() for m in batch]

        if query.platform is not None:
            messages = [m for m in messages if m.platform == query.platform]
        if query.conversation_id:
            messages = [m for m in messages if m.conversation_id == query.conversation_id]
        if query.sender_id:
            messages = [m for m in messages if m.sender_id == query.sender_id]
        if query.since:
            messages = [m for m in messages if m.occurred_at >= query.since]
        if query.q:
            needle = query.q.lower()
            messages = [
                m for m in messages
                if needle in m.body.lower() or needle in (m.subject or "").lower()
            ]

        messages.sort(key=lambda m: (m.occurred_at, m.conversation_id, m.sequence_number))
        return messages[query.offset:query.offset + query.limit], len(messages)

    async def stats(self) -> MessageStats:
        async with self._lock:
            messages = [m for batch in self._messages.values() for m in batch]
            conversations = list(self._conversations.values())

        senders = Counter((m.platform, m.sender_id) for m in messages)
        per_platform_messages = Counter(m.platform for m in messages)
        per_platform_conversations = Counter(c.platform for c in conversations)
        platforms = sorted(set(per_platform_messages) | set(per_platform_conversations), key=lambda p: p.value)

        return MessageStats(
            total_messages=len(messages),
            total_conversations=len(conversations),
            senders_count=len(senders),
            platforms=[(p, per_platform_messages[p], per_platform_conversations[p]) for p in platforms],
            top_senders=[(p, s, n) for (p, s), n in senders.most_common(10)],
            first_message_ts=min((m.occurred_at for m in messages), default=None),
            last_message_ts=max((m.occurred_at for m in messages), default=None),
        )

    async def ping(self) -> bool:
        return True
