"""
Conversation resolution and per-conversation sequencing.
"""
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Mapping, Optional, Tuple

from unified_inbox.core.deadline import Deadline
from unified_inbox.core.errors import ConversationConflictError, DeadlineExceededError
from unified_inbox.core.logging import get_logger
from unified_inbox.ingestion.adapters import PlatformAdapter, default_adapters
from unified_inbox.schemas.message import Platform, UnifiedMessage
from unified_inbox.storage.base import MessageStore

logger = get_logger(__name__)

RESOLVE_ATTEMPTS = 3


@dataclass(frozen=True)
class SequenceSlot:
    conversation_id: str
    sequence_number: int
    grouping_key: str

    def stamp(self, message: UnifiedMessage) -> UnifiedMessage:
        return message.model_copy(update={
            "conversation_id": self.conversation_id,
            "sequence_number": self.sequence_number,
        })


class _KeyedLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class ConversationResolver:
    """Maps messages onto conversations and hands out gapless sequence numbers.

    Messages for the same (platform, grouping key) are serialized on one
    lock. The lock is held from resolution until the caller's append
    finishes, so the number handed out is always ``last_sequence_number + 1``
    at the moment it is written. The store's compare-and-swap on append
    makes the increment and the message write a single unit.
    """

    def __init__(self, store: MessageStore, adapters: Optional[Mapping[Platform, PlatformAdapter]] = None):
        self.store = store
        self.adapters = dict(adapters or default_adapters())
        self._locks: Dict[Tuple[Platform, str], _KeyedLock] = {}

    def grouping_key(self, message: UnifiedMessage) -> str:
        return self.adapters[message.platform].resolve_grouping_key(message)

    async def resolve(self, message: UnifiedMessage, deadline: Optional[Deadline] = None) -> Tuple[str, int]:
        """(conversation_id, next sequence number) for the message's conversation."""
        grouping_key = self.grouping_key(message)
        for attempt in range(1, RESOLVE_ATTEMPTS + 1):
            try:
                resolved = await self.store.atomic_resolve_conversation(message.platform, grouping_key, deadline)
            except ConversationConflictError:
                logger.info(
                    "Conversation creation raced, retrying resolution",
                    extra={"extra_data": {
                        "platform": message.platform.value,
                        "grouping_key": grouping_key,
                        "attempt": attempt,
                    }},
                )
                continue
            if resolved.created:
                logger.info(
                    "Conversation created",
                    extra={"extra_data": {
                        "conversation_id": resolved.conversation_id,
                        "platform": message.platform.value,
                    }},
                )
            return resolved.conversation_id, resolved.next_sequence_number
        raise ConversationConflictError(f"could not resolve conversation for {grouping_key}")

    @asynccontextmanager
    async def sequencing(self, message: UnifiedMessage, deadline: Deadline) -> AsyncIterator[SequenceSlot]:
        """Hold the conversation's serialization point while the caller persists."""
        grouping_key = self.grouping_key(message)
        key = (message.platform, grouping_key)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyedLock()
        entry.users += 1
        try:
            try:
                await asyncio.wait_for(entry.lock.acquire(), deadline.remaining())
            except asyncio.TimeoutError:
                raise DeadlineExceededError(f"timed out waiting for conversation {grouping_key}")
            try:
                conversation_id, sequence_number = await self.resolve(message, deadline)
                yield SequenceSlot(conversation_id, sequence_number, grouping_key)
            finally:
                entry.lock.release()
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(key, None)
