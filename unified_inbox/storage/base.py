"""
Storage collaborator interface.

The ingestion core never holds durable state itself. Everything it needs
from storage is one of the atomic primitives below; implementations must
make each call all-or-nothing.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from unified_inbox.core.deadline import Deadline
from unified_inbox.schemas.message import Conversation, Platform, UnifiedMessage


@dataclass(frozen=True)
class Reservation:
    """Result of reserving an idempotency key."""
    fresh: bool
    message_id: str
    committed: bool = False


@dataclass(frozen=True)
class ReservationState:
    message_id: str
    committed: bool
    expires_at: datetime


@dataclass(frozen=True)
class ResolvedConversation:
    """Conversation matched or created for a grouping key, plus the next free sequence number."""
    conversation_id: str
    next_sequence_number: int
    created: bool = False


@dataclass
class MessageQuery:
    platform: Optional[Platform] = None
    conversation_id: Optional[str] = None
    sender_id: Optional[str] = None
    since: Optional[datetime] = None
    q: Optional[str] = None
    limit: int = 50
    offset: int = 0

    def __post_init__(self):
        self.since = as_utc(self.since)


@dataclass
class MessageStats:
    total_messages: int = 0
    total_conversations: int = 0
    senders_count: int = 0
    # (platform, messages, conversations)
    platforms: List[Tuple[Platform, int, int]] = field(default_factory=list)
    # (platform, sender_id, count)
    top_senders: List[Tuple[Platform, str, int]] = field(default_factory=list)
    first_message_ts: Optional[datetime] = None
    last_message_ts: Optional[datetime] = None


class MessageStore(ABC):
    """Atomic primitives the ingestion pipeline relies on."""

    @abstractmethod
    async def reserve_idempotency_key(
        self,
        platform: Platform,
        platform_message_id: str,
        message_id: str,
        ttl_seconds: float,
        deadline: Optional[Deadline] = None,
    ) -> Reservation:
        """
        Atomically claim (platform, platform_message_id) for message_id.

        Exactly one concurrent caller gets ``fresh=True``. Others get the
        claimed message id and whether it is already committed. A pending
        reservation past its expiry is reclaimed by the next caller.
        """

    @abstractmethod
    async def get_reservation(self, platform: Platform, platform_message_id: str) -> Optional[ReservationState]:
        """Current state of an idempotency key, or None if unclaimed."""

    @abstractmethod
    async def release_idempotency_key(self, platform: Platform, platform_message_id: str, message_id: str) -> bool:
        """Drop a pending reservation held by message_id. Committed keys are never released."""

    @abstractmethod
    async def atomic_resolve_conversation(
        self,
        platform: Platform,
        grouping_key: str,
        deadline: Optional[Deadline] = None,
    ) -> ResolvedConversation:
        """
        Find or create the conversation for (platform, grouping_key).

        Raises ConversationConflictError when a concurrent creator won the
        race; the caller retries resolution.
        """

    @abstractmethod
    async def append_message(self, message: UnifiedMessage, deadline: Optional[Deadline] = None) -> None:
        """
        Durably write a stamped message.

        In one transaction: compare-and-swap the conversation's
        last_sequence_number from ``message.sequence_number - 1``, insert the
        message, record the sender as participant, advance last_activity_at
        and mark the idempotency key committed. Nothing is applied on failure.
        """

    @abstractmethod
    async def fetch_recent_messages(
        self,
        conversation_id: str,
        after_sequence_number: int = 0,
        limit: int = 50,
    ) -> List[UnifiedMessage]:
        """Messages with sequence_number > after_sequence_number, ascending."""

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[UnifiedMessage]:
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def list_conversations(
        self,
        platform: Optional[Platform] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Conversation], int]:
        ...

    @abstractmethod
    async def list_messages(self, query: MessageQuery) -> Tuple[List[UnifiedMessage], int]:
        ...

    @abstractmethod
    async def stats(self) -> MessageStats:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        """True when the store can serve requests."""

    async def close(self) -> None:
        return None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC; naive input is taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
