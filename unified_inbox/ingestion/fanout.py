"""
Real-time delivery of ingested messages to live subscriber sessions.
"""
import asyncio
import itertools
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Optional, Set, Union

from unified_inbox.core.logging import get_logger
from unified_inbox.schemas.message import DeliveryReport, Platform, UnifiedMessage

logger = get_logger(__name__)


@dataclass
class GapMarker:
    """Tells a subscriber that buffered messages were dropped.

    ``missed`` maps conversation id to the sequence number the subscriber
    should re-fetch after (``fetch_recent_messages(conversation_id, n)``).
    """
    missed: Dict[str, int] = field(default_factory=dict)
    dropped: int = 0

    def record(self, message: UnifiedMessage) -> None:
        after = (message.sequence_number or 1) - 1
        current = self.missed.get(message.conversation_id)
        self.missed[message.conversation_id] = after if current is None else min(current, after)
        self.dropped += 1

    def merge(self, other: "GapMarker") -> None:
        for conversation_id, after in other.missed.items():
            current = self.missed.get(conversation_id)
            self.missed[conversation_id] = after if current is None else min(current, after)
        self.dropped += other.dropped

    def as_payload(self) -> Dict[str, Any]:
        return {
            "type": "gap",
            "dropped": self.dropped,
            "conversations": [
                {"conversation_id": cid, "after_sequence_number": after}
                for cid, after in sorted(self.missed.items())
            ],
        }


QueueItem = Union[UnifiedMessage, GapMarker]


def item_payload(item: QueueItem) -> Dict[str, Any]:
    if isinstance(item, GapMarker):
        return item.as_payload()
    return {"type": "message", "message": item.model_dump(mode="json")}


class SubscriptionClosed(Exception):
    """Raised by receive() once the subscription is closed and drained."""


class Subscription:
    """One dashboard session's bounded outbound queue.

    Messages are non-critical: when the queue is full the oldest buffered
    message is evicted and the incoming message is replaced by a gap marker
    covering both. Gap markers are critical and never evicted; a new gap
    coalesces into a gap already at the tail.
    """

    _ids = itertools.count(1)

    def __init__(
        self,
        maxsize: int,
        conversation_ids: Optional[Iterable[str]] = None,
        platforms: Optional[Iterable[Platform]] = None,
    ):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.id = next(self._ids)
        self.maxsize = maxsize
        self.conversation_ids: Set[str] = set(conversation_ids or ())
        self.platforms: Set[Platform] = set(platforms or ())
        self.closed = False
        self._items: Deque[QueueItem] = deque()
        self._ready = asyncio.Event()

    def matches(self, message: UnifiedMessage) -> bool:
        if not self.conversation_ids and not self.platforms:
            return True
        return message.conversation_id in self.conversation_ids or message.platform in self.platforms

    def __len__(self) -> int:
        return len(self._items)

    def offer(self, message: UnifiedMessage) -> int:
        """Enqueue without blocking. Returns the number of messages dropped."""
        if self.closed:
            return 0
        if len(self._items) < self.maxsize:
            self._items.append(message)
            self._ready.set()
            return 0

        gap = GapMarker()
        gap.record(message)
        for index, item in enumerate(self._items):
            if not isinstance(item, GapMarker):
                del self._items[index]
                gap.record(item)
                break

        tail = self._items[-1] if self._items else None
        if isinstance(tail, GapMarker):
            tail.merge(gap)
        else:
            self._items.append(gap)
        self._ready.set()
        return gap.dropped

    async def receive(self) -> QueueItem:
        """Wait for and remove the next item."""
        while not self._items:
            if self.closed:
                raise SubscriptionClosed(f"subscription {self.id} closed")
            self._ready.clear()
            await self._ready.wait()
        return self._items.popleft()

    def requeue(self, item: QueueItem) -> None:
        """Put an item back at the head after a failed send.

        The item was already in flight, so it may leave the queue one
        over ``maxsize`` until the next receive.
        """
        if self.closed:
            return
        self._items.appendleft(item)
        self._ready.set()

    def drain(self) -> List[QueueItem]:
        """Remove and return everything currently buffered."""
        items = list(self._items)
        self._items.clear()
        return items

    def close(self) -> None:
        self.closed = True
        self._ready.set()


class SubscriberHub:
    """Routes published messages to matching subscriptions."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscriptions: Dict[int, Subscription] = {}
        self.totals = DeliveryReport()

    def subscribe(
        self,
        conversation_ids: Optional[Iterable[str]] = None,
        platforms: Optional[Iterable[Platform]] = None,
    ) -> Subscription:
        subscription = Subscription(self.queue_size, conversation_ids, platforms)
        self._subscriptions[subscription.id] = subscription
        logger.info(
            "Subscriber connected",
            extra={"extra_data": {
                "subscription_id": subscription.id,
                "conversation_ids": sorted(subscription.conversation_ids),
                "platforms": sorted(p.value for p in subscription.platforms),
            }},
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        if self._subscriptions.pop(subscription.id, None) is not None:
            logger.info("Subscriber disconnected", extra={"extra_data": {"subscription_id": subscription.id}})

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, message: UnifiedMessage) -> DeliveryReport:
        """Enqueue to every matching subscriber; never blocks on slow consumers."""
        report = DeliveryReport()
        for subscription in list(self._subscriptions.values()):
            if not subscription.matches(message):
                continue
            report.attempted += 1
            dropped = subscription.offer(message)
            report.dropped += dropped
            if dropped:
                logger.warning(
                    "Subscriber queue full, delivered gap marker",
                    extra={"extra_data": {"subscription_id": subscription.id, "dropped": dropped}},
                )
            else:
                report.delivered += 1

        self.totals.attempted += report.attempted
        self.totals.delivered += report.delivered
        self.totals.dropped += report.dropped
        return report

    def close(self) -> None:
        for subscription in list(self._subscriptions.values()):
            self.unsubscribe(subscription)
