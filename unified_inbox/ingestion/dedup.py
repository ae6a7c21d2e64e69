"""
Redelivery detection keyed by (platform, platform_message_id).
"""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from unified_inbox.core.deadline import Deadline
from unified_inbox.core.errors import DeadlineExceededError
from unified_inbox.core.logging import get_logger
from unified_inbox.schemas.message import Platform, UnifiedMessage
from unified_inbox.storage.base import MessageStore, utcnow

logger = get_logger(__name__)


class DedupStatus(str, Enum):
    FRESH = "fresh"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class DedupDecision:
    status: DedupStatus
    message_id: str
    committed: bool = False

    @property
    def is_fresh(self) -> bool:
        return self.status is DedupStatus.FRESH


class Deduplicator:
    """Guards the idempotency index so a native message id maps to one UnifiedMessage.

    ``check_and_reserve`` is the single atomic reservation and never waits.
    ``reserve`` is what the pipeline uses: when another run holds an
    uncommitted reservation for the same key it waits for that run to
    commit, release or expire instead of acknowledging a message that may
    still fail to persist.
    """

    def __init__(self, store: MessageStore, reservation_ttl: float = 30.0, poll_interval: float = 0.05):
        self.store = store
        self.reservation_ttl = reservation_ttl
        self.poll_interval = poll_interval
        self._settled: Dict[Tuple[Platform, str], asyncio.Event] = {}

    async def check_and_reserve(
        self,
        platform: Platform,
        platform_message_id: str,
        candidate_message_id: str,
        deadline: Optional[Deadline] = None,
    ) -> DedupDecision:
        reservation = await self.store.reserve_idempotency_key(
            platform, platform_message_id, candidate_message_id, self.reservation_ttl, deadline
        )
        if reservation.fresh:
            return DedupDecision(DedupStatus.FRESH, reservation.message_id)
        return DedupDecision(DedupStatus.DUPLICATE, reservation.message_id, reservation.committed)

    async def reserve(self, message: UnifiedMessage, deadline: Deadline) -> DedupDecision:
        """Fresh, or a Duplicate whose original is committed."""
        platform, native_id = message.idempotency_key
        while True:
            decision = await self.check_and_reserve(platform, native_id, message.id, deadline)
            if decision.is_fresh:
                # Removed again by settle() once this run commits or releases
                self._settled.setdefault((platform, native_id), asyncio.Event())
                return decision
            if decision.committed:
                return decision

            logger.debug(
                "Waiting for in-flight write of duplicate",
                extra={"extra_data": {
                    "platform": platform.value,
                    "platform_message_id": native_id,
                    "existing_message_id": decision.message_id,
                }},
            )
            settled = await self._wait_for_settlement(platform, native_id, decision.message_id, deadline)
            if settled is not None:
                return settled
            # The holder released or its reservation expired; race for the key again

    async def _wait_for_settlement(
        self,
        platform: Platform,
        native_id: str,
        holder_id: str,
        deadline: Deadline,
    ) -> Optional[DedupDecision]:
        event = self._settled.get((platform, native_id))
        while True:
            state = await self.store.get_reservation(platform, native_id)
            if state is None or state.message_id != holder_id:
                return None
            if state.committed:
                return DedupDecision(DedupStatus.DUPLICATE, state.message_id, committed=True)
            if state.expires_at <= utcnow():
                return None

            remaining = deadline.remaining()
            if remaining <= 0:
                raise DeadlineExceededError(f"timed out waiting for in-flight write of {holder_id}")
            timeout = min(self.poll_interval, remaining)
            if event is not None:
                # Same-process holder signals completion; the store stays authoritative
                try:
                    await asyncio.wait_for(event.wait(), timeout)
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(timeout)

    def settle(self, message: UnifiedMessage) -> None:
        """Wake local waiters once the reservation was committed or released."""
        event = self._settled.pop(message.idempotency_key, None)
        if event is not None:
            event.set()

    async def release(self, message: UnifiedMessage) -> None:
        """Give up a reservation after a failed run so redelivery is not blocked until expiry."""
        platform, native_id = message.idempotency_key
        try:
            released = await self.store.release_idempotency_key(platform, native_id, message.id)
        except Exception:
            logger.exception(
                "Failed to release idempotency reservation; it will expire",
                extra={"extra_data": {"platform": platform.value, "platform_message_id": native_id}},
            )
            released = False
        if released:
            logger.info(
                "Released idempotency reservation",
                extra={"extra_data": {"platform": platform.value, "platform_message_id": native_id}},
            )
        self.settle(message)
