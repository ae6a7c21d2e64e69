"""
Ingestion pipeline: normalize, deduplicate, resolve, persist, fan out.

Each platform gets its own pipeline, queue and workers so a platform
whose payloads are slow or failing cannot stall the others.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from unified_inbox.core.config import Settings
from unified_inbox.core.deadline import Deadline
from unified_inbox.core.errors import (
    ConversationConflictError,
    NormalizationError,
    RetryableError,
    UnsupportedPlatformError,
)
from unified_inbox.core.logging import get_logger
from unified_inbox.ingestion.adapters import coerce_platform
from unified_inbox.ingestion.dedup import Deduplicator
from unified_inbox.ingestion.fanout import SubscriberHub
from unified_inbox.ingestion.normalizer import Normalizer
from unified_inbox.ingestion.resolver import ConversationResolver
from unified_inbox.schemas.message import IngestionResult, MessageKind, Platform, UnifiedMessage
from unified_inbox.storage.base import MessageStore

logger = get_logger(__name__)

ResultListener = Callable[[Platform, IngestionResult], None]


class IngestionPipeline:
    """Runs one inbound event through every stage for a single platform.

    Received -> Normalized -> DedupChecked -> Duplicate (terminal)
                                           -> ConversationResolved -> Persisted -> FannedOut (terminal)

    Malformed payloads are rejected, storage trouble is reported as
    retryable without retrying here, and fan-out problems never change
    the result of a persisted message.
    """

    def __init__(
        self,
        platform: Platform,
        normalizer: Normalizer,
        deduplicator: Deduplicator,
        resolver: ConversationResolver,
        store: MessageStore,
        fanout: Optional[SubscriberHub] = None,
    ):
        self.platform = platform
        self.normalizer = normalizer
        self.deduplicator = deduplicator
        self.resolver = resolver
        self.store = store
        self.fanout = fanout

    async def run(self, raw_payload: Any, deadline: Deadline) -> IngestionResult:
        try:
            message = self.normalizer.normalize(raw_payload, self.platform)
        except NormalizationError as exc:
            logger.warning(
                "Rejected malformed payload",
                extra={"extra_data": {"platform": self.platform.value, "kind": exc.kind, "reason": str(exc)}},
            )
            return IngestionResult.rejected(str(exc))

        log_context = {
            "platform": self.platform.value,
            "platform_message_id": message.platform_message_id,
            "message_id": message.id,
        }

        try:
            decision = await self.deduplicator.reserve(message, deadline)
        except RetryableError as exc:
            logger.warning("Idempotency check failed", extra={"extra_data": {**log_context, "reason": str(exc)}})
            return IngestionResult.retryable(str(exc))

        if not decision.is_fresh:
            logger.info(
                "Duplicate message received",
                extra={"extra_data": {**log_context, "existing_message_id": decision.message_id}},
            )
            return IngestionResult.duplicate(decision.message_id)

        try:
            message = await self._link_edit(message)
            async with self.resolver.sequencing(message, deadline) as slot:
                message = slot.stamp(message)
                await self.store.append_message(message, deadline)
        except (RetryableError, ConversationConflictError) as exc:
            logger.warning(
                "Message not persisted",
                extra={"extra_data": {**log_context, "error": type(exc).__name__, "reason": str(exc)}},
            )
            await self.deduplicator.release(message)
            return IngestionResult.retryable(str(exc))
        except Exception:
            await self.deduplicator.release(message)
            raise

        self.deduplicator.settle(message)
        logger.info(
            "Message ingested successfully",
            extra={"extra_data": {
                **log_context,
                "conversation_id": message.conversation_id,
                "sequence_number": message.sequence_number,
            }},
        )

        self._fan_out(message)
        return IngestionResult.accepted(message)

    async def _link_edit(self, message: UnifiedMessage) -> UnifiedMessage:
        if message.kind is not MessageKind.EDIT or not message.edit_of_platform_message_id:
            return message
        original = await self.store.get_reservation(message.platform, message.edit_of_platform_message_id)
        if original is None or not original.committed:
            return message
        return message.model_copy(update={"references_message_id": original.message_id})

    def _fan_out(self, message: UnifiedMessage) -> None:
        if self.fanout is None:
            return
        try:
            report = self.fanout.publish(message)
        except Exception:
            logger.exception(
                "Fan-out failed; subscribers will catch up from history",
                extra={"extra_data": {"message_id": message.id, "conversation_id": message.conversation_id}},
            )
            return
        logger.debug(
            "Message fanned out",
            extra={"extra_data": {"message_id": message.id, **report.model_dump()}},
        )


@dataclass
class _Job:
    payload: Any
    deadline: Deadline
    future: asyncio.Future


class PlatformIngestor:
    """Bounded queue plus worker tasks in front of one platform's pipeline."""

    def __init__(self, pipeline: IngestionPipeline, queue_size: int = 1000, workers: int = 4):
        self.pipeline = pipeline
        self.platform = pipeline.platform
        self.queue_size = queue_size
        self.worker_count = workers
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def backlog(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._workers = [
            asyncio.create_task(self._work(), name=f"ingest-{self.platform.value}-{i}")
            for i in range(self.worker_count)
        ]

    async def stop(self) -> None:
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

        # Anything still queued was never attempted
        while self._queue is not None and not self._queue.empty():
            job = self._queue.get_nowait()
            if not job.future.done():
                job.future.set_result(IngestionResult.retryable("ingestion service stopping"))

    async def submit(self, payload: Any, deadline: Deadline) -> IngestionResult:
        if not self.running:
            return IngestionResult.retryable(f"{self.platform.value} ingestion is not running")
        future = asyncio.get_running_loop().create_future()
        try:
            self._queue.put_nowait(_Job(payload, deadline, future))
        except asyncio.QueueFull:
            logger.warning(
                "Platform queue saturated",
                extra={"extra_data": {"platform": self.platform.value, "queue_size": self.queue_size}},
            )
            return IngestionResult.retryable(f"{self.platform.value} ingestion queue is full")
        return await future

    async def _work(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                if job.future.cancelled():
                    continue
                if job.deadline.expired:
                    result = IngestionResult.retryable("deadline exceeded while queued")
                else:
                    result = await self.pipeline.run(job.payload, job.deadline)
            except asyncio.CancelledError:
                if not job.future.done():
                    job.future.set_result(IngestionResult.retryable("ingestion service stopping"))
                raise
            except Exception as exc:
                logger.exception(
                    "Unexpected pipeline failure",
                    extra={"extra_data": {"platform": self.platform.value}},
                )
                result = IngestionResult.retryable(f"internal error: {type(exc).__name__}")
            finally:
                self._queue.task_done()
            if not job.future.done():
                job.future.set_result(result)


class IngestionService:
    """Entry point for the webhook layer: ``ingest(platform, raw_payload)``."""

    def __init__(
        self,
        store: MessageStore,
        fanout: Optional[SubscriberHub] = None,
        normalizer: Optional[Normalizer] = None,
        deadline_seconds: float = 10.0,
        reservation_ttl: float = 30.0,
        poll_interval: float = 0.05,
        queue_size: int = 1000,
        workers: int = 4,
    ):
        self.store = store
        self.fanout = fanout
        self.normalizer = normalizer or Normalizer()
        self.deadline_seconds = deadline_seconds
        self.deduplicator = Deduplicator(store, reservation_ttl, poll_interval)
        self.resolver = ConversationResolver(store, self.normalizer.adapters)
        self._listeners: List[ResultListener] = []
        self.ingestors: Dict[Platform, PlatformIngestor] = {
            platform: PlatformIngestor(
                IngestionPipeline(platform, self.normalizer, self.deduplicator, self.resolver, store, fanout),
                queue_size=queue_size,
                workers=workers,
            )
            for platform in self.normalizer.adapters
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: MessageStore,
        fanout: Optional[SubscriberHub] = None,
    ) -> "IngestionService":
        return cls(
            store,
            fanout,
            deadline_seconds=settings.ingestion_deadline_seconds,
            reservation_ttl=settings.reservation_ttl_seconds,
            poll_interval=settings.dedup_poll_interval_seconds,
            queue_size=settings.platform_queue_size,
            workers=settings.platform_workers,
        )

    def add_listener(self, listener: ResultListener) -> None:
        """Observe every result (metrics, downstream consumers)."""
        self._listeners.append(listener)

    async def start(self) -> None:
        for ingestor in self.ingestors.values():
            ingestor.start()
        logger.info(
            "Ingestion service started",
            extra={"extra_data": {"platforms": [p.value for p in self.ingestors]}},
        )

    async def stop(self) -> None:
        await asyncio.gather(*(ingestor.stop() for ingestor in self.ingestors.values()))
        logger.info("Ingestion service stopped")

    def split(self, platform: Any, envelope: Any) -> List[Dict[str, Any]]:
        return self.normalizer.split(envelope, platform)

    async def ingest(self, platform: Any, raw_payload: Any) -> IngestionResult:
        deadline = Deadline(self.deadline_seconds)
        try:
            platform = coerce_platform(platform)
            ingestor = self.ingestors[platform]
        except (UnsupportedPlatformError, KeyError):
            result = IngestionResult.rejected(f"platform '{platform}' is not supported")
            logger.warning("Rejected payload for unsupported platform", extra={"extra_data": {"platform": str(platform)}})
            return result

        result = await ingestor.submit(raw_payload, deadline)
        for listener in self._listeners:
            listener(platform, result)
        return result
