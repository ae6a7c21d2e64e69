"""
SQLAlchemy storage backend.

Each primitive runs as one transaction in Starlette's threadpool so the
event loop never blocks on the database. Atomicity comes from the
database: the idempotency key is a composite primary key, conversation
creation is guarded by a unique (platform, grouping_key) constraint and
sequence numbers advance with a compare-and-swap UPDATE.
"""
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from unified_inbox.core.database import check_db_connection, create_session_factory
from unified_inbox.core.deadline import Deadline
from unified_inbox.core.errors import (
    ConversationConflictError,
    ReservationLostError,
    SequenceConflictError,
    StorageUnavailableError,
)
from unified_inbox.core.logging import get_logger
from unified_inbox.models.conversation import ConversationParticipant, ConversationRecord
from unified_inbox.models.idempotency import COMMITTED, PENDING, IdempotencyKeyRecord
from unified_inbox.models.message import MessageRecord
from unified_inbox.schemas.message import Attachment, Conversation, Platform, UnifiedMessage
from unified_inbox.storage.base import (
    MessageQuery,
    MessageStats,
    MessageStore,
    Reservation,
    ReservationState,
    ResolvedConversation,
    as_utc,
    utcnow,
)

logger = get_logger(__name__)

# A released key can vanish between the failed insert and the re-read
_RESERVE_ATTEMPTS = 3


def _to_message(row: MessageRecord) -> UnifiedMessage:
    return UnifiedMessage(
        id=row.id,
        platform=Platform(row.platform),
        platform_message_id=row.platform_message_id,
        sender_id=row.sender_id,
        sender_display_name=row.sender_display_name,
        recipient_id=row.recipient_id,
        thread_ref=row.thread_ref,
        subject=row.subject,
        conversation_id=row.conversation_id,
        body=row.body or "",
        attachments=tuple(Attachment(**a) for a in (row.attachments or [])),
        occurred_at=as_utc(row.occurred_at),
        ingested_at=as_utc(row.ingested_at),
        sequence_number=row.sequence_number,
        kind=row.kind,
        edit_of_platform_message_id=row.edit_of_platform_message_id,
        references_message_id=row.references_message_id,
    )


def _to_record(message: UnifiedMessage) -> MessageRecord:
    return MessageRecord(
        id=message.id,
        platform=message.platform.value,
        platform_message_id=message.platform_message_id,
        sender_id=message.sender_id,
        sender_display_name=message.sender_display_name,
        recipient_id=message.recipient_id,
        thread_ref=message.thread_ref,
        conversation_id=message.conversation_id,
        sequence_number=message.sequence_number,
        subject=message.subject,
        body=message.body,
        attachments=[a.model_dump() for a in message.attachments],
        kind=message.kind.value,
        edit_of_platform_message_id=message.edit_of_platform_message_id,
        references_message_id=message.references_message_id,
        # SQLite drops tzinfo on bind; store every timestamp as UTC
        occurred_at=as_utc(message.occurred_at),
        ingested_at=as_utc(message.ingested_at),
    )


def _to_conversation(row: ConversationRecord, participants: Set[str]) -> Conversation:
    return Conversation(
        id=row.id,
        platform=Platform(row.platform),
        grouping_key=row.grouping_key,
        participant_ids=participants,
        last_sequence_number=row.last_sequence_number,
        last_activity_at=as_utc(row.last_activity_at),
        created_at=as_utc(row.created_at),
    )


class SqlMessageStore(MessageStore):
    """MessageStore over any SQLAlchemy-supported database."""

    def __init__(self, engine: Engine, now: Callable[[], datetime] = utcnow):
        self.engine = engine
        self._session_factory: sessionmaker = create_session_factory(engine)
        self._now = now

    async def _call(self, fn, *args):
        try:
            return await run_in_threadpool(fn, *args)
        except DBAPIError as exc:
            # Expected IntegrityErrors are translated inside fn
            logger.error(
                "Storage operation failed",
                extra={"extra_data": {"operation": fn.__name__, "error": str(exc.orig)}},
            )
            raise StorageUnavailableError(str(exc.orig)) from exc

    # Idempotency index

    async def reserve_idempotency_key(
        self,
        platform: Platform,
        platform_message_id: str,
        message_id: str,
        ttl_seconds: float,
        deadline: Optional[Deadline] = None,
    ) -> Reservation:
        return await self._call(
            self._reserve_sync, platform, platform_message_id, message_id, ttl_seconds, deadline
        )

    def _reserve_sync(
        self,
        platform: Platform,
        platform_message_id: str,
        message_id: str,
        ttl_seconds: float,
        deadline: Optional[Deadline],
    ) -> Reservation:
        for _ in range(_RESERVE_ATTEMPTS):
            if deadline is not None:
                deadline.check("reservation")
            now = self._now()
            expires_at = now + timedelta(seconds=ttl_seconds)
            try:
                with self._session_factory.begin() as session:
                    session.add(IdempotencyKeyRecord(
                        platform=platform.value,
                        platform_message_id=platform_message_id,
                        message_id=message_id,
                        state=PENDING,
                        expires_at=expires_at,
                        created_at=now,
                    ))
                    session.flush()
                return Reservation(fresh=True, message_id=message_id)
            except IntegrityError:
                pass

            with self._session_factory.begin() as session:
                # Take over a crashed writer's reservation only if it is still pending and expired
                reclaimed = session.execute(
                    update(IdempotencyKeyRecord)
                    .where(
                        IdempotencyKeyRecord.platform == platform.value,
                        IdempotencyKeyRecord.platform_message_id == platform_message_id,
                        IdempotencyKeyRecord.state == PENDING,
                        IdempotencyKeyRecord.expires_at <= now,
                    )
                    .values(message_id=message_id, expires_at=expires_at, created_at=now)
                    .execution_options(synchronize_session=False)
                )
                if reclaimed.rowcount == 1:
                    logger.warning(
                        "Reclaimed expired idempotency reservation",
                        extra={"extra_data": {"platform": platform.value, "platform_message_id": platform_message_id}},
                    )
                    return Reservation(fresh=True, message_id=message_id)

                row = session.get(IdempotencyKeyRecord, (platform.value, platform_message_id))
                if row is not None:
                    return Reservation(fresh=False, message_id=row.message_id, committed=row.state == COMMITTED)

        raise StorageUnavailableError(f"could not reserve {platform.value}:{platform_message_id}")

    async def get_reservation(self, platform: Platform, platform_message_id: str) -> Optional[ReservationState]:
        return await self._call(self._get_reservation_sync, platform, platform_message_id)

    def _get_reservation_sync(self, platform: Platform, platform_message_id: str) -> Optional[ReservationState]:
        with self._session_factory() as session:
            row = session.get(IdempotencyKeyRecord, (platform.value, platform_message_id))
            if row is None:
                return None
            return ReservationState(row.message_id, row.state == COMMITTED, as_utc(row.expires_at))

    async def release_idempotency_key(self, platform: Platform, platform_message_id: str, message_id: str) -> bool:
        return await self._call(self._release_sync, platform, platform_message_id, message_id)

    def _release_sync(self, platform: Platform, platform_message_id: str, message_id: str) -> bool:
        with self._session_factory.begin() as session:
            row = session.get(IdempotencyKeyRecord, (platform.value, platform_message_id))
            if row is None or row.state != PENDING or row.message_id != message_id:
                return False
            session.delete(row)
            return True

    # Conversations

    async def atomic_resolve_conversation(
        self,
        platform: Platform,
        grouping_key: str,
        deadline: Optional[Deadline] = None,
    ) -> ResolvedConversation:
        return await self._call(self._resolve_sync, platform, grouping_key, deadline)

    def _resolve_sync(self, platform: Platform, grouping_key: str, deadline: Optional[Deadline]) -> ResolvedConversation:
        try:
            with self._session_factory.begin() as session:
                if deadline is not None:
                    deadline.check("conversation resolution")
                row = session.execute(
                    select(ConversationRecord).where(
                        ConversationRecord.platform == platform.value,
                        ConversationRecord.grouping_key == grouping_key,
                    )
                ).scalar_one_or_none()
                if row is not None:
                    return ResolvedConversation(row.id, row.last_sequence_number + 1)

                row = ConversationRecord(
                    id=uuid.uuid4().hex,
                    platform=platform.value,
                    grouping_key=grouping_key,
                    last_sequence_number=0,
                    created_at=self._now(),
                )
                session.add(row)
                session.flush()
                return ResolvedConversation(row.id, 1, created=True)
        except IntegrityError as exc:
            raise ConversationConflictError(f"{platform.value}:{grouping_key}") from exc

    # Messages

    async def append_message(self, message: UnifiedMessage, deadline: Optional[Deadline] = None) -> None:
        if message.conversation_id is None or message.sequence_number is None:
            raise ValueError("message must be stamped with a conversation and sequence number")
        await self._call(self._append_sync, message, deadline)

    def _append_sync(self, message: UnifiedMessage, deadline: Optional[Deadline]) -> None:
        try:
            with self._session_factory.begin() as session:
                committed = session.execute(
                    update(IdempotencyKeyRecord)
                    .where(
                        IdempotencyKeyRecord.platform == message.platform.value,
                        IdempotencyKeyRecord.platform_message_id == message.platform_message_id,
                        IdempotencyKeyRecord.message_id == message.id,
                        IdempotencyKeyRecord.state == PENDING,
                    )
                    .values(state=COMMITTED)
                    .execution_options(synchronize_session=False)
                )
                if committed.rowcount != 1:
                    raise ReservationLostError(f"reservation for {message.platform_message_id} no longer held")

                last_activity = ConversationRecord.last_activity_at
                occurred_at = as_utc(message.occurred_at)
                advanced = session.execute(
                    update(ConversationRecord)
                    .where(
                        ConversationRecord.id == message.conversation_id,
                        ConversationRecord.last_sequence_number == message.sequence_number - 1,
                    )
                    .values(
                        last_sequence_number=message.sequence_number,
                        last_activity_at=case(
                            (or_(last_activity.is_(None), last_activity < occurred_at), occurred_at),
                            else_=last_activity,
                        ),
                    )
                    .execution_options(synchronize_session=False)
                )
                if advanced.rowcount != 1:
                    raise SequenceConflictError(
                        f"conversation {message.conversation_id} moved past {message.sequence_number - 1}"
                    )

                session.add(_to_record(message))
                if session.get(ConversationParticipant, (message.conversation_id, message.sender_id)) is None:
                    session.add(ConversationParticipant(
                        conversation_id=message.conversation_id,
                        participant_id=message.sender_id,
                    ))
                session.flush()

                if deadline is not None:
                    deadline.check("append")
        except IntegrityError as exc:
            raise SequenceConflictError(str(exc.orig)) from exc

    async def fetch_recent_messages(
        self,
        conversation_id: str,
        after_sequence_number: int = 0,
        limit: int = 50,
    ) -> List[UnifiedMessage]:
        return await self._call(self._fetch_recent_sync, conversation_id, after_sequence_number, limit)

    def _fetch_recent_sync(self, conversation_id: str, after_sequence_number: int, limit: int) -> List[UnifiedMessage]:
        with self._session_factory() as session:
            rows = session.execute(
                select(MessageRecord)
                .where(
                    MessageRecord.conversation_id == conversation_id,
                    MessageRecord.sequence_number > after_sequence_number,
                )
                .order_by(MessageRecord.sequence_number.asc())
                .limit(limit)
            ).scalars().all()
            return [_to_message(row) for row in rows]

    async def get_message(self, message_id: str) -> Optional[UnifiedMessage]:
        return await self._call(self._get_message_sync, message_id)

    def _get_message_sync(self, message_id: str) -> Optional[UnifiedMessage]:
        with self._session_factory() as session:
            row = session.get(MessageRecord, message_id)
            return _to_message(row) if row is not None else None

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return await self._call(self._get_conversation_sync, conversation_id)

    def _get_conversation_sync(self, conversation_id: str) -> Optional[Conversation]:
        with self._session_factory() as session:
            row = session.get(ConversationRecord, conversation_id)
            if row is None:
                return None
            return _to_conversation(row, self._participants(session, [row.id]).get(row.id, set()))

    @staticmethod
    def _participants(session, conversation_ids: List[str]) -> Dict[str, Set[str]]:
        participants: Dict[str, Set[str]] = {}
        if not conversation_ids:
            return participants
        rows = session.execute(
            select(ConversationParticipant.conversation_id, ConversationParticipant.participant_id)
            .where(ConversationParticipant.conversation_id.in_(conversation_ids))
        ).all()
        for conversation_id, participant_id in rows:
            participants.setdefault(conversation_id, set()).add(participant_id)
        return participants

    async def list_conversations(
        self,
        platform: Optional[Platform] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Conversation], int]:
        return await self._call(self._list_conversations_sync, platform, limit, offset)

    def _list_conversations_sync(self, platform: Optional[Platform], limit: int, offset: int):
        with self._session_factory() as session:
            query = select(ConversationRecord)
            count_query = select(func.count(ConversationRecord.id))
            if platform is not None:
                query = query.where(ConversationRecord.platform == platform.value)
                count_query = count_query.where(ConversationRecord.platform == platform.value)

            total = session.execute(count_query).scalar() or 0
            rows = session.execute(
                query.order_by(
                    func.coalesce(ConversationRecord.last_activity_at, ConversationRecord.created_at).desc(),
                    ConversationRecord.id.asc(),
                )
                .offset(offset)
                .limit(limit)
            ).scalars().all()
            participants = self._participants(session, [row.id for row in rows])
            return [_to_conversation(row, participants.get(row.id, set())) for row in rows], total

    async def list_messages(self, query: MessageQuery) -> Tuple[List[UnifiedMessage], int]:
        return await self._call(self._list_messages_sync, query)

    def _list_messages_sync(self, query: MessageQuery) -> Tuple[List[UnifiedMessage], int]:
        with self._session_factory() as session:
            filters = []
            if query.platform is not None:
                filters.append(MessageRecord.platform == query.platform.value)
            if query.conversation_id:
                filters.append(MessageRecord.conversation_id == query.conversation_id)
            if query.sender_id:
                filters.append(MessageRecord.sender_id == query.sender_id)
            if query.since:
                filters.append(MessageRecord.occurred_at >= query.since)
            if query.q:
                # Case-insensitive search using LIKE
                search_pattern = f"%{query.q}%"
                filters.append(or_(MessageRecord.body.ilike(search_pattern), MessageRecord.subject.ilike(search_pattern)))

            condition = and_(*filters) if filters else None
            stmt = select(MessageRecord)
            count_stmt = select(func.count(MessageRecord.id))
            if condition is not None:
                stmt = stmt.where(condition)
                count_stmt = count_stmt.where(condition)

            total = session.execute(count_stmt).scalar() or 0
            rows = session.execute(
                stmt.order_by(
                    MessageRecord.occurred_at.asc(),
                    MessageRecord.conversation_id.asc(),
                    MessageRecord.sequence_number.asc(),
                )
                .offset(query.offset)
                .limit(query.limit)
            ).scalars().all()
            return [_to_message(row) for row in rows], total

    async def stats(self) -> MessageStats:
        return await self._call(self._stats_sync)

    def _stats_sync(self) -> MessageStats:
        with self._session_factory() as session:
            total_messages = session.execute(select(func.count(MessageRecord.id))).scalar() or 0
            total_conversations = session.execute(select(func.count(ConversationRecord.id))).scalar() or 0

            distinct_senders = (
                select(MessageRecord.platform, MessageRecord.sender_id)
                .group_by(MessageRecord.platform, MessageRecord.sender_id)
                .subquery()
            )
            senders_count = session.execute(select(func.count()).select_from(distinct_senders)).scalar() or 0

            message_counts = dict(session.execute(
                select(MessageRecord.platform, func.count(MessageRecord.id)).group_by(MessageRecord.platform)
            ).all())
            conversation_counts = dict(session.execute(
                select(ConversationRecord.platform, func.count(ConversationRecord.id)).group_by(ConversationRecord.platform)
            ).all())
            platforms = sorted(set(message_counts) | set(conversation_counts))

            # Top 10 senders by message count
            top_senders = session.execute(
                select(
                    MessageRecord.platform,
                    MessageRecord.sender_id,
                    func.count(MessageRecord.id).label("count"),
                )
                .group_by(MessageRecord.platform, MessageRecord.sender_id)
                .order_by(func.count(MessageRecord.id).desc())
                .limit(10)
            ).all()

            first_message_ts = session.execute(select(func.min(MessageRecord.occurred_at))).scalar()
            last_message_ts = session.execute(select(func.max(MessageRecord.occurred_at))).scalar()

            return MessageStats(
                total_messages=total_messages,
                total_conversations=total_conversations,
                senders_count=senders_count,
                platforms=[
                    (Platform(p), message_counts.get(p, 0), conversation_counts.get(p, 0)) for p in platforms
                ],
                top_senders=[(Platform(p), sender, count) for p, sender, count in top_senders],
                first_message_ts=as_utc(first_message_ts),
                last_message_ts=as_utc(last_message_ts),
            )

    async def ping(self) -> bool:
        return await run_in_threadpool(check_db_connection, self.engine)

    async def close(self) -> None:
        self.engine.dispose()
