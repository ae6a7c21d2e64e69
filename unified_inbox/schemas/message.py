"""
Pydantic schemas for the canonical message model and API responses.
"""
from datetime import datetime
from enum import Enum
from typing import Optional, List, Tuple, Set

from pydantic import BaseModel, Field, field_validator


class Platform(str, Enum):
    """Messaging platforms the inbox ingests from."""
    TELEGRAM = "telegram"
    GMAIL = "gmail"
    WHATSAPP = "whatsapp"
    INSTAGRAM = "instagram"
    TWITTER = "twitter"
    OTHER = "other"


class MessageKind(str, Enum):
    """Edits are new immutable events referencing the original."""
    MESSAGE = "message"
    EDIT = "edit"


class Attachment(BaseModel):
    """Attachment reference; the binary is resolved elsewhere via locator_token."""
    type: str = Field(..., min_length=1)
    locator_token: str = Field(..., min_length=1)
    size_bytes: Optional[int] = Field(default=None, ge=0)

    model_config = {"frozen": True}


class UnifiedMessage(BaseModel):
    """Canonical, platform-agnostic representation of one message."""

    id: str = Field(..., min_length=1)
    platform: Platform
    platform_message_id: str = Field(..., min_length=1, max_length=255)
    sender_id: str = Field(..., min_length=1, max_length=255)
    sender_display_name: Optional[str] = None
    recipient_id: Optional[str] = None
    thread_ref: Optional[str] = None
    subject: Optional[str] = None
    conversation_id: Optional[str] = None
    body: str = ""
    attachments: Tuple[Attachment, ...] = ()
    occurred_at: datetime
    ingested_at: datetime
    sequence_number: Optional[int] = Field(default=None, ge=1)
    kind: MessageKind = MessageKind.MESSAGE
    edit_of_platform_message_id: Optional[str] = None
    references_message_id: Optional[str] = None

    model_config = {"frozen": True}

    @field_validator("occurred_at", "ingested_at")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        """Timestamps must be timezone-aware."""
        if v.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")
        return v

    @property
    def idempotency_key(self) -> Tuple[Platform, str]:
        return self.platform, self.platform_message_id

    def content_fields(self) -> dict:
        """All fields except the ones assigned per ingestion attempt."""
        return self.model_dump(exclude={"id", "ingested_at"})


class Conversation(BaseModel):
    """An ordered, platform-scoped thread of messages."""
    id: str
    platform: Platform
    grouping_key: str
    participant_ids: Set[str] = Field(default_factory=set)
    last_sequence_number: int = 0
    last_activity_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class IngestionStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    RETRYABLE_FAILURE = "retryable_failure"


class IngestionResult(BaseModel):
    """Outcome of one ingest call, used by the webhook layer to pick a response."""
    status: IngestionStatus
    message_id: Optional[str] = None
    conversation_id: Optional[str] = None
    sequence_number: Optional[int] = None
    reason: Optional[str] = None

    @classmethod
    def accepted(cls, message: UnifiedMessage) -> "IngestionResult":
        return cls(
            status=IngestionStatus.ACCEPTED,
            message_id=message.id,
            conversation_id=message.conversation_id,
            sequence_number=message.sequence_number,
        )

    @classmethod
    def duplicate(cls, message_id: str) -> "IngestionResult":
        return cls(status=IngestionStatus.DUPLICATE, message_id=message_id)

    @classmethod
    def rejected(cls, reason: str) -> "IngestionResult":
        return cls(status=IngestionStatus.REJECTED, reason=reason)

    @classmethod
    def retryable(cls, reason: str) -> "IngestionResult":
        return cls(status=IngestionStatus.RETRYABLE_FAILURE, reason=reason)


class DeliveryReport(BaseModel):
    """Fan-out counters; observability only."""
    attempted: int = 0
    delivered: int = 0
    dropped: int = 0


class WebhookIngestResponse(BaseModel):
    """Response schema for POST /webhooks/{platform}."""
    status: str = Field(default="ok")
    results: List[IngestionResult] = Field(default_factory=list)


class MessagesListResponse(BaseModel):
    """Response schema for GET /messages."""
    data: List[UnifiedMessage]
    total: int
    limit: int
    offset: int


class ConversationsListResponse(BaseModel):
    """Response schema for GET /conversations."""
    data: List[Conversation]
    total: int
    limit: int
    offset: int


class HistoryResponse(BaseModel):
    """Response schema for GET /conversations/{id}/messages."""
    conversation_id: str
    after_sequence_number: int
    last_sequence_number: int
    data: List[UnifiedMessage]


class SenderCount(BaseModel):
    """Schema for sender message count."""
    platform: Platform
    sender_id: str
    count: int


class PlatformCount(BaseModel):
    platform: Platform
    messages: int
    conversations: int


class StatsResponse(BaseModel):
    """Response schema for GET /stats."""
    total_messages: int
    total_conversations: int
    senders_count: int
    platforms: List[PlatformCount]
    messages_per_sender: List[SenderCount]
    first_message_ts: Optional[datetime] = None
    last_message_ts: Optional[datetime] = None


class HealthResponse(BaseModel):
    """Response schema for health endpoints."""
    status: str
    checks: Optional[dict] = None


class ErrorResponse(BaseModel):
    """Standard error response schema."""
    detail: str
