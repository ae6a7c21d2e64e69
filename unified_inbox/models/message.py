"""
Message database model.
"""
from sqlalchemy import Column, String, DateTime, Text, Integer, JSON, ForeignKey, Index, UniqueConstraint

from unified_inbox.core.database import Base


class MessageRecord(Base):
    """Append-only row for one ingested UnifiedMessage."""

    __tablename__ = "messages"

    # Assigned by the normalizer, never by the source platform
    id = Column(String(64), primary_key=True, nullable=False)

    platform = Column(String(32), nullable=False, index=True)
    platform_message_id = Column(String(255), nullable=False)

    sender_id = Column(String(255), nullable=False, index=True)
    sender_display_name = Column(String(255), nullable=True)
    recipient_id = Column(String(255), nullable=True)
    thread_ref = Column(String(255), nullable=True)

    conversation_id = Column(String(64), ForeignKey("conversations.id"), nullable=False)
    sequence_number = Column(Integer, nullable=False)

    subject = Column(Text, nullable=True)
    body = Column(Text, nullable=False, default="")
    attachments = Column(JSON, nullable=False, default=list)

    kind = Column(String(16), nullable=False, default="message")
    edit_of_platform_message_id = Column(String(255), nullable=True)
    references_message_id = Column(String(64), nullable=True)

    occurred_at = Column(DateTime(timezone=True), nullable=False, index=True)
    ingested_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("platform", "platform_message_id", name="uq_messages_platform_native_id"),
        UniqueConstraint("conversation_id", "sequence_number", name="uq_messages_conversation_sequence"),
        Index("ix_messages_occurred_at_sequence", "occurred_at", "sequence_number"),
    )

    def __repr__(self) -> str:
        return (
            f"<MessageRecord(id={self.id}, platform={self.platform}, "
            f"conversation_id={self.conversation_id}, seq={self.sequence_number})>"
        )
