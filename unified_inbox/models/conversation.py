"""
Conversation database models.
"""
from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, UniqueConstraint

from unified_inbox.core.database import Base


class ConversationRecord(Base):
    """Platform-scoped thread; mutated only under the conversation's serialization point."""

    __tablename__ = "conversations"

    id = Column(String(64), primary_key=True, nullable=False)
    platform = Column(String(32), nullable=False, index=True)
    grouping_key = Column(String(512), nullable=False)

    last_sequence_number = Column(Integer, nullable=False, default=0)
    last_activity_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("platform", "grouping_key", name="uq_conversations_platform_grouping_key"),
    )

    def __repr__(self) -> str:
        return f"<ConversationRecord(id={self.id}, platform={self.platform}, last_seq={self.last_sequence_number})>"


class ConversationParticipant(Base):
    """Sender identifiers seen in a conversation."""

    __tablename__ = "conversation_participants"

    conversation_id = Column(String(64), ForeignKey("conversations.id"), primary_key=True)
    participant_id = Column(String(255), primary_key=True)
