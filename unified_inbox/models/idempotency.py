"""
Idempotency index model.
"""
from sqlalchemy import Column, String, DateTime

from unified_inbox.core.database import Base

PENDING = "pending"
COMMITTED = "committed"


class IdempotencyKeyRecord(Base):
    """Maps (platform, platform_message_id) to the one message id allowed to use it."""

    __tablename__ = "idempotency_keys"

    # Composite primary key makes the reservation insert the atomic check
    platform = Column(String(32), primary_key=True)
    platform_message_id = Column(String(255), primary_key=True)

    message_id = Column(String(64), nullable=False)
    state = Column(String(16), nullable=False, default=PENDING)

    # Only meaningful while pending; a crashed writer's key becomes reclaimable after this
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<IdempotencyKeyRecord(platform={self.platform}, "
            f"platform_message_id={self.platform_message_id}, state={self.state})>"
        )
