"""
Error taxonomy for the ingestion core.

Every failure the pipeline can observe maps onto one of the terminal
ingestion outcomes: ``NormalizationError`` becomes ``rejected``; storage,
deadline and reservation failures become ``retryable_failure``.
``ConversationConflictError`` never leaves the resolver.
"""
from typing import Optional


class InboxError(Exception):
    """Base class for all ingestion core errors."""


class NormalizationError(InboxError):
    """A payload could not be translated into a UnifiedMessage."""

    kind = "MalformedPayload"

    def __init__(self, reason: str, field: Optional[str] = None):
        self.reason = reason
        self.field = field
        super().__init__(reason if field is None else f"{reason} ({field})")


class UnsupportedPlatformError(NormalizationError):
    """No adapter is registered for the requested platform."""

    kind = "UnsupportedPlatform"


class RetryableError(InboxError):
    """Failure that may succeed if the caller redelivers later."""


class StorageUnavailableError(RetryableError):
    """The storage collaborator could not complete an operation."""


class DeadlineExceededError(RetryableError):
    """The run's deadline passed before durable work completed."""


class SequenceConflictError(RetryableError):
    """lastSequenceNumber moved between resolution and append."""


class ReservationLostError(RetryableError):
    """The idempotency reservation expired and was reclaimed by another writer."""


class ConversationConflictError(InboxError):
    """Two resolvers raced to create the same conversation."""
