"""
Per-run deadline carried through every durable-store call.
"""
import time

from unified_inbox.core.errors import DeadlineExceededError


class Deadline:
    """Absolute point on the monotonic clock after which a run must abort."""

    def __init__(self, seconds: float, clock=time.monotonic):
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    def check(self, stage: str = "") -> None:
        """Raise DeadlineExceededError if the deadline has passed."""
        if self.expired:
            raise DeadlineExceededError(f"deadline exceeded{' during ' + stage if stage else ''}")

    def __repr__(self) -> str:
        return f"<Deadline(remaining={self.remaining():.3f}s)>"
