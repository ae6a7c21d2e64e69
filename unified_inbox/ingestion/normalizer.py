"""
Structural translation of platform payloads into UnifiedMessage records.
"""
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import ValidationError

from unified_inbox.core.errors import NormalizationError, UnsupportedPlatformError
from unified_inbox.ingestion.adapters import PlatformAdapter, coerce_platform, default_adapters
from unified_inbox.schemas.message import Platform, UnifiedMessage
from unified_inbox.storage.base import utcnow


def new_message_id() -> str:
    return uuid.uuid4().hex


class Normalizer:
    """Turns (payload, platform) into a UnifiedMessage or raises NormalizationError.

    No categorization or business logic happens here; the output depends
    only on the payload, apart from the generated ``id`` and ``ingested_at``.
    """

    def __init__(
        self,
        adapters: Optional[Mapping[Platform, PlatformAdapter]] = None,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = new_message_id,
    ):
        self.adapters: Dict[Platform, PlatformAdapter] = dict(adapters or default_adapters())
        self._clock = clock
        self._id_factory = id_factory

    def adapter_for(self, platform: Any) -> PlatformAdapter:
        platform = coerce_platform(platform)
        try:
            return self.adapters[platform]
        except KeyError:
            raise UnsupportedPlatformError(f"no adapter registered for '{platform.value}'")

    def split(self, envelope: Any, platform_hint: Any) -> List[Dict[str, Any]]:
        """Single-message payloads contained in a webhook envelope."""
        if not isinstance(envelope, Mapping):
            raise NormalizationError("payload must be a JSON object")
        adapter = self.adapter_for(platform_hint)
        try:
            return adapter.extract_events(envelope)
        except NormalizationError:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise NormalizationError(f"unexpected envelope structure: {exc!r}") from exc

    def normalize(self, raw_payload: Any, platform_hint: Any) -> UnifiedMessage:
        adapter = self.adapter_for(platform_hint)
        if not isinstance(raw_payload, Mapping):
            raise NormalizationError("payload must be a JSON object")

        try:
            fields = adapter.parse(raw_payload)
            return UnifiedMessage(
                id=self._id_factory(),
                platform=adapter.platform,
                ingested_at=self._clock(),
                **fields,
            )
        except NormalizationError:
            raise
        except ValidationError as exc:
            error = exc.errors()[0]
            field = ".".join(str(part) for part in error.get("loc", ()))
            raise NormalizationError(f"invalid message field: {error.get('msg')}", field=field or None) from exc
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            # Payload shape did not match what the adapter expects
            raise NormalizationError(f"unexpected payload structure: {exc!r}") from exc
