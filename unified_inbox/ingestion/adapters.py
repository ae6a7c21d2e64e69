"""
Per-platform adapters.

An adapter knows three things about its platform: how a webhook envelope
splits into single-message payloads, how one payload maps onto
UnifiedMessage fields, and which participants make up a conversation.
Adding a platform means adding one adapter here and registering it.
"""
import base64
import binascii
import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import parseaddr
from typing import Any, Dict, List, Mapping, Optional

from unified_inbox.core.errors import NormalizationError, UnsupportedPlatformError
from unified_inbox.schemas.message import MessageKind, Platform, UnifiedMessage


def _require(payload: Mapping[str, Any], field: str, where: str = "payload") -> Any:
    value = payload.get(field) if isinstance(payload, Mapping) else None
    if value is None or value == "":
        raise NormalizationError(f"missing mandatory field in {where}", field=field)
    return value


def _epoch(value: Any, field: str, millis: bool = False) -> datetime:
    """Parse an epoch timestamp given as int, float or numeric string."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise NormalizationError("timestamp is not numeric", field=field)
    if millis:
        number /= 1000.0
    try:
        return datetime.fromtimestamp(number, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise NormalizationError("timestamp out of range", field=field)


def _iso_or_epoch(value: Any, field: str) -> datetime:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _epoch(value, field)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return _epoch(value, field)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    raise NormalizationError("unsupported timestamp format", field=field)


def _attachment(type_: str, locator: Any, size: Any = None) -> Optional[Dict[str, Any]]:
    if not locator:
        return None
    return {
        "type": type_,
        "locator_token": str(locator),
        "size_bytes": int(size) if size is not None else None,
    }


def _pair_key(*participants: Optional[str]) -> str:
    return "dm:" + ":".join(sorted(p for p in participants if p))


class PlatformAdapter(ABC):
    """Capability interface implemented once per platform."""

    platform: Platform

    def extract_events(self, envelope: Mapping[str, Any]) -> List[Dict[str, Any]]:
        """Split a webhook envelope into single-message payloads."""
        return [dict(envelope)]

    @abstractmethod
    def parse(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """Map one payload onto UnifiedMessage fields (without id or ingested_at)."""

    @abstractmethod
    def resolve_grouping_key(self, message: UnifiedMessage) -> str:
        """Platform-scoped key identifying the message's conversation."""


class TelegramAdapter(PlatformAdapter):
    platform = Platform.TELEGRAM

    _MESSAGE_FIELDS = (
        ("message", MessageKind.MESSAGE),
        ("channel_post", MessageKind.MESSAGE),
        ("edited_message", MessageKind.EDIT),
        ("edited_channel_post", MessageKind.EDIT),
    )
    _MEDIA_FIELDS = ("video", "document", "audio", "voice", "animation", "sticker", "video_note")

    def extract_events(self, envelope):
        if any(envelope.get(field) for field, _ in self._MESSAGE_FIELDS):
            return [dict(envelope)]
        return []

    def parse(self, payload):
        for field, kind in self._MESSAGE_FIELDS:
            msg = payload.get(field)
            if msg:
                break
        else:
            raise NormalizationError("update carries no message")

        message_id = _require(msg, "message_id", "message")
        date = _epoch(_require(msg, "date", "message"), "date")
        chat = msg.get("chat") or {}
        sender = msg.get("from") or msg.get("sender_chat") or chat
        sender_id = _require(sender, "id", "message.from")

        display_name = (
            sender.get("username")
            or " ".join(filter(None, [sender.get("first_name"), sender.get("last_name")]))
            or sender.get("title")
        )

        attachments = []
        photos = msg.get("photo") or []
        if photos:
            # Last size is the highest resolution
            largest = photos[-1]
            attachments.append(_attachment("image", largest.get("file_id"), largest.get("file_size")))
        for media in self._MEDIA_FIELDS:
            item = msg.get(media)
            if item:
                attachments.append(_attachment(media, item.get("file_id"), item.get("file_size")))

        fields = {
            "platform_message_id": str(message_id),
            "sender_id": str(sender_id),
            "sender_display_name": display_name or None,
            "recipient_id": str(chat["id"]) if chat.get("id") is not None else None,
            "thread_ref": str(chat["id"]) if chat.get("id") is not None else None,
            "body": msg.get("text") or msg.get("caption") or "",
            "attachments": [a for a in attachments if a],
            "occurred_at": date,
            "kind": kind,
        }
        if kind is MessageKind.EDIT:
            edit_date = msg.get("edit_date") or msg["date"]
            fields["platform_message_id"] = f"{message_id}:edit:{edit_date}"
            fields["edit_of_platform_message_id"] = str(message_id)
            fields["occurred_at"] = _epoch(edit_date, "edit_date")
        return fields

    def resolve_grouping_key(self, message):
        if message.thread_ref:
            return f"chat:{message.thread_ref}"
        return _pair_key(message.sender_id, message.recipient_id)


class WhatsAppAdapter(PlatformAdapter):
    platform = Platform.WHATSAPP

    _MEDIA_TYPES = ("image", "video", "audio", "document", "sticker")

    def extract_events(self, envelope):
        if "message" in envelope:
            return [dict(envelope)]
        if envelope.get("object") != "whatsapp_business_account":
            return []
        events = []
        for entry in envelope.get("entry") or []:
            for change in entry.get("changes") or []:
                value = change.get("value") or {}
                for message in value.get("messages") or []:
                    events.append({
                        "message": message,
                        "metadata": value.get("metadata") or {},
                        "contacts": value.get("contacts") or [],
                    })
        return events

    def parse(self, payload):
        msg = _require(payload, "message")
        sender_id = str(_require(msg, "from", "message"))
        metadata = payload.get("metadata") or {}

        display_name = None
        for contact in payload.get("contacts") or []:
            if str(contact.get("wa_id")) == sender_id:
                display_name = (contact.get("profile") or {}).get("name")
                break

        body = (msg.get("text") or {}).get("body") or ""
        attachments = []
        for media in self._MEDIA_TYPES:
            item = msg.get(media)
            if item:
                attachments.append(_attachment(media, item.get("id"), item.get("file_size")))
                body = body or item.get("caption") or ""

        recipient = metadata.get("phone_number_id")
        return {
            "platform_message_id": str(_require(msg, "id", "message")),
            "sender_id": sender_id,
            "sender_display_name": display_name,
            "recipient_id": str(recipient) if recipient else None,
            "body": body,
            "attachments": [a for a in attachments if a],
            "occurred_at": _epoch(_require(msg, "timestamp", "message"), "timestamp"),
        }

    def resolve_grouping_key(self, message):
        return _pair_key(message.sender_id, message.recipient_id)


class InstagramAdapter(PlatformAdapter):
    platform = Platform.INSTAGRAM

    def extract_events(self, envelope):
        if "message" in envelope and "sender" in envelope:
            return [dict(envelope)]
        if envelope.get("object") != "instagram":
            return []
        events = []
        for entry in envelope.get("entry") or []:
            for messaging in entry.get("messaging") or []:
                message = messaging.get("message")
                # Reads, reactions and our own echoes are not inbound messages
                if message and not message.get("is_echo"):
                    events.append(dict(messaging))
            for change in entry.get("changes") or []:
                value = change.get("value") or {}
                account_id = (value.get("metadata") or {}).get("instagram_business_account_id")
                for message in value.get("messages") or []:
                    sender = message.get("from") or {}
                    timestamp = message.get("timestamp")
                    events.append({
                        "sender": {"id": sender.get("id"), "username": sender.get("username")},
                        "recipient": {"id": account_id},
                        "timestamp": int(float(timestamp)) * 1000 if timestamp is not None else None,
                        "message": {"mid": message.get("id"), "text": message.get("text")},
                    })
        return events

    def parse(self, payload):
        msg = _require(payload, "message")
        sender = _require(payload, "sender")
        recipient = payload.get("recipient") or {}

        attachments = []
        for item in msg.get("attachments") or []:
            attachments.append(_attachment(item.get("type") or "file", (item.get("payload") or {}).get("url")))

        return {
            "platform_message_id": str(_require(msg, "mid", "message")),
            "sender_id": str(_require(sender, "id", "sender")),
            "sender_display_name": sender.get("username"),
            "recipient_id": str(recipient["id"]) if recipient.get("id") else None,
            "body": msg.get("text") or "",
            "attachments": [a for a in attachments if a],
            "occurred_at": _epoch(_require(payload, "timestamp"), "timestamp", millis=True),
        }

    def resolve_grouping_key(self, message):
        return _pair_key(message.sender_id, message.recipient_id)


class TwitterAdapter(PlatformAdapter):
    platform = Platform.TWITTER

    def extract_events(self, envelope):
        if "event" in envelope:
            return [dict(envelope)]
        users = envelope.get("users") or {}
        return [
            {"event": event, "users": users}
            for event in envelope.get("direct_message_events") or []
            if event.get("type") == "message_create"
        ]

    @staticmethod
    def _lookup_user(users: Any, user_id: str) -> Mapping[str, Any]:
        if isinstance(users, Mapping):
            return users.get(user_id) or {}
        for user in users or []:
            if str(user.get("id")) == user_id:
                return user
        return {}

    def parse(self, payload):
        event = _require(payload, "event")
        create = _require(event, "message_create", "event")
        sender_id = str(_require(create, "sender_id", "message_create"))
        recipient_id = (create.get("target") or {}).get("recipient_id")
        data = create.get("message_data") or {}

        user = self._lookup_user(payload.get("users"), sender_id)
        attachments = []
        media = (data.get("attachment") or {}).get("media")
        if media:
            attachments.append(_attachment(media.get("type") or "media", media.get("id_str") or media.get("media_url_https")))

        return {
            "platform_message_id": str(_require(event, "id", "event")),
            "sender_id": sender_id,
            "sender_display_name": user.get("screen_name") or user.get("username") or user.get("name"),
            "recipient_id": str(recipient_id) if recipient_id else None,
            "body": data.get("text") or "",
            "attachments": [a for a in attachments if a],
            "occurred_at": _epoch(_require(event, "created_timestamp", "event"), "created_timestamp", millis=True),
        }

    def resolve_grouping_key(self, message):
        return _pair_key(message.sender_id, message.recipient_id)


class GmailAdapter(PlatformAdapter):
    platform = Platform.GMAIL

    def extract_events(self, envelope):
        pubsub = envelope.get("message")
        if not isinstance(pubsub, Mapping):
            return [dict(envelope)] if "id" in envelope else []
        data = pubsub.get("data")
        if not data:
            return []
        try:
            decoded = json.loads(base64.b64decode(data).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise NormalizationError("push notification data is not base64-encoded JSON", field="message.data")
        # Mailbox history notifications carry no message of their own
        if not isinstance(decoded, dict) or "id" not in decoded:
            return []
        return [decoded]

    def parse(self, payload):
        display_name, address = parseaddr(str(_require(payload, "from")))
        if not address:
            raise NormalizationError("sender address is not parseable", field="from")
        _, recipient = parseaddr(str(payload.get("to") or ""))

        attachments = [
            _attachment(item.get("mimeType") or "file", item.get("attachmentId"), item.get("size"))
            for item in payload.get("attachments") or []
        ]

        return {
            "platform_message_id": str(_require(payload, "id")),
            "sender_id": address.lower(),
            "sender_display_name": display_name or None,
            "recipient_id": recipient.lower() or None,
            "thread_ref": payload.get("threadId"),
            "subject": payload.get("subject"),
            "body": payload.get("body") or payload.get("snippet") or "",
            "attachments": [a for a in attachments if a],
            "occurred_at": _epoch(_require(payload, "internalDate"), "internalDate", millis=True),
        }

    def resolve_grouping_key(self, message):
        if message.thread_ref:
            return f"thread:{message.thread_ref}"
        return _pair_key(message.sender_id, message.recipient_id)


class GenericAdapter(PlatformAdapter):
    """Already-normalized payloads from sources without a dedicated adapter."""

    platform = Platform.OTHER

    def extract_events(self, envelope):
        if isinstance(envelope.get("messages"), list):
            return [dict(m) for m in envelope["messages"]]
        return [dict(envelope)]

    def parse(self, payload):
        return {
            "platform_message_id": str(_require(payload, "message_id")),
            "sender_id": str(_require(payload, "sender_id")),
            "sender_display_name": payload.get("sender_name"),
            "recipient_id": payload.get("recipient_id"),
            "thread_ref": payload.get("thread_id"),
            "subject": payload.get("subject"),
            "body": payload.get("text") or "",
            "attachments": payload.get("attachments") or [],
            "occurred_at": _iso_or_epoch(_require(payload, "timestamp"), "timestamp"),
        }

    def resolve_grouping_key(self, message):
        if message.thread_ref:
            return f"thread:{message.thread_ref}"
        return _pair_key(message.sender_id, message.recipient_id)


def coerce_platform(value: Any) -> Platform:
    """Platform enum from a path segment or tag."""
    if isinstance(value, Platform):
        return value
    try:
        return Platform(str(value).lower())
    except ValueError:
        raise UnsupportedPlatformError(f"platform '{value}' is not supported")


def default_adapters() -> Dict[Platform, PlatformAdapter]:
    adapters = [
        TelegramAdapter(),
        GmailAdapter(),
        WhatsAppAdapter(),
        InstagramAdapter(),
        TwitterAdapter(),
        GenericAdapter(),
    ]
    return {adapter.platform: adapter for adapter in adapters}
