"""
Shared fixtures and payload builders.
"""
import base64
import json

import pytest

from unified_inbox.core.database import create_db_engine, init_db
from unified_inbox.storage.memory import InMemoryMessageStore
from unified_inbox.storage.sql import SqlMessageStore


def telegram_update(message_id=555, chat_id=42, text="hello", date=1700000000, sender_id=7, username="alice"):
    return {
        "update_id": 1000 + int(message_id),
        "message": {
            "message_id": message_id,
            "date": date,
            "text": text,
            "chat": {"id": chat_id, "type": "private"},
            "from": {"id": sender_id, "is_bot": False, "username": username},
        },
    }


def whatsapp_envelope(*messages, phone_number_id="15550001111"):
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "WABA",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": {"phone_number_id": phone_number_id},
                    "contacts": [{"wa_id": "919876543210", "profile": {"name": "Ravi"}}],
                    "messages": list(messages),
                },
            }],
        }],
    }


def whatsapp_message(message_id="wamid.1", text="hi", timestamp="1700000000", sender="919876543210"):
    return {"from": sender, "id": message_id, "timestamp": timestamp, "type": "text", "text": {"body": text}}


def instagram_envelope(mid="m_1", sender="ig-user", recipient="ig-page", text="hey", timestamp=1700000000123):
    return {
        "object": "instagram",
        "entry": [{
            "id": recipient,
            "time": timestamp,
            "messaging": [{
                "sender": {"id": sender},
                "recipient": {"id": recipient},
                "timestamp": timestamp,
                "message": {"mid": mid, "text": text},
            }],
        }],
    }


def twitter_envelope(event_id="1001", sender="111", recipient="222", text="yo", created="1700000000000"):
    return {
        "for_user_id": recipient,
        "direct_message_events": [{
            "type": "message_create",
            "id": event_id,
            "created_timestamp": created,
            "message_create": {
                "target": {"recipient_id": recipient},
                "sender_id": sender,
                "message_data": {"text": text},
            },
        }],
        "users": {sender: {"id": sender, "screen_name": "tweeter"}},
    }


def gmail_message(message_id="18c0ffee", thread_id="thr-1", subject="Invoice", body="Please pay"):
    return {
        "id": message_id,
        "threadId": thread_id,
        "from": "Bob Builder <Bob@Example.com>",
        "to": "inbox@example.com",
        "subject": subject,
        "body": body,
        "internalDate": "1700000000000",
    }


def gmail_push(message: dict) -> dict:
    data = base64.b64encode(json.dumps(message).encode("utf-8")).decode("ascii")
    return {"message": {"data": data, "messageId": "pubsub-1"}, "subscription": "projects/p/subscriptions/s"}


def generic_payload(message_id="g-1", sender_id="u-1", thread_id="t-1", text="plain", timestamp="2025-01-15T10:00:00Z"):
    return {
        "message_id": message_id,
        "sender_id": sender_id,
        "thread_id": thread_id,
        "text": text,
        "timestamp": timestamp,
    }


@pytest.fixture
def memory_store():
    return InMemoryMessageStore()


@pytest.fixture
def sql_store(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path}/inbox.db")
    init_db(engine)
    yield SqlMessageStore(engine)
    engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def store(request, tmp_path):
    """Run a test against both storage backends."""
    if request.param == "memory":
        yield InMemoryMessageStore()
        return
    engine = create_db_engine(f"sqlite:///{tmp_path}/inbox.db")
    init_db(engine)
    yield SqlMessageStore(engine)
    engine.dispose()
