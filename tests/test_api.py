"""
Integration tests for the HTTP and WebSocket surface.
"""
import json

import pytest
from fastapi.testclient import TestClient

from unified_inbox.api.metrics import reset_metrics
from unified_inbox.core.config import Settings
from unified_inbox.core.security import compute_signature, twitter_crc_response
from unified_inbox.main import create_app

from conftest import (
    generic_payload,
    gmail_message,
    gmail_push,
    instagram_envelope,
    telegram_update,
    twitter_envelope,
    whatsapp_envelope,
    whatsapp_message,
)


# Test configuration
TEST_SECRET = "test-secret-key-12345"


def get_test_settings(**overrides) -> Settings:
    """Override settings for testing."""
    values = dict(
        webhook_secret=TEST_SECRET,
        storage_backend="memory",
        whatsapp_verify_token="wa-verify",
        instagram_verify_token="ig-verify",
        twitter_consumer_secret="tw-secret",
        log_level="DEBUG",
        log_format="text",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def client():
    """Create a test client with lifespan running."""
    reset_metrics()
    app = create_app(get_test_settings())
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def sql_client(tmp_path):
    """Test client over a fresh SQLite database."""
    reset_metrics()
    app = create_app(get_test_settings(storage_backend="sql", database_url=f"sqlite:///{tmp_path}/api.db"))
    with TestClient(app) as test_client:
        yield test_client


def sign_payload(payload: dict, secret: str = TEST_SECRET) -> str:
    """Generate HMAC-SHA256 signature for a payload."""
    body = json.dumps(payload).encode("utf-8")
    return compute_signature(secret, body)


def post_webhook(client, platform: str, payload: dict):
    """POST a correctly signed webhook."""
    return client.post(
        f"/webhooks/{platform}",
        content=json.dumps(payload),
        headers={
            "Content-Type": "application/json",
            "X-Signature": sign_payload(payload),
        },
    )


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_liveness_always_returns_ok(self, client):
        """GET /health/live should always return 200."""
        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_readiness_returns_ok_when_configured(self, client):
        """GET /health/ready should return 200 when properly configured."""
        response = client.get("/health/ready")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["checks"]["storage"] == "ok"
        assert data["checks"]["webhook_secret"] == "ok"
        assert data["checks"]["ingestion"] == "ok"

    def test_readiness_fails_without_secret(self):
        """GET /health/ready returns 503 when WEBHOOK_SECRET is missing."""
        app = create_app(get_test_settings(webhook_secret=None))
        with TestClient(app) as client:
            response = client.get("/health/ready")
        assert response.status_code == 503
        assert response.json()["checks"]["webhook_secret"] == "not configured"


class TestWebhookSignature:
    """Signature checks on POST /webhooks/{platform}."""

    def test_webhook_requires_signature(self, client):
        """POST without signature returns 401."""
        response = client.post("/webhooks/telegram", json=telegram_update())
        assert response.status_code == 401
        assert response.json()["detail"] == "invalid signature"

    def test_webhook_rejects_invalid_signature(self, client):
        """POST with wrong signature returns 401."""
        response = client.post(
            "/webhooks/telegram",
            json=telegram_update(),
            headers={"X-Signature": "invalid-signature"}
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "invalid signature"

    def test_webhook_accepts_prefixed_signature(self, client):
        """sha256=<hex> signatures are accepted."""
        payload = telegram_update()
        response = client.post(
            "/webhooks/telegram",
            content=json.dumps(payload),
            headers={"Content-Type": "application/json", "X-Signature": "sha256=" + sign_payload(payload)},
        )
        assert response.status_code == 200


class TestWebhookIngestion:
    """Tests for POST /webhooks/{platform}."""

    @pytest.mark.parametrize("platform,payload", [
        ("telegram", telegram_update()),
        ("whatsapp", whatsapp_envelope(whatsapp_message())),
        ("instagram", instagram_envelope()),
        ("twitter", twitter_envelope()),
        ("gmail", gmail_push(gmail_message())),
        ("other", generic_payload()),
    ])
    def test_each_platform_is_accepted(self, client, platform, payload):
        """Every supported platform ingests its native webhook shape."""
        response = post_webhook(client, platform, payload)
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert len(data["results"]) == 1
        result = data["results"][0]
        assert result["status"] == "accepted"
        assert result["sequence_number"] == 1
        assert result["conversation_id"]

    def test_webhook_idempotency(self, client):
        """Redelivered updates are acknowledged as duplicates of the original."""
        payload = telegram_update(message_id=555)
        first = post_webhook(client, "telegram", payload)
        second = post_webhook(client, "telegram", payload)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["status"] == "ok"
        assert second.json()["results"][0]["status"] == "duplicate"
        assert second.json()["results"][0]["message_id"] == first.json()["results"][0]["message_id"]

    def test_envelope_with_many_messages_keeps_order(self, client):
        """Messages batched in one envelope are sequenced in order."""
        envelope = whatsapp_envelope(
            whatsapp_message("wamid.1", text="one"),
            whatsapp_message("wamid.2", text="two"),
            whatsapp_message("wamid.3", text="three"),
        )
        response = post_webhook(client, "whatsapp", envelope)
        assert response.status_code == 200
        assert [r["sequence_number"] for r in response.json()["results"]] == [1, 2, 3]

    def test_malformed_payload_is_rejected(self, client):
        """A message missing mandatory fields returns 422."""
        payload = telegram_update()
        del payload["message"]["message_id"]
        response = post_webhook(client, "telegram", payload)
        assert response.status_code == 422
        data = response.json()
        assert data["status"] == "rejected"
        assert "message_id" in data["results"][0]["reason"]

    @pytest.mark.parametrize("platform,envelope", [
        ("whatsapp", {"object": "whatsapp_business_account", "entry": ["x"]}),
        ("instagram", {"object": "instagram", "entry": [{"id": "ig-page", "changes": [
            {"value": {"messages": [{"id": "m_2", "from": {"id": "ig-user"}, "timestamp": "abc"}]}},
        ]}]}),
        ("other", {"messages": [5]}),
    ])
    def test_malformed_envelope_is_rejected(self, client, platform, envelope):
        """Envelopes that cannot be split return 422 so the platform stops redelivering."""
        response = post_webhook(client, platform, envelope)
        assert response.status_code == 422
        assert "unexpected envelope structure" in response.json()["detail"]

    def test_invalid_json(self, client):
        """A signed body that is not JSON returns 422."""
        body = b"{not json"
        response = client.post(
            "/webhooks/telegram",
            content=body,
            headers={"X-Signature": compute_signature(TEST_SECRET, body)},
        )
        assert response.status_code == 422

    def test_unsupported_platform(self, client):
        """Unknown platforms return 404."""
        response = post_webhook(client, "myspace", generic_payload())
        assert response.status_code == 404

    def test_envelope_without_messages_is_ignored(self, client):
        """Status-only updates are acknowledged without ingesting anything."""
        response = post_webhook(client, "whatsapp", whatsapp_envelope())
        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert client.get("/stats").json()["total_messages"] == 0

    def test_retryable_failure_returns_503(self):
        """A run that cannot finish in time asks the platform to redeliver."""
        reset_metrics()
        app = create_app(get_test_settings(ingestion_deadline_seconds=1e-9))
        with TestClient(app) as client:
            response = post_webhook(client, "telegram", telegram_update())
        assert response.status_code == 503
        assert response.json()["status"] == "retry"
        assert response.json()["results"][0]["status"] == "retryable_failure"


class TestWebhookHandshake:
    """Tests for GET /webhooks/{platform}."""

    def test_whatsapp_challenge(self, client):
        """A matching verify token echoes the challenge."""
        response = client.get(
            "/webhooks/whatsapp",
            params={"hub.mode": "subscribe", "hub.verify_token": "wa-verify", "hub.challenge": "1158201444"},
        )
        assert response.status_code == 200
        assert response.text == "1158201444"

    def test_instagram_wrong_token(self, client):
        """A wrong verify token is forbidden."""
        response = client.get(
            "/webhooks/instagram",
            params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "1"},
        )
        assert response.status_code == 403

    def test_twitter_crc(self, client):
        """The CRC token is answered with an HMAC response token."""
        response = client.get("/webhooks/twitter", params={"crc_token": "abc"})
        assert response.status_code == 200
        assert response.json()["response_token"] == twitter_crc_response("tw-secret", "abc")

    def test_twitter_crc_requires_token(self, client):
        response = client.get("/webhooks/twitter")
        assert response.status_code == 400

    def test_no_handshake_for_telegram(self, client):
        response = client.get("/webhooks/telegram")
        assert response.status_code == 404


class TestMessagesEndpoint:
    """Tests for GET /messages."""

    def _create_messages(self, client, count: int = 5):
        """Helper to create test messages."""
        for i in range(count):
            payload = generic_payload(
                message_id=f"msg-{i}",
                sender_id=f"sender-{i % 3}",
                thread_id=f"thread-{i % 2}",
                text=f"Message {i}",
                timestamp=f"2025-01-15T10:0{i}:00Z",
            )
            post_webhook(client, "other", payload)

    def test_messages_empty_list(self, client):
        """GET /messages returns empty list when no messages."""
        response = client.get("/messages")
        assert response.status_code == 200
        data = response.json()
        assert data["data"] == []
        assert data["total"] == 0
        assert data["limit"] == 50
        assert data["offset"] == 0

    def test_messages_pagination(self, client):
        """GET /messages supports pagination."""
        self._create_messages(client, 10)

        response = client.get("/messages?limit=3&offset=0")
        data = response.json()
        assert len(data["data"]) == 3
        assert data["total"] == 10

        response = client.get("/messages?limit=3&offset=3")
        data = response.json()
        assert len(data["data"]) == 3
        assert data["offset"] == 3

    def test_messages_filter_by_sender(self, client):
        """GET /messages filters by sender."""
        self._create_messages(client, 9)

        response = client.get("/messages?sender_id=sender-0")
        data = response.json()
        # Messages 0, 3, 6 have this sender
        assert data["total"] == 3
        for msg in data["data"]:
            assert msg["sender_id"] == "sender-0"

    def test_messages_filter_by_platform(self, client):
        """GET /messages filters by platform."""
        self._create_messages(client, 2)
        post_webhook(client, "telegram", telegram_update())

        response = client.get("/messages?platform=telegram")
        data = response.json()
        assert data["total"] == 1
        assert data["data"][0]["platform"] == "telegram"

    def test_messages_filter_by_since(self, client):
        """GET /messages filters by since timestamp."""
        self._create_messages(client, 5)

        response = client.get("/messages?since=2025-01-15T10:03:00Z")
        assert response.json()["total"] == 2

    def test_messages_naive_since_is_utc(self, client):
        """A since without an offset is read as UTC."""
        self._create_messages(client, 5)

        response = client.get("/messages?since=2025-01-15T10:03:00")
        assert response.status_code == 200
        assert response.json()["total"] == 2

    def test_messages_since_with_offset(self, client):
        """A since with an offset is compared in UTC."""
        self._create_messages(client, 5)

        # 15:33+05:00 is 10:03Z
        response = client.get("/messages", params={"since": "2025-01-15T15:33:00+05:00"})
        assert response.status_code == 200
        assert response.json()["total"] == 2

    def test_messages_text_search(self, client):
        """GET /messages supports case-insensitive text search."""
        self._create_messages(client, 5)

        response = client.get("/messages?q=message%202")
        data = response.json()
        assert data["total"] == 1
        assert "Message 2" in data["data"][0]["body"]

    def test_get_message_by_id(self, client):
        """GET /messages/{id} returns one stored message."""
        accepted = post_webhook(client, "telegram", telegram_update(message_id=77, text="find me")).json()["results"][0]

        response = client.get(f"/messages/{accepted['message_id']}")
        assert response.status_code == 200
        data = response.json()
        assert data["id"] == accepted["message_id"]
        assert data["platform_message_id"] == "77"
        assert data["body"] == "find me"
        assert data["sequence_number"] == 1

    def test_get_unknown_message(self, client):
        """Unknown message ids return 404."""
        response = client.get("/messages/does-not-exist")
        assert response.status_code == 404
        assert response.json()["detail"] == "message not found"

    def test_messages_ordering(self, client):
        """GET /messages orders by occurred_at ascending."""
        self._create_messages(client, 5)

        data = client.get("/messages").json()
        timestamps = [msg["occurred_at"] for msg in data["data"]]
        assert timestamps == sorted(timestamps)


class TestConversationsEndpoint:
    """Tests for /conversations."""

    def test_history_after_cursor(self, client):
        """History returns messages after the given sequence number."""
        results = [
            post_webhook(client, "telegram", telegram_update(message_id=i, text=f"m{i}")).json()["results"][0]
            for i in range(1, 5)
        ]
        conversation_id = results[0]["conversation_id"]

        response = client.get(f"/conversations/{conversation_id}/messages", params={"after": 2})
        assert response.status_code == 200
        data = response.json()
        assert data["last_sequence_number"] == 4
        assert [m["sequence_number"] for m in data["data"]] == [3, 4]
        assert [m["body"] for m in data["data"]] == ["m3", "m4"]

    def test_list_and_get_conversation(self, client):
        """Conversations are listed and retrievable by id."""
        result = post_webhook(client, "telegram", telegram_update(sender_id=7)).json()["results"][0]
        post_webhook(client, "other", generic_payload())

        listing = client.get("/conversations").json()
        assert listing["total"] == 2

        filtered = client.get("/conversations?platform=telegram").json()
        assert filtered["total"] == 1

        conversation = client.get(f"/conversations/{result['conversation_id']}").json()
        assert conversation["platform"] == "telegram"
        assert conversation["participant_ids"] == ["7"]
        assert conversation["last_sequence_number"] == 1

    def test_unknown_conversation(self, client):
        assert client.get("/conversations/nope").status_code == 404
        assert client.get("/conversations/nope/messages").status_code == 404


class TestStatsEndpoint:
    """Tests for GET /stats."""

    def test_stats_empty(self, client):
        """GET /stats returns zeros when no messages."""
        data = client.get("/stats").json()
        assert data["total_messages"] == 0
        assert data["senders_count"] == 0
        assert data["messages_per_sender"] == []
        assert data["first_message_ts"] is None
        assert data["last_message_ts"] is None

    def test_stats_with_messages(self, client):
        """GET /stats returns correct statistics."""
        for i in range(1, 10):
            post_webhook(client, "telegram", telegram_update(message_id=i, sender_id=i % 3 + 1, chat_id=i % 3 + 1))

        data = client.get("/stats").json()
        assert data["total_messages"] == 9
        assert data["total_conversations"] == 3
        assert data["senders_count"] == 3
        assert data["platforms"] == [{"platform": "telegram", "messages": 9, "conversations": 3}]
        counts = [s["count"] for s in data["messages_per_sender"]]
        assert counts == sorted(counts, reverse=True)


class TestMetricsEndpoint:
    """Tests for GET /metrics."""

    def test_metrics_exposes_ingestion_results(self, client):
        """Ingestion outcomes and request counts are exported."""
        post_webhook(client, "telegram", telegram_update())
        client.get("/stats")

        response = client.get("/metrics")
        assert response.status_code == 200
        body = response.text
        assert 'ingestion_results_total{platform="telegram",status="accepted"} 1' in body
        assert 'http_requests_total{method="GET",path="/stats",status="200"} 1' in body
        assert "fanout_subscribers 0" in body
        assert 'ingestion_queue_depth{platform="telegram"} 0' in body


class TestWebSocket:
    """Tests for WS /ws."""

    def test_receives_ingested_message(self, client):
        """A connected session gets newly persisted messages."""
        with client.websocket_connect("/ws") as ws:
            result = post_webhook(client, "telegram", telegram_update()).json()["results"][0]
            frame = ws.receive_json()

        assert frame["type"] == "message"
        assert frame["message"]["id"] == result["message_id"]
        assert frame["message"]["sequence_number"] == 1

    def test_platform_filter(self, client):
        """Sessions filtered by platform skip other platforms."""
        with client.websocket_connect("/ws?platform=gmail") as ws:
            post_webhook(client, "telegram", telegram_update())
            post_webhook(client, "gmail", gmail_push(gmail_message()))
            frame = ws.receive_json()

        assert frame["message"]["platform"] == "gmail"

    def test_duplicate_is_not_pushed_twice(self, client):
        """Only the accepted copy of a redelivered message is pushed."""
        with client.websocket_connect("/ws") as ws:
            post_webhook(client, "telegram", telegram_update(message_id=1))
            post_webhook(client, "telegram", telegram_update(message_id=1))
            post_webhook(client, "telegram", telegram_update(message_id=2))
            first = ws.receive_json()
            second = ws.receive_json()

        assert [first["message"]["platform_message_id"], second["message"]["platform_message_id"]] == ["1", "2"]


class TestSqlBackend:
    """The full stack over SQLite."""

    def test_ingest_duplicate_and_history(self, sql_client):
        """Accepted, duplicate and history behave the same over SQL."""
        first = post_webhook(sql_client, "telegram", telegram_update(message_id=555)).json()["results"][0]
        second = post_webhook(sql_client, "telegram", telegram_update(message_id=555)).json()["results"][0]
        post_webhook(sql_client, "telegram", telegram_update(message_id=556))

        assert first["status"] == "accepted"
        assert second["status"] == "duplicate"
        assert second["message_id"] == first["message_id"]

        history = sql_client.get(f"/conversations/{first['conversation_id']}/messages").json()
        assert [m["sequence_number"] for m in history["data"]] == [1, 2]
        assert sql_client.get(f"/messages/{first['message_id']}").json()["platform_message_id"] == "555"
        assert sql_client.get("/health/ready").json()["checks"]["storage"] == "ok"
