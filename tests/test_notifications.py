"""Tests for notification fan-out and webhook delivery."""

import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from cryptopay_core.notifications import EventName, NotificationEvent, NotificationHub
from cryptopay_core.notifications.hub import sign_payload, verify_signature


def _event(name=EventName.PAYMENT_RECEIVED, **data) -> NotificationEvent:
    return NotificationEvent(name, data or {"amount": Decimal("1.25")})


class TestEvents:

    def test_serializes_decimals_and_enums(self):
        event = NotificationEvent(EventName.TRANSACTION_CONFIRMED, {"amount": Decimal("0.5"), "kind": EventName.PAYMENT_SENT})
        payload = json.loads(event.to_json())
        assert payload["event"] == "transaction-confirmed"
        assert payload["data"] == {"amount": "0.5", "kind": "payment-sent"}
        assert payload["id"].startswith("evt_")


@pytest.mark.asyncio
class TestRealtimeChannels:

    async def test_event_reaches_only_addressed_identity(self, hub):
        mine = hub.subscribe("usr_1")
        other = hub.subscribe("usr_2")

        delivered = await hub.notify("usr_1", _event())

        assert delivered == 1
        event = await mine.next_event(timeout=1)
        assert event.event == EventName.PAYMENT_RECEIVED
        assert other.queue.empty()

    async def test_unsubscribe(self, hub):
        subscription = hub.subscribe("usr_1")
        hub.unsubscribe(subscription)
        assert hub.subscriber_count("usr_1") == 0
        assert await hub.notify("usr_1", _event()) == 0

    async def test_full_channel_drops_without_raising(self, hub):
        """Test a slow consumer never blocks the notifier."""
        subscription = hub.subscribe("usr_1")
        for _ in range(NotificationHub.QUEUE_SIZE):
            await hub.notify("usr_1", _event())

        assert await hub.notify("usr_1", _event()) == 0
        assert subscription.dropped == 1

    async def test_no_identity(self, hub):
        assert await hub.notify(None, _event()) == 0


@pytest.mark.asyncio
class TestWebhooks:

    async def test_signed_delivery(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(200)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        hub = NotificationHub(http_client=client, retry_delays=[0, 0, 0])
        endpoint = hub.register_webhook("usr_1", "https://hooks.example.com/cryptopay")

        await hub.notify("usr_1", _event())
        await hub.drain()

        assert len(received) == 1
        request = received[0]
        body = request.content.decode()
        assert request.headers["X-CryptoPay-Event"] == "payment-received"
        assert verify_signature(body, request.headers["X-CryptoPay-Signature"], endpoint.secret)
        assert endpoint.successful_deliveries == 1
        await client.aclose()

    async def test_retries_then_gives_up(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(503)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        hub = NotificationHub(http_client=client, retry_delays=[0, 0, 0])
        endpoint = hub.register_webhook("usr_1", "https://hooks.example.com/cryptopay")

        await hub.notify("usr_1", _event())
        await hub.drain()

        assert len(attempts) == NotificationHub.MAX_RETRIES
        assert endpoint.failed_deliveries == 1
        await client.aclose()

    async def test_event_filter(self):
        calls = []
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: calls.append(r) or httpx.Response(204)))
        hub = NotificationHub(http_client=client, retry_delays=[0])
        hub.register_webhook("usr_1", "https://hooks.example.com/a", events=[EventName.PAYMENT_FAILED])

        await hub.notify("usr_1", _event(EventName.PAYMENT_RECEIVED))
        await hub.drain()
        assert calls == []

        await hub.notify("usr_1", _event(EventName.PAYMENT_FAILED))
        await hub.drain()
        assert len(calls) == 1
        await client.aclose()

    async def test_unregister_checks_owner(self, hub):
        endpoint = hub.register_webhook("usr_1", "https://hooks.example.com/a")
        assert not hub.unregister_webhook(endpoint.endpoint_id, identity_id="usr_2")
        assert hub.unregister_webhook(endpoint.endpoint_id, identity_id="usr_1")
        assert hub.list_webhooks("usr_1") == []

    async def test_transport_error_is_contained(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        hub = NotificationHub(http_client=client, retry_delays=[0, 0, 0])
        endpoint = hub.register_webhook("usr_1", "https://hooks.example.com/a")

        await hub.notify("usr_1", _event())
        await asyncio.wait_for(hub.drain(), timeout=2)
        assert endpoint.failed_deliveries == 1
        await client.aclose()


def test_signature_format():
    assert sign_payload("{}", "whsec_x").startswith("sha256=")
    assert not verify_signature("{}", "sha256=deadbeef", "whsec_x")
