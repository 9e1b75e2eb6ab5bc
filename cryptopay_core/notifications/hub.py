"""Per-identity notification fan-out.

Delivery is best-effort: ``notify`` never raises and never waits on a
slow consumer. Real-time channels are bounded asyncio queues; webhook
posts run as background tasks with a bounded number of retries.
"""

import asyncio
import hashlib
import hmac
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import httpx

from .events import EventName, NotificationEvent

logger = logging.getLogger(__name__)


@dataclass
class Subscription:
    """A live channel (one per open WebSocket) for one identity."""

    identity_id: str
    queue: asyncio.Queue
    subscription_id: str = field(default_factory=lambda: f"sub_{uuid.uuid4().hex[:16]}")
    dropped: int = 0

    async def next_event(self, timeout: Optional[float] = None) -> NotificationEvent:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)


@dataclass
class WebhookEndpoint:
    """A webhook registered by an identity."""

    identity_id: str
    url: str
    endpoint_id: str = field(default_factory=lambda: f"whk_{uuid.uuid4().hex[:16]}")
    secret: str = field(default_factory=lambda: f"whsec_{uuid.uuid4().hex}")
    events: list[EventName] = field(default_factory=list)
    is_active: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # Delivery stats
    successful_deliveries: int = 0
    failed_deliveries: int = 0
    last_delivery_at: Optional[datetime] = None

    def subscribes_to(self, event: EventName) -> bool:
        if not self.events:  # Empty means all events
            return True
        return event in self.events

    def to_dict(self, include_secret: bool = False) -> dict:
        data = {
            "id": self.endpoint_id,
            "url": self.url,
            "events": [e.value for e in self.events],
            "isActive": self.is_active,
            "createdAt": self.created_at.isoformat(),
            "successfulDeliveries": self.successful_deliveries,
            "failedDeliveries": self.failed_deliveries,
        }
        if include_secret:
            data["secret"] = self.secret
        return data


@dataclass
class DeliveryResult:
    """Result of a webhook delivery attempt."""
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    duration_ms: int = 0


def sign_payload(payload: str, secret: str) -> str:
    """HMAC-SHA256 signature header value for a webhook body."""
    signature = hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()
    return f"sha256={signature}"


def verify_signature(payload: str, signature: str, secret: str) -> bool:
    return hmac.compare_digest(sign_payload(payload, secret), signature)


class NotificationHub:
    """
    Routes settlement events to the identities they concern.

    Usage:
        hub = NotificationHub()
        sub = hub.subscribe(user_id)
        await hub.notify(user_id, NotificationEvent(EventName.PAYMENT_RECEIVED, {...}))
        event = await sub.next_event()
    """

    MAX_RETRIES = 3
    RETRY_DELAYS = [1, 5, 30]  # seconds
    DELIVERY_TIMEOUT = 10  # seconds
    QUEUE_SIZE = 100

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, retry_delays: Optional[list[float]] = None):
        self._subscriptions: dict[str, dict[str, Subscription]] = {}
        self._webhooks: dict[str, WebhookEndpoint] = {}
        self._http_client = http_client
        self._owns_client = http_client is None
        self._retry_delays = retry_delays if retry_delays is not None else self.RETRY_DELAYS
        self._pending: set[asyncio.Task] = set()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.DELIVERY_TIMEOUT)
        return self._http_client

    # ---- Real-time channels ----

    def subscribe(self, identity_id: str) -> Subscription:
        subscription = Subscription(identity_id=identity_id, queue=asyncio.Queue(maxsize=self.QUEUE_SIZE))
        self._subscriptions.setdefault(identity_id, {})[subscription.subscription_id] = subscription
        logger.debug(f"Subscribed {subscription.subscription_id} for {identity_id}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        channels = self._subscriptions.get(subscription.identity_id)
        if not channels:
            return
        channels.pop(subscription.subscription_id, None)
        if not channels:
            del self._subscriptions[subscription.identity_id]

    def subscriber_count(self, identity_id: str) -> int:
        return len(self._subscriptions.get(identity_id, {}))

    # ---- Webhooks ----

    def register_webhook(
        self,
        identity_id: str,
        url: str,
        events: Optional[list[EventName]] = None,
    ) -> WebhookEndpoint:
        endpoint = WebhookEndpoint(identity_id=identity_id, url=url, events=events or [])
        self._webhooks[endpoint.endpoint_id] = endpoint
        logger.info(f"Registered webhook {endpoint.endpoint_id} for {identity_id}")
        return endpoint

    def unregister_webhook(self, endpoint_id: str, identity_id: Optional[str] = None) -> bool:
        endpoint = self._webhooks.get(endpoint_id)
        if endpoint is None or (identity_id is not None and endpoint.identity_id != identity_id):
            return False
        del self._webhooks[endpoint_id]
        logger.info(f"Unregistered webhook {endpoint_id}")
        return True

    def list_webhooks(self, identity_id: str) -> list[WebhookEndpoint]:
        return [w for w in self._webhooks.values() if w.identity_id == identity_id]

    # ---- Fan-out ----

    async def notify(self, identity_id: Optional[str], event: NotificationEvent) -> int:
        """
        Deliver ``event`` to every channel and webhook of ``identity_id``.

        Returns:
            Number of real-time channels the event was queued on
        """
        if not identity_id:
            return 0
        delivered = 0
        try:
            for subscription in list(self._subscriptions.get(identity_id, {}).values()):
                try:
                    subscription.queue.put_nowait(event)
                    delivered += 1
                except asyncio.QueueFull:
                    subscription.dropped += 1
                    logger.warning(
                        f"Channel {subscription.subscription_id} full, dropped {event.event.value}"
                    )

            for endpoint in self._webhooks.values():
                if endpoint.identity_id == identity_id and endpoint.is_active and endpoint.subscribes_to(event.event):
                    task = asyncio.create_task(self._deliver(event, endpoint))
                    self._pending.add(task)
                    task.add_done_callback(self._pending.discard)
        except Exception as e:
            logger.error(f"Failed to fan out {event.event.value} to {identity_id}: {e}")
        return delivered

    async def _deliver(self, event: NotificationEvent, endpoint: WebhookEndpoint) -> DeliveryResult:
        """Post an event to a webhook with retries."""
        payload = event.to_json()
        headers = {
            "Content-Type": "application/json",
            "X-CryptoPay-Signature": sign_payload(payload, endpoint.secret),
            "X-CryptoPay-Event": event.event.value,
            "X-CryptoPay-Event-ID": event.event_id,
            "X-CryptoPay-Timestamp": str(int(event.created_at.timestamp())),
        }

        error: Optional[str] = None
        for attempt in range(self.MAX_RETRIES):
            start = time.monotonic()
            try:
                client = await self._get_client()
                response = await client.post(endpoint.url, content=payload, headers=headers)
                duration_ms = int((time.monotonic() - start) * 1000)
                if response.status_code < 300:
                    endpoint.successful_deliveries += 1
                    endpoint.last_delivery_at = datetime.now(timezone.utc)
                    return DeliveryResult(True, status_code=response.status_code, duration_ms=duration_ms)
                error = f"HTTP {response.status_code}"
                logger.warning(f"Webhook {endpoint.endpoint_id} returned {response.status_code}")
            except httpx.HTTPError as e:
                error = str(e)
                logger.error(f"Webhook delivery to {endpoint.endpoint_id} failed: {e}")

            if attempt < self.MAX_RETRIES - 1:
                await asyncio.sleep(self._retry_delays[min(attempt, len(self._retry_delays) - 1)])

        endpoint.failed_deliveries += 1
        return DeliveryResult(False, error=error or "Max retries exceeded")

    async def drain(self) -> None:
        """Wait for in-flight webhook deliveries."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
