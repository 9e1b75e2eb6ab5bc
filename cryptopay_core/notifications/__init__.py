"""Real-time and webhook notification fan-out."""

from .events import EventName, NotificationEvent
from .hub import NotificationHub, Subscription, WebhookEndpoint, sign_payload, verify_signature

__all__ = [
    "EventName",
    "NotificationEvent",
    "NotificationHub",
    "Subscription",
    "WebhookEndpoint",
    "sign_payload",
    "verify_signature",
]
