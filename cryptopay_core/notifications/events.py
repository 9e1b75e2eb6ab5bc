"""Notification event definitions."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
import json
import uuid


class EventName(str, Enum):
    """Events pushed to a user's real-time channels and webhooks."""

    TRANSACTION_CREATED = "transaction-created"
    TRANSACTION_EXECUTED = "transaction-executed"
    TRANSACTION_CONFIRMED = "transaction-confirmed"
    TRANSACTION_FAILED = "transaction-failed"
    TRANSACTION_CANCELLED = "transaction-cancelled"
    TRANSACTION_UNKNOWN = "transaction-unknown"  # confirmation wait timed out

    PAYMENT_REQUEST_CREATED = "payment-request-created"
    PAYMENT_REQUEST_CANCELLED = "payment-request-cancelled"
    PAYMENT_REQUEST_EXPIRED = "payment-request-expired"

    PAYMENT_SENT = "payment-sent"
    PAYMENT_RECEIVED = "payment-received"
    PAYMENT_FAILED = "payment-failed"


@dataclass
class NotificationEvent:
    """
    A single event addressed to one identity.

    The same structure is queued to WebSocket subscribers and posted to
    webhooks, so consumers parse one format.
    """

    event: EventName
    data: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex}")
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.event_id,
            "event": self.event.value,
            "data": self._serialize(self.data),
            "createdAt": self.created_at.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), sort_keys=True)

    def _serialize(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {k: self._serialize(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._serialize(v) for v in value]
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, Enum):
            return value.value
        return value
