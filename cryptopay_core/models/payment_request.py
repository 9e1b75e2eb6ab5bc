"""Payment request model: a requester asks a payer to settle an amount."""

from datetime import datetime, timedelta
from typing import Any, Optional
import uuid

from pydantic import BaseModel, Field, field_validator

from cryptopay_core.exceptions import InvalidStateError
from .enums import Currency, PaymentRequestStatus, PAYMENT_REQUEST_TRANSITIONS
from .transaction import utc_now

DEFAULT_TTL = timedelta(hours=24)


def payment_url_for(frontend_url: str, request_id: str) -> str:
    return f"{frontend_url.rstrip('/')}/pay/{request_id}"


class PaymentRequest(BaseModel):
    """
    A request for payment addressed to the requester's own wallet.

    Lazy expiry: a request that is still ``pending`` after ``expires_at``
    is treated as expired by whoever reads it next, and is flipped to
    ``expired`` in the store at that point.

    ``processing_transaction_id`` is the in-flight claim held by a payer
    while its transfer is on the wire; it is cleared when that attempt
    fails and kept when it completes.
    """

    id: str = Field(default_factory=lambda: f"preq_{uuid.uuid4().hex[:20]}")
    requester_id: str
    payer_id: Optional[str] = None

    amount: str
    currency: Currency
    description: str = Field(..., min_length=1, max_length=500)
    recipient_address: str

    status: PaymentRequestStatus = PaymentRequestStatus.PENDING
    expires_at: datetime
    paid_at: Optional[datetime] = None
    transaction_id: Optional[str] = None

    # Attempt tracking
    processing_transaction_id: Optional[str] = None
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("recipient_address")
    @classmethod
    def _lowercase_address(cls, v: str) -> str:
        return v.lower()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utc_now())

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        """Pending, past its deadline and not claimed by an in-flight payment."""
        return (
            self.status == PaymentRequestStatus.PENDING
            and self.processing_transaction_id is None
            and self.is_expired(now)
        )

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        return self.locked_until is not None and self.locked_until > (now or utc_now())

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.status == PaymentRequestStatus.PENDING and not self.is_expired(now)

    def can_be_paid(self, now: Optional[datetime] = None) -> bool:
        return (
            self.is_active(now)
            and self.processing_transaction_id is None
            and not self.is_locked(now)
        )

    def time_remaining(self, now: Optional[datetime] = None) -> int:
        """Seconds until expiry, 0 once expired or no longer pending."""
        if not self.is_active(now):
            return 0
        return max(0, int((self.expires_at - (now or utc_now())).total_seconds()))

    def apply_transition(self, target: PaymentRequestStatus, now: Optional[datetime] = None) -> None:
        if target not in PAYMENT_REQUEST_TRANSITIONS[self.status]:
            raise InvalidStateError(
                f"Payment request cannot move from {self.status.value} to {target.value}",
                details={"payment_request_id": self.id, "status": self.status.value},
            )
        self.status = target
        self.updated_at = now or utc_now()

    def payment_url(self, frontend_url: str) -> str:
        return payment_url_for(frontend_url, self.id)

    def qr_data(self, frontend_url: str) -> dict[str, Any]:
        """Payload encoded into the payment QR code."""
        return {
            "type": "payment_request",
            "id": self.id,
            "amount": self.amount,
            "currency": self.currency.value,
            "description": self.description,
            "recipient": self.recipient_address,
            "expires": self.expires_at.isoformat(),
            "url": self.payment_url(frontend_url),
        }

    def to_dict(
        self,
        frontend_url: str,
        requester: Optional[dict[str, Any]] = None,
        payer: Optional[dict[str, Any]] = None,
        transaction: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        return {
            "id": self.id,
            "requester": requester or {"id": self.requester_id},
            "payer": payer or ({"id": self.payer_id} if self.payer_id else None),
            "amount": self.amount,
            "currency": self.currency.value,
            "description": self.description,
            "recipientAddress": self.recipient_address,
            "status": self.status.value,
            "expiresAt": self.expires_at.isoformat(),
            "paidAt": self.paid_at.isoformat() if self.paid_at else None,
            "transaction": transaction or ({"id": self.transaction_id} if self.transaction_id else None),
            "paymentUrl": self.payment_url(frontend_url),
            "qrData": self.qr_data(frontend_url),
            "isActive": self.is_active(now),
            "timeRemaining": self.time_remaining(now),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
