"""Abstract stores for transaction records and payment requests.

Status changes only go through compare-and-set operations: the caller
names the statuses it expects to find and the store applies the change
only if the persisted status still matches, atomically. A lost race
returns None instead of raising, so the caller can reread and decide.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional

from pydantic import BaseModel

from cryptopay_core.models import (
    Currency,
    PaymentRequest,
    PaymentRequestStatus,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
)

_IMMUTABLE_FIELDS = {"id", "status", "created_at"}


def apply_fields(model: BaseModel, fields: dict[str, Any]) -> None:
    """Set non-status fields on ``model``, rejecting unknown or protected names."""
    for name, value in fields.items():
        if name in _IMMUTABLE_FIELDS:
            raise ValueError(f"Field {name!r} cannot be updated directly")
        if name not in type(model).model_fields:
            raise ValueError(f"Unknown field {name!r}")
        setattr(model, name, value)


class TransactionStore(ABC):
    """Persistent store of transaction records."""

    @abstractmethod
    async def create(self, record: TransactionRecord) -> TransactionRecord:
        pass

    @abstractmethod
    async def get(self, transaction_id: str) -> Optional[TransactionRecord]:
        pass

    @abstractmethod
    async def transition(
        self,
        transaction_id: str,
        expected: Iterable[TransactionStatus],
        target: TransactionStatus,
        **fields: Any,
    ) -> Optional[TransactionRecord]:
        """
        Atomically move a record from one of ``expected`` to ``target``.

        Args:
            transaction_id: Record to update
            expected: Statuses the record must currently be in
            target: New status (must be a legal transition)
            **fields: Other fields to write in the same step

        Returns:
            The updated record, or None if it is missing or its status
            no longer matches ``expected``

        Raises:
            InvalidStateError: if ``target`` is not reachable from the
                current status
        """
        pass

    @abstractmethod
    async def update(self, transaction_id: str, **fields: Any) -> Optional[TransactionRecord]:
        """Write non-status fields (hash, confirmations, retry count)."""
        pass

    @abstractmethod
    async def list_for_wallet(
        self,
        address: str,
        status: Optional[TransactionStatus] = None,
        type: Optional[TransactionType] = None,
        currency: Optional[Currency] = None,
        since: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[TransactionRecord], int]:
        """Records sent or received by ``address``, newest first, with the total count."""
        pass

    @abstractmethod
    async def list_by_status(
        self,
        status: TransactionStatus,
        updated_before: Optional[datetime] = None,
    ) -> list[TransactionRecord]:
        pass


class PaymentRequestStore(ABC):
    """Persistent store of payment requests."""

    @abstractmethod
    async def create(self, request: PaymentRequest) -> PaymentRequest:
        pass

    @abstractmethod
    async def get(self, request_id: str) -> Optional[PaymentRequest]:
        pass

    @abstractmethod
    async def transition(
        self,
        request_id: str,
        expected: Iterable[PaymentRequestStatus],
        target: PaymentRequestStatus,
        **fields: Any,
    ) -> Optional[PaymentRequest]:
        """
        Atomically move an unclaimed request from ``expected`` to ``target``.

        Requests with a payment in flight are left alone (returns None).
        """
        pass

    @abstractmethod
    async def claim(self, request_id: str, transaction_id: str, now: datetime) -> Optional[PaymentRequest]:
        """
        Reserve a pending request for one payment attempt.

        Succeeds only if the request is pending, unexpired at ``now``,
        not locked and not already claimed. Returns None otherwise.
        """
        pass

    @abstractmethod
    async def release_claim(self, request_id: str, transaction_id: str, **fields: Any) -> Optional[PaymentRequest]:
        """Drop the claim held by ``transaction_id``, writing ``fields`` in the same step."""
        pass

    @abstractmethod
    async def complete(
        self,
        request_id: str,
        transaction_id: str,
        payer_id: str,
        paid_at: datetime,
    ) -> Optional[PaymentRequest]:
        """Flip pending -> completed, only for the attempt holding the claim."""
        pass

    @abstractmethod
    async def list_overdue(self, now: datetime) -> list[PaymentRequest]:
        """Pending, unclaimed requests whose deadline has passed."""
        pass

    @abstractmethod
    async def list_claimed(self) -> list[PaymentRequest]:
        """Pending requests with a payment in flight."""
        pass

    @abstractmethod
    async def list_for_requester(
        self,
        requester_id: str,
        status: Optional[PaymentRequestStatus] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[PaymentRequest], int]:
        pass
