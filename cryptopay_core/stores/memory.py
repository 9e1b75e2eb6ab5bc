"""In-memory stores for development and tests."""

import asyncio
from datetime import datetime
from typing import Any, Iterable, Optional

from cryptopay_core.models import (
    Currency,
    PaymentRequest,
    PaymentRequestStatus,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
    utc_now,
)
from .base import PaymentRequestStore, TransactionStore, apply_fields


class InMemoryTransactionStore(TransactionStore):
    """
    Transaction records held in a dict.

    All mutations run under one asyncio.Lock, which makes every
    compare-and-set atomic with respect to other coroutines. Callers
    always receive copies.
    """

    def __init__(self):
        self._records: dict[str, TransactionRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, record: TransactionRecord) -> TransactionRecord:
        async with self._lock:
            if record.id in self._records:
                raise ValueError(f"Transaction {record.id} already exists")
            self._records[record.id] = record.model_copy(deep=True)
            return record.model_copy(deep=True)

    async def get(self, transaction_id: str) -> Optional[TransactionRecord]:
        async with self._lock:
            record = self._records.get(transaction_id)
            return record.model_copy(deep=True) if record else None

    async def transition(
        self,
        transaction_id: str,
        expected: Iterable[TransactionStatus],
        target: TransactionStatus,
        **fields: Any,
    ) -> Optional[TransactionRecord]:
        expected = set(expected)
        async with self._lock:
            current = self._records.get(transaction_id)
            if current is None or current.status not in expected:
                return None
            record = current.model_copy(deep=True)
            record.apply_transition(target)
            apply_fields(record, fields)
            self._records[transaction_id] = record
            return record.model_copy(deep=True)

    async def update(self, transaction_id: str, **fields: Any) -> Optional[TransactionRecord]:
        async with self._lock:
            current = self._records.get(transaction_id)
            if current is None:
                return None
            record = current.model_copy(deep=True)
            apply_fields(record, fields)
            record.updated_at = utc_now()
            self._records[transaction_id] = record
            return record.model_copy(deep=True)

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
        async with self._lock:
            matches = [
                r for r in self._records.values()
                if r.involves(address)
                and (status is None or r.status == status)
                and (type is None or r.type == type)
                and (currency is None or r.currency == currency)
                and (since is None or r.created_at >= since)
            ]
            # Newest first; insertion order breaks created_at ties
            matches.reverse()
            matches.sort(key=lambda r: r.created_at, reverse=True)
            page = matches[offset:offset + limit]
            return [r.model_copy(deep=True) for r in page], len(matches)

    async def list_by_status(
        self,
        status: TransactionStatus,
        updated_before: Optional[datetime] = None,
    ) -> list[TransactionRecord]:
        async with self._lock:
            return [
                r.model_copy(deep=True) for r in self._records.values()
                if r.status == status and (updated_before is None or r.updated_at < updated_before)
            ]


class InMemoryPaymentRequestStore(PaymentRequestStore):
    """Payment requests held in a dict, guarded by one asyncio.Lock."""

    def __init__(self):
        self._requests: dict[str, PaymentRequest] = {}
        self._lock = asyncio.Lock()

    async def create(self, request: PaymentRequest) -> PaymentRequest:
        async with self._lock:
            if request.id in self._requests:
                raise ValueError(f"Payment request {request.id} already exists")
            self._requests[request.id] = request.model_copy(deep=True)
            return request.model_copy(deep=True)

    async def get(self, request_id: str) -> Optional[PaymentRequest]:
        async with self._lock:
            request = self._requests.get(request_id)
            return request.model_copy(deep=True) if request else None

    async def transition(
        self,
        request_id: str,
        expected: Iterable[PaymentRequestStatus],
        target: PaymentRequestStatus,
        **fields: Any,
    ) -> Optional[PaymentRequest]:
        expected = set(expected)
        async with self._lock:
            current = self._requests.get(request_id)
            if (
                current is None
                or current.status not in expected
                or current.processing_transaction_id is not None
            ):
                return None
            request = current.model_copy(deep=True)
            request.apply_transition(target)
            apply_fields(request, fields)
            self._requests[request_id] = request
            return request.model_copy(deep=True)

    async def claim(self, request_id: str, transaction_id: str, now: datetime) -> Optional[PaymentRequest]:
        async with self._lock:
            current = self._requests.get(request_id)
            if current is None or not current.can_be_paid(now):
                return None
            request = current.model_copy(deep=True)
            request.processing_transaction_id = transaction_id
            request.updated_at = now
            self._requests[request_id] = request
            return request.model_copy(deep=True)

    async def release_claim(self, request_id: str, transaction_id: str, **fields: Any) -> Optional[PaymentRequest]:
        async with self._lock:
            current = self._requests.get(request_id)
            if current is None or current.processing_transaction_id != transaction_id:
                return None
            request = current.model_copy(deep=True)
            request.processing_transaction_id = None
            apply_fields(request, fields)
            request.updated_at = utc_now()
            self._requests[request_id] = request
            return request.model_copy(deep=True)

    async def complete(
        self,
        request_id: str,
        transaction_id: str,
        payer_id: str,
        paid_at: datetime,
    ) -> Optional[PaymentRequest]:
        async with self._lock:
            current = self._requests.get(request_id)
            if (
                current is None
                or current.status != PaymentRequestStatus.PENDING
                or current.processing_transaction_id != transaction_id
            ):
                return None
            request = current.model_copy(deep=True)
            request.apply_transition(PaymentRequestStatus.COMPLETED, paid_at)
            request.payer_id = payer_id
            request.transaction_id = transaction_id
            request.paid_at = paid_at
            self._requests[request_id] = request
            return request.model_copy(deep=True)

    async def list_overdue(self, now: datetime) -> list[PaymentRequest]:
        async with self._lock:
            return [r.model_copy(deep=True) for r in self._requests.values() if r.is_overdue(now)]

    async def list_claimed(self) -> list[PaymentRequest]:
        async with self._lock:
            return [
                r.model_copy(deep=True) for r in self._requests.values()
                if r.status == PaymentRequestStatus.PENDING and r.processing_transaction_id
            ]

    async def list_for_requester(
        self,
        requester_id: str,
        status: Optional[PaymentRequestStatus] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[PaymentRequest], int]:
        async with self._lock:
            matches = [
                r for r in self._requests.values()
                if r.requester_id == requester_id and (status is None or r.status == status)
            ]
            # Newest first; insertion order breaks created_at ties
            matches.reverse()
            matches.sort(key=lambda r: r.created_at, reverse=True)
            return [r.model_copy(deep=True) for r in matches[offset:offset + limit]], len(matches)
