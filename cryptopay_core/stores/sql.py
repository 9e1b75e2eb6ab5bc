"""SQLAlchemy-backed stores.

Every compare-and-set is a single ``UPDATE ... WHERE status = :observed``
statement; its rowcount tells whether this caller won the race. Updates
only write the columns that actually changed, so concurrent writers of
unrelated fields do not overwrite each other.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cryptopay_core.database.models import DBPaymentRequest, DBTransaction
from cryptopay_core.exceptions import StoreError
from cryptopay_core.models import (
    Currency,
    PaymentRequest,
    PaymentRequestStatus,
    TransactionFees,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
    utc_now,
)
from .base import PaymentRequestStore, TransactionStore, apply_fields

logger = logging.getLogger(__name__)

_FEE_COLUMNS = ("network_fee", "platform_fee", "total_fee", "gas_price", "gas_used")


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _column_value(value: Any) -> Any:
    if isinstance(value, (TransactionStatus, PaymentRequestStatus, Currency, TransactionType)):
        return value.value
    if isinstance(value, datetime):
        return _aware(value)
    return value


def _record_from_row(row: DBTransaction) -> TransactionRecord:
    return TransactionRecord(
        id=row.id,
        owner_id=row.owner_id,
        from_address=row.from_address,
        to_address=row.to_address,
        amount=row.amount,
        currency=Currency(row.currency),
        type=TransactionType(row.type),
        status=TransactionStatus(row.status),
        description=row.description,
        transaction_hash=row.transaction_hash,
        block_number=row.block_number,
        block_hash=row.block_hash,
        confirmations=row.confirmations or 0,
        payment_request_id=row.payment_request_id,
        fees=TransactionFees(
            network_fee=row.network_fee,
            platform_fee=row.platform_fee,
            total_fee=row.total_fee,
            gas_price=row.gas_price,
            gas_used=row.gas_used,
        ),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        executed_at=_aware(row.executed_at),
        confirmed_at=_aware(row.confirmed_at),
        error_message=row.error_message,
        retry_count=row.retry_count or 0,
    )


def _record_values(record: TransactionRecord, names: Optional[Iterable[str]] = None) -> dict[str, Any]:
    """Column values for ``record``, restricted to ``names`` when given."""
    names = set(names) if names is not None else set(type(record).model_fields)
    values: dict[str, Any] = {}
    for name in names:
        if name == "fees":
            for column in _FEE_COLUMNS:
                values[column] = getattr(record.fees, column)
        else:
            values[name] = _column_value(getattr(record, name))
    return values


def _request_from_row(row: DBPaymentRequest) -> PaymentRequest:
    return PaymentRequest(
        id=row.id,
        requester_id=row.requester_id,
        payer_id=row.payer_id,
        amount=row.amount,
        currency=Currency(row.currency),
        description=row.description,
        recipient_address=row.recipient_address,
        status=PaymentRequestStatus(row.status),
        expires_at=_aware(row.expires_at),
        paid_at=_aware(row.paid_at),
        transaction_id=row.transaction_id,
        processing_transaction_id=row.processing_transaction_id,
        failed_attempts=row.failed_attempts or 0,
        locked_until=_aware(row.locked_until),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _request_values(request: PaymentRequest, names: Optional[Iterable[str]] = None) -> dict[str, Any]:
    names = set(names) if names is not None else set(type(request).model_fields)
    return {name: _column_value(getattr(request, name)) for name in names}


class _SQLStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    def _store_error(self, operation: str, error: SQLAlchemyError) -> StoreError:
        logger.error(f"Store operation {operation} failed: {error}")
        return StoreError(f"Database error during {operation}", details={"operation": operation})


class SQLTransactionStore(_SQLStore, TransactionStore):
    """Transaction records in the ``transactions`` table."""

    async def create(self, record: TransactionRecord) -> TransactionRecord:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(DBTransaction(**_record_values(record)))
        except SQLAlchemyError as e:
            raise self._store_error("create_transaction", e) from e
        return record.model_copy(deep=True)

    async def get(self, transaction_id: str) -> Optional[TransactionRecord]:
        try:
            async with self._session_factory() as session:
                row = await session.get(DBTransaction, transaction_id)
                return _record_from_row(row) if row else None
        except SQLAlchemyError as e:
            raise self._store_error("get_transaction", e) from e

    async def transition(
        self,
        transaction_id: str,
        expected: Iterable[TransactionStatus],
        target: TransactionStatus,
        **fields: Any,
    ) -> Optional[TransactionRecord]:
        expected_values = {TransactionStatus(s).value for s in expected}
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(DBTransaction, transaction_id)
                    if row is None or row.status not in expected_values:
                        return None
                    record = _record_from_row(row)
                    observed = record.status.value
                    record.apply_transition(target)
                    apply_fields(record, fields)

                    changed = {"status", "updated_at", "executed_at", "confirmed_at", *fields}
                    result = await session.execute(
                        update(DBTransaction)
                        .where(DBTransaction.id == transaction_id, DBTransaction.status == observed)
                        .values(**_record_values(record, changed))
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        return None
        except SQLAlchemyError as e:
            raise self._store_error("transition_transaction", e) from e
        return record

    async def update(self, transaction_id: str, **fields: Any) -> Optional[TransactionRecord]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(DBTransaction, transaction_id)
                    if row is None:
                        return None
                    record = _record_from_row(row)
                    apply_fields(record, fields)
                    record.updated_at = utc_now()
                    await session.execute(
                        update(DBTransaction)
                        .where(DBTransaction.id == transaction_id)
                        .values(**_record_values(record, {"updated_at", *fields}))
                        .execution_options(synchronize_session=False)
                    )
        except SQLAlchemyError as e:
            raise self._store_error("update_transaction", e) from e
        return await self.get(transaction_id)

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
        address = address.lower()
        conditions = [or_(DBTransaction.from_address == address, DBTransaction.to_address == address)]
        if status is not None:
            conditions.append(DBTransaction.status == status.value)
        if type is not None:
            conditions.append(DBTransaction.type == type.value)
        if currency is not None:
            conditions.append(DBTransaction.currency == currency.value)
        if since is not None:
            conditions.append(DBTransaction.created_at >= _aware(since))

        try:
            async with self._session_factory() as session:
                total = await session.scalar(
                    select(func.count()).select_from(DBTransaction).where(*conditions)
                )
                rows = await session.scalars(
                    select(DBTransaction)
                    .where(*conditions)
                    .order_by(DBTransaction.created_at.desc())
                    .offset(offset)
                    .limit(limit)
                )
                return [_record_from_row(r) for r in rows], int(total or 0)
        except SQLAlchemyError as e:
            raise self._store_error("list_transactions", e) from e

    async def list_by_status(
        self,
        status: TransactionStatus,
        updated_before: Optional[datetime] = None,
    ) -> list[TransactionRecord]:
        stmt = select(DBTransaction).where(DBTransaction.status == status.value)
        if updated_before is not None:
            stmt = stmt.where(DBTransaction.updated_at < _aware(updated_before))
        try:
            async with self._session_factory() as session:
                return [_record_from_row(r) for r in await session.scalars(stmt)]
        except SQLAlchemyError as e:
            raise self._store_error("list_transactions_by_status", e) from e


class SQLPaymentRequestStore(_SQLStore, PaymentRequestStore):
    """Payment requests in the ``payment_requests`` table."""

    async def create(self, request: PaymentRequest) -> PaymentRequest:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(DBPaymentRequest(**_request_values(request)))
        except SQLAlchemyError as e:
            raise self._store_error("create_payment_request", e) from e
        return request.model_copy(deep=True)

    async def get(self, request_id: str) -> Optional[PaymentRequest]:
        try:
            async with self._session_factory() as session:
                row = await session.get(DBPaymentRequest, request_id)
                return _request_from_row(row) if row else None
        except SQLAlchemyError as e:
            raise self._store_error("get_payment_request", e) from e

    async def _execute_update(self, operation: str, stmt) -> int:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt.execution_options(synchronize_session=False))
                    return result.rowcount
        except SQLAlchemyError as e:
            raise self._store_error(operation, e) from e

    async def transition(
        self,
        request_id: str,
        expected: Iterable[PaymentRequestStatus],
        target: PaymentRequestStatus,
        **fields: Any,
    ) -> Optional[PaymentRequest]:
        expected_values = {PaymentRequestStatus(s).value for s in expected}
        current = await self.get(request_id)
        if (
            current is None
            or current.status.value not in expected_values
            or current.processing_transaction_id is not None
        ):
            return None
        observed = current.status.value
        current.apply_transition(target)
        apply_fields(current, fields)

        rowcount = await self._execute_update(
            "transition_payment_request",
            update(DBPaymentRequest)
            .where(
                DBPaymentRequest.id == request_id,
                DBPaymentRequest.status == observed,
                DBPaymentRequest.processing_transaction_id.is_(None),
            )
            .values(**_request_values(current, {"status", "updated_at", *fields})),
        )
        return current if rowcount == 1 else None

    async def claim(self, request_id: str, transaction_id: str, now: datetime) -> Optional[PaymentRequest]:
        now = _aware(now)
        rowcount = await self._execute_update(
            "claim_payment_request",
            update(DBPaymentRequest)
            .where(
                DBPaymentRequest.id == request_id,
                DBPaymentRequest.status == PaymentRequestStatus.PENDING.value,
                DBPaymentRequest.processing_transaction_id.is_(None),
                DBPaymentRequest.expires_at > now,
                or_(DBPaymentRequest.locked_until.is_(None), DBPaymentRequest.locked_until <= now),
            )
            .values(processing_transaction_id=transaction_id, updated_at=now),
        )
        return await self.get(request_id) if rowcount == 1 else None

    async def release_claim(self, request_id: str, transaction_id: str, **fields: Any) -> Optional[PaymentRequest]:
        current = await self.get(request_id)
        if current is None:
            return None
        apply_fields(current, fields)
        values = _request_values(current, fields)
        values.update(processing_transaction_id=None, updated_at=utc_now())
        rowcount = await self._execute_update(
            "release_payment_request_claim",
            update(DBPaymentRequest)
            .where(
                DBPaymentRequest.id == request_id,
                DBPaymentRequest.processing_transaction_id == transaction_id,
            )
            .values(**values),
        )
        return await self.get(request_id) if rowcount == 1 else None

    async def complete(
        self,
        request_id: str,
        transaction_id: str,
        payer_id: str,
        paid_at: datetime,
    ) -> Optional[PaymentRequest]:
        paid_at = _aware(paid_at)
        rowcount = await self._execute_update(
            "complete_payment_request",
            update(DBPaymentRequest)
            .where(
                DBPaymentRequest.id == request_id,
                DBPaymentRequest.status == PaymentRequestStatus.PENDING.value,
                DBPaymentRequest.processing_transaction_id == transaction_id,
            )
            .values(
                status=PaymentRequestStatus.COMPLETED.value,
                payer_id=payer_id,
                transaction_id=transaction_id,
                paid_at=paid_at,
                updated_at=paid_at,
            ),
        )
        return await self.get(request_id) if rowcount == 1 else None

    async def _select(self, operation: str, stmt) -> list[PaymentRequest]:
        try:
            async with self._session_factory() as session:
                return [_request_from_row(r) for r in await session.scalars(stmt)]
        except SQLAlchemyError as e:
            raise self._store_error(operation, e) from e

    async def list_overdue(self, now: datetime) -> list[PaymentRequest]:
        return await self._select(
            "list_overdue_payment_requests",
            select(DBPaymentRequest).where(
                DBPaymentRequest.status == PaymentRequestStatus.PENDING.value,
                DBPaymentRequest.processing_transaction_id.is_(None),
                DBPaymentRequest.expires_at <= _aware(now),
            ),
        )

    async def list_claimed(self) -> list[PaymentRequest]:
        return await self._select(
            "list_claimed_payment_requests",
            select(DBPaymentRequest).where(
                DBPaymentRequest.status == PaymentRequestStatus.PENDING.value,
                DBPaymentRequest.processing_transaction_id.is_not(None),
            ),
        )

    async def list_for_requester(
        self,
        requester_id: str,
        status: Optional[PaymentRequestStatus] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[PaymentRequest], int]:
        conditions = [DBPaymentRequest.requester_id == requester_id]
        if status is not None:
            conditions.append(DBPaymentRequest.status == status.value)
        try:
            async with self._session_factory() as session:
                total = await session.scalar(
                    select(func.count()).select_from(DBPaymentRequest).where(*conditions)
                )
                rows = await session.scalars(
                    select(DBPaymentRequest)
                    .where(*conditions)
                    .order_by(DBPaymentRequest.created_at.desc())
                    .offset(offset)
                    .limit(limit)
                )
                return [_request_from_row(r) for r in rows], int(total or 0)
        except SQLAlchemyError as e:
            raise self._store_error("list_payment_requests", e) from e
