"""Tests for the transaction and payment request stores (in-memory and SQL)."""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker

from cryptopay_core.database import create_engine_for, init_db
from cryptopay_core.exceptions import InvalidStateError
from cryptopay_core.models import (
    Currency,
    PaymentRequest,
    PaymentRequestStatus,
    TransactionRecord,
    TransactionStatus,
    utc_now,
)
from cryptopay_core.stores import (
    InMemoryPaymentRequestStore,
    InMemoryTransactionStore,
    SQLPaymentRequestStore,
    SQLTransactionStore,
)

WALLET_A = "0x" + "aa" * 20
WALLET_B = "0x" + "bb" * 20


@pytest_asyncio.fixture(params=["memory", "sql"])
async def stores(request, tmp_path):
    """Yield (transactions, requests) for each backend."""
    if request.param == "memory":
        yield InMemoryTransactionStore(), InMemoryPaymentRequestStore()
        return
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'cryptopay.db'}")
    await init_db(engine)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    yield SQLTransactionStore(factory), SQLPaymentRequestStore(factory)
    await engine.dispose()


def _record(**overrides) -> TransactionRecord:
    values = dict(owner_id="user_a", from_address=WALLET_A, to_address=WALLET_B, amount="1.5", currency=Currency.ETH)
    values.update(overrides)
    return TransactionRecord(**values)


def _request(**overrides) -> PaymentRequest:
    values = dict(
        requester_id="user_b",
        amount="10",
        currency=Currency.CPX,
        description="Invoice 17",
        recipient_address=WALLET_B,
        expires_at=utc_now() + timedelta(hours=1),
    )
    values.update(overrides)
    return PaymentRequest(**values)


@pytest.mark.asyncio
class TestTransactionStore:

    async def test_create_and_get(self, stores):
        transactions, _ = stores
        record = await transactions.create(_record(description="rent"))

        loaded = await transactions.get(record.id)
        assert loaded.id == record.id
        assert loaded.amount == "1.5"
        assert loaded.description == "rent"
        assert loaded.status == TransactionStatus.PENDING
        assert await transactions.get("tx_missing") is None

    async def test_transition_compare_and_set(self, stores):
        """Test a transition only applies when the stored status matches."""
        transactions, _ = stores
        record = await transactions.create(_record())

        moved = await transactions.transition(
            record.id, [TransactionStatus.PENDING], TransactionStatus.PROCESSING, transaction_hash="0x" + "01" * 32
        )
        assert moved.status == TransactionStatus.PROCESSING
        assert moved.executed_at is None
        assert moved.transaction_hash == "0x" + "01" * 32

        lost = await transactions.transition(record.id, [TransactionStatus.PENDING], TransactionStatus.CANCELLED)
        assert lost is None
        assert (await transactions.get(record.id)).status == TransactionStatus.PROCESSING

    async def test_terminal_status_is_frozen(self, stores):
        transactions, _ = stores
        record = await transactions.create(_record())
        await transactions.transition(record.id, [TransactionStatus.PENDING], TransactionStatus.CANCELLED)

        with pytest.raises(InvalidStateError):
            await transactions.transition(record.id, [TransactionStatus.CANCELLED], TransactionStatus.PROCESSING)

    async def test_update_rejects_status(self, stores):
        transactions, _ = stores
        record = await transactions.create(_record())
        with pytest.raises(ValueError):
            await transactions.update(record.id, status=TransactionStatus.CONFIRMED)

        updated = await transactions.update(record.id, confirmations=3, retry_count=1)
        assert updated.confirmations == 3
        assert updated.retry_count == 1

    async def test_list_for_wallet(self, stores):
        transactions, _ = stores
        first = await transactions.create(_record(created_at=utc_now() - timedelta(minutes=2)))
        second = await transactions.create(
            _record(from_address=WALLET_B, to_address=WALLET_A, currency=Currency.CPX, created_at=utc_now())
        )
        await transactions.create(_record(from_address="0x" + "cc" * 20, to_address="0x" + "dd" * 20))

        records, total = await transactions.list_for_wallet(WALLET_A.upper().replace("0X", "0x"))
        assert total == 2
        assert [r.id for r in records] == [second.id, first.id]

        records, total = await transactions.list_for_wallet(WALLET_A, currency=Currency.CPX)
        assert total == 1
        assert records[0].id == second.id

        records, total = await transactions.list_for_wallet(WALLET_A, offset=1, limit=1)
        assert total == 2
        assert [r.id for r in records] == [first.id]

    async def test_list_by_status(self, stores):
        transactions, _ = stores
        record = await transactions.create(_record())
        await transactions.transition(record.id, [TransactionStatus.PENDING], TransactionStatus.PROCESSING)

        assert [r.id for r in await transactions.list_by_status(TransactionStatus.PROCESSING)] == [record.id]
        stale = await transactions.list_by_status(
            TransactionStatus.PROCESSING, updated_before=utc_now() - timedelta(minutes=5)
        )
        assert stale == []


@pytest.mark.asyncio
class TestPaymentRequestStore:

    async def test_claim_is_exclusive(self, stores):
        """Test only one of two concurrent claims wins."""
        _, requests = stores
        request = await requests.create(_request())

        results = await asyncio.gather(
            requests.claim(request.id, "tx_one", utc_now()),
            requests.claim(request.id, "tx_two", utc_now()),
        )
        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert (await requests.get(request.id)).processing_transaction_id == winners[0].processing_transaction_id

    async def test_claim_refuses_expired_and_locked(self, stores):
        _, requests = stores
        expired = await requests.create(_request(expires_at=utc_now() - timedelta(seconds=1)))
        locked = await requests.create(_request(locked_until=utc_now() + timedelta(minutes=30)))

        assert await requests.claim(expired.id, "tx_one", utc_now()) is None
        assert await requests.claim(locked.id, "tx_one", utc_now()) is None
        assert await requests.claim(locked.id, "tx_one", utc_now() + timedelta(hours=1)) is not None

    async def test_release_claim(self, stores):
        _, requests = stores
        request = await requests.create(_request())
        await requests.claim(request.id, "tx_one", utc_now())

        assert await requests.release_claim(request.id, "tx_other") is None
        released = await requests.release_claim(request.id, "tx_one", failed_attempts=1)
        assert released.processing_transaction_id is None
        assert released.failed_attempts == 1
        assert released.status == PaymentRequestStatus.PENDING

    async def test_complete_requires_claim(self, stores):
        _, requests = stores
        request = await requests.create(_request())
        paid_at = utc_now()

        assert await requests.complete(request.id, "tx_one", "user_a", paid_at) is None
        await requests.claim(request.id, "tx_one", utc_now())
        completed = await requests.complete(request.id, "tx_one", "user_a", paid_at)

        assert completed.status == PaymentRequestStatus.COMPLETED
        assert completed.payer_id == "user_a"
        assert completed.transaction_id == "tx_one"
        assert completed.paid_at is not None

    async def test_transition_skips_claimed(self, stores):
        """Test a request with a payment in flight cannot be cancelled or expired."""
        _, requests = stores
        request = await requests.create(_request())
        await requests.claim(request.id, "tx_one", utc_now())

        assert await requests.transition(
            request.id, [PaymentRequestStatus.PENDING], PaymentRequestStatus.CANCELLED
        ) is None

        await requests.release_claim(request.id, "tx_one")
        cancelled = await requests.transition(
            request.id, [PaymentRequestStatus.PENDING], PaymentRequestStatus.CANCELLED
        )
        assert cancelled.status == PaymentRequestStatus.CANCELLED

    async def test_overdue_and_claimed_listings(self, stores):
        _, requests = stores
        overdue = await requests.create(_request(expires_at=utc_now() - timedelta(minutes=1)))
        await requests.create(_request())
        claimed = await requests.create(_request())
        await requests.claim(claimed.id, "tx_one", utc_now())

        assert [r.id for r in await requests.list_overdue(utc_now())] == [overdue.id]
        assert [r.id for r in await requests.list_claimed()] == [claimed.id]

    async def test_list_for_requester(self, stores):
        _, requests = stores
        older = await requests.create(_request(created_at=utc_now() - timedelta(minutes=1)))
        newer = await requests.create(_request())
        await requests.create(_request(requester_id="someone_else"))
        await requests.transition(older.id, [PaymentRequestStatus.PENDING], PaymentRequestStatus.CANCELLED)

        items, total = await requests.list_for_requester("user_b")
        assert total == 2
        assert [r.id for r in items] == [newer.id, older.id]

        items, total = await requests.list_for_requester("user_b", status=PaymentRequestStatus.CANCELLED)
        assert total == 1
        assert items[0].id == older.id
