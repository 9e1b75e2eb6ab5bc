"""Tests for the transaction and payment request models."""

from datetime import timedelta
from decimal import Decimal

import pytest

from cryptopay_core.exceptions import InvalidStateError
from cryptopay_core.models import (
    Currency,
    Identity,
    PaymentRequest,
    PaymentRequestStatus,
    TransactionRecord,
    TransactionStatus,
    TransactionFees,
    utc_now,
)

SENDER = "0x" + "Ab" * 20
RECIPIENT = "0x" + "cd" * 20


@pytest.fixture
def record():
    return TransactionRecord(
        owner_id="user_1",
        from_address=SENDER,
        to_address=RECIPIENT,
        amount="2",
        currency=Currency.ETH,
        fees=TransactionFees(network_fee="0.00042", total_fee="0.00042"),
    )


@pytest.fixture
def request_():
    return PaymentRequest(
        requester_id="user_2",
        amount="25",
        currency=Currency.CPX,
        description="Dinner",
        recipient_address=RECIPIENT,
        expires_at=utc_now() + timedelta(hours=2),
    )


class TestTransactionRecord:

    def test_addresses_lowercased(self, record):
        assert record.from_address == SENDER.lower()

    def test_lifecycle_timestamps(self, record):
        record.apply_transition(TransactionStatus.PROCESSING)
        assert record.executed_at is None
        assert record.confirmed_at is None

        record.apply_transition(TransactionStatus.CONFIRMED)
        assert record.confirmed_at is not None
        assert record.executed_at == record.confirmed_at
        assert record.is_terminal

    @pytest.mark.parametrize("terminal", [
        TransactionStatus.CONFIRMED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    ])
    def test_terminal_statuses_are_frozen(self, record, terminal):
        record.apply_transition(TransactionStatus.PROCESSING)
        record.apply_transition(terminal)
        for target in TransactionStatus:
            with pytest.raises(InvalidStateError):
                record.apply_transition(target)

    def test_pending_cannot_confirm_directly(self, record):
        with pytest.raises(InvalidStateError, match="pending to confirmed"):
            record.apply_transition(TransactionStatus.CONFIRMED)

    def test_direction(self, record):
        assert record.direction(SENDER) == "outgoing"
        assert record.direction(RECIPIENT.upper().replace("0X", "0x")) == "incoming"
        assert record.direction("0x" + "00" * 20) == "unknown"
        record.to_address = record.from_address
        assert record.direction(SENDER) == "self"

    def test_total_cost(self, record):
        assert record.total_cost() == Decimal("2.00042")

    def test_update_confirmations(self, record):
        assert record.update_confirmations(100) == 0
        record.block_number = 95
        assert record.update_confirmations(100) == 6

    def test_retry_count_is_bounded(self):
        with pytest.raises(ValueError):
            TransactionRecord(
                owner_id="user_1", from_address=SENDER, to_address=RECIPIENT,
                amount="1", currency=Currency.ETH, retry_count=4,
            )

    def test_to_dict(self, record):
        data = record.to_dict(wallet_address=RECIPIENT)
        assert data["status"] == "pending"
        assert data["currency"] == "ETH"
        assert data["fees"]["totalFee"] == "0.00042"
        assert data["totalCost"] == "2.00042"
        assert data["direction"] == "incoming"
        assert "direction" not in record.to_dict()


class TestPaymentRequest:

    def test_payment_url_and_qr(self, request_):
        url = request_.payment_url("https://pay.example.com/")
        assert url == f"https://pay.example.com/pay/{request_.id}"

        qr = request_.qr_data("https://pay.example.com")
        assert qr["type"] == "payment_request"
        assert qr["url"] == url
        assert qr["recipient"] == RECIPIENT
        assert qr["currency"] == "CPX"

    def test_active_and_time_remaining(self, request_):
        now = utc_now()
        assert request_.is_active(now)
        assert 7000 < request_.time_remaining(now) <= 7200

        later = now + timedelta(hours=3)
        assert request_.is_expired(later)
        assert request_.is_overdue(later)
        assert request_.time_remaining(later) == 0

    def test_claimed_request_is_not_overdue(self, request_):
        request_.processing_transaction_id = "tx_1"
        assert not request_.is_overdue(utc_now() + timedelta(hours=3))
        assert not request_.can_be_paid()

    def test_lock(self, request_):
        now = utc_now()
        request_.locked_until = now + timedelta(hours=1)
        assert request_.is_locked(now)
        assert not request_.can_be_paid(now)
        assert not request_.is_locked(now + timedelta(hours=1, seconds=1))

    def test_transitions(self, request_):
        request_.apply_transition(PaymentRequestStatus.COMPLETED)
        with pytest.raises(InvalidStateError):
            request_.apply_transition(PaymentRequestStatus.CANCELLED)

    def test_to_dict(self, request_):
        data = request_.to_dict("https://pay.example.com", requester={"id": "user_2", "email": "b@example.com"})
        assert data["requester"]["email"] == "b@example.com"
        assert data["payer"] is None
        assert data["transaction"] is None
        assert data["status"] == "pending"
        assert data["isActive"] is True
        assert data["paymentUrl"].endswith(f"/pay/{request_.id}")

    def test_description_length(self):
        with pytest.raises(ValueError):
            PaymentRequest(
                requester_id="user_2", amount="1", currency=Currency.ETH, description="x" * 501,
                recipient_address=RECIPIENT, expires_at=utc_now() + timedelta(hours=1),
            )


class TestIdentity:

    def test_owns_wallet_case_insensitive(self):
        identity = Identity(user_id="user_1", email="a@example.com", wallet_address=SENDER)
        assert identity.owns_wallet(SENDER.lower())
        assert not identity.owns_wallet(RECIPIENT)
        assert not identity.owns_wallet(None)

    def test_admin(self):
        assert Identity(user_id="u", email="x@example.com", role="admin").is_admin
        assert not Identity(user_id="u", email="x@example.com").owns_wallet(SENDER)
