"""Status and currency enums shared by the API, the ORM and the settlement engine."""

from enum import Enum


class Currency(str, Enum):
    """Supported settlement currencies."""
    ETH = "ETH"  # Native coin
    CPX = "CPX"  # Platform token (ERC-20)

    @property
    def is_native(self) -> bool:
        return self is Currency.ETH


class TransactionType(str, Enum):
    SEND = "send"
    RECEIVE = "receive"
    PAYMENT = "payment"
    TRANSFER = "transfer"


class TransactionStatus(str, Enum):
    """Lifecycle of a transaction record."""
    PENDING = "pending"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TRANSACTION_STATUSES


class PaymentRequestStatus(str, Enum):
    """Lifecycle of a payment request."""
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentRequestStatus.PENDING


class GasKind(str, Enum):
    """Ledger operations that can be gas-estimated."""
    NATIVE_TRANSFER = "native_transfer"
    TOKEN_TRANSFER = "token_transfer"
    CREATE_PAYMENT = "create_payment"
    EXECUTE_PAYMENT = "execute_payment"


TERMINAL_TRANSACTION_STATUSES = frozenset({
    TransactionStatus.CONFIRMED,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
})

TRANSACTION_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset({TransactionStatus.PROCESSING, TransactionStatus.CANCELLED}),
    TransactionStatus.PROCESSING: frozenset({
        TransactionStatus.CONFIRMED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    }),
    TransactionStatus.CONFIRMED: frozenset(),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
}

PAYMENT_REQUEST_TRANSITIONS: dict[PaymentRequestStatus, frozenset[PaymentRequestStatus]] = {
    PaymentRequestStatus.PENDING: frozenset({
        PaymentRequestStatus.COMPLETED,
        PaymentRequestStatus.EXPIRED,
        PaymentRequestStatus.CANCELLED,
    }),
    PaymentRequestStatus.COMPLETED: frozenset(),
    PaymentRequestStatus.EXPIRED: frozenset(),
    PaymentRequestStatus.CANCELLED: frozenset(),
}
