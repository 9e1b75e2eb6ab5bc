"""Domain models for CryptoPay."""

from .enums import (
    Currency,
    GasKind,
    PaymentRequestStatus,
    TransactionStatus,
    TransactionType,
    TERMINAL_TRANSACTION_STATUSES,
)
from .identity import Identity
from .payment_request import PaymentRequest, payment_url_for
from .transaction import MAX_RETRY_COUNT, TransactionFees, TransactionRecord, utc_now

__all__ = [
    "Currency",
    "GasKind",
    "PaymentRequestStatus",
    "TransactionStatus",
    "TransactionType",
    "TERMINAL_TRANSACTION_STATUSES",
    "Identity",
    "PaymentRequest",
    "payment_url_for",
    "MAX_RETRY_COUNT",
    "TransactionFees",
    "TransactionRecord",
    "utc_now",
]
