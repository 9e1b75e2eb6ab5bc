"""Stores for transaction records and payment requests."""

from .base import PaymentRequestStore, TransactionStore
from .memory import InMemoryPaymentRequestStore, InMemoryTransactionStore
from .sql import SQLPaymentRequestStore, SQLTransactionStore

__all__ = [
    "PaymentRequestStore",
    "TransactionStore",
    "InMemoryPaymentRequestStore",
    "InMemoryTransactionStore",
    "SQLPaymentRequestStore",
    "SQLTransactionStore",
]
