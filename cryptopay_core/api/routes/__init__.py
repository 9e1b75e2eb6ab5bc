"""API route modules."""

from . import auth, contract, notifications, transactions, wallet

__all__ = ["auth", "contract", "notifications", "transactions", "wallet"]
