"""Database package for CryptoPay."""

from .models import Base, DBPaymentRequest, DBTransaction
from .session import close_db, create_engine_for, get_database_url, get_session_factory, init_db

__all__ = [
    "Base",
    "DBPaymentRequest",
    "DBTransaction",
    "close_db",
    "create_engine_for",
    "get_database_url",
    "get_session_factory",
    "init_db",
]
