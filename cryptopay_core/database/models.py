"""
SQLAlchemy database models for CryptoPay.

Two tables: ``transactions`` and ``payment_requests``. Amounts are stored
as decimal strings, exactly as they travel through the API, and statuses
as the enum values from ``cryptopay_core.models.enums``.
"""

from sqlalchemy import Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class DBTransaction(Base):
    """Transaction record table."""

    __tablename__ = "transactions"

    id = Column(String(64), primary_key=True)
    owner_id = Column(String(64), nullable=False)

    from_address = Column(String(42), nullable=False)
    to_address = Column(String(42), nullable=False)
    amount = Column(String(80), nullable=False)
    currency = Column(String(8), nullable=False)
    type = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    description = Column(Text, nullable=True)

    # On-chain data
    transaction_hash = Column(String(66), nullable=True, unique=True)
    block_number = Column(Integer, nullable=True)
    block_hash = Column(String(66), nullable=True)
    confirmations = Column(Integer, nullable=False, default=0)

    payment_request_id = Column(String(64), nullable=True, index=True)

    # Fees
    network_fee = Column(String(80), nullable=False, default="0")
    platform_fee = Column(String(80), nullable=False, default="0")
    total_fee = Column(String(80), nullable=False, default="0")
    gas_price = Column(String(40), nullable=False, default="20")
    gas_used = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    executed_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_transactions_from_created", "from_address", "created_at"),
        Index("ix_transactions_to_created", "to_address", "created_at"),
        Index("ix_transactions_owner_created", "owner_id", "created_at"),
        Index("ix_transactions_status_created", "status", "created_at"),
    )


class DBPaymentRequest(Base):
    """Payment request table."""

    __tablename__ = "payment_requests"

    id = Column(String(64), primary_key=True)
    requester_id = Column(String(64), nullable=False)
    payer_id = Column(String(64), nullable=True)

    amount = Column(String(80), nullable=False)
    currency = Column(String(8), nullable=False)
    description = Column(String(500), nullable=False)
    recipient_address = Column(String(42), nullable=False)

    status = Column(String(16), nullable=False, default="pending")
    expires_at = Column(DateTime(timezone=True), nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    transaction_id = Column(String(64), nullable=True)

    processing_transaction_id = Column(String(64), nullable=True)
    failed_attempts = Column(Integer, nullable=False, default=0)
    locked_until = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_payment_requests_requester_created", "requester_id", "created_at"),
        Index("ix_payment_requests_status_expires", "status", "expires_at"),
    )
