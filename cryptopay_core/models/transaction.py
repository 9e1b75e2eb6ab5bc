"""Transaction record for transfers settled on chain."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
import uuid

from pydantic import BaseModel, Field, field_validator

from cryptopay_core.exceptions import InvalidStateError
from .enums import Currency, TransactionStatus, TransactionType, TRANSACTION_TRANSITIONS

MAX_RETRY_COUNT = 3


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TransactionFees(BaseModel):
    """Fee breakdown, all amounts as decimal strings in the transaction currency."""
    network_fee: str = "0"
    platform_fee: str = "0"
    total_fee: str = "0"
    gas_price: str = "20"  # gwei
    gas_used: Optional[int] = None


class TransactionRecord(BaseModel):
    """
    A wallet transfer, either standalone (send) or fulfilling a payment request.

    Records are never deleted. Once a record is confirmed, failed or
    cancelled its status is frozen; apply_transition() enforces this.
    """

    id: str = Field(default_factory=lambda: f"tx_{uuid.uuid4().hex[:20]}")
    owner_id: str

    from_address: str
    to_address: str
    amount: str
    currency: Currency
    type: TransactionType = TransactionType.SEND
    status: TransactionStatus = TransactionStatus.PENDING
    description: Optional[str] = Field(default=None, max_length=500)

    # On-chain data
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    block_hash: Optional[str] = None
    confirmations: int = Field(default=0, ge=0)

    payment_request_id: Optional[str] = None
    fees: TransactionFees = Field(default_factory=TransactionFees)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    executed_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    retry_count: int = Field(default=0, ge=0, le=MAX_RETRY_COUNT)

    @field_validator("from_address", "to_address")
    @classmethod
    def _lowercase_address(cls, v: str) -> str:
        return v.lower()

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def apply_transition(self, target: TransactionStatus, now: Optional[datetime] = None) -> None:
        """
        Move to ``target``, stamping confirmed_at on first entry to confirmed.

        executed_at marks the broadcast and is normally written together with
        the transaction hash; a record confirmed without one gets it here.
        """
        if target not in TRANSACTION_TRANSITIONS[self.status]:
            raise InvalidStateError(
                f"Transaction cannot move from {self.status.value} to {target.value}",
                details={"transaction_id": self.id, "status": self.status.value},
            )
        now = now or utc_now()
        self.status = target
        self.updated_at = now
        if target == TransactionStatus.CONFIRMED:
            self.executed_at = self.executed_at or now
            self.confirmed_at = self.confirmed_at or now

    def direction(self, wallet_address: str) -> str:
        """Direction of this transfer from the point of view of ``wallet_address``."""
        wallet = wallet_address.lower()
        if self.from_address == wallet and self.to_address == wallet:
            return "self"
        if self.from_address == wallet:
            return "outgoing"
        if self.to_address == wallet:
            return "incoming"
        return "unknown"

    def involves(self, wallet_address: Optional[str]) -> bool:
        if not wallet_address:
            return False
        return self.direction(wallet_address) != "unknown"

    def total_cost(self) -> Decimal:
        return Decimal(self.amount) + Decimal(self.fees.total_fee or "0")

    def update_confirmations(self, current_block: int) -> int:
        if self.block_number is not None:
            self.confirmations = max(0, current_block - self.block_number + 1)
        return self.confirmations

    def to_dict(self, wallet_address: Optional[str] = None) -> dict[str, Any]:
        """Public JSON view (camelCase, as served by the HTTP API)."""
        data = {
            "id": self.id,
            "fromAddress": self.from_address,
            "toAddress": self.to_address,
            "amount": self.amount,
            "currency": self.currency.value,
            "type": self.type.value,
            "status": self.status.value,
            "description": self.description,
            "transactionHash": self.transaction_hash,
            "blockNumber": self.block_number,
            "blockHash": self.block_hash,
            "confirmations": self.confirmations,
            "paymentRequestId": self.payment_request_id,
            "fees": {
                "networkFee": self.fees.network_fee,
                "platformFee": self.fees.platform_fee,
                "totalFee": self.fees.total_fee,
            },
            "gasPrice": self.fees.gas_price,
            "gasUsed": self.fees.gas_used,
            "totalCost": str(self.total_cost()),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "executedAt": self.executed_at.isoformat() if self.executed_at else None,
            "confirmedAt": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "errorMessage": self.error_message,
            "retryCount": self.retry_count,
        }
        if wallet_address:
            data["direction"] = self.direction(wallet_address)
        return data
