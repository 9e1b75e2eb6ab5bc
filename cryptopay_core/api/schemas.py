"""Request bodies for the HTTP API.

Field values are kept loosely typed (amounts as strings or numbers) so
that the settlement engine's validators produce the error messages.
"""

from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

Amount = Union[str, int, float]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterRequest(_CamelModel):
    email: str
    password: str
    wallet_address: Optional[str] = Field(None, alias="walletAddress")


class LoginRequest(_CamelModel):
    email: str
    password: str


class PaymentRequestCreate(_CamelModel):
    amount: Amount
    currency: str
    description: str
    expires_at: Optional[datetime] = Field(None, alias="expiresAt")


class PayRequest(_CamelModel):
    """Body for paying a request or executing a transaction."""
    private_key: str = Field(..., alias="privateKey", repr=False)
    gas_price: Optional[Amount] = Field(None, alias="gasPrice")


class TransactionCreate(_CamelModel):
    to_address: str = Field(..., alias="toAddress")
    amount: Amount
    currency: str
    description: Optional[str] = None
    gas_price: Optional[Amount] = Field(None, alias="gasPrice")


class WaitRequest(_CamelModel):
    confirmations: Optional[int] = Field(None, ge=1, le=20)
    timeout: Optional[float] = Field(None, gt=0, le=3600)


class GasEstimateRequest(_CamelModel):
    to_address: str = Field(..., alias="toAddress")
    amount: Amount
    currency: str


class LedgerConfigUpdate(_CamelModel):
    rpc_url: Optional[str] = Field(None, alias="rpcUrl")
    chain_id: Optional[int] = Field(None, alias="chainId")
    token_address: Optional[str] = Field(None, alias="tokenAddress")
    gateway_address: Optional[str] = Field(None, alias="paymentGatewayAddress")
    poll_interval: Optional[float] = Field(None, alias="pollInterval", gt=0)


class WebhookCreate(_CamelModel):
    url: str
    events: Optional[list[str]] = None
