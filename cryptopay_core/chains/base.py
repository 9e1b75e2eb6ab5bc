"""Abstract base class for ledger (blockchain) clients."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from cryptopay_core.models.enums import GasKind
from . import confirmation

WEI_PER_ETHER = 10 ** 18
WEI_PER_GWEI = 10 ** 9


def wei_to_ether(wei: int) -> Decimal:
    return Decimal(wei) / Decimal(WEI_PER_ETHER)


def ether_to_wei(amount: Any) -> int:
    """Convert a decimal-unit amount (18 decimals) to base units, truncating dust."""
    return int(Decimal(str(amount)) * WEI_PER_ETHER)


def gwei_to_wei(amount: Any) -> int:
    return int(Decimal(str(amount)) * WEI_PER_GWEI)


def format_units(value: Decimal) -> str:
    """Render a decimal without exponent or trailing zeros ("1.5", "0", "20")."""
    text = format(value.normalize(), "f")
    return text


@dataclass(frozen=True)
class LedgerClientConfig:
    """
    Connection settings for a ledger client.

    Frozen: reconfiguring means building a new client from a new config and
    swapping it in, never mutating a client that may have a send in flight.
    """
    rpc_url: str = "http://localhost:7545"
    chain_id: int = 1337
    token_address: Optional[str] = None
    gateway_address: Optional[str] = None
    poll_interval: float = 1.0
    default_gas_price_gwei: Decimal = Decimal("20")
    request_timeout: float = 30.0

    def with_updates(self, **changes: Any) -> "LedgerClientConfig":
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def to_dict(self) -> dict[str, Any]:
        return {
            "rpcUrl": self.rpc_url,
            "chainId": self.chain_id,
            "tokenAddress": self.token_address,
            "paymentGatewayAddress": self.gateway_address,
            "pollInterval": self.poll_interval,
            "defaultGasPrice": str(self.default_gas_price_gwei),
        }


@dataclass(frozen=True)
class Balance:
    """An amount in both base units (wei) and decimal units (ether)."""
    wei: int

    @property
    def ether(self) -> Decimal:
        return wei_to_ether(self.wei)

    def to_dict(self) -> dict[str, str]:
        return {"wei": str(self.wei), "ether": format_units(self.ether)}


@dataclass(frozen=True)
class Receipt:
    """Mined transaction receipt."""
    transaction_hash: str
    block_number: int
    block_hash: Optional[str]
    gas_used: int
    status: bool
    effective_gas_price: Optional[int] = None
    logs: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class TokenInfo:
    name: str
    symbol: str
    decimals: int
    total_supply: Balance

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "totalSupply": self.total_supply.to_dict(),
        }


@dataclass(frozen=True)
class GatewayPayment:
    """A payment recorded by the payment gateway contract."""
    payment_id: str
    from_address: str
    to_address: str
    amount: Balance
    fee: Balance
    timestamp: datetime
    description: str
    completed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "paymentId": self.payment_id,
            "from": self.from_address,
            "to": self.to_address,
            "amount": self.amount.to_dict(),
            "fee": self.fee.to_dict(),
            "timestamp": self.timestamp.isoformat(),
            "description": self.description,
            "completed": self.completed,
        }


class LedgerClient(ABC):
    """
    Abstract interface to the chain and the two deployed contracts
    (fungible token and payment gateway).

    Implementations:
    - Web3LedgerClient for a real RPC endpoint
    - SimulatedLedgerClient for development and tests

    Every method raises LedgerError on failure; implementation-specific
    RPC exceptions never escape.
    """

    def __init__(self, config: LedgerClientConfig):
        self._config = config

    @property
    def config(self) -> LedgerClientConfig:
        return self._config

    @abstractmethod
    async def get_native_balance(self, address: str) -> Balance:
        pass

    @abstractmethod
    async def get_token_balance(self, address: str) -> Balance:
        pass

    @abstractmethod
    async def estimate_gas(self, kind: GasKind, params: dict[str, Any]) -> int:
        """
        Estimate gas units for an operation.

        Args:
            kind: Operation to estimate
            params: ``from``, ``to`` and ``amount`` (wei) as relevant

        Returns:
            Raw estimate; the caller applies its own safety buffer
        """
        pass

    @abstractmethod
    async def current_gas_price(self) -> int:
        """Current network gas price in wei."""
        pass

    @abstractmethod
    async def send_native_transfer(
        self,
        from_address: str,
        to_address: str,
        amount_wei: int,
        gas_limit: int,
        gas_price_wei: int,
        signing_material: str,
    ) -> str:
        """Sign and broadcast a value transfer. Returns the hash without waiting for a receipt."""
        pass

    @abstractmethod
    async def send_token_transfer(
        self,
        from_address: str,
        to_address: str,
        amount_wei: int,
        gas_limit: int,
        gas_price_wei: int,
        signing_material: str,
    ) -> str:
        """Sign and broadcast token ``transfer(to, amount)``. Returns the hash."""
        pass

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        """Receipt for ``tx_hash``, or None if not mined yet."""
        pass

    @abstractmethod
    async def get_block_number(self) -> int:
        pass

    async def wait_for_confirmations(
        self,
        tx_hash: str,
        confirmations: int,
        timeout: float,
    ) -> Receipt:
        """
        Wait until ``tx_hash`` has ``confirmations`` blocks on top of it.

        Raises:
            ConfirmationTimeoutError: if ``timeout`` seconds pass first
        """
        return await confirmation.wait_for_confirmations(
            self,
            tx_hash,
            confirmations,
            timeout,
            poll_interval=self._config.poll_interval,
        )

    # ---- Payment gateway ----

    @abstractmethod
    async def create_payment(
        self,
        from_address: str,
        to_address: str,
        amount_wei: int,
        description: str,
        gas_price_wei: int,
        signing_material: str,
    ) -> tuple[str, str]:
        """Register a payment on the gateway. Returns (tx_hash, payment_id)."""
        pass

    @abstractmethod
    async def execute_payment(
        self,
        payment_id: str,
        from_address: str,
        gas_price_wei: int,
        signing_material: str,
    ) -> str:
        """Execute a gateway payment, splitting the platform fee. Returns the tx hash."""
        pass

    @abstractmethod
    async def get_payment_details(self, payment_id: str) -> GatewayPayment:
        pass

    @abstractmethod
    async def token_info(self) -> TokenInfo:
        pass

    async def close(self) -> None:
        """Release any connections held by the client."""
        return None
