"""In-process chain used in simulation mode and in tests.

Keeps native and token balances, mines one block per broadcast and serves
receipts, so the settlement engine runs its real flow without a node.
Failures can be injected per send:

    chain = SimulatedLedgerClient()
    chain.fund(alice, eth="5", cpx="100")
    chain.fail_next_send("nonce too low")   # broadcast raises LedgerError
    chain.revert_next_send()                # mined with status 0
    chain.withhold_receipts = True          # never mined
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from web3 import Web3

from cryptopay_core.exceptions import LedgerError
from cryptopay_core.logging_config import log_chain_event
from cryptopay_core.models.enums import GasKind
from .base import (
    Balance,
    GatewayPayment,
    LedgerClient,
    LedgerClientConfig,
    Receipt,
    TokenInfo,
    ether_to_wei,
    gwei_to_wei,
)
from .fees import DEFAULT_FEE_BPS, split_amount
from .signer import ScopedSigner

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40
DEFAULT_FEE_COLLECTOR = "0x" + "fee0" * 10

GAS_USAGE = {
    GasKind.NATIVE_TRANSFER: 21_000,
    GasKind.TOKEN_TRANSFER: 52_000,
    GasKind.CREATE_PAYMENT: 120_000,
    GasKind.EXECUTE_PAYMENT: 90_000,
}


@dataclass
class _SimPayment:
    payment_id: str
    from_address: str
    to_address: str
    amount: int
    fee: int
    timestamp: datetime
    description: str
    completed: bool = False


@dataclass
class SentTransaction:
    """A broadcast observed by the simulated chain."""
    tx_hash: str
    kind: GasKind
    from_address: str
    to_address: str
    amount_wei: int
    gas_limit: int
    gas_price_wei: int


class SimulatedLedgerClient(LedgerClient):
    """
    LedgerClient over in-memory state.

    Args:
        config: Client configuration (addresses are informational here)
        fee_bps: Gateway platform fee in basis points
        fee_collector: Address credited with gateway fees
        blocks_per_poll: Blocks mined every time the block number is read,
            so confirmation depth grows while a caller polls
        latency: Seconds each broadcast takes
    """

    def __init__(
        self,
        config: Optional[LedgerClientConfig] = None,
        fee_bps: int = DEFAULT_FEE_BPS,
        fee_collector: Optional[str] = None,
        blocks_per_poll: int = 1,
        latency: float = 0.0,
    ):
        super().__init__(config or LedgerClientConfig())
        split_amount(1, fee_bps)  # validates the rate
        self.fee_bps = fee_bps
        self.fee_collector = (fee_collector or DEFAULT_FEE_COLLECTOR).lower()
        self.blocks_per_poll = blocks_per_poll
        self.latency = latency
        self.gas_price_wei = gwei_to_wei(self._config.default_gas_price_gwei)

        self.withhold_receipts = False
        self._fail_next: Optional[str] = None
        self._revert_next = False

        self._native: dict[str, int] = {}
        self._token: dict[str, int] = {}
        self._token_supply = 0
        self._block_number = 1
        self._receipts: dict[str, Receipt] = {}
        self._payments: dict[str, _SimPayment] = {}
        self._nonce = 0
        self.sent: list[SentTransaction] = []
        self._lock = asyncio.Lock()

    # ---- Test and dev controls ----

    def fund(self, address: str, eth: Any = 0, cpx: Any = 0) -> None:
        """Credit decimal-unit amounts of ETH and CPX to ``address``."""
        address = address.lower()
        self._native[address] = self._native.get(address, 0) + ether_to_wei(eth)
        minted = ether_to_wei(cpx)
        self._token[address] = self._token.get(address, 0) + minted
        self._token_supply += minted

    def mine(self, blocks: int = 1) -> int:
        self._block_number += blocks
        return self._block_number

    def fail_next_send(self, message: str = "transaction underpriced") -> None:
        self._fail_next = message

    def revert_next_send(self) -> None:
        self._revert_next = True

    def native_wei(self, address: str) -> int:
        return self._native.get(address.lower(), 0)

    def token_wei(self, address: str) -> int:
        return self._token.get(address.lower(), 0)

    def mine_withheld(self, tx_hash: str, status: bool = True) -> Receipt:
        """Mine a broadcast whose receipt was withheld."""
        sent = next((s for s in self.sent if s.tx_hash == tx_hash), None)
        if sent is None:
            raise LedgerError(f"Unknown transaction {tx_hash}")
        return self._record_receipt(sent, status)

    # ---- Reads ----

    async def get_native_balance(self, address: str) -> Balance:
        return Balance(self.native_wei(address))

    async def get_token_balance(self, address: str) -> Balance:
        return Balance(self.token_wei(address))

    async def estimate_gas(self, kind: GasKind, params: dict[str, Any]) -> int:
        return GAS_USAGE[GasKind(kind)]

    async def current_gas_price(self) -> int:
        return self.gas_price_wei

    async def get_block_number(self) -> int:
        self._block_number += self.blocks_per_poll
        return self._block_number

    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        return self._receipts.get(tx_hash.lower())

    # ---- Writes ----

    def _check_injected_failure(self) -> None:
        if self._fail_next is not None:
            message, self._fail_next = self._fail_next, None
            raise LedgerError(message)

    def _charge_gas(self, address: str, gas_used: int, gas_price_wei: int) -> None:
        cost = gas_used * gas_price_wei
        if self._native.get(address, 0) < cost:
            raise LedgerError("insufficient funds for gas * price + value")
        self._native[address] -= cost

    def _record_receipt(self, sent: SentTransaction, status: bool) -> Receipt:
        self._block_number += 1
        receipt = Receipt(
            transaction_hash=sent.tx_hash,
            block_number=self._block_number,
            block_hash="0x" + secrets.token_hex(32),
            gas_used=GAS_USAGE[sent.kind],
            status=status,
            effective_gas_price=sent.gas_price_wei,
        )
        self._receipts[sent.tx_hash] = receipt
        return receipt

    async def _broadcast(
        self,
        kind: GasKind,
        from_address: str,
        to_address: str,
        amount_wei: int,
        gas_limit: int,
        gas_price_wei: int,
        signing_material: str,
        apply: Any,
    ) -> str:
        if self.latency:
            await asyncio.sleep(self.latency)

        with ScopedSigner(signing_material, expected_address=from_address):
            async with self._lock:
                self._check_injected_failure()
                sender = from_address.lower()
                gas_used = GAS_USAGE[kind]
                if gas_limit < gas_used:
                    raise LedgerError("out of gas")

                reverted = self._revert_next
                self._revert_next = False

                # Validate the state change before charging gas so a rejected
                # broadcast leaves balances untouched
                if not reverted:
                    apply(dry_run=True)
                self._charge_gas(sender, gas_used, gas_price_wei)
                if not reverted:
                    apply(dry_run=False)

                sent = SentTransaction(
                    tx_hash="0x" + secrets.token_hex(32),
                    kind=kind,
                    from_address=sender,
                    to_address=to_address.lower(),
                    amount_wei=amount_wei,
                    gas_limit=gas_limit,
                    gas_price_wei=gas_price_wei,
                )
                self.sent.append(sent)
                if not self.withhold_receipts:
                    self._record_receipt(sent, status=not reverted)

        log_chain_event(
            f"{kind.value}_broadcast",
            transaction_hash=sent.tx_hash, from_address=sender,
            to_address=sent.to_address, amount_wei=amount_wei, reverted=reverted,
        )
        return sent.tx_hash

    def _transfer(self, ledger: dict[str, int], sender: str, recipient: str, amount: int, dry_run: bool) -> None:
        if ledger.get(sender, 0) < amount:
            raise LedgerError("insufficient balance for transfer")
        if dry_run:
            return
        ledger[sender] -= amount
        ledger[recipient] = ledger.get(recipient, 0) + amount

    async def send_native_transfer(
        self,
        from_address: str,
        to_address: str,
        amount_wei: int,
        gas_limit: int,
        gas_price_wei: int,
        signing_material: str,
    ) -> str:
        sender, recipient = from_address.lower(), to_address.lower()

        def apply(dry_run: bool) -> None:
            # Gas is charged first, so the value check runs against the post-gas balance
            available = self._native.get(sender, 0)
            if dry_run and available < amount_wei + GAS_USAGE[GasKind.NATIVE_TRANSFER] * gas_price_wei:
                raise LedgerError("insufficient funds for gas * price + value")
            if not dry_run:
                self._transfer(self._native, sender, recipient, amount_wei, dry_run=False)

        return await self._broadcast(
            GasKind.NATIVE_TRANSFER, from_address, to_address, amount_wei,
            gas_limit, gas_price_wei, signing_material, apply,
        )

    async def send_token_transfer(
        self,
        from_address: str,
        to_address: str,
        amount_wei: int,
        gas_limit: int,
        gas_price_wei: int,
        signing_material: str,
    ) -> str:
        sender, recipient = from_address.lower(), to_address.lower()

        def apply(dry_run: bool) -> None:
            self._transfer(self._token, sender, recipient, amount_wei, dry_run)

        return await self._broadcast(
            GasKind.TOKEN_TRANSFER, from_address, to_address, amount_wei,
            gas_limit, gas_price_wei, signing_material, apply,
        )

    # ---- Payment gateway ----

    async def create_payment(
        self,
        from_address: str,
        to_address: str,
        amount_wei: int,
        description: str,
        gas_price_wei: int,
        signing_material: str,
    ) -> tuple[str, str]:
        if amount_wei <= 0:
            raise LedgerError("Amount must be greater than 0")
        if to_address.lower() == ZERO_ADDRESS:
            raise LedgerError("Invalid recipient")

        self._nonce += 1
        payment_id = Web3.to_hex(Web3.keccak(text=f"{from_address.lower()}:{to_address.lower()}:{amount_wei}:{self._nonce}"))
        split = split_amount(amount_wei, self.fee_bps)

        def apply(dry_run: bool) -> None:
            if dry_run:
                return
            self._payments[payment_id] = _SimPayment(
                payment_id=payment_id,
                from_address=from_address.lower(),
                to_address=to_address.lower(),
                amount=amount_wei,
                fee=split.fee,
                timestamp=datetime.now(timezone.utc),
                description=description,
            )

        tx_hash = await self._broadcast(
            GasKind.CREATE_PAYMENT, from_address, self._config.gateway_address or ZERO_ADDRESS,
            0, GAS_USAGE[GasKind.CREATE_PAYMENT], gas_price_wei, signing_material, apply,
        )
        return tx_hash, payment_id

    async def execute_payment(
        self,
        payment_id: str,
        from_address: str,
        gas_price_wei: int,
        signing_material: str,
    ) -> str:
        payment = self._payments.get(payment_id)
        if payment is None:
            raise LedgerError("Payment does not exist")

        def apply(dry_run: bool) -> None:
            if payment.from_address != from_address.lower():
                raise LedgerError("Not authorized")
            if payment.completed:
                raise LedgerError("Payment already completed")
            if self._token.get(payment.from_address, 0) < payment.amount:
                raise LedgerError("Insufficient balance")
            if dry_run:
                return
            net = payment.amount - payment.fee
            self._transfer(self._token, payment.from_address, payment.to_address, net, dry_run=False)
            self._transfer(self._token, payment.from_address, self.fee_collector, payment.fee, dry_run=False)
            payment.completed = True

        return await self._broadcast(
            GasKind.EXECUTE_PAYMENT, from_address, self._config.gateway_address or ZERO_ADDRESS,
            0, GAS_USAGE[GasKind.EXECUTE_PAYMENT], gas_price_wei, signing_material, apply,
        )

    async def get_payment_details(self, payment_id: str) -> GatewayPayment:
        payment = self._payments.get(payment_id)
        if payment is None:
            raise LedgerError("Payment does not exist")
        return GatewayPayment(
            payment_id=payment.payment_id,
            from_address=payment.from_address,
            to_address=payment.to_address,
            amount=Balance(payment.amount),
            fee=Balance(payment.fee),
            timestamp=payment.timestamp,
            description=payment.description,
            completed=payment.completed,
        )

    async def token_info(self) -> TokenInfo:
        return TokenInfo(
            name="CryptoPayX Token",
            symbol="CPX",
            decimals=18,
            total_supply=Balance(self._token_supply),
        )

