"""Ledger client backed by a JSON-RPC node through web3.py.

web3.py's HTTP provider is blocking, so every RPC round trip runs in a
worker thread (``asyncio.to_thread``) and the event loop stays free while
the node answers. Raw web3 exceptions are mapped to LedgerError here and
never leave this module.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from web3 import Web3
from web3.exceptions import TransactionNotFound

from cryptopay_core.exceptions import CryptoPayError, LedgerError
from cryptopay_core.logging_config import log_chain_event
from cryptopay_core.models.enums import GasKind
from .base import (
    Balance,
    GatewayPayment,
    LedgerClient,
    LedgerClientConfig,
    Receipt,
    TokenInfo,
)
from .contracts import ERC20_ABI, PAYMENT_GATEWAY_ABI
from .signer import ScopedSigner

logger = logging.getLogger(__name__)


class Web3LedgerClient(LedgerClient):
    """
    LedgerClient for a real chain.

    Usage:
        client = Web3LedgerClient(LedgerClientConfig(
            rpc_url="http://localhost:7545",
            token_address="0x...",
            gateway_address="0x...",
        ))
        balance = await client.get_native_balance("0x...")
    """

    def __init__(self, config: LedgerClientConfig, web3: Optional[Web3] = None):
        super().__init__(config)
        if web3 is None:
            web3 = Web3(Web3.HTTPProvider(
                config.rpc_url,
                request_kwargs={"timeout": config.request_timeout},
            ))
        self._w3 = web3
        self._token = None
        self._gateway = None

        if config.token_address:
            self._token = self._w3.eth.contract(
                address=Web3.to_checksum_address(config.token_address),
                abi=ERC20_ABI,
            )
            logger.info(f"Token contract initialized at {config.token_address}")
        if config.gateway_address:
            self._gateway = self._w3.eth.contract(
                address=Web3.to_checksum_address(config.gateway_address),
                abi=PAYMENT_GATEWAY_ABI,
            )
            logger.info(f"Payment gateway contract initialized at {config.gateway_address}")

    async def _run(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except CryptoPayError:
            raise
        except Exception as e:
            logger.error(f"Ledger call {operation} failed: {e}")
            raise LedgerError(f"{operation} failed: {e}", details={"operation": operation}) from e

    def _token_contract(self):
        if self._token is None:
            raise LedgerError("Token contract not initialized")
        return self._token

    def _gateway_contract(self):
        if self._gateway is None:
            raise LedgerError("Payment gateway contract not initialized")
        return self._gateway

    # ---- Reads ----

    async def get_native_balance(self, address: str) -> Balance:
        wei = await self._run(
            "get_native_balance",
            lambda: self._w3.eth.get_balance(Web3.to_checksum_address(address)),
        )
        return Balance(int(wei))

    async def get_token_balance(self, address: str) -> Balance:
        def _call():
            return self._token_contract().functions.balanceOf(
                Web3.to_checksum_address(address)
            ).call()

        return Balance(int(await self._run("get_token_balance", _call)))

    async def current_gas_price(self) -> int:
        return int(await self._run("current_gas_price", lambda: self._w3.eth.gas_price))

    async def get_block_number(self) -> int:
        return int(await self._run("get_block_number", lambda: self._w3.eth.block_number))

    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        def _call():
            try:
                return self._w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        raw = await self._run("get_receipt", _call)
        if raw is None:
            return None
        return self._to_receipt(tx_hash, raw)

    @staticmethod
    def _to_receipt(tx_hash: str, raw: Any) -> Receipt:
        block_hash = raw.get("blockHash")
        return Receipt(
            transaction_hash=tx_hash,
            block_number=int(raw["blockNumber"]),
            block_hash=Web3.to_hex(block_hash) if block_hash is not None else None,
            gas_used=int(raw["gasUsed"]),
            status=raw.get("status", 1) == 1,
            effective_gas_price=raw.get("effectiveGasPrice"),
            logs=list(raw.get("logs") or []),
        )

    async def estimate_gas(self, kind: GasKind, params: dict[str, Any]) -> int:
        sender = Web3.to_checksum_address(params["from"])

        def _call():
            if kind == GasKind.NATIVE_TRANSFER:
                return self._w3.eth.estimate_gas({
                    "from": sender,
                    "to": Web3.to_checksum_address(params["to"]),
                    "value": int(params.get("amount", 0)),
                })
            if kind == GasKind.TOKEN_TRANSFER:
                return self._token_contract().functions.transfer(
                    Web3.to_checksum_address(params["to"]), int(params["amount"])
                ).estimate_gas({"from": sender})
            if kind == GasKind.CREATE_PAYMENT:
                return self._gateway_contract().functions.createPayment(
                    Web3.to_checksum_address(params["to"]),
                    int(params["amount"]),
                    params.get("description", ""),
                ).estimate_gas({"from": sender})
            if kind == GasKind.EXECUTE_PAYMENT:
                return self._gateway_contract().functions.executePayment(
                    Web3.to_bytes(hexstr=params["payment_id"])
                ).estimate_gas({"from": sender})
            raise LedgerError(f"Unsupported gas estimate kind: {kind}")

        return int(await self._run(f"estimate_gas:{GasKind(kind).value}", _call))

    # ---- Writes ----

    def _sign_and_send(self, tx: dict[str, Any], signing_material: str, from_address: str) -> str:
        with ScopedSigner(signing_material, expected_address=from_address) as account:
            tx.setdefault("nonce", self._w3.eth.get_transaction_count(account.address, "pending"))
            tx.setdefault("chainId", self._config.chain_id)
            signed = account.sign_transaction(tx)
            tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)

    async def send_native_transfer(
        self,
        from_address: str,
        to_address: str,
        amount_wei: int,
        gas_limit: int,
        gas_price_wei: int,
        signing_material: str,
    ) -> str:
        def _call():
            tx = {
                "from": Web3.to_checksum_address(from_address),
                "to": Web3.to_checksum_address(to_address),
                "value": amount_wei,
                "gas": gas_limit,
                "gasPrice": gas_price_wei,
            }
            return self._sign_and_send(tx, signing_material, from_address)

        tx_hash = await self._run("send_native_transfer", _call)
        log_chain_event(
            "native_transfer_broadcast",
            transaction_hash=tx_hash, from_address=from_address,
            to_address=to_address, amount_wei=amount_wei,
        )
        return tx_hash

    async def send_token_transfer(
        self,
        from_address: str,
        to_address: str,
        amount_wei: int,
        gas_limit: int,
        gas_price_wei: int,
        signing_material: str,
    ) -> str:
        def _call():
            sender = Web3.to_checksum_address(from_address)
            tx = self._token_contract().functions.transfer(
                Web3.to_checksum_address(to_address), amount_wei
            ).build_transaction({
                "from": sender,
                "gas": gas_limit,
                "gasPrice": gas_price_wei,
                "nonce": self._w3.eth.get_transaction_count(sender, "pending"),
                "chainId": self._config.chain_id,
            })
            return self._sign_and_send(tx, signing_material, from_address)

        tx_hash = await self._run("send_token_transfer", _call)
        log_chain_event(
            "token_transfer_broadcast",
            transaction_hash=tx_hash, from_address=from_address,
            to_address=to_address, amount_wei=amount_wei,
        )
        return tx_hash

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
        def _call():
            gateway = self._gateway_contract()
            sender = Web3.to_checksum_address(from_address)
            method = gateway.functions.createPayment(
                Web3.to_checksum_address(to_address), amount_wei, description
            )
            gas = method.estimate_gas({"from": sender})
            tx = method.build_transaction({
                "from": sender,
                "gas": gas * 12 // 10,
                "gasPrice": gas_price_wei,
                "nonce": self._w3.eth.get_transaction_count(sender, "pending"),
                "chainId": self._config.chain_id,
            })
            tx_hash = self._sign_and_send(tx, signing_material, from_address)
            receipt = self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._config.request_timeout
            )
            events = gateway.events.PaymentCreated().process_receipt(receipt)
            if not events:
                raise LedgerError("PaymentCreated event not found in receipt")
            return tx_hash, Web3.to_hex(events[0]["args"]["paymentId"])

        tx_hash, payment_id = await self._run("create_payment", _call)
        log_chain_event(
            "payment_created", transaction_hash=tx_hash, payment_id=payment_id,
            from_address=from_address, to_address=to_address, amount_wei=amount_wei,
        )
        return tx_hash, payment_id

    async def execute_payment(
        self,
        payment_id: str,
        from_address: str,
        gas_price_wei: int,
        signing_material: str,
    ) -> str:
        def _call():
            sender = Web3.to_checksum_address(from_address)
            method = self._gateway_contract().functions.executePayment(
                Web3.to_bytes(hexstr=payment_id)
            )
            gas = method.estimate_gas({"from": sender})
            tx = method.build_transaction({
                "from": sender,
                "gas": gas * 12 // 10,
                "gasPrice": gas_price_wei,
                "nonce": self._w3.eth.get_transaction_count(sender, "pending"),
                "chainId": self._config.chain_id,
            })
            return self._sign_and_send(tx, signing_material, from_address)

        tx_hash = await self._run("execute_payment", _call)
        log_chain_event("payment_executed", transaction_hash=tx_hash, payment_id=payment_id)
        return tx_hash

    async def get_payment_details(self, payment_id: str) -> GatewayPayment:
        def _call():
            return self._gateway_contract().functions.getPaymentDetails(
                Web3.to_bytes(hexstr=payment_id)
            ).call()

        sender, recipient, amount, fee, timestamp, description, completed = await self._run(
            "get_payment_details", _call
        )
        return GatewayPayment(
            payment_id=payment_id,
            from_address=sender.lower(),
            to_address=recipient.lower(),
            amount=Balance(int(amount)),
            fee=Balance(int(fee)),
            timestamp=datetime.fromtimestamp(int(timestamp), tz=timezone.utc),
            description=description,
            completed=bool(completed),
        )

    async def token_info(self) -> TokenInfo:
        def _call():
            fns = self._token_contract().functions
            return (
                fns.name().call(),
                fns.symbol().call(),
                fns.decimals().call(),
                fns.totalSupply().call(),
            )

        name, symbol, decimals, total_supply = await self._run("token_info", _call)
        return TokenInfo(
            name=name,
            symbol=symbol,
            decimals=int(decimals),
            total_supply=Balance(int(total_supply)),
        )
