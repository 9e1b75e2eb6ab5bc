"""Ledger clients for the chain and the token / payment gateway contracts."""

from typing import Optional

from .base import (
    Balance,
    GatewayPayment,
    LedgerClient,
    LedgerClientConfig,
    Receipt,
    TokenInfo,
    ether_to_wei,
    format_units,
    gwei_to_wei,
    wei_to_ether,
)
from .confirmation import wait_for_confirmations
from .fees import FeeSplit, buffered_gas_limit, split_amount
from .signer import ScopedSigner, active_signers
from .simulated import SimulatedLedgerClient
from .web3_client import Web3LedgerClient


def create_ledger_client(
    mode: str,
    config: LedgerClientConfig,
    fee_bps: int = 100,
    fee_collector: Optional[str] = None,
) -> LedgerClient:
    """Build the client for ``mode`` ("simulation" or "rpc")."""
    if mode == "rpc":
        return Web3LedgerClient(config)
    return SimulatedLedgerClient(config, fee_bps=fee_bps, fee_collector=fee_collector)


__all__ = [
    "Balance",
    "GatewayPayment",
    "LedgerClient",
    "LedgerClientConfig",
    "Receipt",
    "TokenInfo",
    "ether_to_wei",
    "format_units",
    "gwei_to_wei",
    "wei_to_ether",
    "wait_for_confirmations",
    "FeeSplit",
    "buffered_gas_limit",
    "split_amount",
    "ScopedSigner",
    "active_signers",
    "SimulatedLedgerClient",
    "Web3LedgerClient",
    "create_ledger_client",
]
