"""Contract configuration and payment gateway routes."""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends

from cryptopay_core.api.dependencies import get_container, get_current_identity, get_ledger, require_admin
from cryptopay_core.api.responses import ok
from cryptopay_core.api.schemas import LedgerConfigUpdate, WaitRequest
from cryptopay_core.chains import LedgerClient, Receipt, format_units, wei_to_ether
from cryptopay_core.chains.base import WEI_PER_GWEI
from cryptopay_core.config import settings
from cryptopay_core.exceptions import NotFoundError
from cryptopay_core.models import Identity
from cryptopay_core.validators import validate_address, validate_tx_hash

router = APIRouter(prefix="/contract", tags=["contract"])


@router.get("/config", summary="Active ledger client configuration")
async def get_config(identity: Identity = Depends(get_current_identity)):
    return ok("Contract configuration", {"config": get_container().ledger_config.to_dict()})


@router.put("/config", summary="Replace the ledger client with a new configuration")
async def update_config(
    body: LedgerConfigUpdate,
    identity: Identity = Depends(require_admin),
):
    changes = body.model_dump(exclude_none=True)
    for key in ("token_address", "gateway_address"):
        if key in changes:
            changes[key] = validate_address(changes[key], field=key)
    config = get_container().replace_ledger_client(**changes)
    return ok("Contract configuration updated", {"config": config.to_dict()})


@router.get("/token", summary="Platform token metadata")
async def token_info(
    identity: Identity = Depends(get_current_identity),
    ledger: LedgerClient = Depends(get_ledger),
):
    info = await ledger.token_info()
    return ok("Token information", {"token": info.to_dict()})


@router.get("/gas-price", summary="Current network gas price")
async def gas_price(
    identity: Identity = Depends(get_current_identity),
    ledger: LedgerClient = Depends(get_ledger),
):
    wei = await ledger.current_gas_price()
    return ok("Gas price", {"gasPrice": {
        "wei": str(wei),
        "gwei": format_units(Decimal(wei) / WEI_PER_GWEI),
        "ether": format_units(wei_to_ether(wei)),
    }})


@router.get("/payments/{payment_id}", summary="Payment gateway record")
async def payment_details(
    payment_id: str,
    identity: Identity = Depends(get_current_identity),
    ledger: LedgerClient = Depends(get_ledger),
):
    payment_id = validate_tx_hash(payment_id, field="paymentId")
    payment = await ledger.get_payment_details(payment_id)
    return ok("Payment details", {"payment": payment.to_dict()})


@router.get("/block-number", summary="Latest block number")
async def block_number(
    identity: Identity = Depends(get_current_identity),
    ledger: LedgerClient = Depends(get_ledger),
):
    return ok("Block number", {"blockNumber": await ledger.get_block_number()})


@router.get("/token/balance/{address}", summary="Platform token balance of an address")
async def token_balance(
    address: str,
    identity: Identity = Depends(get_current_identity),
    ledger: LedgerClient = Depends(get_ledger),
):
    address = validate_address(address)
    balance = await ledger.get_token_balance(address)
    return ok("Token balance", {"address": address, "balance": balance.to_dict()})


@router.get("/transaction/{tx_hash}/receipt", summary="Mined receipt of a transaction hash")
async def transaction_receipt(
    tx_hash: str,
    identity: Identity = Depends(get_current_identity),
    ledger: LedgerClient = Depends(get_ledger),
):
    tx_hash = validate_tx_hash(tx_hash)
    receipt = await ledger.get_receipt(tx_hash)
    if receipt is None:
        raise NotFoundError("Transaction receipt", tx_hash)
    return ok("Transaction receipt", {"receipt": _receipt_view(receipt)})


@router.post("/transaction/{tx_hash}/wait", summary="Wait for confirmations of a transaction hash")
async def wait_for_transaction(
    tx_hash: str,
    body: Optional[WaitRequest] = None,
    identity: Identity = Depends(get_current_identity),
    ledger: LedgerClient = Depends(get_ledger),
):
    tx_hash = validate_tx_hash(tx_hash)
    body = body or WaitRequest()
    confirmations = body.confirmations or 1
    receipt = await ledger.wait_for_confirmations(
        tx_hash, confirmations, body.timeout or settings.confirmation_timeout_seconds
    )
    return ok("Transaction confirmed", {"receipt": _receipt_view(receipt), "confirmations": confirmations})


def _receipt_view(receipt: Receipt) -> dict:
    return {
        "transactionHash": receipt.transaction_hash,
        "blockNumber": receipt.block_number,
        "blockHash": receipt.block_hash,
        "gasUsed": str(receipt.gas_used),
        "status": "success" if receipt.status else "reverted",
    }
