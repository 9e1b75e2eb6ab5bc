"""Wallet routes: balances, direct transfers, history and gas estimates."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from cryptopay_core.api.dependencies import get_current_identity, get_engine
from cryptopay_core.api.responses import respond
from cryptopay_core.api.schemas import GasEstimateRequest, TransactionCreate
from cryptopay_core.exceptions import ForbiddenError
from cryptopay_core.models import Identity
from cryptopay_core.services import SettlementEngine

router = APIRouter(prefix="/wallet", tags=["wallet"])


@router.get("/balance/{address}", summary="ETH and CPX balances of an address")
async def get_balance(
    address: str,
    identity: Identity = Depends(get_current_identity),
    engine: SettlementEngine = Depends(get_engine),
):
    return respond(await engine.get_balances(address))


@router.post("/transaction", summary="Create a pending transfer")
async def create_transaction(
    body: TransactionCreate,
    identity: Identity = Depends(get_current_identity),
    engine: SettlementEngine = Depends(get_engine),
):
    result = await engine.create_transaction(
        identity,
        body.to_address,
        body.amount,
        body.currency,
        description=body.description,
        gas_price=body.gas_price,
    )
    return respond(result)


@router.get("/transaction/{transaction_id}", summary="Get a transaction with its on-chain receipt")
async def get_transaction(
    transaction_id: str,
    identity: Identity = Depends(get_current_identity),
    engine: SettlementEngine = Depends(get_engine),
):
    return respond(await engine.get_transaction(transaction_id, identity))


@router.get("/history/{address}", summary="Transaction history of a wallet")
async def get_history(
    address: str,
    status: Optional[str] = Query(None),
    type: Optional[str] = Query(None),
    currency: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    identity: Identity = Depends(get_current_identity),
    engine: SettlementEngine = Depends(get_engine),
):
    if not (identity.is_admin or identity.owns_wallet(address)):
        raise ForbiddenError("Access denied")
    result = await engine.list_transactions(
        address, status=status, type=type, currency=currency, page=page, limit=limit
    )
    return respond(result)


@router.post("/estimate-gas", summary="Estimate gas for a transfer")
async def estimate_gas(
    body: GasEstimateRequest,
    identity: Identity = Depends(get_current_identity),
    engine: SettlementEngine = Depends(get_engine),
):
    return respond(await engine.estimate_gas(identity, body.to_address, body.amount, body.currency))


@router.get("/validate/{address}", summary="Check an address and whether it is registered")
async def validate_address(
    address: str,
    engine: SettlementEngine = Depends(get_engine),
):
    return respond(await engine.describe_address(address))
