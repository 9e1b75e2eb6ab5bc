"""Payment request and transaction execution routes."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from cryptopay_core.api.dependencies import get_current_identity, get_engine, get_optional_identity
from cryptopay_core.api.responses import respond
from cryptopay_core.api.schemas import PaymentRequestCreate, PayRequest, WaitRequest
from cryptopay_core.exceptions import ValidationError
from cryptopay_core.models import Identity
from cryptopay_core.services import SettlementEngine

router = APIRouter(prefix="/transactions", tags=["transactions"])


def _wallet_of(identity: Identity) -> str:
    if not identity.wallet_address:
        raise ValidationError("A wallet address is required for this operation", field="walletAddress")
    return identity.wallet_address


# ========== Payment requests ==========

@router.post("/payment-requests", summary="Create a payment request")
async def create_payment_request(
    body: PaymentRequestCreate,
    identity: Identity = Depends(get_current_identity),
    engine: SettlementEngine = Depends(get_engine),
):
    result = await engine.create_payment_request(
        identity, body.amount, body.currency, body.description, expires_at=body.expires_at
    )
    return respond(result)


@router.get("/payment-requests", summary="List the caller's payment requests")
async def list_payment_requests(
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    identity: Identity = Depends(get_current_identity),
    engine: SettlementEngine = Depends(get_engine),
):
    return respond(await engine.list_payment_requests(identity, status=status, page=page, limit=limit))


@router.get("/payment-requests/{request_id}", summary="Get a payment request")
async def get_payment_request(
    request_id: str,
    identity: Optional[Identity] = Depends(get_optional_identity),
    engine: SettlementEngine = Depends(get_engine),
):
    return respond(await engine.get_payment_request(request_id))


@router.post("/payment-requests/{request_id}/pay", summary="Pay a payment request")
async def pay_payment_request(
    request_id: str,
    body: PayRequest,
    identity: Identity = Depends(get_current_identity),
    engine: SettlementEngine = Depends(get_engine),
):
    result = await engine.process_payment_request(
        request_id, identity, body.private_key, gas_price=body.gas_price
    )
    return respond(result)


@router.post("/payment-requests/{request_id}/cancel", summary="Cancel a payment request")
async def cancel_payment_request(
    request_id: str,
    identity: Identity = Depends(get_current_identity),
    engine: SettlementEngine = Depends(get_engine),
):
    return respond(await engine.cancel_payment_request(request_id, identity))


# ========== Transactions ==========

@router.get("", summary="List the caller's transactions")
async def list_transactions(
    status: Optional[str] = Query(None),
    type: Optional[str] = Query(None),
    currency: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    identity: Identity = Depends(get_current_identity),
    engine: SettlementEngine = Depends(get_engine),
):
    result = await engine.list_transactions(
        _wallet_of(identity), status=status, type=type, currency=currency, page=page, limit=limit
    )
    return respond(result)


@router.get("/stats", summary="Transaction statistics for the caller's wallet")
async def transaction_stats(
    period: str = Query("30d"),
    identity: Identity = Depends(get_current_identity),
    engine: SettlementEngine = Depends(get_engine),
):
    return respond(await engine.transaction_stats(_wallet_of(identity), period))


@router.get("/{transaction_id}", summary="Get a transaction")
async def get_transaction(
    transaction_id: str,
    identity: Identity = Depends(get_current_identity),
    engine: SettlementEngine = Depends(get_engine),
):
    return respond(await engine.get_transaction(transaction_id, identity))


@router.post("/{transaction_id}/execute", summary="Sign and broadcast a pending transaction")
async def execute_transaction(
    transaction_id: str,
    body: PayRequest,
    identity: Identity = Depends(get_current_identity),
    engine: SettlementEngine = Depends(get_engine),
):
    result = await engine.execute_transaction(
        transaction_id, identity, body.private_key, gas_price=body.gas_price
    )
    return respond(result)


@router.post("/{transaction_id}/cancel", summary="Cancel a transaction")
async def cancel_transaction(
    transaction_id: str,
    identity: Identity = Depends(get_current_identity),
    engine: SettlementEngine = Depends(get_engine),
):
    return respond(await engine.cancel_transaction(transaction_id, identity))


@router.post("/{transaction_id}/wait", summary="Wait for a broadcast transaction to settle")
async def wait_for_settlement(
    transaction_id: str,
    body: Optional[WaitRequest] = None,
    identity: Identity = Depends(get_current_identity),
    engine: SettlementEngine = Depends(get_engine),
):
    body = body or WaitRequest()
    result = await engine.wait_for_settlement(
        transaction_id, identity, confirmations=body.confirmations, timeout=body.timeout
    )
    return respond(result)
