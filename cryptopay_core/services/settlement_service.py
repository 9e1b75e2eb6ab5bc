"""Settlement engine: payment requests and on-chain transaction execution.

The engine owns the two state machines:

    Transaction:     pending -> processing -> confirmed | failed
                     pending | processing -> cancelled
    PaymentRequest:  pending -> completed | expired | cancelled

and guarantees at most one successful payment per request. Before any
ledger call a payer *claims* the request through the store's atomic
compare-and-set; a second payer loses the claim and is rejected. No store
lock is held while the ledger call is in flight.

Ordering on success: the transaction record is confirmed before the
request flips to completed, so a crash in between leaves a claimed,
pending request that reconciliation finishes, never a completed request
without a confirmed transaction.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

from cryptopay_core.chains import (
    Balance,
    LedgerClient,
    Receipt,
    buffered_gas_limit,
    ether_to_wei,
    format_units,
    wei_to_ether,
)
from cryptopay_core.chains.base import WEI_PER_GWEI
from cryptopay_core.exceptions import (
    ConfirmationTimeoutError,
    CryptoPayError,
    ExpiredError,
    ForbiddenError,
    InvalidStateError,
    LedgerError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from cryptopay_core.logging_config import log_chain_event
from cryptopay_core.models import (
    Currency,
    GasKind,
    Identity,
    MAX_RETRY_COUNT,
    PaymentRequest,
    PaymentRequestStatus,
    TransactionFees,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
    utc_now,
)
from cryptopay_core.notifications import EventName, NotificationEvent, NotificationHub
from cryptopay_core.stores import PaymentRequestStore, TransactionStore
from cryptopay_core.validators import (
    is_valid_address,
    validate_address,
    validate_amount,
    validate_currency,
    validate_description,
    validate_future,
    validate_gas_price,
    validate_private_key,
)
from .results import SettlementResult, settlement_operation

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)

STATS_PERIODS = {"7d": 7, "30d": 30, "90d": 90}
DEFAULT_STATS_PERIOD = "30d"
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class EngineConfig:
    """Settlement behaviour knobs."""
    frontend_url: str = "http://localhost:3000"
    payment_request_ttl: timedelta = timedelta(hours=24)
    confirmations: int = 1
    confirmation_timeout: float = 300.0
    gas_buffer_percent: int = 20
    max_payment_attempts: int = 3
    attempt_lock: timedelta = timedelta(hours=1)

    @classmethod
    def from_settings(cls, settings: Any) -> "EngineConfig":
        return cls(
            frontend_url=settings.frontend_url,
            payment_request_ttl=timedelta(hours=settings.payment_request_ttl_hours),
            confirmations=settings.settlement_confirmations,
            confirmation_timeout=settings.confirmation_timeout_seconds,
            gas_buffer_percent=settings.gas_buffer_percent,
            max_payment_attempts=settings.max_payment_attempts,
            attempt_lock=timedelta(minutes=settings.attempt_lock_minutes),
        )


def _parse_enum(enum_cls: type[E], value: Any, field: str) -> Optional[E]:
    if value is None or value == "":
        return None
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value!r}", field=field)


def _gwei(wei: int) -> Decimal:
    return Decimal(wei) / Decimal(WEI_PER_GWEI)


def _receipt_view(receipt: Receipt) -> dict[str, Any]:
    return {
        "transactionHash": receipt.transaction_hash,
        "blockNumber": receipt.block_number,
        "blockHash": receipt.block_hash,
        "gasUsed": receipt.gas_used,
        "status": receipt.status,
        "effectiveGasPrice": receipt.effective_gas_price,
    }


class SettlementEngine:
    """
    Entry point for every settlement operation.

    All public operations return a SettlementResult; taxonomy errors are
    recovered here and never propagate to the caller.

    Usage:
        engine = SettlementEngine(ledger, tx_store, request_store, hub)
        result = await engine.create_payment_request(alice, "10", "ETH", "Dinner")
        paid = await engine.process_payment_request(
            result.data["paymentRequest"]["id"], bob, bob_private_key
        )
    """

    def __init__(
        self,
        ledger: LedgerClient,
        transactions: TransactionStore,
        requests: PaymentRequestStore,
        notifier: NotificationHub,
        config: Optional[EngineConfig] = None,
        identities: Optional[Any] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._ledger = ledger
        self._transactions = transactions
        self._requests = requests
        self._notifier = notifier
        self._config = config or EngineConfig()
        self._identities = identities
        self._clock = clock or utc_now

    @property
    def ledger(self) -> LedgerClient:
        return self._ledger

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def transactions(self) -> TransactionStore:
        return self._transactions

    @property
    def requests(self) -> PaymentRequestStore:
        return self._requests

    def replace_ledger_client(self, ledger: LedgerClient) -> LedgerClient:
        """
        Swap in a new ledger client and return the previous one.

        Operations already running keep the client they started with.
        """
        previous, self._ledger = self._ledger, ledger
        logger.info(f"Ledger client replaced: {type(previous).__name__} -> {type(ledger).__name__}")
        return previous

    def now(self) -> datetime:
        return self._clock()

    # ---- Helpers ----

    @staticmethod
    def _require_wallet(identity: Identity) -> str:
        if not identity.wallet_address:
            raise ValidationError("A wallet address is required for this operation", field="walletAddress")
        return identity.wallet_address.lower()

    def _identity_view(self, user_id: Optional[str]) -> Optional[dict[str, Any]]:
        if not user_id:
            return None
        identity = self._identities.get(user_id) if self._identities else None
        return identity.to_public_dict() if identity else {"id": user_id}

    def _identity_id_for_wallet(self, address: str) -> Optional[str]:
        if not self._identities:
            return None
        identity = self._identities.get_by_wallet(address)
        return identity.user_id if identity else None

    async def _notify(self, identity_id: Optional[str], name: EventName, data: dict[str, Any]) -> None:
        try:
            await self._notifier.notify(identity_id, NotificationEvent(name, dict(data)))
        except Exception as e:
            logger.error(f"Notification {name.value} for {identity_id} failed: {e}")

    async def _request_view(self, request: PaymentRequest) -> dict[str, Any]:
        transaction = None
        if request.transaction_id:
            record = await self._transactions.get(request.transaction_id)
            transaction = record.to_dict() if record else None
        return request.to_dict(
            self._config.frontend_url,
            requester=self._identity_view(request.requester_id),
            payer=self._identity_view(request.payer_id),
            transaction=transaction,
            now=self.now(),
        )

    async def _expire_if_overdue(self, request: PaymentRequest) -> PaymentRequest:
        """Lazy expiry: flip a pending, unclaimed, past-deadline request to expired."""
        if not request.is_overdue(self.now()):
            return request
        expired = await self._requests.transition(
            request.id, [PaymentRequestStatus.PENDING], PaymentRequestStatus.EXPIRED
        )
        if expired is None:
            # Another reader flipped it first, or a payment claimed it
            return await self._requests.get(request.id) or request
        logger.info(f"Payment request {request.id} expired")
        await self._notify(expired.requester_id, EventName.PAYMENT_REQUEST_EXPIRED, {"paymentRequestId": expired.id})
        return expired

    async def _check_payable(self, request: PaymentRequest, now: datetime) -> None:
        if request.status != PaymentRequestStatus.PENDING:
            raise InvalidStateError(
                "Payment request is not available for payment",
                details={"status": request.status.value},
            )
        if request.processing_transaction_id:
            raise InvalidStateError("Payment request is already being processed")
        if request.is_expired(now):
            await self._expire_if_overdue(request)
            raise ExpiredError("Payment request has expired")
        if request.is_locked(now):
            raise InvalidStateError(
                "Payment request is temporarily locked after repeated failed attempts",
                details={"lockedUntil": request.locked_until.isoformat()},
            )

    # ---- Ledger dispatch ----

    async def _broadcast(
        self,
        ledger: LedgerClient,
        record: TransactionRecord,
        signing_material: str,
        gas_price_gwei: Optional[Decimal],
    ) -> tuple[str, int]:
        """Estimate, sign and broadcast ``record``; persist its hash. Returns (hash, gas price wei)."""
        amount_wei = ether_to_wei(record.amount)
        native = record.currency.is_native
        kind = GasKind.NATIVE_TRANSFER if native else GasKind.TOKEN_TRANSFER

        estimate = await ledger.estimate_gas(
            kind, {"from": record.from_address, "to": record.to_address, "amount": amount_wei}
        )
        gas_limit = buffered_gas_limit(estimate, self._config.gas_buffer_percent)
        if gas_price_gwei is not None:
            gas_price_wei = int(gas_price_gwei * WEI_PER_GWEI)
        else:
            gas_price_wei = await ledger.current_gas_price()

        send = ledger.send_native_transfer if native else ledger.send_token_transfer
        tx_hash = await send(
            record.from_address,
            record.to_address,
            amount_wei,
            gas_limit,
            gas_price_wei,
            signing_material,
        )
        log_chain_event(
            "settlement_broadcast",
            transaction_id=record.id, transaction_hash=tx_hash,
            currency=record.currency.value, gas_limit=gas_limit,
        )

        fees = record.fees.model_copy(update={"gas_price": format_units(_gwei(gas_price_wei))})
        try:
            await self._transactions.update(
                record.id, transaction_hash=tx_hash, fees=fees, executed_at=self.now()
            )
        except CryptoPayError as e:
            # The broadcast stands; reconciliation can still find the record by status
            logger.error(f"Could not persist hash {tx_hash} for {record.id}: {e.message}")
        return tx_hash, gas_price_wei

    def _fees_from_receipt(self, fees: TransactionFees, receipt: Receipt, gas_price_wei: Optional[int] = None) -> TransactionFees:
        price = receipt.effective_gas_price or gas_price_wei
        if price is None:
            price = int(Decimal(fees.gas_price) * WEI_PER_GWEI)
        network_fee = wei_to_ether(receipt.gas_used * price)
        total = network_fee + Decimal(fees.platform_fee or "0")
        return fees.model_copy(update={
            "gas_used": receipt.gas_used,
            "network_fee": format_units(network_fee),
            "total_fee": format_units(total),
        })

    async def _await_outcome(
        self,
        ledger: LedgerClient,
        transaction_id: str,
        tx_hash: str,
        gas_price_wei: int,
    ) -> TransactionRecord:
        """Wait for the configured depth and mark the record confirmed."""
        required = self._config.confirmations
        fields: dict[str, Any] = {}
        if required > 0:
            receipt = await ledger.wait_for_confirmations(tx_hash, required, self._config.confirmation_timeout)
            if not receipt.status:
                raise LedgerError("Transaction reverted on chain", details={"transactionHash": tx_hash})
            current = await self._transactions.get(transaction_id)
            fields = {
                "block_number": receipt.block_number,
                "block_hash": receipt.block_hash,
                "confirmations": required,
                "fees": self._fees_from_receipt(current.fees, receipt, gas_price_wei),
            }

        confirmed = await self._transactions.transition(
            transaction_id, [TransactionStatus.PROCESSING], TransactionStatus.CONFIRMED, **fields
        )
        if confirmed is not None:
            log_chain_event("settlement_confirmed", transaction_id=transaction_id, transaction_hash=tx_hash)
            return confirmed

        current = await self._transactions.get(transaction_id)
        if current is not None and current.status == TransactionStatus.CONFIRMED:
            return current
        raise InvalidStateError(
            "Transaction changed state during settlement",
            details={"transactionId": transaction_id, "status": current.status.value if current else None},
        )

    async def _record_failure(self, transaction_id: str, message: str) -> Optional[TransactionRecord]:
        try:
            return await self._transactions.transition(
                transaction_id,
                [TransactionStatus.PENDING, TransactionStatus.PROCESSING],
                TransactionStatus.FAILED,
                error_message=message,
            )
        except CryptoPayError as e:
            logger.error(f"Could not mark {transaction_id} failed: {e.message}")
            return None

    async def _release_claim(self, request: PaymentRequest, transaction_id: str, count_attempt: bool = True) -> None:
        fields: dict[str, Any] = {}
        if count_attempt:
            attempts = request.failed_attempts + 1
            fields["failed_attempts"] = attempts
            if attempts >= self._config.max_payment_attempts:
                fields["locked_until"] = self.now() + self._config.attempt_lock
                logger.warning(f"Payment request {request.id} locked after {attempts} failed attempts")
        try:
            await self._requests.release_claim(request.id, transaction_id, **fields)
        except CryptoPayError as e:
            logger.error(f"Could not release claim on {request.id}: {e.message}")

    # ---- Payment requests ----

    @settlement_operation("create_payment_request")
    async def create_payment_request(
        self,
        requester: Identity,
        amount: Any,
        currency: Any,
        description: Optional[str],
        expires_at: Optional[datetime] = None,
    ) -> SettlementResult:
        recipient = self._require_wallet(requester)
        amount = validate_amount(amount)
        currency = validate_currency(currency)
        description = validate_description(description)
        now = self.now()
        if expires_at is not None:
            expires_at = validate_future(expires_at, now)
        else:
            expires_at = now + self._config.payment_request_ttl

        request = PaymentRequest(
            requester_id=requester.user_id,
            amount=amount,
            currency=currency,
            description=description,
            recipient_address=recipient,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        request = await self._requests.create(request)
        logger.info(f"Payment request created: {request.id} by {requester.user_id}")

        view = await self._request_view(request)
        await self._notify(requester.user_id, EventName.PAYMENT_REQUEST_CREATED, {"paymentRequest": view})
        return SettlementResult.succeeded(
            "Payment request created successfully", {"paymentRequest": view}, http_status=201
        )

    @settlement_operation("get_payment_request")
    async def get_payment_request(self, request_id: str) -> SettlementResult:
        request = await self._requests.get(request_id)
        if request is None:
            raise NotFoundError("Payment request", request_id)
        request = await self._expire_if_overdue(request)
        return SettlementResult.succeeded(
            "Payment request retrieved", {"paymentRequest": await self._request_view(request)}
        )

    @settlement_operation("list_payment_requests")
    async def list_payment_requests(
        self,
        requester: Identity,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> SettlementResult:
        status_filter = _parse_enum(PaymentRequestStatus, status, "status")
        page, limit = max(1, page), min(max(1, limit), MAX_PAGE_SIZE)
        items, total = await self._requests.list_for_requester(
            requester.user_id, status=status_filter, offset=(page - 1) * limit, limit=limit
        )
        views = []
        for request in items:
            views.append(await self._request_view(await self._expire_if_overdue(request)))
        return SettlementResult.succeeded("Payment requests retrieved", {
            "paymentRequests": views,
            "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
        })

    @settlement_operation("process_payment_request")
    async def process_payment_request(
        self,
        request_id: str,
        payer: Identity,
        signing_material: str,
        gas_price: Any = None,
    ) -> SettlementResult:
        payer_wallet = self._require_wallet(payer)
        signing_material = validate_private_key(signing_material)
        gas_price_gwei = validate_gas_price(gas_price)
        now = self.now()

        request = await self._requests.get(request_id)
        if request is None:
            raise NotFoundError("Payment request", request_id)
        await self._check_payable(request, now)
        # Stored rows may predate the wei precision limit
        validate_amount(request.amount)

        ledger = self._ledger
        record = TransactionRecord(
            owner_id=payer.user_id,
            from_address=payer_wallet,
            to_address=request.recipient_address,
            amount=request.amount,
            currency=request.currency,
            type=TransactionType.PAYMENT,
            description=f"Payment for: {request.description}"[:500],
            payment_request_id=request.id,
            retry_count=min(request.failed_attempts, MAX_RETRY_COUNT),
        )

        claimed = await self._requests.claim(request.id, record.id, now)
        if claimed is None:
            current = await self._requests.get(request.id) or request
            await self._check_payable(current, now)
            raise InvalidStateError("Payment request is already being processed")

        try:
            await self._transactions.create(record)
            record = await self._transactions.transition(
                record.id, [TransactionStatus.PENDING], TransactionStatus.PROCESSING
            )
        except Exception:
            await self._release_claim(claimed, record.id, count_attempt=False)
            raise

        parties = (request.requester_id, payer.user_id)
        base = {"paymentRequestId": request.id, "transactionId": record.id,
                "amount": request.amount, "currency": request.currency.value}

        try:
            tx_hash, gas_price_wei = await self._broadcast(ledger, record, signing_material, gas_price_gwei)
            confirmed = await self._await_outcome(ledger, record.id, tx_hash, gas_price_wei)
        except LedgerError as e:
            await self._record_failure(record.id, e.message)
            await self._release_claim(claimed, record.id)
            logger.error(f"Payment for request {request.id} failed: {e.message}")
            for identity_id in parties:
                await self._notify(identity_id, EventName.PAYMENT_FAILED, {**base, "error": e.message})
            e.details.update({"transactionId": record.id, "paymentRequestId": request.id})
            raise
        except ConfirmationTimeoutError as e:
            # Outcome unknown: keep the claim so nobody pays twice; reconciliation settles it
            for identity_id in parties:
                await self._notify(identity_id, EventName.TRANSACTION_UNKNOWN, {**base, "transactionHash": e.tx_hash})
            e.details.update({"transactionId": record.id, "paymentRequestId": request.id})
            raise
        except InvalidStateError:
            await self._release_claim(claimed, record.id, count_attempt=False)
            raise

        completed = await self._requests.complete(request.id, record.id, payer.user_id, paid_at=self.now())
        if completed is None:
            raise StoreError(
                "Payment settled but the request could not be marked completed",
                details={"transactionId": record.id, "paymentRequestId": request.id, "transactionHash": tx_hash},
            )
        logger.info(f"Payment request fulfilled: {request.id} by {payer.user_id}")

        data = {
            "transactionHash": tx_hash,
            "transactionId": record.id,
            "paymentRequestId": request.id,
            "status": confirmed.status.value,
        }
        await self._notify(request.requester_id, EventName.PAYMENT_RECEIVED, {**base, **data, "payer": payer.to_public_dict()})
        await self._notify(payer.user_id, EventName.PAYMENT_SENT, {**base, **data})
        return SettlementResult.succeeded("Payment processed successfully", data)

    @settlement_operation("cancel_payment_request")
    async def cancel_payment_request(self, request_id: str, requester: Identity) -> SettlementResult:
        request = await self._requests.get(request_id)
        if request is None:
            raise NotFoundError("Payment request", request_id)
        if request.requester_id != requester.user_id and not requester.is_admin:
            raise ForbiddenError("Only the requester can cancel a payment request")
        request = await self._expire_if_overdue(request)
        if request.status != PaymentRequestStatus.PENDING:
            raise InvalidStateError(
                f"Payment request is already {request.status.value}",
                details={"status": request.status.value},
            )
        if request.processing_transaction_id:
            raise InvalidStateError("Payment request is already being processed")

        cancelled = await self._requests.transition(
            request.id, [PaymentRequestStatus.PENDING], PaymentRequestStatus.CANCELLED
        )
        if cancelled is None:
            raise InvalidStateError("Payment request changed state, try again")
        logger.info(f"Payment request cancelled: {request.id}")
        await self._notify(cancelled.requester_id, EventName.PAYMENT_REQUEST_CANCELLED, {"paymentRequestId": cancelled.id})
        return SettlementResult.succeeded(
            "Payment request cancelled", {"paymentRequest": await self._request_view(cancelled)}
        )

    # ---- Direct transfers ----

    @settlement_operation("create_transaction")
    async def create_transaction(
        self,
        sender: Identity,
        to_address: str,
        amount: Any,
        currency: Any,
        description: Optional[str] = None,
        gas_price: Any = None,
    ) -> SettlementResult:
        sender_wallet = self._require_wallet(sender)
        to_address = validate_address(to_address, field="toAddress")
        amount = validate_amount(amount)
        currency = validate_currency(currency)
        description = validate_description(description, required=False)
        gas_price_gwei = validate_gas_price(gas_price)

        # Best-effort check; concurrent spends from the same wallet can still race it
        ledger = self._ledger
        if currency.is_native:
            balance = await ledger.get_native_balance(sender_wallet)
        else:
            balance = await ledger.get_token_balance(sender_wallet)
        if balance.wei < ether_to_wei(amount):
            raise ValidationError(
                "Insufficient balance",
                field="amount",
                details={"balance": balance.to_dict(), "required": amount},
            )
        if gas_price_gwei is None:
            gas_price_gwei = _gwei(await ledger.current_gas_price())

        record = TransactionRecord(
            owner_id=sender.user_id,
            from_address=sender_wallet,
            to_address=to_address,
            amount=amount,
            currency=currency,
            type=TransactionType.SEND,
            description=description,
            fees=TransactionFees(gas_price=format_units(gas_price_gwei)),
        )
        record = await self._transactions.create(record)
        logger.info(f"Transaction created: {record.id} by {sender.user_id}")

        view = record.to_dict(sender_wallet)
        await self._notify(sender.user_id, EventName.TRANSACTION_CREATED, {"transaction": view})
        return SettlementResult.succeeded("Transaction created successfully", {"transaction": view}, http_status=201)

    @settlement_operation("execute_transaction")
    async def execute_transaction(
        self,
        transaction_id: str,
        caller: Identity,
        signing_material: str,
        gas_price: Any = None,
    ) -> SettlementResult:
        caller_wallet = self._require_wallet(caller)
        signing_material = validate_private_key(signing_material)
        gas_price_gwei = validate_gas_price(gas_price)

        record = await self._transactions.get(transaction_id)
        if record is None:
            raise NotFoundError("Transaction", transaction_id)
        if record.from_address != caller_wallet:
            raise ForbiddenError("Unauthorized transaction")
        if record.status != TransactionStatus.PENDING:
            raise InvalidStateError("Transaction already processed", details={"status": record.status.value})
        validate_amount(record.amount)

        fields: dict[str, Any] = {}
        if gas_price_gwei is not None:
            fields["fees"] = record.fees.model_copy(update={"gas_price": format_units(gas_price_gwei)})
        else:
            gas_price_gwei = Decimal(record.fees.gas_price)
        processing = await self._transactions.transition(
            record.id, [TransactionStatus.PENDING], TransactionStatus.PROCESSING, **fields
        )
        if processing is None:
            raise InvalidStateError("Transaction already processed")

        ledger = self._ledger
        recipient_id = self._identity_id_for_wallet(record.to_address)
        try:
            tx_hash, gas_price_wei = await self._broadcast(ledger, processing, signing_material, gas_price_gwei)
            confirmed = await self._await_outcome(ledger, record.id, tx_hash, gas_price_wei)
        except LedgerError as e:
            await self._record_failure(record.id, e.message)
            logger.error(f"Transaction execution failed: {record.id}: {e.message}")
            await self._notify(caller.user_id, EventName.TRANSACTION_FAILED, {"transactionId": record.id, "error": e.message})
            e.details["transactionId"] = record.id
            raise
        except ConfirmationTimeoutError as e:
            await self._notify(caller.user_id, EventName.TRANSACTION_UNKNOWN, {"transactionId": record.id, "transactionHash": e.tx_hash})
            e.details["transactionId"] = record.id
            raise

        logger.info(f"Transaction executed successfully: {record.id}, hash: {tx_hash}")
        data = {"transactionHash": tx_hash, "transactionId": record.id, "status": confirmed.status.value}
        await self._notify(caller.user_id, EventName.TRANSACTION_EXECUTED, data)
        if recipient_id and recipient_id != caller.user_id:
            await self._notify(recipient_id, EventName.PAYMENT_RECEIVED, {
                **data, "amount": record.amount, "currency": record.currency.value,
            })
        return SettlementResult.succeeded("Transaction executed successfully", data)

    @settlement_operation("cancel_transaction")
    async def cancel_transaction(self, transaction_id: str, caller: Identity) -> SettlementResult:
        """Administrative cancellation: owners may cancel pending records, admins also processing ones."""
        record = await self._transactions.get(transaction_id)
        if record is None:
            raise NotFoundError("Transaction", transaction_id)
        is_owner = record.owner_id == caller.user_id or caller.owns_wallet(record.from_address)
        if not (is_owner or caller.is_admin):
            raise ForbiddenError("Only the sender or an administrator can cancel a transaction")

        allowed = [TransactionStatus.PENDING]
        if caller.is_admin:
            allowed.append(TransactionStatus.PROCESSING)
        if record.status not in allowed:
            raise InvalidStateError(
                f"Transaction cannot be cancelled while {record.status.value}",
                details={"status": record.status.value},
            )

        cancelled = await self._transactions.transition(record.id, allowed, TransactionStatus.CANCELLED)
        if cancelled is None:
            raise InvalidStateError("Transaction changed state, try again")
        logger.info(f"Transaction cancelled: {record.id} by {caller.user_id}")
        if cancelled.payment_request_id:
            request = await self._requests.get(cancelled.payment_request_id)
            if request is not None and request.processing_transaction_id == cancelled.id:
                await self._release_claim(request, cancelled.id, count_attempt=False)
        await self._notify(cancelled.owner_id, EventName.TRANSACTION_CANCELLED, {"transactionId": cancelled.id})
        return SettlementResult.succeeded(
            "Transaction cancelled", {"transaction": cancelled.to_dict(caller.wallet_address)}
        )

    # ---- Confirmation tracking ----

    async def record_receipt(
        self,
        record: TransactionRecord,
        receipt: Receipt,
        confirmations: Optional[int] = None,
    ) -> TransactionRecord:
        """
        Apply a mined receipt to a record and finish its payment request.

        A processing record moves to confirmed (status 1) or failed
        (status 0); a terminal record only gets its block data refreshed.
        """
        fields: dict[str, Any] = {
            "block_number": receipt.block_number,
            "block_hash": receipt.block_hash,
            "fees": self._fees_from_receipt(record.fees, receipt),
        }
        if confirmations is not None:
            fields["confirmations"] = confirmations

        updated: Optional[TransactionRecord]
        if record.status == TransactionStatus.PROCESSING:
            if receipt.status:
                updated = await self._transactions.transition(
                    record.id, [TransactionStatus.PROCESSING], TransactionStatus.CONFIRMED, **fields
                )
            else:
                updated = await self._transactions.transition(
                    record.id, [TransactionStatus.PROCESSING], TransactionStatus.FAILED,
                    error_message="Transaction reverted on chain", **fields,
                )
            if updated is None:
                updated = await self._transactions.get(record.id)
            elif updated.status == TransactionStatus.CONFIRMED:
                await self._notify(updated.owner_id, EventName.TRANSACTION_CONFIRMED, {
                    "transactionId": updated.id,
                    "transactionHash": updated.transaction_hash,
                    "blockNumber": updated.block_number,
                })
            else:
                await self._notify(updated.owner_id, EventName.TRANSACTION_FAILED, {
                    "transactionId": updated.id, "error": updated.error_message,
                })
        else:
            updated = await self._transactions.update(record.id, **fields)

        if updated is not None and updated.payment_request_id:
            await self.finish_linked_request(updated)
        return updated or record

    async def finish_linked_request(self, record: TransactionRecord) -> None:
        request = await self._requests.get(record.payment_request_id)
        if (
            request is None
            or request.status != PaymentRequestStatus.PENDING
            or request.processing_transaction_id != record.id
        ):
            return
        if record.status == TransactionStatus.CONFIRMED:
            completed = await self._requests.complete(
                request.id, record.id, record.owner_id, paid_at=record.confirmed_at or self.now()
            )
            if completed is not None:
                logger.info(f"Payment request {request.id} completed by late confirmation of {record.id}")
                data = {"paymentRequestId": request.id, "transactionId": record.id,
                        "transactionHash": record.transaction_hash, "status": record.status.value}
                await self._notify(request.requester_id, EventName.PAYMENT_RECEIVED, data)
                await self._notify(record.owner_id, EventName.PAYMENT_SENT, data)
        elif record.status == TransactionStatus.FAILED:
            await self._release_claim(request, record.id)
            data = {"paymentRequestId": request.id, "transactionId": record.id, "error": record.error_message}
            await self._notify(request.requester_id, EventName.PAYMENT_FAILED, data)
            await self._notify(record.owner_id, EventName.PAYMENT_FAILED, data)
        elif record.status == TransactionStatus.CANCELLED:
            await self._release_claim(request, record.id, count_attempt=False)

    async def abandon_transaction(self, record: TransactionRecord, reason: str) -> Optional[TransactionRecord]:
        """
        Give up on a processing record that never produced a receipt.

        The record moves to failed and a payment request claim it holds is
        released with the attempt counted, after which the request is
        payable again or expires. Returns None when the record had already
        left processing.
        """
        failed = await self._transactions.transition(
            record.id, [TransactionStatus.PROCESSING], TransactionStatus.FAILED, error_message=reason
        )
        if failed is None:
            return None
        logger.warning(f"Transaction {record.id} abandoned: {reason}")
        await self._notify(failed.owner_id, EventName.TRANSACTION_FAILED, {
            "transactionId": failed.id, "error": reason,
        })
        if failed.payment_request_id:
            await self.finish_linked_request(failed)
        return failed

    @settlement_operation("wait_for_settlement")
    async def wait_for_settlement(
        self,
        transaction_id: str,
        caller: Optional[Identity] = None,
        confirmations: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> SettlementResult:
        record = await self._transactions.get(transaction_id)
        if record is None:
            raise NotFoundError("Transaction", transaction_id)
        if caller is not None and not (
            caller.is_admin or record.owner_id == caller.user_id or record.involves(caller.wallet_address)
        ):
            raise ForbiddenError("Access denied")
        if not record.transaction_hash:
            raise InvalidStateError("Transaction has not been broadcast", details={"status": record.status.value})

        required = confirmations if confirmations is not None else max(1, self._config.confirmations)
        if required < 1:
            raise ValidationError("Confirmations must be at least 1", field="confirmations")
        timeout = timeout if timeout is not None else self._config.confirmation_timeout

        try:
            receipt = await self._ledger.wait_for_confirmations(record.transaction_hash, required, timeout)
        except ConfirmationTimeoutError as e:
            e.details["transactionId"] = record.id
            raise

        updated = await self.record_receipt(record, receipt, confirmations=required)
        message = "Transaction settled" if receipt.status else "Transaction reverted on chain"
        return SettlementResult.succeeded(message, {
            "transaction": updated.to_dict(caller.wallet_address if caller else None),
            "receipt": _receipt_view(receipt),
        })

    # ---- Reads ----

    @settlement_operation("get_transaction")
    async def get_transaction(self, transaction_id: str, caller: Identity) -> SettlementResult:
        record = await self._transactions.get(transaction_id)
        if record is None:
            raise NotFoundError("Transaction", transaction_id)
        if not (caller.is_admin or record.owner_id == caller.user_id or record.involves(caller.wallet_address)):
            raise ForbiddenError("Access denied")

        blockchain_data = None
        if record.transaction_hash:
            try:
                receipt = await self._ledger.get_receipt(record.transaction_hash)
                blockchain_data = _receipt_view(receipt) if receipt else None
            except LedgerError as e:
                logger.warning(f"Failed to get blockchain data for transaction {record.id}: {e.message}")
        return SettlementResult.succeeded("Transaction retrieved", {
            "transaction": record.to_dict(caller.wallet_address),
            "blockchainData": blockchain_data,
        })

    @settlement_operation("list_transactions")
    async def list_transactions(
        self,
        wallet_address: str,
        status: Optional[str] = None,
        type: Optional[str] = None,
        currency: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> SettlementResult:
        wallet = validate_address(wallet_address, field="walletAddress")
        status_filter = _parse_enum(TransactionStatus, status, "status")
        type_filter = _parse_enum(TransactionType, type, "type")
        currency_filter = validate_currency(currency) if currency else None
        page, limit = max(1, page), min(max(1, limit), MAX_PAGE_SIZE)

        items, total = await self._transactions.list_for_wallet(
            wallet,
            status=status_filter,
            type=type_filter,
            currency=currency_filter,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return SettlementResult.succeeded("Transactions retrieved", {
            "transactions": [r.to_dict(wallet) for r in items],
            "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
        })

    @settlement_operation("transaction_stats")
    async def transaction_stats(self, wallet_address: str, period: str = DEFAULT_STATS_PERIOD) -> SettlementResult:
        """Sent/received totals (confirmed only) and outcome counts over 7d, 30d or 90d."""
        wallet = validate_address(wallet_address, field="walletAddress")
        if period not in STATS_PERIODS:
            period = DEFAULT_STATS_PERIOD
        since = self.now() - timedelta(days=STATS_PERIODS[period])

        sent = {c.value: Decimal("0") for c in Currency}
        received = {c.value: Decimal("0") for c in Currency}
        total = successful = failed = 0

        offset, batch = 0, 500
        while True:
            items, count = await self._transactions.list_for_wallet(wallet, since=since, offset=offset, limit=batch)
            for record in items:
                total += 1
                if record.status == TransactionStatus.FAILED:
                    failed += 1
                if record.status != TransactionStatus.CONFIRMED:
                    continue
                successful += 1
                if record.from_address == wallet:
                    sent[record.currency.value] += Decimal(record.amount)
                if record.to_address == wallet:
                    received[record.currency.value] += Decimal(record.amount)
            offset += batch
            if offset >= count or not items:
                break

        return SettlementResult.succeeded("Transaction statistics retrieved", {
            "period": period,
            "stats": {
                "totalSent": {k: format_units(v) for k, v in sent.items()},
                "totalReceived": {k: format_units(v) for k, v in received.items()},
                "totalTransactions": total,
                "successfulTransactions": successful,
                "failedTransactions": failed,
            },
        })

    @settlement_operation("get_balances")
    async def get_balances(self, wallet_address: str) -> SettlementResult:
        wallet = validate_address(wallet_address, field="walletAddress")
        ledger = self._ledger
        eth = await ledger.get_native_balance(wallet)
        cpx = await ledger.get_token_balance(wallet)
        recent, _ = await self._transactions.list_for_wallet(wallet, offset=0, limit=10)
        logger.info(f"Balance requested for wallet: {wallet}")
        return SettlementResult.succeeded("Balances retrieved", {
            "walletAddress": wallet,
            "balances": {"eth": eth.to_dict(), "cpx": cpx.to_dict()},
            "recentTransactions": [r.to_dict(wallet) for r in recent],
        })

    @settlement_operation("estimate_gas")
    async def estimate_gas(
        self,
        sender: Identity,
        to_address: str,
        amount: Any,
        currency: Any,
    ) -> SettlementResult:
        sender_wallet = self._require_wallet(sender)
        to_address = validate_address(to_address, field="toAddress")
        amount = validate_amount(amount)
        currency = validate_currency(currency)

        ledger = self._ledger
        kind = GasKind.NATIVE_TRANSFER if currency.is_native else GasKind.TOKEN_TRANSFER
        estimate = await ledger.estimate_gas(
            kind, {"from": sender_wallet, "to": to_address, "amount": ether_to_wei(amount)}
        )
        gas_price = await ledger.current_gas_price()
        cost = Balance(estimate * gas_price)
        return SettlementResult.succeeded("Gas estimated", {
            "gasEstimate": str(estimate),
            "gasLimit": str(buffered_gas_limit(estimate, self._config.gas_buffer_percent)),
            "gasPrice": str(gas_price),
            "gasCost": cost.to_dict(),
            "total": {"amount": amount, "currency": currency.value, "gasCostEth": cost.to_dict()["ether"]},
        })

    @settlement_operation("validate_address")
    async def describe_address(self, address: str) -> SettlementResult:
        valid = is_valid_address(address)
        info = None
        if valid:
            identity = self._identities.get_by_wallet(address) if self._identities else None
            info = {"isRegistered": identity is not None}
            if identity is not None:
                info["email"] = identity.email
        return SettlementResult.succeeded("Address checked", {
            "address": address,
            "isValid": valid,
            "addressInfo": info,
        })
