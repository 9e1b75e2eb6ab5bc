"""Background reconciliation of expired requests and stuck transactions."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from cryptopay_core.exceptions import CryptoPayError
from cryptopay_core.models import PaymentRequestStatus, TransactionRecord, TransactionStatus
from .settlement_service import SettlementEngine

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationResult:
    """Counters for one reconciliation pass."""
    checked: int = 0
    confirmed: int = 0
    failed: int = 0
    expired: int = 0
    completed: int = 0
    unresolved: int = 0
    abandoned: int = 0
    discrepancies: list[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def complete(self, now: datetime) -> "ReconciliationResult":
        self.finished_at = now
        return self

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "confirmed": self.confirmed,
            "failed": self.failed,
            "expired": self.expired,
            "completed": self.completed,
            "unresolved": self.unresolved,
            "abandoned": self.abandoned,
            "discrepancies": list(self.discrepancies),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }


class ReconciliationService:
    """
    Settles what the request path left open.

    - pending requests past their deadline are flipped to expired
    - processing transactions older than ``stale_after`` are checked
      against the chain and moved to confirmed or failed
    - a processing transaction with no receipt is abandoned (failed, claim
      released) once its payment request has expired or it has been
      stuck longer than ``abandon_after``
    - claimed requests whose transaction already finished are completed
      or released
    """

    def __init__(
        self,
        engine: SettlementEngine,
        stale_after: timedelta = timedelta(minutes=10),
        abandon_after: timedelta = timedelta(hours=24),
    ):
        self._engine = engine
        self._stale_after = stale_after
        self._abandon_after = abandon_after
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _now(self) -> datetime:
        return self._engine.now()

    async def expire_overdue_requests(self, result: Optional[ReconciliationResult] = None) -> ReconciliationResult:
        result = result or ReconciliationResult(started_at=self._now())
        requests = self._engine.requests
        for request in await requests.list_overdue(self._now()):
            expired = await requests.transition(
                request.id, [PaymentRequestStatus.PENDING], PaymentRequestStatus.EXPIRED
            )
            if expired is not None:
                result.expired += 1
                logger.info(f"Reconciliation expired payment request {request.id}")
        return result

    async def reconcile_stale_transactions(self, result: Optional[ReconciliationResult] = None) -> ReconciliationResult:
        result = result or ReconciliationResult(started_at=self._now())
        now = self._now()
        cutoff = now - self._stale_after
        ledger = self._engine.ledger
        stale = await self._engine.transactions.list_by_status(TransactionStatus.PROCESSING, updated_before=cutoff)

        for record in stale:
            result.checked += 1
            if not record.transaction_hash:
                result.discrepancies.append(f"{record.id}: processing without a transaction hash")
                await self._abandon_if_hopeless(record, now, result, "Transaction was never broadcast")
                continue
            try:
                receipt = await ledger.get_receipt(record.transaction_hash)
            except CryptoPayError as e:
                result.unresolved += 1
                logger.warning(f"Receipt lookup for {record.id} failed: {e.message}")
                continue
            if receipt is None:
                await self._abandon_if_hopeless(record, now, result, "Transaction not found on chain")
                continue

            updated = await self._engine.record_receipt(record, receipt)
            if updated.status == TransactionStatus.CONFIRMED:
                result.confirmed += 1
            elif updated.status == TransactionStatus.FAILED:
                result.failed += 1
                result.discrepancies.append(f"{record.id}: reverted on chain")
        return result

    async def _abandon_if_hopeless(
        self,
        record: TransactionRecord,
        now: datetime,
        result: ReconciliationResult,
        reason: str,
    ) -> None:
        if not await self._is_hopeless(record, now):
            result.unresolved += 1
            return
        abandoned = await self._engine.abandon_transaction(record, reason)
        if abandoned is None:
            result.unresolved += 1
            return
        result.failed += 1
        result.abandoned += 1
        result.discrepancies.append(f"{record.id}: abandoned ({reason})")

    async def _is_hopeless(self, record: TransactionRecord, now: datetime) -> bool:
        if now - record.updated_at >= self._abandon_after:
            return True
        if not record.payment_request_id:
            return False
        request = await self._engine.requests.get(record.payment_request_id)
        return request is not None and request.is_expired(now)

    async def finish_claimed_requests(self, result: Optional[ReconciliationResult] = None) -> ReconciliationResult:
        result = result or ReconciliationResult(started_at=self._now())
        transactions = self._engine.transactions
        for request in await self._engine.requests.list_claimed():
            record = await transactions.get(request.processing_transaction_id)
            if record is None:
                result.discrepancies.append(f"{request.id}: claimed by missing transaction")
                continue
            if not record.status.is_terminal:
                continue
            await self._engine.finish_linked_request(record)
            refreshed = await self._engine.requests.get(request.id)
            if refreshed is not None and refreshed.status == PaymentRequestStatus.COMPLETED:
                result.completed += 1
        return result

    async def run_once(self) -> ReconciliationResult:
        result = ReconciliationResult(started_at=self._now())
        # Expiry runs last so requests released by this pass can expire in it
        await self.reconcile_stale_transactions(result)
        await self.finish_claimed_requests(result)
        await self.expire_overdue_requests(result)
        result.complete(self._now())
        if result.checked or result.expired or result.discrepancies:
            logger.info(
                f"Reconciliation pass: checked={result.checked} confirmed={result.confirmed} "
                f"failed={result.failed} expired={result.expired} unresolved={result.unresolved} "
                f"abandoned={result.abandoned}"
            )
        return result

    async def run_forever(self, interval: float = 60.0) -> None:
        while True:
            try:
                await self.run_once()
            except CryptoPayError as e:
                logger.error(f"Reconciliation pass failed: {e.message}")
            except Exception:
                logger.exception("Reconciliation pass crashed")
            await asyncio.sleep(interval)

    def start(self, interval: float = 60.0) -> asyncio.Task:
        if not self.running:
            self._task = asyncio.create_task(self.run_forever(interval))
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
