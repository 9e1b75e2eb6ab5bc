"""Bounded confirmation waiting.

The wait is a poll coroutine raced against a timer with ``asyncio.wait_for``:
when the timer wins the poll task is cancelled and its eventual result is
discarded, so a hash that never gets a receipt cannot hang the caller.
"""

import asyncio
import logging
from typing import TYPE_CHECKING

from cryptopay_core.exceptions import ConfirmationTimeoutError, LedgerError

if TYPE_CHECKING:
    from .base import LedgerClient, Receipt

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_TIMEOUT = 300.0


def confirmations_for(receipt_block: int, current_block: int) -> int:
    return max(0, current_block - receipt_block + 1)


async def _poll_until_confirmed(
    client: "LedgerClient",
    tx_hash: str,
    confirmations: int,
    poll_interval: float,
) -> "Receipt":
    required = max(1, confirmations)
    while True:
        try:
            receipt = await client.get_receipt(tx_hash)
            if receipt is not None:
                current = await client.get_block_number()
                seen = confirmations_for(receipt.block_number, current)
                if seen >= required:
                    return receipt
                logger.debug(f"{tx_hash}: {seen}/{required} confirmations")
        except LedgerError as e:
            # The outer timeout bounds how long a flaky node can keep us here
            logger.warning(f"Receipt poll for {tx_hash} failed: {e.message}")
        await asyncio.sleep(poll_interval)


async def wait_for_confirmations(
    client: "LedgerClient",
    tx_hash: str,
    confirmations: int,
    timeout: float = DEFAULT_TIMEOUT,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> "Receipt":
    """
    Wait until ``current_block - receipt.block_number + 1 >= confirmations``.

    Args:
        client: Ledger client to poll
        tx_hash: Broadcast transaction hash
        confirmations: Required confirmation depth (at least 1)
        timeout: Seconds before giving up
        poll_interval: Delay between polls

    Returns:
        The mined receipt (which may report a revert; callers check ``status``)

    Raises:
        ConfirmationTimeoutError: outcome unknown after ``timeout`` seconds
    """
    try:
        return await asyncio.wait_for(
            _poll_until_confirmed(client, tx_hash, confirmations, poll_interval),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning(f"Confirmation wait for {tx_hash} timed out after {timeout:g}s")
        raise ConfirmationTimeoutError(tx_hash, timeout)
