"""Tests for bounded confirmation waiting."""

import asyncio
import time

import pytest

from cryptopay_core.chains import LedgerClientConfig, SimulatedLedgerClient
from cryptopay_core.chains.confirmation import confirmations_for, wait_for_confirmations
from cryptopay_core.exceptions import ConfirmationTimeoutError, LedgerError


@pytest.fixture
def chain(alice_account):
    client = SimulatedLedgerClient(LedgerClientConfig(poll_interval=0.01))
    client.fund(alice_account.address, eth="5")
    return client


async def _send(chain, account, key):
    return await chain.send_native_transfer(
        account.address, "0x" + "22" * 20, 10**17, 30_000, 10**9, key
    )


class TestConfirmationsFor:

    def test_same_block(self):
        assert confirmations_for(10, 10) == 1

    def test_later_block(self):
        assert confirmations_for(10, 14) == 5

    def test_reorg_never_negative(self):
        assert confirmations_for(10, 5) == 0


@pytest.mark.asyncio
class TestWaitForConfirmations:
    """Tests for the poll-vs-timer race."""

    async def test_returns_receipt(self, chain, alice_account, alice_key):
        tx_hash = await _send(chain, alice_account, alice_key)
        receipt = await chain.wait_for_confirmations(tx_hash, 3, timeout=2)
        assert receipt.transaction_hash == tx_hash
        assert receipt.status is True

    async def test_times_out_without_receipt(self, chain, alice_account, alice_key):
        """Test a hash that never gets a receipt fails within about one second."""
        chain.withhold_receipts = True
        tx_hash = await _send(chain, alice_account, alice_key)

        started = time.monotonic()
        with pytest.raises(ConfirmationTimeoutError) as exc_info:
            await chain.wait_for_confirmations(tx_hash, 1, timeout=1)
        elapsed = time.monotonic() - started

        assert 0.9 <= elapsed < 2.0
        assert exc_info.value.details["status"] == "unknown"
        assert exc_info.value.http_status == 504

    async def test_poll_task_is_cancelled(self, chain, alice_account, alice_key):
        """Test no poll keeps running after the timer wins."""
        chain.withhold_receipts = True
        tx_hash = await _send(chain, alice_account, alice_key)
        before = {t for t in asyncio.all_tasks()}

        with pytest.raises(ConfirmationTimeoutError):
            await wait_for_confirmations(chain, tx_hash, 1, timeout=0.1, poll_interval=0.01)
        await asyncio.sleep(0.05)

        leftover = {t for t in asyncio.all_tasks() if not t.done()} - before
        assert leftover == set()

    async def test_flaky_node_keeps_polling(self, chain, alice_account, alice_key):
        tx_hash = await _send(chain, alice_account, alice_key)
        real_get_receipt = chain.get_receipt
        calls = {"n": 0}

        async def flaky(tx):
            calls["n"] += 1
            if calls["n"] < 3:
                raise LedgerError("connection reset")
            return await real_get_receipt(tx)

        chain.get_receipt = flaky
        receipt = await wait_for_confirmations(chain, tx_hash, 1, timeout=1, poll_interval=0.01)
        assert receipt.transaction_hash == tx_hash
        assert calls["n"] >= 3
