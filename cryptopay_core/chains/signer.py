"""Scoped acquisition of raw signing keys.

Callers submit a raw private key per send. The key is turned into an
account only inside a ``with ScopedSigner(...)`` block and the reference
is dropped on exit, success or failure, so nothing keeps it across
requests. Key material is never logged.
"""

import logging
import threading
from typing import Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount

from cryptopay_core.exceptions import LedgerError

logger = logging.getLogger(__name__)

_active_lock = threading.Lock()
_active_count = 0


def active_signers() -> int:
    """Number of signing scopes currently open."""
    return _active_count


class ScopedSigner:
    """
    Context manager yielding a ``LocalAccount`` for a single send.

    Usage:
        with ScopedSigner(private_key, expected_address=sender) as account:
            signed = account.sign_transaction(tx)
    """

    def __init__(self, signing_material: str, expected_address: Optional[str] = None):
        self._signing_material: Optional[str] = signing_material
        self._expected_address = expected_address
        self._account: Optional[LocalAccount] = None

    def __enter__(self) -> LocalAccount:
        global _active_count
        try:
            account = Account.from_key(self._signing_material)
        except Exception:
            raise LedgerError("Invalid signing key") from None
        finally:
            self._signing_material = None

        if self._expected_address and account.address.lower() != self._expected_address.lower():
            raise LedgerError("Signing key does not match the sender address")

        self._account = account
        with _active_lock:
            _active_count += 1
        return account

    def __exit__(self, exc_type, exc, tb) -> bool:
        global _active_count
        if self._account is not None:
            self._account = None
            with _active_lock:
                _active_count -= 1
        return False

    @property
    def holds_key(self) -> bool:
        return self._account is not None or self._signing_material is not None
