"""Unified exception hierarchy for CryptoPay.

All settlement errors inherit from CryptoPayError, enabling:
- Consistent recovery at the settlement engine boundary
- HTTP status code mapping in the API layer
- Structured error responses with error codes

Usage:
    from cryptopay_core.exceptions import CryptoPayError, NotFoundError

    try:
        result = await store.get(request_id)
    except CryptoPayError as e:
        return SettlementResult.from_error(e)

All exceptions have:
- error_code: Machine-readable error code (e.g., "VALIDATION_ERROR")
- http_status: Appropriate HTTP status code for API responses
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to API response format
"""
from __future__ import annotations

from typing import Any, Optional


class CryptoPayError(Exception):
    """Base exception for all CryptoPay errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "CRYPTOPAY_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result = {
            "success": False,
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(CryptoPayError):
    """Malformed input: address format, non-positive amount, unsupported currency."""

    error_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class AuthenticationError(CryptoPayError):
    """Credentials or token could not be verified."""

    error_code = "AUTHENTICATION_ERROR"
    http_status = 401


class ForbiddenError(CryptoPayError):
    """Caller is not the owning party for the resource."""

    error_code = "FORBIDDEN"
    http_status = 403


class NotFoundError(CryptoPayError):
    """Referenced payment request or transaction does not exist."""

    error_code = "NOT_FOUND"
    http_status = 404

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        message = f"{resource_type} not found"
        details = details or {}
        details["resource_type"] = resource_type
        details["resource_id"] = resource_id
        super().__init__(message, details=details)


class InvalidStateError(CryptoPayError):
    """Operation attempted against a resource not in the required state."""

    error_code = "INVALID_STATE"
    http_status = 409


class ExpiredError(CryptoPayError):
    """Payment request deadline has passed."""

    error_code = "EXPIRED"
    http_status = 410


class LedgerError(CryptoPayError):
    """A blockchain call failed: reverted, out of gas, or unreachable node."""

    error_code = "LEDGER_ERROR"
    http_status = 502


class ConfirmationTimeoutError(CryptoPayError):
    """Confirmation wait exceeded its bound.

    The underlying transaction may still succeed later, so the outcome is
    unknown rather than failed.
    """

    error_code = "CONFIRMATION_TIMEOUT"
    http_status = 504

    def __init__(
        self,
        tx_hash: str,
        timeout: float,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details.update({"transactionHash": tx_hash, "timeoutSeconds": timeout, "status": "unknown"})
        super().__init__(
            f"Confirmation for {tx_hash} not observed within {timeout:g}s; status unknown, check later",
            details=details,
        )
        self.tx_hash = tx_hash
        self.timeout = timeout


class StoreError(CryptoPayError):
    """Persistent store failure; fatal to the current request only."""

    error_code = "STORE_ERROR"
    http_status = 500
