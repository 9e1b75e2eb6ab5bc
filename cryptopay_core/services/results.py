"""Structured results returned by settlement operations."""

import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from cryptopay_core.exceptions import CryptoPayError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable["SettlementResult"]])


@dataclass
class SettlementResult:
    """Result of a settlement operation.

    Every public engine operation returns one of these instead of raising:
    the error taxonomy is folded into ``error_code`` / ``http_status``.
    """
    success: bool
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    error_code: Optional[str] = None
    http_status: int = 200

    @classmethod
    def succeeded(cls, message: str, data: Optional[dict[str, Any]] = None, http_status: int = 200) -> "SettlementResult":
        """Create a successful result."""
        return cls(success=True, message=message, data=data or {}, http_status=http_status)

    @classmethod
    def from_error(cls, error: CryptoPayError, data: Optional[dict[str, Any]] = None) -> "SettlementResult":
        """Create a failed result from a taxonomy error."""
        payload = dict(error.details)
        payload.update(data or {})
        return cls(
            success=False,
            message=error.message,
            data=payload,
            error_code=error.error_code,
            http_status=error.http_status,
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON body served by the HTTP API."""
        if self.success:
            return {"success": True, "message": self.message, "data": self.data}
        body: dict[str, Any] = {"success": False, "message": self.message, "error": self.error_code}
        if self.data:
            body["data"] = self.data
        return body


def settlement_operation(name: str) -> Callable[[F], F]:
    """
    Recover every error of an engine operation into a SettlementResult.

    Taxonomy errors keep their code and status; anything else is logged
    with its traceback and reported as an internal error.
    """
    def decorator(fn: F) -> F:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> SettlementResult:
            try:
                return await fn(*args, **kwargs)
            except CryptoPayError as e:
                logger.info(f"{name} rejected: {e.error_code} {e.message}")
                return SettlementResult.from_error(e)
            except Exception:
                logger.exception(f"{name} failed unexpectedly")
                return SettlementResult.from_error(
                    CryptoPayError(f"Failed to {name.replace('_', ' ')}", error_code="INTERNAL_ERROR")
                )
        return wrapper  # type: ignore[return-value]
    return decorator
