"""Response envelope helpers: ``{success, message, data}``."""

from typing import Any, Optional

from fastapi.responses import JSONResponse

from cryptopay_core.services import SettlementResult


def respond(result: SettlementResult) -> JSONResponse:
    """Serve an engine result with its own status code."""
    return JSONResponse(status_code=result.http_status, content=result.to_dict())


def ok(message: str, data: Optional[dict[str, Any]] = None, status_code: int = 200) -> JSONResponse:
    return respond(SettlementResult.succeeded(message, data, http_status=status_code))
