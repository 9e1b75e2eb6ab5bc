"""Structured logging configuration with request correlation.

This module provides structured JSON logging with:
- Request IDs for tracing a single HTTP call through the settlement engine
- Contextual fields (user, wallet, transaction)
- Chain event logging through log_chain_event()
"""
from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
wallet_address_var: ContextVar[Optional[str]] = ContextVar("wallet_address", default=None)

_CONTEXT_FIELDS = ("request_id", "user_id", "wallet_address")

_RESERVED = {
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "message", "pathname", "process",
    "processName", "relativeCreated", "thread", "threadName", "exc_info",
    "exc_text", "stack_info", "taskName", *_CONTEXT_FIELDS,
}

# Keys that must never reach a log sink, whatever the caller passes in extra=.
_REDACTED_KEYS = {"private_key", "privateKey", "signing_material", "password"}

chain_logger = logging.getLogger("cryptopay_core.chain")


class CorrelationIDFilter(logging.Filter):
    """Logging filter that adds request context to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        record.user_id = user_id_var.get()
        record.wallet_address = wallet_address_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key in _CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED:
                continue
            log_data[key] = "[redacted]" if key in _REDACTED_KEYS else value

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON structured logging (True) or plain text (False)
        log_file: Optional file path for logging output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(CorrelationIDFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(CorrelationIDFilter())
        root_logger.addHandler(file_handler)


def generate_request_id() -> str:
    """Generate a new request ID."""
    return f"req_{uuid.uuid4().hex[:16]}"


def set_request_id(request_id: Optional[str]) -> None:
    request_id_var.set(request_id)


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def set_user_context(user_id: Optional[str], wallet_address: Optional[str] = None) -> None:
    """Set the calling identity in logging context."""
    user_id_var.set(user_id)
    wallet_address_var.set(wallet_address)


def clear_context() -> None:
    """Clear all context variables."""
    request_id_var.set(None)
    user_id_var.set(None)
    wallet_address_var.set(None)


def log_chain_event(event: str, level: int = logging.INFO, **fields: Any) -> None:
    """
    Log a blockchain event (broadcast, receipt, confirmation) with its fields.

    Example:
        log_chain_event("transfer_broadcast", tx_hash=tx_hash, currency="ETH")
    """
    extra = {k: ("[redacted]" if k in _REDACTED_KEYS else v) for k, v in fields.items()}
    extra["chain_event"] = event
    summary = " ".join(f"{k}={v}" for k, v in extra.items() if k != "chain_event")
    chain_logger.log(level, f"{event} {summary}".strip(), extra=extra)
