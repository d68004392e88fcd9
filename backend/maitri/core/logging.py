"""
Maitri - Structured Logging

Human-readable (development) or JSON (production) log output with the
current call SID and request correlation ID injected from context variables.
Phone-like fields in structured data are masked before they reach a handler.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Optional


# =============================================================================
# Context Variables
# =============================================================================

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
call_sid_var: ContextVar[Optional[str]] = ContextVar("call_sid", default=None)


# =============================================================================
# Masking Utilities
# =============================================================================

SENSITIVE_KEYS = (
    "phone", "from", "caller", "number", "encrypted",
    "password", "token", "secret", "key",
)


def mask_call_sid(sid: Optional[str]) -> Optional[str]:
    """Mask a call SID to its last 4 characters."""
    if not sid:
        return None
    return f"***{sid[-4:]}" if len(sid) > 4 else "***"


def mask_sensitive_data(data: dict) -> dict:
    """Recursively mask values whose key looks like a phone number or secret."""
    masked: dict[str, Any] = {}
    for key, value in data.items():
        key_lower = key.lower()
        if key_lower != "caller_hash" and any(s in key_lower for s in SENSITIVE_KEYS):
            if isinstance(value, str) and len(value) > 4:
                masked[key] = f"***{value[-4:]}"
            else:
                masked[key] = "[REDACTED]"
        elif isinstance(value, dict):
            masked[key] = mask_sensitive_data(value)
        else:
            masked[key] = value
    return masked


# =============================================================================
# Formatters
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """
    JSON formatter.

    {"timestamp": "...Z", "level": "INFO", "logger": "maitri.telephony.funnel",
     "correlation_id": "...", "call_sid": "***ab12", "message": "...", "data": {...}}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            entry["correlation_id"] = correlation_id

        call_sid = call_sid_var.get()
        if call_sid:
            entry["call_sid"] = mask_call_sid(call_sid)

        data = getattr(record, "data", None)
        if data:
            entry["data"] = mask_sensitive_data(data)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Single-line formatter for development, with call context when present."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        call_sid = call_sid_var.get()
        context = f" [call={mask_call_sid(call_sid)}]" if call_sid else ""

        message = f"{timestamp} | {record.levelname:<8} | {record.name}{context} | {record.getMessage()}"

        data = getattr(record, "data", None)
        if data:
            message += f" | {json.dumps(mask_sensitive_data(data), ensure_ascii=False, default=str)}"

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return message


def setup_structured_logging(level: str = "INFO", json_format: bool = False) -> None:
    """
    Configure root logging for the application.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        json_format: JSON lines (production) instead of human-readable output
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(StructuredFormatter() if json_format else HumanReadableFormatter())
    root_logger.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("twilio.http_client").setLevel(logging.WARNING)


# =============================================================================
# Context Manager
# =============================================================================

class LogContext:
    """
    Bind call/correlation identifiers to every log line emitted inside the block.

    Usage:
        with LogContext(call_sid="CA123"):
            logger.info("Processing webhook")
    """

    def __init__(self, correlation_id: Optional[str] = None, call_sid: Optional[str] = None):
        self._correlation_id = correlation_id
        self._call_sid = call_sid
        self._tokens: list[tuple[ContextVar, Token]] = []

    def __enter__(self) -> "LogContext":
        if self._correlation_id:
            self._tokens.append((correlation_id_var, correlation_id_var.set(self._correlation_id)))
        if self._call_sid:
            self._tokens.append((call_sid_var, call_sid_var.set(self._call_sid)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
        return False


# =============================================================================
# Structured Logger
# =============================================================================

class StructuredLogger:
    """
    Logger wrapper that attaches a `data` dict to the record.

    Usage:
        logger = get_logger(__name__)
        logger.info("Alert created", data={"alert_id": alert.id})
    """

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, message: str, data: Optional[dict] = None, **kwargs) -> None:
        extra = {"data": data} if data else {}
        self._logger.log(level, message, extra=extra, **kwargs)

    def debug(self, message: str, data: Optional[dict] = None, **kwargs) -> None:
        self._log(logging.DEBUG, message, data, **kwargs)

    def info(self, message: str, data: Optional[dict] = None, **kwargs) -> None:
        self._log(logging.INFO, message, data, **kwargs)

    def warning(self, message: str, data: Optional[dict] = None, **kwargs) -> None:
        self._log(logging.WARNING, message, data, **kwargs)

    def error(self, message: str, data: Optional[dict] = None, **kwargs) -> None:
        self._log(logging.ERROR, message, data, **kwargs)

    def critical(self, message: str, data: Optional[dict] = None, **kwargs) -> None:
        self._log(logging.CRITICAL, message, data, **kwargs)

    def exception(self, message: str, data: Optional[dict] = None, **kwargs) -> None:
        self._log(logging.ERROR, message, data, exc_info=True, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)
