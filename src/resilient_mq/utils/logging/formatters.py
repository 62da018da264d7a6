"""Structured JSON log formatters."""
import json
import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Dict

from resilient_mq.utils.logging.context import get_context

# Attributes every LogRecord has; anything else came in through ``extra=``
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "taskName"}

# Sensitive key fragments to redact
_SENSITIVE_PATTERNS = (
    "api_key",
    "password",
    "passwd",
    "passphrase",
    "token",
    "secret",
    "authorization",
)


def _serialize_value(value: Any) -> Any:
    """Safely serialize value to JSON-compatible type."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_serialize_value(v) for v in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if hasattr(value, "isoformat"):
        return value.isoformat()
    try:
        return str(value)
    except Exception:
        return f"<unserializable: {type(value).__name__}>"


def _redact_sensitive(data: Any) -> Any:
    """Replace values of sensitive keys with ``[REDACTED]``, recursively."""
    if isinstance(data, dict):
        redacted = {}
        for key, value in data.items():
            if any(pattern in str(key).lower() for pattern in _SENSITIVE_PATTERNS):
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = _redact_sensitive(value)
        return redacted
    if isinstance(data, list):
        return [_redact_sensitive(item) for item in data]
    return data


def extract_extra(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields passed to the logging call through ``extra=``."""
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class StructuredJSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Formats log records as JSON with consistent fields:
    - timestamp (ISO 8601 UTC)
    - level, logger_name, message
    - service_name
    - correlation_id / operation_name (from context)
    - every ``extra=`` field, with secrets redacted
    - exception and stack_trace (if applicable)
    """

    def __init__(self, service_name: str = "resilient_mq"):
        """Initialize formatter.

        Args:
            service_name: Service name stamped on every entry
        """
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service_name": self.service_name,
            "logger_name": record.name,
            "message": record.getMessage(),
            "source_function": record.funcName,
            "source_line": record.lineno,
        }

        context = {k: v for k, v in get_context().items() if v is not None}
        log_entry.update(_redact_sensitive(context))
        log_entry.update(_redact_sensitive(extract_extra(record)))

        if record.exc_info:
            exc_type, exc_value, exc_tb = record.exc_info
            log_entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
            }
            if exc_tb:
                log_entry["stack_trace"] = traceback.format_exception(exc_type, exc_value, exc_tb)

        try:
            return json.dumps(_serialize_value(log_entry), default=str)
        except Exception as e:
            return json.dumps({
                "error": "Failed to serialize log entry",
                "original_message": record.getMessage(),
                "serialization_error": str(e),
            })
