"""Structured JSON logging utility."""

from resilient_mq.utils.logging.context import (
    get_context,
    get_correlation_id,
    get_operation_name,
    log_context,
    new_correlation_id,
)
from resilient_mq.utils.logging.factory import (
    configure_logging,
    disable_logging,
)
from resilient_mq.utils.logging.formatters import StructuredJSONFormatter

__all__ = [
    # Context management
    "get_context",
    "get_correlation_id",
    "get_operation_name",
    "log_context",
    "new_correlation_id",
    # Configuration
    "configure_logging",
    "disable_logging",
    # Formatters
    "StructuredJSONFormatter",
]
