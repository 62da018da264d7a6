"""Logger configuration for the messaging subsystem."""
import logging
import sys
from typing import Optional, TextIO

from resilient_mq.config import MessagingConfig
from resilient_mq.utils.logging.formatters import StructuredJSONFormatter

_logger = logging.getLogger(__name__)


def configure_logging(
    config: Optional[MessagingConfig] = None,
    level: Optional[int] = None,
    stream: Optional[TextIO] = None,
    json_format: bool = True,
) -> logging.Logger:
    """Attach a handler to the subsystem logger.

    Only the ``config.log_channel`` logger is touched, so host applications
    keep control of the root logger.

    Args:
        config: Messaging configuration (``debug`` selects DEBUG level)
        level: Explicit level, overrides ``config.debug``
        stream: Output stream (stdout by default)
        json_format: Emit structured JSON instead of plain text

    Returns:
        The configured subsystem logger
    """
    config = config or MessagingConfig()
    if level is None:
        level = logging.DEBUG if config.debug else logging.INFO

    logger = logging.getLogger(config.log_channel)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        if getattr(handler, "_resilient_mq_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(level)
    if json_format:
        handler.setFormatter(StructuredJSONFormatter(service_name=config.log_channel))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler._resilient_mq_handler = True
    logger.addHandler(handler)

    _logger.debug(
        "Logging configured",
        extra={"channel": config.log_channel, "level": logging.getLevelName(level)},
    )
    return logger


def disable_logging(config: Optional[MessagingConfig] = None) -> None:
    """Silence the subsystem logger. Useful for tests."""
    config = config or MessagingConfig()
    logger = logging.getLogger(config.log_channel)
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
