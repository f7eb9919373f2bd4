"""Logging setup for the chat sync service.

Call ``configure_logging`` once at process start (API or CLI). Modules keep
using ``logging.getLogger(__name__)`` and pass structured fields via
``extra={...}``; the JSON formatter folds them into ``context``.

Example:
    >>> configure_logging(service_name="chat_sync", log_level="INFO")
    >>> logging.getLogger(__name__).info("Branch synced", extra={"branch_id": "42"})
"""

import logging
import sys

from libs.common.logging.context import get_transaction_id
from libs.common.logging.formatter import JSONFormatter


class TransactionIDFilter(logging.Filter):
    """Stamp the current transaction id onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.transaction_id = get_transaction_id()
        return True


def configure_logging(
    service_name: str,
    log_level: str = "INFO",
    include_context: bool = True,
) -> logging.Logger:
    """Configure structured JSON logging on the root logger.

    Existing root handlers are replaced so repeated calls (tests, reloads)
    never duplicate output.

    Args:
        service_name: Value of the ``service`` field in every entry
        log_level: Minimum level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        include_context: Whether extra fields are emitted under ``context``

    Returns:
        The configured root logger

    Raises:
        ValueError: If log_level is not a known level name
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter(service_name=service_name, include_context=include_context))
    handler.addFilter(TransactionIDFilter())
    root_logger.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))

    return root_logger


def get_logger(name: str | None = None) -> logging.Logger:
    return logging.getLogger(name)
