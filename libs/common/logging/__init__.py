"""Structured logging with transaction id correlation.

Usage:
    # At process start
    from libs.common.logging import configure_logging
    configure_logging(service_name="chat_sync", log_level="INFO")

    # Around a unit of work
    from libs.common.logging import LogContext
    with LogContext():
        logger.info("Reconciling branch", extra={"branch_id": branch_id})
"""

from libs.common.logging.config import (
    TransactionIDFilter,
    configure_logging,
    get_logger,
)
from libs.common.logging.context import (
    TRANSACTION_ID_HEADER,
    LogContext,
    clear_transaction_id,
    generate_transaction_id,
    get_transaction_id,
    set_transaction_id,
)
from libs.common.logging.formatter import JSONFormatter
from libs.common.logging.http_client import TransactionHTTPXClient, get_transaction_client
from libs.common.logging.middleware import (
    ASGITransactionIDMiddleware,
    add_transaction_id_middleware,
)

__all__ = [
    # Configuration
    "configure_logging",
    "get_logger",
    "TransactionIDFilter",
    # Transaction ID management
    "generate_transaction_id",
    "get_transaction_id",
    "set_transaction_id",
    "clear_transaction_id",
    "LogContext",
    "TRANSACTION_ID_HEADER",
    # HTTP propagation
    "TransactionHTTPXClient",
    "get_transaction_client",
    "ASGITransactionIDMiddleware",
    "add_transaction_id_middleware",
    "JSONFormatter",
]
