"""Transaction ID generation and context propagation.

A transaction id ties together every log line produced by one reconciliation
pass, including the vendor and directory calls it makes and the per-branch
passes a member reconciliation fans out to.

Example:
    >>> with LogContext() as transaction_id:
    ...     get_transaction_id() == transaction_id
    True
"""

import contextvars
import uuid
from types import TracebackType

_transaction_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "transaction_id", default=None
)

# HTTP header name for transaction ID propagation
TRANSACTION_ID_HEADER = "X-Transaction-ID"


def generate_transaction_id() -> str:
    """Generate a new UUID4 transaction ID."""
    return str(uuid.uuid4())


def get_transaction_id() -> str | None:
    """Return the transaction ID of the current context, if any."""
    return _transaction_id_var.get()


def set_transaction_id(transaction_id: str) -> None:
    """Set the transaction ID for the current context.

    Raises:
        ValueError: If transaction_id is empty
    """
    if not transaction_id:
        raise ValueError("Transaction ID cannot be empty")
    _transaction_id_var.set(transaction_id)


def clear_transaction_id() -> None:
    _transaction_id_var.set(None)


class LogContext:
    """Context manager scoping a transaction ID to a block of code.

    Without an explicit id the enclosing transaction is reused, so nested
    reconciliation passes log under their caller's id. A fresh id is generated
    only when no transaction is active.

    Args:
        transaction_id: Explicit id for this block.

    Example:
        >>> with LogContext("sync-branch-42"):
        ...     print(get_transaction_id())
        sync-branch-42
    """

    def __init__(self, transaction_id: str | None = None) -> None:
        self.transaction_id = transaction_id or get_transaction_id() or generate_transaction_id()
        self._token: contextvars.Token[str | None] | None = None

    def __enter__(self) -> str:
        self._token = _transaction_id_var.set(self.transaction_id)
        return self.transaction_id

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._token is not None:
            _transaction_id_var.reset(self._token)
            self._token = None
