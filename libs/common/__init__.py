"""Common utilities and exceptions."""

from libs.common.batch import BatchExecutor, ItemResult, chunked, failures, successes
from libs.common.exceptions import (
    ChatSyncError,
    ConfigurationError,
    DirectoryCallFailedError,
    IdentityMissingError,
    NotFoundError,
    StoreWriteFailedError,
    VendorCallFailedError,
)

__all__ = [
    "ChatSyncError",
    "ConfigurationError",
    "DirectoryCallFailedError",
    "IdentityMissingError",
    "NotFoundError",
    "StoreWriteFailedError",
    "VendorCallFailedError",
    # Batching
    "BatchExecutor",
    "ItemResult",
    "chunked",
    "failures",
    "successes",
]
