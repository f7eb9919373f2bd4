"""
Exception hierarchy for the chat group sync service.

Failures are split by how far they propagate: lookups that establish the
working set are terminal for a reconciliation call, while vendor and mirror
failures inside a batch are isolated per item and only logged.
"""


class ChatSyncError(Exception):
    """
    Base exception for all chat sync errors.

    Example:
        >>> try:
        ...     await reconciler.reconcile_member("PS-100")
        ... except ChatSyncError as e:
        ...     logger.error(f"Chat sync failed: {e}")
    """

    pass


class NotFoundError(ChatSyncError):
    """
    Raised when a member or branch does not exist in the org directory.

    Terminal for the reconciliation call that raised it.

    Example:
        >>> member = await directory.get_member(ps_id)
        >>> if member is None:
        ...     raise NotFoundError(f"Member {ps_id} not found")
    """

    pass


class IdentityMissingError(ChatSyncError):
    """
    Raised when a member has no resolvable vendor identity.

    Terminal for member reconciliation. A later branch reconciliation creates
    the identity, after which the member call succeeds.

    Example:
        >>> if not member.has_vendor_identity:
        ...     raise IdentityMissingError(f"Member {member.employee_ps_id} has no vendor id")
    """

    pass


class VendorCallFailedError(ChatSyncError):
    """
    Raised when a single call to the chat vendor API fails.

    Transport errors are retried before this is raised; HTTP status errors
    are raised immediately with the status code attached.

    Example:
        >>> raise VendorCallFailedError("create_group failed", status_code=422)
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DirectoryCallFailedError(ChatSyncError):
    """
    Raised when a call to the org directory service fails.

    Example:
        >>> raise DirectoryCallFailedError("Branch roster unavailable", status_code=503)
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StoreWriteFailedError(ChatSyncError):
    """
    Raised when a write to the local membership mirror fails.

    The mirror is a lookup index; a failed write degrades later lookups but
    never vendor-side correctness.

    Example:
        >>> try:
        ...     await cur.executemany(INSERT_SQL, rows)
        ... except psycopg.Error as exc:
        ...     raise StoreWriteFailedError(str(exc)) from exc
    """

    pass


class ConfigurationError(ChatSyncError):
    """
    Raised when required configuration or secrets are missing.

    Example:
        >>> if not settings.chat_vendor_api_url:
        ...     raise ConfigurationError("CHAT_VENDOR_API_URL not configured")
    """

    pass
