"""
Redis key formats for the chat sync service.

Format convention: ``chat_sync:{entity}:{identifier}[:{subtype}]``.
"""


class RedisKeys:
    """Static key builders; every Redis key the service touches comes from here."""

    @staticmethod
    def branch_lock(branch_id: str) -> str:
        """
        Lock held for the duration of one branch reconciliation.

        Examples:
            >>> RedisKeys.branch_lock("42")
            'chat_sync:branch_lock:42'
        """
        return f"chat_sync:branch_lock:{branch_id}"

    @staticmethod
    def backup_group_skip(branch_id: str) -> str:
        """
        Page offset of the next message backup run for a branch.

        Examples:
            >>> RedisKeys.backup_group_skip("42")
            'chat_sync:backup:42:group_skip'
        """
        return f"chat_sync:backup:{branch_id}:group_skip"

    @staticmethod
    def backup_last_message(group_id: str) -> str:
        """
        Id of the newest message already copied for a group.

        Examples:
            >>> RedisKeys.backup_last_message("g-1")
            'chat_sync:backup:group:g-1:last_message'
        """
        return f"chat_sync:backup:group:{group_id}:last_message"

    @staticmethod
    def backup_empty_group(group_id: str) -> str:
        return f"chat_sync:backup:group:{group_id}:empty"
