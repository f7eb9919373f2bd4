"""
Apps package - services of the chat group sync platform.

This package contains:
- chat_sync: FastAPI service reconciling vendor chat groups with branch rosters
"""
