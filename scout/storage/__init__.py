"""
Scout Storage Module

Key/value persistence for learned engine state.
"""

from .base import (
    Storage,
    MemoryStorage,
    SQLiteStorage,
    StorageError,
    create_storage,
)

__all__ = [
    "Storage",
    "MemoryStorage",
    "SQLiteStorage",
    "StorageError",
    "create_storage",
]
