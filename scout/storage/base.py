"""
State persistence for the learning components.

The engine persists a handful of JSON documents under fixed keys
(transition matrix, Q-table, training buffer, reward log, regime history).
Backends only need load/save by key:

- MemoryStorage: process-local dict, used by tests and dry runs
- SQLiteStorage: single-file key/value table

Usage:
    storage = SQLiteStorage("data/scout.db")
    storage.save("q_table", {"TRENDING": {"BUY": 0.5, "SELL": 0.5}})
    q_table = storage.load("q_table", default={})
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when a storage backend cannot read or write a key."""
    pass


class Storage(ABC):
    """Key/value store for JSON-serialisable engine state."""

    @abstractmethod
    def load(self, key: str, default: Any = None) -> Any:
        """Return the stored value for key, or default when absent."""

    @abstractmethod
    def save(self, key: str, value: Any) -> None:
        """Store value under key, replacing any previous value."""

    def keys(self):
        return []


class MemoryStorage(Storage):
    """In-process storage. Values round-trip through JSON like a real backend."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def load(self, key: str, default: Any = None) -> Any:
        raw = self._data.get(key)
        if raw is None:
            return default
        return json.loads(raw)

    def save(self, key: str, value: Any) -> None:
        try:
            self._data[key] = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for '{key}' is not JSON-serialisable: {e}")

    def keys(self):
        return sorted(self._data)


class SQLiteStorage(Storage):
    """
    SQLite-backed storage.

    One row per key in an `engine_state` table. Connections are opened per
    call so the object can be shared by deferred resolve callbacks.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        parent = Path(db_path).parent
        if str(parent) not in ("", "."):
            parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self):
        try:
            with closing(self._connect()) as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS engine_state (
                        state_key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                """)
                conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to initialise {self.db_path}: {e}")

    def load(self, key: str, default: Any = None) -> Any:
        try:
            with closing(self._connect()) as conn:
                row = conn.execute(
                    "SELECT value FROM engine_state WHERE state_key = ?", (key,)
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to load '{key}': {e}")

        if row is None:
            return default

        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt value for '{key}': {e}")

    def save(self, key: str, value: Any) -> None:
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for '{key}' is not JSON-serialisable: {e}")

        try:
            with closing(self._connect()) as conn:
                conn.execute("""
                    INSERT OR REPLACE INTO engine_state (state_key, value, updated_at)
                    VALUES (?, ?, ?)
                """, (key, payload, datetime.now(timezone.utc).isoformat()))
                conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to save '{key}': {e}")

    def keys(self):
        try:
            with closing(self._connect()) as conn:
                rows = conn.execute(
                    "SELECT state_key FROM engine_state ORDER BY state_key"
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list keys: {e}")
        return [row[0] for row in rows]


def create_storage(db_path: Optional[str] = None) -> Storage:
    """SQLite storage when a path is given, memory storage otherwise."""
    if db_path:
        logger.info(f"Using SQLite storage at {db_path}")
        return SQLiteStorage(db_path)
    return MemoryStorage()
