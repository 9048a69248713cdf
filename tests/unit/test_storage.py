"""
Tests for engine state storage backends.
"""

import sqlite3

import pytest

from scout.storage import MemoryStorage, SQLiteStorage, StorageError, create_storage


SAMPLE_STATE = {
    "values": {"TRENDING": {"BUY": 0.595, "SELL": 0.5}},
    "update_count": 1,
}


class TestMemoryStorage:
    """Process-local backend"""

    def test_round_trip(self):
        storage = MemoryStorage()
        storage.save("q_table", SAMPLE_STATE)
        assert storage.load("q_table") == SAMPLE_STATE

    def test_missing_key_default(self):
        storage = MemoryStorage()
        assert storage.load("missing") is None
        assert storage.load("missing", default=[]) == []

    def test_values_are_copies(self):
        storage = MemoryStorage()
        state = {"items": [1, 2]}
        storage.save("state", state)
        state["items"].append(3)
        loaded = storage.load("state")
        loaded["items"].append(4)
        assert storage.load("state") == {"items": [1, 2]}

    def test_rejects_unserialisable(self):
        with pytest.raises(StorageError):
            MemoryStorage().save("bad", {"obj": object()})

    def test_keys(self):
        storage = MemoryStorage()
        storage.save("b", 1)
        storage.save("a", 2)
        assert storage.keys() == ["a", "b"]


class TestSQLiteStorage:
    """Single-file backend"""

    def test_round_trip(self, tmp_path):
        storage = SQLiteStorage(str(tmp_path / "state.db"))
        storage.save("q_table", SAMPLE_STATE)
        assert storage.load("q_table") == SAMPLE_STATE

    def test_overwrite(self, tmp_path):
        storage = SQLiteStorage(str(tmp_path / "state.db"))
        storage.save("count", 1)
        storage.save("count", 2)
        assert storage.load("count") == 2
        assert storage.keys() == ["count"]

    def test_persists_across_instances(self, tmp_path):
        path = str(tmp_path / "state.db")
        SQLiteStorage(path).save("matrix", [[0.7, 0.3], [0.4, 0.6]])
        assert SQLiteStorage(path).load("matrix") == [[0.7, 0.3], [0.4, 0.6]]

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "state.db"
        SQLiteStorage(str(path)).save("x", 1)
        assert path.exists()

    def test_missing_key_default(self, tmp_path):
        storage = SQLiteStorage(str(tmp_path / "state.db"))
        assert storage.load("missing", default={}) == {}

    def test_corrupt_value(self, tmp_path):
        path = str(tmp_path / "state.db")
        storage = SQLiteStorage(path)
        conn = sqlite3.connect(path)
        conn.execute(
            "INSERT INTO engine_state (state_key, value, updated_at) VALUES (?, ?, ?)",
            ("broken", "{not json", "2024-01-01T00:00:00"),
        )
        conn.commit()
        conn.close()

        with pytest.raises(StorageError):
            storage.load("broken")

    def test_rejects_unserialisable(self, tmp_path):
        storage = SQLiteStorage(str(tmp_path / "state.db"))
        with pytest.raises(StorageError):
            storage.save("bad", {1, 2})

    def test_unusable_path(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises((StorageError, OSError)):
            SQLiteStorage(str(blocker / "state.db"))

    def test_connection_closed_when_query_fails(self, tmp_path):
        opened = []

        class BrokenConnection:
            closed = False

            def execute(self, *args):
                raise sqlite3.OperationalError("disk I/O error")

            def commit(self):
                pass

            def close(self):
                self.closed = True

        storage = SQLiteStorage(str(tmp_path / "state.db"))

        def connect():
            opened.append(BrokenConnection())
            return opened[-1]

        storage._connect = connect

        with pytest.raises(StorageError):
            storage.save("q_table", SAMPLE_STATE)
        with pytest.raises(StorageError):
            storage.load("q_table")
        with pytest.raises(StorageError):
            storage.keys()

        assert len(opened) == 3
        assert all(conn.closed for conn in opened)


class TestCreateStorage:

    def test_memory_without_path(self):
        assert isinstance(create_storage(None), MemoryStorage)

    def test_sqlite_with_path(self, tmp_path):
        assert isinstance(create_storage(str(tmp_path / "s.db")), SQLiteStorage)
