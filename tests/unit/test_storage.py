"""
Unit tests for the key/value stores and storage error mapping.
"""

import sqlite3

import pytest

from loupe_agent.errors import (
    StorageError,
    StorageQuotaExceeded,
    StorageUnavailable,
    map_storage_error,
)
from loupe_agent.storage import KeyValueStore, MemoryStore, SqliteStore, is_writable


@pytest.fixture
def sqlite_store(tmp_path):
    s = SqliteStore(tmp_path / "loupe" / "messages.db")
    yield s
    s.close()


def test_memory_store_basic_operations():
    s = MemoryStore()
    s.set("a", "1")
    s.set("b", "2")
    assert s.get("a") == "1"
    assert s.get("missing") is None
    s.remove("a")
    s.remove("a")  # removing twice is a no-op
    assert s.keys() == ["b"]
    assert len(s) == 1
    assert isinstance(s, KeyValueStore)


def test_memory_store_quota():
    s = MemoryStore(max_bytes=10)
    s.set("a", "x" * 8)
    with pytest.raises(StorageQuotaExceeded):
        s.set("b", "yyy")
    # replacing a value only counts the new size
    s.set("a", "z" * 10)
    assert s.used_bytes == 10


def test_sqlite_store_round_trip_and_order(sqlite_store):
    for key in ("k3", "k1", "k2"):
        sqlite_store.set(key, key.upper())

    assert sqlite_store.keys() == ["k3", "k1", "k2"]
    assert sqlite_store.get("k1") == "K1"
    sqlite_store.set("k1", "again")
    assert sqlite_store.get("k1") == "again"
    sqlite_store.remove("k3")
    assert len(sqlite_store) == 2
    assert sqlite_store.get("k3") is None


def test_sqlite_store_persists_across_connections(tmp_path):
    path = tmp_path / "messages.db"
    first = SqliteStore(path)
    first.set("Loupe-message-1", "{}")
    first.close()

    second = SqliteStore(path)
    try:
        assert second.keys() == ["Loupe-message-1"]
    finally:
        second.close()


def test_sqlite_store_quota(tmp_path):
    s = SqliteStore(tmp_path / "q.db", max_bytes=20)
    try:
        s.set("a", "x" * 15)
        with pytest.raises(StorageQuotaExceeded):
            s.set("b", "y" * 10)
        s.set("a", "z" * 20)
        assert s.get("a") == "z" * 20
    finally:
        s.close()


def test_sqlite_store_closed_is_unavailable(tmp_path):
    s = SqliteStore(tmp_path / "c.db")
    s.close()
    s.close()
    with pytest.raises(StorageUnavailable):
        s.get("a")
    with pytest.raises(StorageUnavailable):
        s.set("a", "1")
    assert not is_writable(s)


def test_is_writable():
    assert is_writable(MemoryStore())
    assert not is_writable(None)
    assert not is_writable(MemoryStore(max_bytes=1))


def test_map_storage_error():
    assert isinstance(
        map_storage_error(sqlite3.OperationalError("database or disk is full")),
        StorageQuotaExceeded,
    )
    assert isinstance(
        map_storage_error(sqlite3.ProgrammingError("Cannot operate on a closed database.")),
        StorageUnavailable,
    )
    err = map_storage_error(sqlite3.OperationalError("database is locked"))
    assert type(err) is StorageError

    original = StorageQuotaExceeded("already mapped")
    assert map_storage_error(original) is original
