"""
Fallible key/value stores backing the agent.

Two backends implement the same protocol: ``MemoryStore`` (process lifetime)
and ``SqliteStore`` (durable across restarts). Operations are atomic per key
only; there are no cross-key transactions.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Dict, List, Optional, Protocol, runtime_checkable

from loguru import logger

from .errors import StorageQuotaExceeded, StorageUnavailable, map_storage_error

_CHECK_KEY = "_loupe_storage_test_"


@runtime_checkable
class KeyValueStore(Protocol):
    """Key/value capability used for messages, sequence numbers and sessions.

    Every method may raise ``StorageError``; writes raise
    ``StorageQuotaExceeded`` when the backend is out of space.
    """

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def keys(self) -> List[str]: ...

    def __len__(self) -> int: ...


def is_writable(store: Optional[KeyValueStore]) -> bool:
    """True when a test value can be written to and removed from ``store``."""
    if store is None:
        return False
    try:
        store.set(_CHECK_KEY, _CHECK_KEY)
        store.remove(_CHECK_KEY)
        return True
    except Exception as exc:
        logger.debug(f"Storage write check failed: {type(exc).__name__}: {exc}")
        return False


class MemoryStore:
    """Dict-backed store with an optional byte quota."""

    def __init__(self, max_bytes: Optional[int] = None):
        self._data: Dict[str, str] = {}
        self._max_bytes = max_bytes

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if self._max_bytes is not None:
            used = self.used_bytes - len(self._data.get(key, ""))
            if used + len(value) > self._max_bytes:
                raise StorageQuotaExceeded(
                    f"MemoryStore quota of {self._max_bytes} bytes exceeded"
                )
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data)

    def __len__(self) -> int:
        return len(self._data)

    @property
    def used_bytes(self) -> int:
        return sum(len(v) for v in self._data.values())


class SqliteStore:
    """Durable store in a single sqlite table.

    Usage:
        store = SqliteStore("~/.loupe/messages.db", max_bytes=5_000_000)
        store.set("Loupe-message-...", payload)
        store.close()
    """

    def __init__(self, path: str | Path, max_bytes: Optional[int] = None):
        self._path = Path(path).expanduser()
        self._max_bytes = max_bytes
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._conn: Optional[sqlite3.Connection] = sqlite3.connect(str(self._path))
            with self._conn:
                self._conn.execute(
                    "CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
                )
        except (OSError, sqlite3.Error) as exc:
            raise map_storage_error(exc) from exc

    @property
    def path(self) -> Path:
        return self._path

    def _db(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageUnavailable(f"SqliteStore {self._path} is closed")
        return self._conn

    def get(self, key: str) -> Optional[str]:
        try:
            row = self._db().execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as exc:
            raise map_storage_error(exc) from exc
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        db = self._db()
        try:
            if self._max_bytes is not None:
                (used,) = db.execute(
                    "SELECT COALESCE(SUM(LENGTH(value)), 0) FROM kv WHERE key != ?", (key,)
                ).fetchone()
                if used + len(value) > self._max_bytes:
                    raise StorageQuotaExceeded(
                        f"SqliteStore quota of {self._max_bytes} bytes exceeded"
                    )
            with db:
                db.execute(
                    "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                    (key, value),
                )
        except sqlite3.Error as exc:
            raise map_storage_error(exc) from exc

    def remove(self, key: str) -> None:
        try:
            with self._db() as db:
                db.execute("DELETE FROM kv WHERE key = ?", (key,))
        except sqlite3.Error as exc:
            raise map_storage_error(exc) from exc

    def keys(self) -> List[str]:
        try:
            rows = self._db().execute("SELECT key FROM kv ORDER BY rowid").fetchall()
        except sqlite3.Error as exc:
            raise map_storage_error(exc) from exc
        return [r[0] for r in rows]

    def __len__(self) -> int:
        try:
            (count,) = self._db().execute("SELECT COUNT(*) FROM kv").fetchone()
        except sqlite3.Error as exc:
            raise map_storage_error(exc) from exc
        return count

    def close(self) -> None:
        """Close the connection; safe to call multiple times."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
