from __future__ import annotations

from typing import Callable, Optional

from loguru import logger

from .errors import StorageError, StorageQuotaExceeded
from .models import SEQUENCE_NUMBER_KEY
from .storage import KeyValueStore

UNKNOWN_SEQUENCE = -1


class SequenceCounter:
    """Message sequence numbers persisted in session storage.

    The in-memory value is a high-water mark: when a persisted write failed
    earlier the stored number lags behind, and the larger value wins so
    numbers never repeat within an agent session.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore],
        *,
        available: bool = True,
        on_quota_exceeded: Optional[Callable[[], None]] = None,
    ):
        self._store = store
        self._available = available and store is not None
        self._on_quota = on_quota_exceeded
        self._current = max(self.read(), 0)

    @property
    def current(self) -> int:
        return self._current

    def read(self) -> int:
        """Persisted number, 0 when none is stored, -1 when it cannot be determined."""
        if not self._available:
            return UNKNOWN_SEQUENCE
        try:
            raw = self._store.get(SEQUENCE_NUMBER_KEY)
            return int(raw) if raw else 0
        except (StorageError, ValueError) as exc:
            logger.warning(f"Unable to retrieve sequence number from session storage. {exc}")
        return UNKNOWN_SEQUENCE

    def next(self) -> int:
        if self._available:
            stored = self.read()
            if stored != UNKNOWN_SEQUENCE:
                candidate = max(stored, self._current) + 1
                if self._persist(candidate):
                    self._current = candidate
                    return self._current

        self._current += 1
        return self._current

    def _persist(self, value: int) -> bool:
        try:
            self._store.set(SEQUENCE_NUMBER_KEY, str(value))
            return True
        except StorageQuotaExceeded:
            if self._on_quota:
                self._on_quota()
        except StorageError as exc:
            logger.warning(f"Unable to store sequence number: {exc}")
        return False
