from __future__ import annotations

from collections import deque
from typing import Callable, Deque, Generic, Iterable, List, Optional, TypeVar

from loguru import logger

from .errors import StorageError, StorageQuotaExceeded
from .metrics import MEMORY_BUFFER_SIZE, MESSAGES_DROPPED_TOTAL, MESSAGES_STORED_TOTAL
from .models import MESSAGE_KEY_PREFIX, LogMessage
from .storage import KeyValueStore
from .utils import generate_id

T = TypeVar("T")

DEFAULT_MEMORY_CAPACITY = 5000


class RingBuffer(Generic[T]):
    """Bounded FIFO that evicts the oldest item when full."""

    def __init__(
        self,
        capacity: int,
        *,
        drop_callback: Optional[Callable[[T], None]] = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")

        self._capacity = capacity
        self._items: Deque[T] = deque()
        self._drop_cb = drop_callback

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        return len(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def put(self, item: T) -> None:
        if len(self._items) >= self._capacity:
            self._drop(self._items.popleft())
        self._items.append(item)

    def drain(self) -> List[T]:
        """Remove and return everything, oldest first."""
        items = list(self._items)
        self._items.clear()
        return items

    def requeue(self, items: Iterable[T]) -> None:
        """Put previously drained items back in front, oldest first.

        Requeued items are older than anything put since the drain, so when
        there is not enough room the oldest requeued items are evicted.
        """
        items = list(items)
        room = self._capacity - len(self._items)
        overflow = max(0, len(items) - room)
        for item in items[:overflow]:
            self._drop(item)
        self._items.extendleft(reversed(items[overflow:]))

    def _drop(self, item: T) -> None:
        if self._drop_cb:
            self._drop_cb(item)


class PersistentQueue:
    """Durable message queue with an in-memory fallback.

    Messages are written to the durable store under ``Loupe-message-<uuid>``.
    When the store is unavailable, has reported it is out of space, or a
    write fails, the serialized message goes to a ring buffer instead.

    The "full" flag suspends durable writes until a successful delivery
    clears it.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore],
        *,
        available: bool = True,
        capacity: int = DEFAULT_MEMORY_CAPACITY,
    ):
        self._store = store
        self._available = available and store is not None
        self._full = False
        self._memory = RingBuffer[str](capacity, drop_callback=self._on_evicted)

    @property
    def available(self) -> bool:
        return self._available

    @property
    def full(self) -> bool:
        return self._full

    @property
    def memory_size(self) -> int:
        return len(self._memory)

    def mark_full(self) -> None:
        if not self._full:
            logger.warning("Storage quota reached; queueing messages in memory")
        self._full = True

    def clear_full(self) -> None:
        self._full = False

    # ---------- writes ----------

    def store(self, message: LogMessage) -> Optional[str]:
        """Queue a message; returns its durable key, or None when held in memory."""
        payload = message.to_json()

        if self._available and not self._full:
            key = MESSAGE_KEY_PREFIX + generate_id()
            try:
                self._store.set(key, payload)
                MESSAGES_STORED_TOTAL.labels(backend="durable").inc()
                return key
            except StorageQuotaExceeded as exc:
                self.mark_full()
                logger.warning(f"Error occurred trying to add item to storage: {exc}")
            except StorageError as exc:
                logger.warning(f"Error occurred trying to add item to storage: {exc}")

        self._push_memory(payload)
        return None

    def _push_memory(self, payload: str) -> None:
        self._memory.put(payload)
        MESSAGES_STORED_TOTAL.labels(backend="memory").inc()
        MEMORY_BUFFER_SIZE.set(len(self._memory))

    def _on_evicted(self, payload: str) -> None:
        MESSAGES_DROPPED_TOTAL.labels(reason="evicted").inc()
        logger.debug("Memory buffer full; evicted oldest message")

    # ---------- reads ----------

    def drain_memory(self) -> List[str]:
        items = self._memory.drain()
        MEMORY_BUFFER_SIZE.set(0)
        return items

    def requeue_memory(self, payloads: Iterable[str]) -> None:
        self._memory.requeue(payloads)
        MEMORY_BUFFER_SIZE.set(len(self._memory))

    def durable_keys(self) -> List[str]:
        if not self._available:
            return []
        try:
            return [k for k in self._store.keys() if k.startswith(MESSAGE_KEY_PREFIX)]
        except StorageError as exc:
            logger.warning(f"Unable to list queued messages: {exc}")
            return []

    def read(self, key: str) -> Optional[str]:
        try:
            return self._store.get(key)
        except StorageError as exc:
            logger.warning(f"Unable to read queued message {key}: {exc}")
            return None

    def has_pending(self) -> bool:
        """Re-evaluated on every call so new writes re-arm delivery."""
        return bool(self._memory) or bool(self.durable_keys())

    def remove(self, keys: Iterable[str]) -> None:
        for key in keys:
            try:
                self._store.remove(key)
            except StorageError as exc:
                logger.warning(f"Unable to remove message from storage: {exc}")
