from __future__ import annotations

from typing import Iterable, List, Optional, Set, Tuple

from loguru import logger
from pydantic import ValidationError

from .builder import MessageBuilder
from .metrics import MESSAGES_DROPPED_TOTAL
from .models import Batch, LogMessage, LogMessageSeverity, QueueEntry, serialized_size
from .queue import PersistentQueue
from .utils import compact_json

MAX_REQUEST_SIZE = 204_800
BATCH_LIMIT = 10
DROP_MARGIN = 400

TRUNCATED_DETAILS = compact_json(
    {"message": "User supplied details truncated as log message exceeded maximum size."}
)

_DROPPED = "Message was dropped as its size exceeded our max request size."


def dropped_message_diagnostic(
    message: LogMessage, max_request_size: int = MAX_REQUEST_SIZE
) -> Tuple[str, Optional[List[str]]]:
    """Description and parameters for the message reporting a drop.

    Caller text is quoted only while it leaves room for the diagnostic
    itself within the request size.
    """
    limit = max_request_size - DROP_MARGIN
    caption, description = message.caption, message.description

    if len(caption) + len(description) < limit:
        return f"{_DROPPED} Caption was {{0}} and description {{1}}", [caption, description]
    if len(caption) < limit:
        return f"{_DROPPED} Caption was {{0}}", [caption]
    return f"{_DROPPED}\nUnable to log caption or description as they exceed max request size", None


class BatchSelector:
    """Chooses the messages for one delivery attempt.

    Memory-resident messages are drained first, then durable messages are
    read, ordered most recent first, capped in count and size. Keys handed
    out stay in the in-flight set until ``release()`` so overlapping attempts
    in this process never select the same stored message twice. Other
    processes sharing the store are not coordinated.
    """

    def __init__(
        self,
        queue: PersistentQueue,
        builder: MessageBuilder,
        *,
        max_request_size: int = MAX_REQUEST_SIZE,
        batch_limit: int = BATCH_LIMIT,
    ):
        self._queue = queue
        self._builder = builder
        self._max = max_request_size
        self._limit = batch_limit
        self._in_flight: Set[str] = set()

    @property
    def in_flight(self) -> frozenset:
        return frozenset(self._in_flight)

    def release(self, keys: Iterable[str]) -> None:
        self._in_flight.difference_update(keys)

    def select_batch(self, interval_is_default: bool = True) -> Batch:
        memory = self._read_memory()
        try:
            return self._select(memory, interval_is_default)
        except Exception:
            # drained memory entries are the only copy; put them back before propagating
            self._queue.requeue_memory([raw for _, raw in memory])
            raise

    def _select(self, memory: List[Tuple[QueueEntry, str]], interval_is_default: bool) -> Batch:
        batch = Batch()
        durable = self._read_durable()

        if len(durable) > 1:
            durable.sort(key=lambda e: (e.sort_time, e.message.sequence), reverse=True)

        if len(durable) > self._limit:
            batch.has_more = True
            durable = durable[: self._limit]

        # prior attempts are failing: send a single stored message
        if not interval_is_default:
            durable = durable[:1]

        total = 0
        full = False
        leftover: List[str] = []

        for entry, raw in memory + [(e, None) for e in durable]:
            if full:
                if raw is not None:
                    leftover.append(raw)
                continue

            if entry.size > self._max:
                if not self._apply_oversize_policy(entry):
                    batch.has_more = True
                    continue

            # stored entries that do not fit stay queued for the next attempt
            if total + entry.size > self._max:
                full = True
                if raw is not None:
                    leftover.append(raw)
                continue

            total += entry.size
            batch.messages.append(entry.message)
            if entry.key is not None:
                batch.keys.append(entry.key)
            else:
                batch.memory_entries.append(raw)

        if leftover:
            self._queue.requeue_memory(leftover)
            batch.has_more = True

        self._in_flight.update(batch.keys)
        return batch

    # ---------- reading

    def _read_memory(self) -> List[Tuple[QueueEntry, str]]:
        entries = []
        for raw in self._queue.drain_memory():
            try:
                entries.append((QueueEntry.from_json(raw), raw))
            except (ValidationError, ValueError) as exc:
                logger.warning(f"Discarding unreadable in-memory message: {exc}")
        return entries

    def _read_durable(self) -> List[QueueEntry]:
        entries = []
        for key in self._queue.durable_keys():
            if key in self._in_flight:
                continue
            raw = self._queue.read(key)
            if raw is None:
                continue
            try:
                entries.append(QueueEntry.from_json(raw, key=key))
            except (ValidationError, ValueError) as exc:
                logger.warning(f"Removing unreadable stored message {key}: {exc}")
                self._queue.remove([key])
        return entries

    # ---------- oversize policy

    def _apply_oversize_policy(self, entry: QueueEntry) -> bool:
        """Truncate ``details`` or drop the entry. Returns True when it is kept."""
        details = entry.message.details
        if details and entry.size - serialized_size(details) < self._max:
            entry.message = entry.message.with_details(TRUNCATED_DETAILS)
            entry.size = serialized_size(entry.message.to_json())

        if entry.size <= self._max:
            logger.debug(f"Truncated details of message {entry.message.sequence}")
            return True

        self._drop(entry)
        return False

    def _drop(self, entry: QueueEntry) -> None:
        if entry.key is not None:
            self._queue.remove([entry.key])
        MESSAGES_DROPPED_TOTAL.labels(reason="oversize").inc()
        logger.warning(
            f"Dropped message {entry.message.sequence} of {entry.size} bytes "
            f"(max request size {self._max})"
        )

        description, parameters = dropped_message_diagnostic(entry.message, self._max)
        self._builder.write(
            LogMessageSeverity.error, "Loupe", "Dropped message", description, parameters
        )
