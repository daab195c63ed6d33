"""
Loupe agent: the delivery engine facade.

Owns every piece of mutable state (sequence counter, in-flight keys, storage
full flag, delivery interval) and wires the message builder, persistent
queue, batch selector, scheduler and transport together.

Usage:
    async with LoupeAgent(AgentSettings(ORIGIN="https://app.example.com")) as agent:
        agent.information("Orders", "Order placed", "Order {0} placed", ["A-17"])

All work runs on the event loop thread. Logging calls never raise.
"""

from __future__ import annotations

import asyncio
import traceback
from dataclasses import dataclass
from datetime import datetime
from types import TracebackType
from typing import Any, Callable, Coroutine, List, Optional, Sequence, Set, Type

from loguru import logger

from .builder import MessageBuilder
from .errors import InvalidHeaderError, StorageError, TransportUnavailable
from .hooks import ErrorHookChain
from .host import PlatformDetector, StackExtractor, current_location, detect_platform, extract_stack
from .metrics import DELIVERY_ATTEMPTS_TOTAL, MESSAGES_DROPPED_TOTAL
from .models import Batch, ExceptionInfo, LogMessage, LogMessageSeverity
from .queue import PersistentQueue
from .scheduler import (
    AsyncioTaskScheduler,
    CoalescingScheduler,
    DeliveryInterval,
    DeliveryScheduler,
    TaskScheduler,
)
from .selector import BatchSelector
from .sequence import SequenceCounter
from .session import AgentSession
from .settings import AgentSettings, get_settings
from .storage import KeyValueStore, MemoryStore, SqliteStore, is_writable
from .transport import (
    NO_CONNECTIVITY,
    DeliveryOutcome,
    DeliveryStatus,
    HttpLogTransport,
    Transport,
    validate_auth_header,
)


@dataclass(frozen=True)
class AgentHealth:
    interval_ms: int
    memory_buffered: int
    durable_pending: int
    in_flight: int
    storage_full: bool
    transport_available: bool


class LoupeAgent:
    """Client-resident Loupe logging agent.

    Messages are queued durably (or in memory when storage fails) and shipped
    in batches of at most 10 messages / 204800 bytes. The delay between
    attempts adapts to outcomes; see ``DeliveryInterval``.

    Args:
        settings: Agent configuration; defaults to ``get_settings()``
        store: Durable message store; defaults to a ``SqliteStore`` at
            ``STORAGE_PATH`` or none (memory only)
        session_store: Store for the sequence number and agent session id;
            defaults to ``SESSION_STORAGE_PATH`` or a process-lifetime ``MemoryStore``
        transport: Defaults to ``HttpLogTransport`` from settings
        task_scheduler: Timer facility; defaults to the running asyncio loop
    """

    def __init__(
        self,
        settings: Optional[AgentSettings] = None,
        *,
        store: Optional[KeyValueStore] = None,
        session_store: Optional[KeyValueStore] = None,
        transport: Optional[Transport] = None,
        task_scheduler: Optional[TaskScheduler] = None,
        platform_detector: PlatformDetector = detect_platform,
        stack_extractor: StackExtractor = extract_stack,
        clock: Callable[[], datetime] = datetime.now,
    ):
        s = settings or get_settings()
        self._settings = s
        self._owned_stores: List[SqliteStore] = []

        if store is None and s.STORAGE_PATH:
            store = self._open_store(s.STORAGE_PATH, s.STORAGE_MAX_BYTES)
        if session_store is None:
            session_store = (
                self._open_store(s.SESSION_STORAGE_PATH) if s.SESSION_STORAGE_PATH else None
            ) or MemoryStore()

        self._location = current_location(s.LOCATION)
        self._stack_extractor = stack_extractor

        self._queue = PersistentQueue(
            store, available=is_writable(store), capacity=s.MEMORY_CAPACITY
        )
        session_available = is_writable(session_store)
        self._session = AgentSession(
            session_store if session_available else None,
            can_write=lambda: not self._queue.full,
            on_quota_exceeded=self._queue.mark_full,
        )
        self._sequence = SequenceCounter(
            session_store,
            available=session_available,
            on_quota_exceeded=self._queue.mark_full,
        )
        self._builder = MessageBuilder(
            self._sequence,
            self._session,
            self._queue,
            location=self._location,
            stack_extractor=stack_extractor,
            clock=clock,
        )
        self._selector = BatchSelector(
            self._queue,
            self._builder,
            max_request_size=s.MAX_REQUEST_SIZE,
            batch_limit=s.BATCH_LIMIT,
        )

        self._interval = DeliveryInterval()
        self._delivery = DeliveryScheduler(
            self._interval, self._queue.has_pending, self._on_delivery_timer
        )
        self._transport: Transport = transport or HttpLogTransport(
            s.ORIGIN,
            cors_origin=s.CORS_ORIGIN,
            auth_header=s.auth_header,
            timeout=s.REQUEST_TIMEOUT,
            platform_detector=platform_detector,
        )

        self._task_scheduler = task_scheduler
        self._interval_updater: Optional[CoalescingScheduler] = None
        self._pending_release: List[str] = []
        self._pending_requeue: List[str] = []
        self._attempts: Set[asyncio.Task] = set()
        self._hooks = ErrorHookChain()
        self._started = False

    def _open_store(self, path: str, max_bytes: Optional[int] = None) -> Optional[SqliteStore]:
        try:
            store = SqliteStore(path, max_bytes=max_bytes)
        except StorageError as exc:
            logger.warning(f"Unable to open storage at {path}; using memory only. {exc}")
            return None
        self._owned_stores.append(store)
        return store

    # ---------- lifecycle

    async def start(self) -> None:
        """Bind timers to the running loop, open the transport and pick up unsent messages."""
        if self._started:
            return
        tasks = self._task_scheduler or AsyncioTaskScheduler()
        self._interval_updater = CoalescingScheduler(
            tasks, self._settings.INTERVAL_DEBOUNCE_MS, self._apply_interval_update
        )
        self._delivery.bind(tasks)
        await self._transport.start()
        self._started = True
        self.schedule_delivery()

    async def stop(self, timeout: float = 5.0) -> None:
        """Wait for in-flight attempts, apply the last interval update and close resources."""
        if self._started:
            self._delivery.cancel()
            if self._attempts:
                await asyncio.wait(set(self._attempts), timeout=timeout)
            if self._interval_updater is not None:
                self._interval_updater.flush()
                self._interval_updater = None
            self._delivery.bind(None)
            await self._transport.stop()
            self._started = False

        self._hooks.uninstall()
        for store in self._owned_stores:
            store.close()

    async def __aenter__(self) -> "LoupeAgent":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ---------- logging API

    def verbose(self, category: str, caption: str, description: str, *args: Any, **kwargs: Any):
        return self.write(
            LogMessageSeverity.verbose, category, caption, description, *args, **kwargs
        )

    def information(self, category: str, caption: str, description: str, *args: Any, **kwargs: Any):
        return self.write(
            LogMessageSeverity.information, category, caption, description, *args, **kwargs
        )

    def warning(self, category: str, caption: str, description: str, *args: Any, **kwargs: Any):
        return self.write(
            LogMessageSeverity.warning, category, caption, description, *args, **kwargs
        )

    def error(self, category: str, caption: str, description: str, *args: Any, **kwargs: Any):
        return self.write(
            LogMessageSeverity.error, category, caption, description, *args, **kwargs
        )

    def critical(self, category: str, caption: str, description: str, *args: Any, **kwargs: Any):
        return self.write(
            LogMessageSeverity.critical, category, caption, description, *args, **kwargs
        )

    def write(
        self,
        severity: LogMessageSeverity,
        category: str,
        caption: str,
        description: str,
        parameters: Optional[Sequence[Any]] = None,
        exception: Any = None,
        details: Any = None,
        method_source_info: Any = None,
    ) -> Optional[LogMessage]:
        """Queue a message and schedule delivery. Returns None if it could not be queued."""
        try:
            message = self._builder.write(
                severity,
                category,
                caption,
                description,
                parameters,
                exception,
                details,
                method_source_info,
            )
        except Exception:
            logger.exception("Unable to queue log message")
            return None

        self.schedule_delivery()
        return message

    def log_error(
        self,
        message: str,
        url: Optional[str] = None,
        line: Optional[int] = None,
        column: Optional[int] = None,
        error: Optional[BaseException] = None,
    ) -> Optional[LogMessage]:
        """Record an unhandled error and try to deliver it straight away."""
        error_name = (type(error).__name__ or "Exception") if error is not None else ""
        try:
            exception = ExceptionInfo(
                cause=error_name,
                column=column,
                line=line,
                message=str(message),
                stack_trace=list(self._stack_extractor(error)),
                url=url or self._location,
            )
        except Exception:
            logger.exception("Unable to record unhandled error")
            return None

        logged = self.write(LogMessageSeverity.error, "Python", error_name, "", None, exception)
        if logged is not None and self._started:
            try:
                self._spawn(self.deliver_pending)
            except RuntimeError:
                # no running loop in this thread; the scheduled attempt will pick it up
                pass
        return logged

    # ---------- configuration

    def set_session_id(self, value: Optional[str]) -> None:
        self._session.session_id = value

    def set_cors_origin(self, value: Optional[str]) -> None:
        self._transport.cors_origin = value

    def set_authorization_header(self, header: Any) -> None:
        try:
            self._transport.auth_header = validate_auth_header(header)
        except InvalidHeaderError as exc:
            logger.warning(f"set_authorization_header failed. {exc}")

    def client_session_header(self) -> dict:
        return self._session.header()

    def reset_message_interval(self, interval: Optional[int]) -> int:
        return self._interval.reset(interval)

    @property
    def propagate_error(self) -> bool:
        return self._hooks.propagate_error

    @propagate_error.setter
    def propagate_error(self, value: bool) -> None:
        self._hooks.propagate_error = value

    def install_error_hook(self) -> None:
        """Log unhandled exceptions, chaining to any hook installed before."""
        self._hooks.register(self._on_unhandled_exception)
        self._hooks.install()

    def uninstall_error_hook(self) -> None:
        self._hooks.unregister(self._on_unhandled_exception)
        self._hooks.uninstall()

    def _on_unhandled_exception(
        self,
        exc_type: Type[BaseException],
        exc: BaseException,
        tb: Optional[TracebackType],
    ) -> None:
        frames = traceback.extract_tb(tb) if tb is not None else []
        frame = frames[-1] if frames else None
        self.log_error(
            str(exc) or exc_type.__name__,
            frame.filename if frame else None,
            frame.lineno if frame else None,
            None,
            exc,
        )

    # ---------- state

    @property
    def interval(self) -> int:
        return self._interval.value

    @property
    def agent_session_id(self) -> str:
        return self._session.agent_session_id

    @property
    def in_flight_keys(self) -> frozenset:
        return self._selector.in_flight

    @property
    def started(self) -> bool:
        return self._started

    def health(self) -> AgentHealth:
        return AgentHealth(
            interval_ms=self._interval.value,
            memory_buffered=self._queue.memory_size,
            durable_pending=len(self._queue.durable_keys()),
            in_flight=len(self._selector.in_flight),
            storage_full=self._queue.full,
            transport_available=self._transport.available,
        )

    # ---------- delivery

    def schedule_delivery(self) -> bool:
        """Arm the delivery timer if there is queued work. Returns True when armed."""
        return self._delivery.schedule()

    def _on_delivery_timer(self) -> None:
        self._spawn(self.deliver_pending)

    def _spawn(self, attempt: Callable[[], Coroutine[Any, Any, Any]]) -> None:
        task = asyncio.get_running_loop().create_task(attempt())
        self._attempts.add(task)
        task.add_done_callback(self._attempts.discard)

    async def deliver_pending(self) -> Optional[DeliveryOutcome]:
        """Run one delivery attempt. Returns None when nothing was sent."""
        if not self._transport.available:
            logger.warning("No HTTP transport; log messages cannot be sent to Loupe")
            return None

        try:
            batch = self._selector.select_batch(self._interval.is_default)
        except Exception:
            logger.exception("Unable to select log messages for delivery")
            return None

        if not batch.messages:
            if batch.has_more:
                self.schedule_delivery()
            return None

        try:
            outcome = await self._transport.deliver(batch, self._session.agent_session_id)
        except TransportUnavailable as exc:
            logger.warning(f"Delivery aborted: {exc}")
            self._selector.release(batch.keys)
            self._queue.requeue_memory(batch.memory_entries)
            return None
        except Exception:
            logger.exception("Exception while attempting to log")
            outcome = DeliveryOutcome(NO_CONNECTIVITY, "exception")

        self._after_request(batch, outcome)
        return outcome

    def _after_request(self, batch: Batch, outcome: DeliveryOutcome) -> None:
        status = outcome.status
        DELIVERY_ATTEMPTS_TOTAL.labels(outcome=status.value).inc()

        if status is DeliveryStatus.TRANSIENT:
            # keep the keys reserved until the backed-off interval applies
            self._pending_release.extend(batch.keys)
            self._pending_requeue.extend(batch.memory_entries)
        else:
            self._queue.remove(batch.keys)
            self._selector.release(batch.keys)
            if status is DeliveryStatus.REJECTED:
                MESSAGES_DROPPED_TOTAL.labels(reason="rejected").inc(len(batch))
            else:
                self._queue.clear_full()

        self._update_interval(call_failed=not outcome.succeeded)

        if batch.has_more:
            self.schedule_delivery()

    def _update_interval(self, call_failed: bool) -> None:
        if self._interval_updater is None:
            self._apply_interval_update(call_failed)
        else:
            self._interval_updater(call_failed)

    def _apply_interval_update(self, call_failed: bool) -> None:
        new_interval = self._interval.update(call_failed)
        logger.debug(f"Delivery interval now {new_interval}ms (failed={call_failed})")

        if self._pending_release:
            self._selector.release(self._pending_release)
            self._pending_release = []
        if self._pending_requeue:
            self._queue.requeue_memory(self._pending_requeue)
            self._pending_requeue = []

        self.schedule_delivery()
