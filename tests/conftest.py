"""
Pytest configuration and fixtures for loupe-agent.

Provides a manually advanced task scheduler, a fake collector for the HTTP
transport and agent/settings factories.
"""

import asyncio
import json
import sys
from typing import Any, Callable, List, Optional
from unittest.mock import Mock

import pytest

from loupe_agent import AgentSettings, LoupeAgent, MemoryStore
from loupe_agent.errors import StorageError, StorageQuotaExceeded
from loupe_agent.models import PlatformInfo, ScreenSize

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


class ManualHandle:
    def __init__(self, when: float, callback: Callable[[], Any]):
        self._when = when
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True

    def when(self) -> float:
        return self._when

    @property
    def live(self) -> bool:
        return not (self.cancelled or self.fired)


class ManualTaskScheduler:
    """TaskScheduler whose clock only moves on ``advance()``."""

    def __init__(self):
        self.now = 0.0
        self.handles: List[ManualHandle] = []

    def time(self) -> float:
        return self.now

    def call_later(self, delay_ms: float, callback: Callable[[], Any]) -> ManualHandle:
        handle = ManualHandle(self.now + delay_ms / 1000.0, callback)
        self.handles.append(handle)
        return handle

    @property
    def live(self) -> List[ManualHandle]:
        return sorted((h for h in self.handles if h.live), key=lambda h: h.when())

    def advance(self, ms: float) -> int:
        """Move the clock forward, firing due callbacks in order. Returns how many fired."""
        target = self.now + ms / 1000.0
        fired = 0
        while True:
            due = [h for h in self.live if h.when() <= target]
            if not due:
                break
            handle = due[0]
            self.now = handle.when()
            handle.fired = True
            handle.callback()
            fired += 1
        self.now = target
        return fired


class FakeCollector:
    """Stands in for ``httpx.AsyncClient.post`` and records requests.

    ``statuses`` are consumed one per request (200 once exhausted); an
    exception instance in the list is raised instead.
    """

    def __init__(self, monkeypatch):
        self._monkeypatch = monkeypatch
        self.statuses: List[Any] = []
        self.requests: List[dict] = []

    async def post(self, url, content=None, headers=None):
        self.requests.append(
            {"url": url, "content": content, "json": json.loads(content), "headers": headers}
        )
        status = self.statuses.pop(0) if self.statuses else 200
        if isinstance(status, Exception):
            raise status
        response = Mock()
        response.status_code = status
        response.reason_phrase = "Status " + str(status)
        return response

    def attach(self, target) -> None:
        """Patch the httpx client of a started agent or transport."""
        transport = getattr(target, "_transport", target)
        self._monkeypatch.setattr(transport._client, "post", self.post)

    @property
    def sent_messages(self) -> List[dict]:
        return [m for r in self.requests for m in r["json"]["logMessages"]]


class FailingStore(MemoryStore):
    """MemoryStore whose writes fail once ``fail_with`` is set."""

    def __init__(self, fail_with: Optional[Exception] = None):
        super().__init__()
        self.fail_with = fail_with

    def set(self, key: str, value: str) -> None:
        if self.fail_with is not None and not key.startswith("_loupe_storage_test_"):
            raise self.fail_with
        super().set(key, value)


def fixed_platform() -> PlatformInfo:
    return PlatformInfo(
        os="Linux 6.1",
        browser="CPython 3.12",
        device="x86_64",
        screen_size=ScreenSize(height=24, width=80),
    )


@pytest.fixture
def settings():
    """Settings pointing at a fake collector, with interval updates applied immediately."""
    return AgentSettings(ORIGIN="http://collector.test/", INTERVAL_DEBOUNCE_MS=0)


@pytest.fixture
def platform_detector():
    return fixed_platform


@pytest.fixture
def tasks():
    return ManualTaskScheduler()


@pytest.fixture
def collector(monkeypatch):
    return FakeCollector(monkeypatch)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def session_store():
    return MemoryStore()


@pytest.fixture
def quota_store():
    return FailingStore(StorageQuotaExceeded("quota exceeded"))


@pytest.fixture
def broken_store():
    return FailingStore(StorageError("disk on fire"))


@pytest.fixture
def make_agent(settings, tasks, store, session_store):
    """Build an (unstarted) agent with in-memory stores and the manual scheduler."""

    def _make(**kwargs) -> LoupeAgent:
        kwargs.setdefault("store", store)
        kwargs.setdefault("session_store", session_store)
        kwargs.setdefault("task_scheduler", tasks)
        kwargs.setdefault("platform_detector", fixed_platform)
        return LoupeAgent(kwargs.pop("settings", settings), **kwargs)

    return _make
