"""
Unit tests for BatchSelector: ordering, caps, oversize policy and in-flight keys.
"""

from datetime import datetime, timedelta, timezone

import json

import pytest

from loupe_agent.builder import MessageBuilder
from loupe_agent.models import LogMessage, LogMessageSeverity, serialized_size
from loupe_agent.queue import PersistentQueue
from loupe_agent.selector import (
    DROP_MARGIN,
    TRUNCATED_DETAILS,
    BatchSelector,
    dropped_message_diagnostic,
)
from loupe_agent.sequence import SequenceCounter
from loupe_agent.session import AgentSession

START = datetime(2024, 3, 1, 10, 0, 0, tzinfo=timezone.utc)


class SteppingClock:
    """Each call is one second later than the previous one, unless frozen."""

    def __init__(self):
        self.now = START
        self.frozen = False

    def __call__(self):
        if not self.frozen:
            self.now += timedelta(seconds=1)
        return self.now


def make_parts(store, session_store, max_request_size=204_800, durable=True):
    queue = PersistentQueue(store if durable else None)
    clock = SteppingClock()
    builder = MessageBuilder(
        SequenceCounter(session_store),
        AgentSession(session_store),
        queue,
        clock=clock,
        stack_extractor=lambda error=None: iter(()),
    )
    selector = BatchSelector(queue, builder, max_request_size=max_request_size, batch_limit=10)
    return queue, builder, selector, clock


def write(builder, caption="caption", description="", details=None):
    return builder.write(
        LogMessageSeverity.information, "Test", caption, description, details=details
    )


def test_empty_queue_gives_empty_batch(store, session_store):
    _, _, selector, _ = make_parts(store, session_store)
    batch = selector.select_batch()
    assert len(batch) == 0
    assert not batch.has_more


def test_most_recent_first(store, session_store):
    _, builder, selector, _ = make_parts(store, session_store)
    for i in range(3):
        write(builder, caption=f"m{i}")

    batch = selector.select_batch()
    assert [m.sequence for m in batch.messages] == [3, 2, 1]
    assert len(batch.keys) == 3
    assert not batch.has_more


def test_equal_timestamps_order_by_sequence(store, session_store):
    _, builder, selector, clock = make_parts(store, session_store)
    clock.frozen = True
    for _ in range(3):
        write(builder)

    assert [m.sequence for m in selector.select_batch().messages] == [3, 2, 1]


def test_count_cap_sets_has_more(store, session_store):
    _, builder, selector, _ = make_parts(store, session_store)
    for _ in range(12):
        write(builder)

    batch = selector.select_batch()
    assert len(batch) == 10
    assert batch.has_more
    assert [m.sequence for m in batch.messages] == list(range(12, 2, -1))


def test_single_message_when_backing_off(store, session_store):
    _, builder, selector, _ = make_parts(store, session_store)
    for _ in range(4):
        write(builder)

    batch = selector.select_batch(interval_is_default=False)
    assert len(batch) == 1
    assert batch.messages[0].sequence == 4


def test_size_cap(store, session_store):
    queue, builder, selector, _ = make_parts(store, session_store)
    size = serialized_size(write(builder).to_json())
    write(builder)
    write(builder)
    selector._max = int(size * 2.5)

    batch = selector.select_batch()
    assert len(batch) == 2
    assert batch.total_size <= selector._max
    assert not batch.has_more
    assert len(queue.durable_keys()) == 3


def test_stored_messages_over_size_cap_wait_without_has_more(store, session_store):
    queue, builder, selector, _ = make_parts(store, session_store)
    for _ in range(3):
        write(builder, details="d" * 90_000)

    batch = selector.select_batch()
    assert len(batch) == 2
    assert batch.has_more is False
    assert batch.total_size <= 204_800

    selector.release(batch.keys)
    assert len(queue.durable_keys()) == 3


def test_in_flight_keys_are_excluded_until_released(store, session_store):
    _, builder, selector, _ = make_parts(store, session_store)
    write(builder)
    write(builder)

    first = selector.select_batch()
    assert len(first) == 2
    assert selector.in_flight == frozenset(first.keys)

    assert len(selector.select_batch()) == 0

    selector.release(first.keys)
    assert len(selector.select_batch()) == 2


def test_memory_entries_are_selected_first(store, session_store):
    queue, builder, selector, _ = make_parts(store, session_store, durable=False)
    write(builder, caption="mem")

    batch = selector.select_batch()
    assert [m.caption for m in batch.messages] == ["mem"]
    assert batch.keys == []
    assert len(batch.memory_entries) == 1
    assert queue.memory_size == 0


def test_memory_leftovers_are_requeued(store, session_store):
    queue, builder, selector, _ = make_parts(store, session_store, durable=False)
    size = serialized_size(write(builder).to_json())
    write(builder)
    write(builder)
    selector._max = int(size * 1.5)

    batch = selector.select_batch()
    assert len(batch) == 1
    assert batch.has_more
    assert queue.memory_size == 2


def test_oversize_details_are_truncated(store, session_store):
    max_size = 2_000
    queue, builder, selector, _ = make_parts(store, session_store, max_request_size=max_size)
    write(builder, caption="big", details={"blob": "x" * 5_000})

    batch = selector.select_batch()
    assert len(batch) == 1
    message = batch.messages[0]
    assert message.caption == "big"
    assert message.details == TRUNCATED_DETAILS
    assert serialized_size(message.to_json()) <= max_size
    assert len(queue.durable_keys()) == 1


def test_oversize_message_is_dropped_and_reported(store, session_store):
    max_size = 2_000
    queue, builder, selector, _ = make_parts(store, session_store, max_request_size=max_size)
    huge = "secret" * 600
    write(builder, caption=huge)

    batch = selector.select_batch()
    assert len(batch) == 0
    assert batch.has_more

    keys = queue.durable_keys()
    assert len(keys) == 1
    report = LogMessage.model_validate_json(queue.read(keys[0]))
    assert report.caption == "Dropped message"
    assert report.category == "Loupe"
    assert report.severity == LogMessageSeverity.error
    assert report.parameters is None
    assert "secret" not in report.to_json()

    # the report itself fits and is delivered next
    assert [m.caption for m in selector.select_batch().messages] == ["Dropped message"]


def test_dropped_message_diagnostic_tiers(store, session_store):
    _, builder, _, _ = make_parts(store, session_store)
    limit = 2_000 - DROP_MARGIN

    small = builder.build(LogMessageSeverity.information, "T", "cap", "desc")
    description, params = dropped_message_diagnostic(small, 2_000)
    assert params == ["cap", "desc"]
    assert description.endswith("Caption was {0} and description {1}")

    medium = builder.build(LogMessageSeverity.information, "T", "c" * 500, "d" * limit)
    description, params = dropped_message_diagnostic(medium, 2_000)
    assert params == ["c" * 500]
    assert description.endswith("Caption was {0}")

    large = builder.build(LogMessageSeverity.information, "T", "c" * limit, "")
    description, params = dropped_message_diagnostic(large, 2_000)
    assert params is None
    assert description.startswith("Message was dropped as its size exceeded our max request size.")


@pytest.mark.parametrize("raw", ["not json", '{"severity": 8}'])
def test_unreadable_entries_are_removed(store, session_store, raw):
    queue, builder, selector, _ = make_parts(store, session_store)
    store.set("Loupe-message-broken", raw)
    write(builder)

    batch = selector.select_batch()
    assert len(batch) == 1
    assert store.get("Loupe-message-broken") is None
    assert len(queue.durable_keys()) == 1


def test_entry_with_unparseable_timestamp_is_removed(store, session_store):
    queue, builder, selector, _ = make_parts(store, session_store)
    bad = builder.build(LogMessageSeverity.information, "Test", "bad", "").to_wire()
    bad["timeStamp"] = "yesterday"
    store.set("Loupe-message-bad", json.dumps(bad))
    write(builder, caption="stored")
    write(builder, caption="other")
    queue.requeue_memory([builder.build(LogMessageSeverity.information, "T", "mem", "").to_json()])

    batch = selector.select_batch()

    assert sorted(m.caption for m in batch.messages) == ["mem", "other", "stored"]
    assert store.get("Loupe-message-bad") is None
    assert queue.memory_size == 0
    assert len(batch.memory_entries) == 1


def test_memory_entries_survive_failed_selection(store, session_store, monkeypatch):
    queue, builder, selector, _ = make_parts(store, session_store)
    queue.requeue_memory([builder.build(LogMessageSeverity.information, "T", "mem", "").to_json()])

    def broken_read():
        raise RuntimeError("store exploded")

    monkeypatch.setattr(selector, "_read_durable", broken_read)
    with pytest.raises(RuntimeError):
        selector.select_batch()

    assert queue.memory_size == 1
    monkeypatch.undo()
    assert [m.caption for m in selector.select_batch().messages] == ["mem"]
