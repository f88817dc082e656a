from __future__ import annotations

import pytest

from mapbridge.constants import EventTopic
from mapbridge.core.event_bus import EventBus


def test_sync_listeners_receive_events_in_order():
    bus = EventBus()
    received = []
    bus.subscribe(EventTopic.JOB_PROGRESS, lambda event: received.append(("first", event.payload["progress"])))
    bus.subscribe(EventTopic.JOB_PROGRESS, lambda event: received.append(("second", event.payload["progress"])))

    bus.emit(EventTopic.JOB_PROGRESS, {"progress": 10})

    assert received == [("first", 10), ("second", 10)]


def test_failing_listener_does_not_block_others():
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("listener bug")

    bus.subscribe(EventTopic.JOB_FAILED, broken)
    bus.subscribe(EventTopic.JOB_FAILED, lambda event: received.append(event.payload))
    bus.emit(EventTopic.JOB_FAILED, {"job_id": "job_1"})

    assert received == [{"job_id": "job_1"}]


def test_unsubscribe_and_duplicate_subscribe():
    bus = EventBus()
    received = []
    listener = received.append
    bus.subscribe(EventTopic.JOB_CANCELLED, listener)
    bus.subscribe(EventTopic.JOB_CANCELLED, listener)
    bus.emit(EventTopic.JOB_CANCELLED, {"job_id": "job_1"})
    bus.unsubscribe(EventTopic.JOB_CANCELLED, listener)
    bus.emit(EventTopic.JOB_CANCELLED, {"job_id": "job_2"})

    assert [event.payload["job_id"] for event in received] == ["job_1"]


@pytest.mark.asyncio
async def test_coroutine_listeners_are_scheduled():
    bus = EventBus()
    received = []

    async def forward(event):
        received.append(event.topic)

    bus.subscribe(EventTopic.JOB_COMPLETED, forward)
    bus.emit(EventTopic.JOB_COMPLETED, {"job_id": "job_1"})
    assert received == []

    await bus.drain()
    assert received == [EventTopic.JOB_COMPLETED]
