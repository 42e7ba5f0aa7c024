"""Tests for the event bus and event types."""

from __future__ import annotations

import asyncio

from specpilot.events.bus import Event, EventBus
from specpilot.events.types import (
    AGENT_COMPLETED,
    AGENT_STARTED,
    STAGE_TRANSITION,
    TURN_COMPLETED,
    TURN_FAILED,
)


class TestEvent:
    def test_auto_timestamp(self):
        event = Event(event_type="test", session_id="s1")
        assert event.timestamp != ""

    def test_explicit_timestamp(self):
        event = Event(event_type="test", session_id="s1", timestamp="2025-01-01T00:00:00")
        assert event.timestamp == "2025-01-01T00:00:00"

    def test_default_data(self):
        event = Event(event_type="test", session_id="s1")
        assert event.data == {}


class TestEventBus:
    def test_subscribe_and_emit_sync(self):
        bus = EventBus()
        received = []

        bus.subscribe(TURN_COMPLETED, received.append)
        bus.emit(Event(event_type=TURN_COMPLETED, session_id="s1"))

        assert len(received) == 1
        assert received[0].session_id == "s1"

    def test_subscribe_does_not_receive_other_types(self):
        bus = EventBus()
        received = []

        bus.subscribe(TURN_COMPLETED, received.append)
        bus.emit(Event(event_type=TURN_FAILED, session_id="s1"))

        assert received == []

    def test_subscribe_all_receives_everything(self):
        bus = EventBus()
        received = []

        bus.subscribe_all(received.append)
        bus.emit(Event(event_type=AGENT_STARTED, session_id="s1"))
        bus.emit(Event(event_type=AGENT_COMPLETED, session_id="s1"))

        assert [e.event_type for e in received] == [AGENT_STARTED, AGENT_COMPLETED]

    def test_unsubscribe(self):
        bus = EventBus()
        received = []

        bus.subscribe("test", received.append)
        bus.unsubscribe("test", received.append)
        bus.emit(Event(event_type="test", session_id="s1"))

        assert received == []

    def test_recent_events_filtered(self):
        bus = EventBus()
        for i in range(5):
            bus.emit(Event(event_type=STAGE_TRANSITION, session_id=f"s{i}"))
            bus.emit(Event(event_type=TURN_COMPLETED, session_id=f"s{i}"))

        assert len(bus.recent_events()) == 10
        transitions = bus.recent_events(limit=2, event_type=STAGE_TRANSITION)
        assert [e.session_id for e in transitions] == ["s3", "s4"]

    def test_history_cap(self):
        bus = EventBus(max_history=10)
        for i in range(25):
            bus.emit(Event(event_type="test", session_id=f"s{i}"))

        history = bus.recent_events(limit=100)
        assert len(history) == 10
        assert history[0].session_id == "s15"

    def test_clear(self):
        bus = EventBus()
        received = []

        bus.subscribe("test", received.append)
        bus.emit(Event(event_type="test", session_id="s1"))
        bus.clear()
        bus.emit(Event(event_type="test", session_id="s2"))

        assert len(received) == 1
        assert [e.session_id for e in bus.recent_events()] == ["s2"]

    def test_handler_error_does_not_break_emit(self):
        bus = EventBus()
        received = []

        def bad_handler(event: Event):
            raise RuntimeError("handler crashed")

        bus.subscribe("test", bad_handler)
        bus.subscribe("test", received.append)
        bus.emit(Event(event_type="test", session_id="s1"))

        assert len(received) == 1

    async def test_async_handler_called_and_drained(self):
        bus = EventBus()
        received = []

        async def async_handler(event: Event):
            await asyncio.sleep(0.01)
            received.append(event)

        bus.subscribe("test", async_handler)
        bus.emit(Event(event_type="test", session_id="s1"))
        await bus.drain(timeout=1.0)

        assert len(received) == 1

    def test_async_handler_skipped_without_loop(self):
        bus = EventBus()
        received = []

        async def async_handler(event: Event):
            received.append(event)

        bus.subscribe("test", async_handler)
        bus.emit(Event(event_type="test", session_id="s1"))

        assert received == []
        assert len(bus.recent_events()) == 1

    async def test_failing_async_handler_is_contained(self):
        bus = EventBus()

        async def broken(event: Event):
            raise RuntimeError("nope")

        bus.subscribe("test", broken)
        bus.emit(Event(event_type="test", session_id="s1"))
        await bus.drain(timeout=1.0)
        bus.emit(Event(event_type="test", session_id="s2"))
        await bus.drain(timeout=1.0)

        assert len(bus.recent_events()) == 2

    def test_session_subscription(self):
        bus = EventBus()
        received = []

        bus.subscribe_session("s1", received.append)
        bus.emit(Event(event_type=TURN_COMPLETED, session_id="s1"))
        bus.emit(Event(event_type=TURN_COMPLETED, session_id="s2"))
        bus.unsubscribe_session("s1")
        bus.emit(Event(event_type=TURN_FAILED, session_id="s1"))

        assert [(e.event_type, e.session_id) for e in received] == [(TURN_COMPLETED, "s1")]

    def test_recent_events_by_session(self):
        bus = EventBus()
        bus.emit(Event(event_type=TURN_COMPLETED, session_id="s1"))
        bus.emit(Event(event_type=TURN_COMPLETED, session_id="s2"))
        bus.emit(Event(event_type=TURN_FAILED, session_id="s1"))

        assert [e.event_type for e in bus.recent_events(session_id="s1")] == [
            TURN_COMPLETED, TURN_FAILED,
        ]

    def test_event_to_dict(self):
        event = Event(event_type="test", session_id="s1", data={"k": 1}, timestamp="t")
        assert event.to_dict() == {
            "event_type": "test", "session_id": "s1", "data": {"k": 1}, "timestamp": "t",
        }
