"""
Event bus: fan-out, unsubscribe, ring buffer, listener isolation.
"""

from __future__ import annotations

from core.event_bus import EventBus


def test_emit_reaches_subscribers():
    bus = EventBus()
    seen = []
    bus.subscribe(seen.append)

    event = bus.emit("intel:request", {"address": "0xabc"})
    assert seen == [event]
    assert event.type == "intel:request"
    assert event.data == {"address": "0xabc"}
    assert event.timestamp.endswith("Z")


def test_unsubscribe_stops_delivery():
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe(seen.append)
    assert bus.listener_count == 1

    unsubscribe()
    unsubscribe()  # idempotent
    bus.emit("agent:stopped")
    assert seen == []
    assert bus.listener_count == 0


def test_failing_listener_does_not_break_emitter():
    bus = EventBus()
    seen = []

    def broken(_event):
        raise RuntimeError("boom")

    bus.subscribe(broken)
    bus.subscribe(seen.append)
    bus.emit("skill:completed", {"skill": "price"})
    assert len(seen) == 1


def test_ring_buffer_keeps_latest():
    bus = EventBus(max_events=3)
    for i in range(5):
        bus.emit("tick", {"i": i})

    recent = bus.recent(10)
    assert [e.data["i"] for e in recent] == [2, 3, 4]
    assert [e.data["i"] for e in bus.recent(2)] == [3, 4]
    assert bus.recent(0) == []


def test_clear_empties_buffer():
    bus = EventBus()
    bus.emit("tick")
    bus.clear()
    assert bus.recent() == []


def test_event_to_dict():
    bus = EventBus()
    d = bus.emit("reinvest:completed", {"amount": "0.48"}).to_dict()
    assert d["type"] == "reinvest:completed"
    assert d["data"] == {"amount": "0.48"}
    assert "timestamp" in d
