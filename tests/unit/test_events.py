"""Tests for the synchronous event emitter."""

from __future__ import annotations

import pytest

from testmux.engine.events import EventEmitter


class TestEventEmitter:
    def test_listeners_called_in_order(self):
        emitter = EventEmitter()
        calls: list[str] = []
        emitter.on("x", lambda v: calls.append(f"first:{v}"))
        emitter.on("x", lambda v: calls.append(f"second:{v}"))

        emitter.emit("x", 1)

        assert calls == ["first:1", "second:1"]

    def test_unknown_event_is_noop(self):
        EventEmitter().emit("nothing", 1, 2)

    def test_once(self):
        """A once-listener fires for the next emission only."""
        emitter = EventEmitter()
        calls: list[int] = []
        emitter.once("x", calls.append)

        emitter.emit("x", 1)
        emitter.emit("x", 2)

        assert calls == [1]
        assert emitter.listeners("x") == []

    def test_remove_listener(self):
        emitter = EventEmitter()
        calls: list[int] = []
        emitter.on("x", calls.append)
        emitter.remove_listener("x", calls.append)
        emitter.remove_listener("y", calls.append)

        emitter.emit("x", 1)

        assert calls == []

    def test_listener_added_during_emit_waits(self):
        """Listeners registered while emitting see only later events."""
        emitter = EventEmitter()
        calls: list[int] = []
        emitter.on("x", lambda v: emitter.on("x", calls.append))

        emitter.emit("x", 1)
        assert calls == []
        emitter.emit("x", 2)
        assert calls == [2]

    def test_listener_exception_propagates(self):
        emitter = EventEmitter()

        def boom(_value: int) -> None:
            raise RuntimeError("listener failed")

        emitter.on("x", boom)
        with pytest.raises(RuntimeError, match="listener failed"):
            emitter.emit("x", 1)
