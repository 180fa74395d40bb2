"""Synchronous event emitter used between the engine and its consumers.

The engine never imports a reporter. Anything interested in test
lifecycle events registers a callback here by event name.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

    Listener = Callable[..., Any]

# Work intake: emitted once per run with the ordered list of file paths.
LOAD_EVENT = "testmux.load"

RUNNER_START = "runner.start"
RUNNER_END = "runner.end"
WORKER_ERROR = "runner.worker_error"
FILE_COMPLETE = "runner.file_complete"
# Emitted with the list of queued paths a stop request kept from running.
FILES_SKIPPED = "runner.files_skipped"


class EventEmitter:
    """Minimal publish/subscribe hub.

    Listeners are called in registration order on the emitting thread.
    Exceptions raised by a listener propagate to the emitter's caller.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> None:
        """Register ``listener`` for ``event``."""
        self._listeners[event].append(listener)

    def once(self, event: str, listener: Listener) -> None:
        """Register ``listener`` to be called for the next ``event`` only."""

        def _wrapper(*args: Any) -> None:
            self.remove_listener(event, _wrapper)
            listener(*args)

        self.on(event, _wrapper)

    def remove_listener(self, event: str, listener: Listener) -> None:
        """Unregister ``listener``. Unknown listeners are ignored."""
        listeners = self._listeners.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def listeners(self, event: str) -> list[Listener]:
        """Return a copy of the listeners registered for ``event``."""
        return list(self._listeners.get(event, ()))

    def emit(self, event: str, *args: Any) -> None:
        """Call every listener registered for ``event`` with ``args``."""
        for listener in self.listeners(event):
            listener(*args)
