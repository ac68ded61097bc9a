"""In-process event registry used by the controller.

Listeners run synchronously on the emitting thread, one at a time: every
emit holds a re-entrant dispatch lock, so a listener may call back into the
controller (and emit again) without deadlocking, while listeners fired from
the poller and from process watchers never interleave.

A listener must not wait for another event: the thread that would deliver it
blocks on the dispatch lock the listener is holding. The controller checks
`in_dispatch()` and refuses its blocking calls there.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List

logger = logging.getLogger("mailteam.events")

Listener = Callable[..., Any]

ERROR = "error"


class EventBus:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._listeners: Dict[str, List[Listener]] = {}
        self._local = threading.local()

    @property
    def lock(self) -> threading.RLock:
        """The dispatch lock. Hold it to keep listeners from running in between."""
        return self._lock

    def in_dispatch(self) -> bool:
        """True when the calling thread is running inside a listener."""
        return getattr(self._local, "depth", 0) > 0

    def on(self, event: str, listener: Listener) -> Listener:
        with self._lock:
            self._listeners.setdefault(event, []).append(listener)
        return listener

    def off(self, event: str, listener: Listener) -> bool:
        with self._lock:
            items = self._listeners.get(event) or []
            for i, fn in enumerate(items):
                if fn is listener or getattr(fn, "_wrapped", None) is listener:
                    del items[i]
                    return True
        return False

    def once(self, event: str, listener: Listener) -> Listener:
        def _once(*args: Any) -> Any:
            self.off(event, _once)
            return listener(*args)

        _once._wrapped = listener  # type: ignore[attr-defined]
        return self.on(event, _once)

    def listener_count(self, event: str) -> int:
        with self._lock:
            return len(self._listeners.get(event) or [])

    def emit(self, event: str, *args: Any) -> int:
        """Call every listener of `event` in registration order; returns how many ran.

        A failing listener is logged and reported as an `error` event; the
        remaining listeners still run. Failures of `error` listeners are only
        logged.
        """
        with self._lock:
            listeners = list(self._listeners.get(event) or [])
            for fn in listeners:
                self._local.depth = getattr(self._local, "depth", 0) + 1
                try:
                    fn(*args)
                except Exception as e:
                    logger.exception(f"listener for {event} failed")
                    if event != ERROR:
                        self.emit(ERROR, e)
                finally:
                    self._local.depth -= 1
            return len(listeners)
