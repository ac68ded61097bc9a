from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional, Tuple

from ..contracts.v1 import InboxMessage, StructuredMessage
from ..kernel.codec import decode
from ..kernel.mailbox import Mailbox
from ..kernel.settings import DEFAULT_POLL_INTERVAL_SECONDS

logger = logging.getLogger("mailteam.poller")

MessageHandler = Callable[[InboxMessage, StructuredMessage], None]
ErrorHandler = Callable[[Exception], None]

Batch = List[Tuple[InboxMessage, StructuredMessage]]


class InboxPoller:
    """Drain one agent's mailbox on a fixed interval and hand entries to `on_message`."""

    def __init__(
        self,
        mailbox: Mailbox,
        team_name: str,
        agent_name: str = "controller",
        *,
        interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        on_message: Optional[MessageHandler] = None,
        on_error: Optional[ErrorHandler] = None,
    ) -> None:
        self.mailbox = mailbox
        self.team_name = team_name
        self.agent_name = agent_name
        self.interval = float(interval)
        self.on_message = on_message
        self.on_error = on_error
        self._lock = threading.Lock()
        self._tick_lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        t = self._thread
        return bool(t and t.is_alive())

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._loop,
                name=f"mailteam-poll:{self.team_name}:{self.agent_name}",
                daemon=True,
            )
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            t = self._thread
            self._thread = None
            self._stop_event.set()
        if t is not None and t is not threading.current_thread():
            t.join(timeout)

    def _report(self, err: Exception) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(err)
        except Exception:
            logger.exception("poller error handler failed", extra={"team": self.team_name})

    def poll(self) -> Batch:
        """Run one tick synchronously; returns the entries claimed by this tick."""
        with self._tick_lock:
            try:
                entries = self.mailbox.read_unread(self.team_name, self.agent_name)
            except Exception as e:
                logger.warning(
                    f"mailbox read failed: {e}",
                    extra={"team": self.team_name, "agent": self.agent_name},
                )
                self._report(e)
                return []
            batch: Batch = [(entry, decode(entry)) for entry in entries]
            for entry, decoded in batch:
                if self.on_message is None:
                    continue
                try:
                    self.on_message(entry, decoded)
                except Exception as e:
                    logger.exception(
                        f"handler failed for {decoded.type} message",
                        extra={"team": self.team_name, "agent": entry.from_},
                    )
                    self._report(e)
            return batch

    def barrier(self) -> None:
        """Wait for a tick in progress on another thread to finish dispatching."""
        with self._tick_lock:
            return

    def _loop(self) -> None:
        stop_event = self._stop_event
        while not stop_event.wait(self.interval):
            self.poll()
