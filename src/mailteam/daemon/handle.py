from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from ..contracts.v1 import InboxMessage

if TYPE_CHECKING:
    from .controller import TeamController


class AgentHandle:
    """Convenience view of one spawned agent; every call goes through the controller."""

    def __init__(self, controller: "TeamController", name: str) -> None:
        self._controller = controller
        self.name = name

    @property
    def pid(self) -> Optional[int]:
        return self._controller.processes.get_pid(self.name)

    @property
    def is_running(self) -> bool:
        return self._controller.is_agent_running(self.name)

    def send(self, text: str, summary: Optional[str] = None) -> None:
        self._controller.send(self.name, text, summary)

    def receive(self, timeout: Optional[float] = None) -> InboxMessage:
        return self._controller.receive(self.name, timeout=timeout)

    def output(self, max_bytes: int = 65536) -> bytes:
        """Recent terminal output of the agent (empty once it is no longer tracked)."""
        proc = self._controller.processes.get(self.name)
        return proc.tail_output(max_bytes=max_bytes) if proc is not None else b""

    def kill(self) -> None:
        self._controller.kill_agent(self.name)

    def request_shutdown(self, reason: Optional[str] = None) -> str:
        return self._controller.send_shutdown_request(self.name, reason)

    def __repr__(self) -> str:
        return f"AgentHandle({self.name!r}, pid={self.pid}, running={self.is_running})"
