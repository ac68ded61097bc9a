from __future__ import annotations

from typing import Optional


class MailteamError(RuntimeError):
    """Base class for controller errors."""


class NotFound(MailteamError, LookupError):
    """A team, mailbox, member or task does not exist."""


class ProcessError(MailteamError):
    """A worker process could not be started or is in the wrong state."""


class AgentExitedError(ProcessError):
    """The worker process went away while a caller was waiting on it."""

    def __init__(self, agent_name: str, exit_code: Optional[int], what: str = "") -> None:
        self.agent_name = agent_name
        self.exit_code = exit_code
        detail = f" {what}" if what else ""
        super().__init__(f'agent "{agent_name}" exited (code={exit_code}){detail}')


class ControllerStateError(MailteamError):
    """Operation is not valid for the controller's current lifecycle state."""


class StorageError(MailteamError):
    """A stored document exists but cannot be parsed; it is left as found."""
