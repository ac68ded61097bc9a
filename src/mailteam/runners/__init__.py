from __future__ import annotations

from .process import ProcessHandle, ProcessSupervisor, SpawnOptions

__all__ = ["ProcessHandle", "ProcessSupervisor", "SpawnOptions"]
