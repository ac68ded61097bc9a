from __future__ import annotations

import os
from pathlib import Path
from typing import Optional


def storage_root() -> Path:
    """Directory shared with the worker binary (`~/.claude` unless MAILTEAM_HOME is set)."""
    env = os.environ.get("MAILTEAM_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".claude").resolve()


def _root(root: Optional[Path]) -> Path:
    return Path(root) if root is not None else storage_root()


def _segment(value: str, what: str) -> str:
    """A single path component: no separators, not `.` or `..`."""
    v = str(value)
    if not v or v in (".", "..") or "/" in v or "\\" in v or "\x00" in v:
        raise ValueError(f"invalid {what}: {v!r}")
    return v


def teams_dir(root: Optional[Path] = None) -> Path:
    return _root(root) / "teams"


def team_dir(team_name: str, root: Optional[Path] = None) -> Path:
    return teams_dir(root) / _segment(team_name, "team name")


def team_config_path(team_name: str, root: Optional[Path] = None) -> Path:
    return team_dir(team_name, root) / "config.json"


def inboxes_dir(team_name: str, root: Optional[Path] = None) -> Path:
    return team_dir(team_name, root) / "inboxes"


def inbox_path(team_name: str, agent_name: str, root: Optional[Path] = None) -> Path:
    return inboxes_dir(team_name, root) / f"{_segment(agent_name, 'agent name')}.json"


def tasks_base_dir(root: Optional[Path] = None) -> Path:
    return _root(root) / "tasks"


def tasks_dir(team_name: str, root: Optional[Path] = None) -> Path:
    return tasks_base_dir(root) / _segment(team_name, "team name")


def task_path(team_name: str, task_id: str, root: Optional[Path] = None) -> Path:
    return tasks_dir(team_name, root) / f"{_segment(task_id, 'task id')}.json"
