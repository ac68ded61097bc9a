from __future__ import annotations

import re
import shutil
import uuid
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from ..contracts.v1 import TeamConfig, TeamMember
from ..paths import team_config_path, team_dir, tasks_dir
from ..util.file_lock import locked
from ..util.fs import atomic_write_json, read_json
from .errors import NotFound

CONTROLLER_NAME = "controller"

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")


def agent_id(name: str, team_name: str) -> str:
    return f"{name}@{team_name}"


def validate_name(value: str, *, what: str = "agent name") -> str:
    v = str(value or "").strip()
    if not v:
        raise ValueError(f"missing {what}")
    if not _NAME_RE.match(v):
        raise ValueError(f"invalid {what}: {v!r} (letters, digits, '.', '_' and '-' only)")
    return v


class TeamStore:
    """The team config document (`teams/<team>/config.json`)."""

    def __init__(self, team_name: str, root: Optional[Path] = None) -> None:
        self.team_name = validate_name(team_name, what="team name")
        self.root = root

    @property
    def path(self) -> Path:
        return team_dir(self.team_name, self.root)

    @property
    def config_path(self) -> Path:
        return team_config_path(self.team_name, self.root)

    def exists(self) -> bool:
        return self.config_path.exists()

    def _load(self) -> TeamConfig:
        doc = read_json(self.config_path)
        if not isinstance(doc, dict):
            raise NotFound(f"team not found: {self.team_name}")
        try:
            return TeamConfig.model_validate(doc)
        except ValidationError as e:
            raise NotFound(f"team config unreadable: {self.team_name}") from e

    def _save(self, config: TeamConfig) -> None:
        atomic_write_json(self.config_path, config.to_wire())

    def create(self, *, cwd: str = "", description: Optional[str] = None) -> TeamConfig:
        """Create the config with the synthetic controller as lead; reuse an existing one."""
        lead_id = agent_id(CONTROLLER_NAME, self.team_name)
        with locked(self.config_path):
            if self.exists():
                config = self._load()
            else:
                config = TeamConfig(
                    name=self.team_name,
                    description=description,
                    lead_agent_id=lead_id,
                    lead_session_id=str(uuid.uuid4()),
                )
            config.lead_agent_id = lead_id
            if not any(m.name == CONTROLLER_NAME for m in config.members):
                config.members.insert(
                    0,
                    TeamMember(agent_id=lead_id, name=CONTROLLER_NAME, agent_type="controller", cwd=cwd),
                )
            self._save(config)
        return config

    def get_config(self) -> TeamConfig:
        if not self.exists():
            raise NotFound(f"team not found: {self.team_name}")
        return self._load()

    def add_member(self, member: TeamMember) -> TeamMember:
        """Insert `member`, replacing any existing entry with the same name."""
        validate_name(member.name)
        with locked(self.config_path):
            config = self.get_config()
            members = [m for m in config.members if m.name != member.name]
            members.append(member)
            config.members = members
            self._save(config)
        return member

    def remove_member(self, name: str) -> bool:
        with locked(self.config_path):
            config = self.get_config()
            before = len(config.members)
            config.members = [m for m in config.members if m.name != name]
            if len(config.members) == before:
                return False
            self._save(config)
        return True

    def get_member(self, name: str) -> Optional[TeamMember]:
        for m in self.get_config().members:
            if m.name == name:
                return m
        return None

    def list_members(self) -> List[TeamMember]:
        return list(self.get_config().members)

    def destroy(self) -> None:
        """Remove the team directory (config + mailboxes) and the team's tasks."""
        shutil.rmtree(self.path, ignore_errors=True)
        shutil.rmtree(tasks_dir(self.team_name, self.root), ignore_errors=True)
