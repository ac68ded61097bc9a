"""Controller settings.

Settings live in `<storage root>/mailteam.yaml` (all keys optional), e.g.:

    claude_binary: /usr/local/bin/claude
    poll_interval_seconds: 0.5
    kill_grace_seconds: 5
    ready_on_spawn: true
    log_level: INFO
    env:
      ANTHROPIC_BASE_URL: https://example.invalid

`MAILTEAM_*` environment variables override the file; explicit constructor
arguments override both.
"""
from __future__ import annotations

import os
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml  # type: ignore

from ..paths import storage_root
from ..util.fs import atomic_write_text

DEFAULT_POLL_INTERVAL_SECONDS = 0.5
DEFAULT_KILL_GRACE_SECONDS = 5.0


@dataclass
class ControllerSettings:
    claude_binary: str = "claude"
    teammate_mode: str = "auto"
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS
    # The worker does not reliably report idle on a cold start, so a spawned
    # process counts as ready unless this is turned off.
    ready_on_spawn: bool = True
    log_level: str = "INFO"
    env: Dict[str, str] = field(default_factory=dict)
    python: str = sys.executable

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ControllerSettings":
        base = cls()
        env = d.get("env")
        return cls(
            claude_binary=str(d.get("claude_binary") or base.claude_binary),
            teammate_mode=str(d.get("teammate_mode") or base.teammate_mode),
            poll_interval_seconds=_positive_float(d.get("poll_interval_seconds"), base.poll_interval_seconds),
            kill_grace_seconds=_positive_float(d.get("kill_grace_seconds"), base.kill_grace_seconds),
            ready_on_spawn=bool(d.get("ready_on_spawn", base.ready_on_spawn)),
            log_level=str(d.get("log_level") or base.log_level),
            env={str(k): str(v) for k, v in env.items()} if isinstance(env, dict) else {},
            python=str(d.get("python") or base.python),
        )


def _positive_float(value: Any, default: float) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return default
    return v if v > 0 else default


def settings_path(root: Optional[Path] = None) -> Path:
    return (Path(root) if root is not None else storage_root()) / "mailteam.yaml"


def _load_doc(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        doc = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError):
        return {}
    return doc if isinstance(doc, dict) else {}


def _env_overrides() -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    mapping = {
        "MAILTEAM_CLAUDE_BINARY": "claude_binary",
        "MAILTEAM_POLL_INTERVAL": "poll_interval_seconds",
        "MAILTEAM_KILL_GRACE": "kill_grace_seconds",
        "MAILTEAM_LOG_LEVEL": "log_level",
    }
    for env_key, key in mapping.items():
        v = os.environ.get(env_key, "").strip()
        if v:
            out[key] = v
    return out


def load_settings(root: Optional[Path] = None) -> ControllerSettings:
    doc = _load_doc(settings_path(root))
    doc.update(_env_overrides())
    return ControllerSettings.from_dict(doc)


def save_settings(settings: ControllerSettings, root: Optional[Path] = None) -> None:
    atomic_write_text(settings_path(root), yaml.safe_dump(settings.to_dict(), allow_unicode=True, sort_keys=False))
