from __future__ import annotations

from typing import List, Optional

from pydantic import Field

from ...util.time import now_ms
from .base import WireModel


class TeamMember(WireModel):
    agent_id: str
    name: str
    agent_type: str = "general-purpose"
    model: Optional[str] = None
    prompt: Optional[str] = None
    color: Optional[str] = None
    plan_mode_required: Optional[bool] = None
    joined_at: int = Field(default_factory=now_ms)
    tmux_pane_id: Optional[str] = None
    cwd: str = ""
    subscriptions: Optional[List[str]] = None
    backend_type: Optional[str] = None


class TeamConfig(WireModel):
    name: str
    description: Optional[str] = None
    created_at: int = Field(default_factory=now_ms)
    lead_agent_id: str
    lead_session_id: str
    members: List[TeamMember] = Field(default_factory=list)
