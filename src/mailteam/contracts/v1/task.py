from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from .base import WireModel


TaskStatus = Literal["pending", "in_progress", "completed"]


class TaskFile(WireModel):
    id: str
    subject: str
    description: str = ""
    active_form: Optional[str] = None
    owner: Optional[str] = None
    status: TaskStatus = "pending"
    blocks: List[str] = Field(default_factory=list)
    blocked_by: List[str] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None
