from __future__ import annotations

import json
from typing import Any, List, Literal, Optional, Union

from pydantic import Field, field_validator

from ...util.time import iso_from_ms, utc_now_iso
from .base import WireModel


class InboxMessage(WireModel):
    """Mailbox envelope. `text` is prose or an embedded structured message."""

    from_: str = Field("", alias="from")
    text: str
    timestamp: str = Field(default_factory=utc_now_iso)
    read: bool = False
    color: Optional[str] = None
    summary: Optional[str] = None

    @field_validator("from_", mode="before")
    @classmethod
    def _sender_text(cls, value: Any) -> Any:
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)

    @field_validator("text", mode="before")
    @classmethod
    def _body_text(cls, value: Any) -> Any:
        # Some writers embed the structured message as an object instead of a JSON string.
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        return value

    @field_validator("timestamp", mode="before")
    @classmethod
    def _timestamp_text(cls, value: Any) -> Any:
        # Epoch milliseconds are accepted and stored as ISO text.
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            try:
                return iso_from_ms(value)
            except (OverflowError, OSError, ValueError):
                return str(value)
        return value


class TaskAssignmentMessage(WireModel):
    type: Literal["task_assignment"] = "task_assignment"
    task_id: str
    subject: str = ""
    description: str = ""
    assigned_by: str = ""
    timestamp: str = Field(default_factory=utc_now_iso)


class TaskCompletedMessage(WireModel):
    type: Literal["task_completed"] = "task_completed"
    from_: str = Field("", alias="from")
    task_id: str
    task_subject: str = ""
    timestamp: str = Field(default_factory=utc_now_iso)


class ShutdownRequestMessage(WireModel):
    type: Literal["shutdown_request"] = "shutdown_request"
    request_id: str
    from_: str = Field("", alias="from")
    reason: Optional[str] = None
    timestamp: str = Field(default_factory=utc_now_iso)


class ShutdownApprovedMessage(WireModel):
    type: Literal["shutdown_approved"] = "shutdown_approved"
    request_id: str
    from_: str = Field("", alias="from")
    timestamp: str = Field(default_factory=utc_now_iso)
    pane_id: Optional[str] = None
    backend_type: Optional[str] = None


class IdleNotificationMessage(WireModel):
    type: Literal["idle_notification"] = "idle_notification"
    from_: str = Field("", alias="from")
    timestamp: str = Field(default_factory=utc_now_iso)
    idle_reason: str = "available"
    summary: Optional[str] = None
    completed_task_id: Optional[str] = None
    completed_status: Optional[str] = None
    failure_reason: Optional[str] = None


class PlanApprovalRequestMessage(WireModel):
    type: Literal["plan_approval_request"] = "plan_approval_request"
    request_id: str
    from_: str = Field("", alias="from")
    plan_content: Optional[str] = None
    timestamp: str = Field(default_factory=utc_now_iso)


class PlanApprovalResponseMessage(WireModel):
    type: Literal["plan_approval_response"] = "plan_approval_response"
    request_id: str
    from_: str = Field("", alias="from")
    approved: bool
    feedback: Optional[str] = None
    timestamp: str = Field(default_factory=utc_now_iso)


class PermissionRequestMessage(WireModel):
    type: Literal["permission_request"] = "permission_request"
    request_id: str
    from_: str = Field("", alias="from")
    tool_name: str = ""
    tool_use_id: Optional[str] = None
    description: str = ""
    input: Optional[Any] = None
    permission_suggestions: Optional[List[Any]] = None
    timestamp: str = Field(default_factory=utc_now_iso)


class PermissionResponseMessage(WireModel):
    type: Literal["permission_response"] = "permission_response"
    request_id: str
    from_: str = Field("", alias="from")
    approved: bool
    timestamp: str = Field(default_factory=utc_now_iso)


class SandboxPermissionRequestMessage(WireModel):
    type: Literal["sandbox_permission_request"] = "sandbox_permission_request"
    request_id: str
    worker_id: str = ""
    worker_name: str = ""
    worker_color: Optional[str] = None
    host_pattern: str = ""
    timestamp: str = Field(default_factory=utc_now_iso)


class SandboxPermissionResponseMessage(WireModel):
    type: Literal["sandbox_permission_response"] = "sandbox_permission_response"
    request_id: str
    host: str = ""
    allow: bool
    timestamp: str = Field(default_factory=utc_now_iso)


class PlainTextMessage(WireModel):
    """Fallback for prose and anything that is not a recognised structured message."""

    type: Literal["plain_text"] = "plain_text"
    text: str


StructuredMessage = Union[
    TaskAssignmentMessage,
    TaskCompletedMessage,
    ShutdownRequestMessage,
    ShutdownApprovedMessage,
    IdleNotificationMessage,
    PlanApprovalRequestMessage,
    PlanApprovalResponseMessage,
    PermissionRequestMessage,
    PermissionResponseMessage,
    SandboxPermissionRequestMessage,
    SandboxPermissionResponseMessage,
    PlainTextMessage,
]
