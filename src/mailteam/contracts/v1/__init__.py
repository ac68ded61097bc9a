from __future__ import annotations

from .base import WireModel
from .message import (
    IdleNotificationMessage,
    InboxMessage,
    PermissionRequestMessage,
    PermissionResponseMessage,
    PlainTextMessage,
    PlanApprovalRequestMessage,
    PlanApprovalResponseMessage,
    SandboxPermissionRequestMessage,
    SandboxPermissionResponseMessage,
    ShutdownApprovedMessage,
    ShutdownRequestMessage,
    StructuredMessage,
    TaskAssignmentMessage,
    TaskCompletedMessage,
)
from .task import TaskFile, TaskStatus
from .team import TeamConfig, TeamMember

__all__ = [
    "IdleNotificationMessage",
    "InboxMessage",
    "PermissionRequestMessage",
    "PermissionResponseMessage",
    "PlainTextMessage",
    "PlanApprovalRequestMessage",
    "PlanApprovalResponseMessage",
    "SandboxPermissionRequestMessage",
    "SandboxPermissionResponseMessage",
    "ShutdownApprovedMessage",
    "ShutdownRequestMessage",
    "StructuredMessage",
    "TaskAssignmentMessage",
    "TaskCompletedMessage",
    "TaskFile",
    "TaskStatus",
    "TeamConfig",
    "TeamMember",
    "WireModel",
]
