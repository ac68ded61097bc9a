"""Structured messages embedded in mailbox text.

A mailbox entry's `text` is either prose or a JSON object tagged by `type`.
Decoding never fails: anything that is not a well-formed known message comes
back as `PlainTextMessage` carrying the original text unchanged.
"""
from __future__ import annotations

import json
import logging
from typing import Dict, FrozenSet, Type

from pydantic import ValidationError

from ..contracts.v1 import (
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
    WireModel,
)

logger = logging.getLogger("mailteam.codec")


_TYPE_TO_MODEL: Dict[str, Type[WireModel]] = {
    "task_assignment": TaskAssignmentMessage,
    "task_completed": TaskCompletedMessage,
    "shutdown_request": ShutdownRequestMessage,
    "shutdown_approved": ShutdownApprovedMessage,
    "idle_notification": IdleNotificationMessage,
    "plan_approval_request": PlanApprovalRequestMessage,
    "plan_approval_response": PlanApprovalResponseMessage,
    "permission_request": PermissionRequestMessage,
    "permission_response": PermissionResponseMessage,
    "sandbox_permission_request": SandboxPermissionRequestMessage,
    "sandbox_permission_response": SandboxPermissionResponseMessage,
}

KNOWN_TYPES: FrozenSet[str] = frozenset(_TYPE_TO_MODEL)


def decode_text(text: str) -> StructuredMessage:
    try:
        obj = json.loads(text)
    except (TypeError, ValueError):
        return PlainTextMessage(text=text)
    if not isinstance(obj, dict):
        return PlainTextMessage(text=text)
    kind = obj.get("type")
    if not isinstance(kind, str):
        return PlainTextMessage(text=text)
    model = _TYPE_TO_MODEL.get(kind)
    if model is None:
        return PlainTextMessage(text=text)
    try:
        return model.model_validate(obj)  # type: ignore[return-value]
    except ValidationError as e:
        logger.debug("structured message %s failed validation: %s", kind, e.error_count())
        return PlainTextMessage(text=text)


def decode(envelope: InboxMessage) -> StructuredMessage:
    return decode_text(envelope.text)


def encode(message: StructuredMessage) -> str:
    if isinstance(message, PlainTextMessage):
        return message.text
    return json.dumps(message.to_wire(), ensure_ascii=False)
