"""Per-agent mailboxes.

A mailbox is an append-only, ordered list of `InboxMessage` documents. Entries
never change after they are written except for the single `read` flip, which
`read_unread` performs for every entry it returns in one locked step. That
atomic claim is what lets exactly one logical reader drain a mailbox without
ever seeing an entry twice.
"""
from __future__ import annotations

import json
import logging
import shutil
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from ..contracts.v1 import InboxMessage
from ..paths import inbox_path, inboxes_dir
from ..util.file_lock import locked
from ..util.fs import atomic_write_json
from .errors import NotFound, StorageError

logger = logging.getLogger("mailteam.mailbox")


def _unread_copy(entry: InboxMessage) -> Dict[str, Any]:
    doc = entry.to_wire()
    doc["read"] = False
    return doc


def _to_message(doc: Dict[str, Any], *, team: str, agent: str) -> InboxMessage:
    try:
        return InboxMessage.model_validate(doc)
    except ValidationError:
        logger.warning(
            "mailbox entry does not fit the envelope; passing it on as raw text",
            extra={"team": team, "agent": agent},
        )
    return InboxMessage(
        from_=doc.get("from"),
        text=json.dumps(doc, ensure_ascii=False, default=str),
        read=doc.get("read") is True,
    )


def _to_messages(docs: List[Any], *, team: str, agent: str) -> List[InboxMessage]:
    return [_to_message(doc, team=team, agent=agent) for doc in docs if isinstance(doc, dict)]


class Mailbox(ABC):
    """Storage backend for agent mailboxes."""

    @abstractmethod
    def write(self, team: str, agent: str, entry: InboxMessage) -> None:
        """Append `entry` unread. Never fails because the mailbox does not exist yet."""

    @abstractmethod
    def read_all(self, team: str, agent: str) -> List[InboxMessage]:
        """All entries in append order. Raises NotFound for a missing mailbox, StorageError for an unreadable one."""

    @abstractmethod
    def read_unread(self, team: str, agent: str) -> List[InboxMessage]:
        """Claim every unread entry: return them in order and mark them read atomically."""

    @abstractmethod
    def ensure(self, team: str, agent: str) -> None:
        """Create an empty mailbox if there is none."""

    @abstractmethod
    def drop_team(self, team: str) -> None:
        """Forget every mailbox of `team`."""


class FileMailbox(Mailbox):
    """JSON-array mailbox files under `<root>/teams/<team>/inboxes/<agent>.json`.

    Mutations take an advisory lockfile next to the mailbox and commit by
    atomic rename, so concurrent writers (controller and workers) do not lose
    appends and readers never observe a half-written document.
    """

    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = root

    def path(self, team: str, agent: str) -> Path:
        return inbox_path(team, agent, self.root)

    def _load(self, path: Path) -> List[Any]:
        # Only a missing file is an empty mailbox. An unreadable one is never rewritten.
        if not path.exists():
            return []
        try:
            docs = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StorageError(f"mailbox unreadable: {path}: {e}") from e
        if not isinstance(docs, list):
            raise StorageError(f"mailbox is not a JSON array: {path}")
        return docs

    def write(self, team: str, agent: str, entry: InboxMessage) -> None:
        path = self.path(team, agent)
        with locked(path):
            docs = self._load(path)
            docs.append(_unread_copy(entry))
            atomic_write_json(path, docs)

    def read_all(self, team: str, agent: str) -> List[InboxMessage]:
        path = self.path(team, agent)
        if not path.exists():
            raise NotFound(f"mailbox not found: {agent}@{team}")
        return _to_messages(self._load(path), team=team, agent=agent)

    def read_unread(self, team: str, agent: str) -> List[InboxMessage]:
        path = self.path(team, agent)
        # Check before locking: taking the lock would recreate deleted directories.
        if not path.exists():
            raise NotFound(f"mailbox not found: {agent}@{team}")
        with locked(path):
            if not path.exists():
                raise NotFound(f"mailbox not found: {agent}@{team}")
            docs = self._load(path)
            claimed: List[Any] = []
            for doc in docs:
                if isinstance(doc, dict) and not doc.get("read", False):
                    claimed.append(dict(doc))
                    doc["read"] = True
            if claimed:
                atomic_write_json(path, docs)
        return _to_messages(claimed, team=team, agent=agent)

    def ensure(self, team: str, agent: str) -> None:
        path = self.path(team, agent)
        with locked(path):
            if not path.exists():
                atomic_write_json(path, [])

    def drop_team(self, team: str) -> None:
        shutil.rmtree(inboxes_dir(team, self.root), ignore_errors=True)


class MemoryMailbox(Mailbox):
    """In-process backend with the same contract; used by tests and embedders."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._boxes: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}

    def write(self, team: str, agent: str, entry: InboxMessage) -> None:
        with self._lock:
            self._boxes.setdefault((team, agent), []).append(_unread_copy(entry))

    def read_all(self, team: str, agent: str) -> List[InboxMessage]:
        with self._lock:
            docs = self._boxes.get((team, agent))
            if docs is None:
                raise NotFound(f"mailbox not found: {agent}@{team}")
            snapshot = [dict(d) for d in docs]
        return _to_messages(snapshot, team=team, agent=agent)

    def read_unread(self, team: str, agent: str) -> List[InboxMessage]:
        with self._lock:
            docs = self._boxes.get((team, agent))
            if docs is None:
                raise NotFound(f"mailbox not found: {agent}@{team}")
            claimed: List[Dict[str, Any]] = []
            for doc in docs:
                if not doc.get("read", False):
                    claimed.append(dict(doc))
                    doc["read"] = True
        return _to_messages(claimed, team=team, agent=agent)

    def ensure(self, team: str, agent: str) -> None:
        with self._lock:
            self._boxes.setdefault((team, agent), [])

    def drop_team(self, team: str) -> None:
        with self._lock:
            for key in [k for k in self._boxes if k[0] == team]:
                del self._boxes[key]
