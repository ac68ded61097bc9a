from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..contracts.v1 import TaskFile
from ..paths import task_path, tasks_dir
from ..util.file_lock import locked
from ..util.fs import atomic_write_json, read_json
from .errors import NotFound


def _id_key(task_id: str) -> int:
    try:
        return int(task_id)
    except ValueError:
        return 0


class TaskStore:
    """One JSON document per task under `tasks/<team>/<id>.json`; ids are "1", "2", ..."""

    def __init__(self, team_name: str, root: Optional[Path] = None) -> None:
        self.team_name = team_name
        self.root = root

    @property
    def path(self) -> Path:
        return tasks_dir(self.team_name, self.root)

    def _task_ids(self) -> List[str]:
        if not self.path.exists():
            return []
        ids = [p.stem for p in self.path.glob("*.json")]
        return sorted((i for i in ids if i.isdigit()), key=_id_key)

    def _load(self, task_id: str) -> TaskFile:
        doc = read_json(task_path(self.team_name, task_id, self.root))
        if not isinstance(doc, dict):
            raise NotFound(f"task not found: {task_id}")
        try:
            return TaskFile.model_validate(doc)
        except ValidationError as e:
            raise NotFound(f"task unreadable: {task_id}") from e

    def _save(self, task: TaskFile) -> None:
        atomic_write_json(task_path(self.team_name, task.id, self.root), task.to_wire())

    def create(
        self,
        *,
        subject: str,
        description: str = "",
        owner: Optional[str] = None,
        active_form: Optional[str] = None,
        blocks: Optional[List[str]] = None,
        blocked_by: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TaskFile:
        if not str(subject or "").strip():
            raise ValueError("missing task subject")
        with locked(self.path / "_ids"):
            ids = self._task_ids()
            next_id = str(_id_key(ids[-1]) + 1) if ids else "1"
            task = TaskFile(
                id=next_id,
                subject=subject,
                description=description,
                owner=owner or None,
                active_form=active_form,
                blocks=list(blocks or []),
                blocked_by=list(blocked_by or []),
                metadata=metadata,
            )
            self._save(task)
        return task

    def get(self, task_id: str) -> TaskFile:
        return self._load(str(task_id))

    def update(self, task_id: str, **patch: Any) -> TaskFile:
        """Apply snake_case field updates; `None` clears optional fields."""
        with locked(self.path / "_ids"):
            current = self._load(str(task_id))
            doc = current.model_dump()
            doc.update(patch)
            doc["id"] = current.id
            try:
                task = TaskFile.model_validate(doc)
            except ValidationError as e:
                raise ValueError(f"invalid task update for {task_id}: {e.error_count()} error(s)") from e
            self._save(task)
        return task

    def list(self) -> List[TaskFile]:
        out: List[TaskFile] = []
        for task_id in self._task_ids():
            try:
                out.append(self._load(task_id))
            except NotFound:
                continue
        return out

    def destroy(self) -> None:
        shutil.rmtree(self.path, ignore_errors=True)
