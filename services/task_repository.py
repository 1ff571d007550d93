from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlmodel import Session, select

from core.errors import TaskValidationError
from models.task import Task, TaskDraft, validate_tags
from datetime_utils import ensure_utc, utc_now
from storage.db import get_session

_DATETIME_FIELDS = ("start_date", "due_date", "created_at", "updated_at")
_PATCHABLE = {
    "title",
    "description",
    "status",
    "priority",
    "start_date",
    "due_date",
    "estimated_minutes",
    "category_id",
    "notes",
    "tags",
    "updated_at",
}


class TaskStore(Protocol):
    """CRUD surface of the local task store; it knows nothing about syncing."""

    def list_tasks_changed_since(self, owner_id: str, since: Optional[datetime]) -> List[Task]: ...

    def get_task(self, owner_id: str, task_id: str) -> Optional[Task]: ...

    def create_task(self, owner_id: str, draft: TaskDraft) -> Task: ...

    def update_task(self, owner_id: str, task_id: str, patch: Dict[str, Any]) -> Task: ...

    def delete_task(self, owner_id: str, task_id: str) -> None: ...


def _normalise(fields: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(fields)
    for key in _DATETIME_FIELDS:
        if key in out and out[key] is not None:
            out[key] = ensure_utc(out[key])
    return out


class TaskRepository:
    """SQLModel implementation of :class:`TaskStore`."""

    def __init__(self, session_factory: Callable[[], Session] = get_session):
        self._session_factory = session_factory

    def list_tasks_changed_since(self, owner_id: str, since: Optional[datetime]) -> List[Task]:
        with self._session_factory() as session:
            stmt = select(Task).where(Task.owner_id == owner_id)
            if since is not None:
                stmt = stmt.where(Task.updated_at > ensure_utc(since))
            stmt = stmt.order_by(Task.updated_at.asc(), Task.id.asc())
            return list(session.exec(stmt))

    def get_task(self, owner_id: str, task_id: str) -> Optional[Task]:
        if not task_id:
            return None
        with self._session_factory() as session:
            task = session.get(Task, task_id)
            if task is None or task.owner_id != owner_id:
                return None
            return task

    def create_task(self, owner_id: str, draft: TaskDraft) -> Task:
        draft.validate()
        fields = _normalise(draft.as_patch())
        fields.setdefault("notes", None)
        fields["tags"] = list(draft.tags or [])
        with self._session_factory() as session:
            task = Task(owner_id=owner_id, **fields)
            session.add(task)
            session.commit()
            session.refresh(task)
            return task

    def add(self, owner_id: str, **fields) -> Task:
        """Create a task straight from keyword fields, skipping draft validation."""
        with self._session_factory() as session:
            task = Task(owner_id=owner_id, **_normalise(fields))
            session.add(task)
            session.commit()
            session.refresh(task)
            return task

    def update_task(self, owner_id: str, task_id: str, patch: Dict[str, Any]) -> Task:
        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise TaskValidationError(f"unknown task fields: {', '.join(sorted(unknown))}")
        if patch.get("tags") is not None:
            validate_tags(list(patch["tags"]))
        with self._session_factory() as session:
            obj = session.get(Task, task_id)
            if not obj or obj.owner_id != owner_id:
                raise TaskValidationError(f"Task not found: {task_id}")
            for key, value in _normalise(patch).items():
                setattr(obj, key, value)
            start, due = ensure_utc(obj.start_date), ensure_utc(obj.due_date)
            if start and due and start > due:
                raise TaskValidationError("start_date must not be after due_date")
            if "updated_at" not in patch:
                obj.updated_at = utc_now()
            session.add(obj)
            session.commit()
            session.refresh(obj)
            return obj

    def delete_task(self, owner_id: str, task_id: str) -> None:
        with self._session_factory() as session:
            obj = session.get(Task, task_id)
            if obj and obj.owner_id == owner_id:
                session.delete(obj)
                session.commit()


__all__ = ["TaskRepository", "TaskStore"]
