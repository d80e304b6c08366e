from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

TaskStatus = Literal["open", "in_progress", "closed"]
MODEL_LABEL_PREFIX = "model:"


class TaskSourceError(RuntimeError):
    """Raised when the task store cannot be reached at all."""


@dataclass(slots=True)
class Task:
    id: str
    title: str = ""
    description: str = ""
    status: str = "open"
    priority: int | None = None
    labels: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task | None:
        task_id = payload.get("id")
        if not isinstance(task_id, str) or not task_id.strip():
            return None
        priority = payload.get("priority")
        labels = payload.get("labels")
        return cls(
            id=task_id.strip(),
            title=str(payload.get("title") or ""),
            description=str(payload.get("description") or ""),
            status=str(payload.get("status") or "open"),
            priority=priority if isinstance(priority, int) else None,
            labels=[str(item) for item in labels] if isinstance(labels, list) else [],
        )


def model_from_labels(labels: list[str] | set[str], default: str) -> str:
    for label in sorted(labels):
        if label.startswith(MODEL_LABEL_PREFIX):
            model = label[len(MODEL_LABEL_PREFIX) :].strip()
            if model:
                return model
    return default


class TaskSource(ABC):
    """Ordered queue of tasks owned by an external tracker."""

    @abstractmethod
    def list_in_progress(self) -> list[Task]:
        """Tasks currently claimed, oldest claim first."""

    @abstractmethod
    def list_ready(self) -> list[Task]:
        """Open tasks with satisfied dependencies, highest priority first."""

    @abstractmethod
    def update_status(self, task_id: str, status: TaskStatus) -> None:
        """Request a status transition."""

    @abstractmethod
    def labels(self, task_id: str) -> set[str]:
        """Labels attached to a task."""

    @abstractmethod
    def append_notes(self, task_id: str, notes: str) -> None:
        """Attach free-form notes to a task."""

    @abstractmethod
    def close(self, task_id: str, reason: str) -> None:
        """Close a task with a reason."""
