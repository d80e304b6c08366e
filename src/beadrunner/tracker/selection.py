from __future__ import annotations

from dataclasses import dataclass

from beadrunner.tracker.base import Task, TaskSource


@dataclass(slots=True)
class Selection:
    task: Task
    resumed: bool = False


def next_task(source: TaskSource) -> Selection | None:
    """Pick the next task to run.

    A task left ``in_progress`` by a crashed run is resumed before any ready
    task. Returns ``None`` once the queue is empty.
    """
    orphaned = source.list_in_progress()
    if orphaned:
        return Selection(task=orphaned[0], resumed=True)
    ready = source.list_ready()
    if not ready:
        return None
    return Selection(task=ready[0])
