from beadrunner.tracker.base import (
    MODEL_LABEL_PREFIX,
    Task,
    TaskSource,
    TaskSourceError,
    TaskStatus,
    model_from_labels,
)
from beadrunner.tracker.beads import BeadsTaskSource
from beadrunner.tracker.selection import Selection, next_task

__all__ = [
    "MODEL_LABEL_PREFIX",
    "BeadsTaskSource",
    "Task",
    "Selection",
    "TaskSource",
    "TaskSourceError",
    "TaskStatus",
    "model_from_labels",
    "next_task",
]
