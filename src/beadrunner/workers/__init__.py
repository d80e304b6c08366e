from beadrunner.workers.base import (
    Worker,
    WorkerExecutionError,
    WorkerHandle,
    WorkerInvocation,
    WorkerOutcome,
    WorkerProcess,
    WorkerProcessError,
)
from beadrunner.workers.claude import ClaudeWorker
from beadrunner.workers.supervisor import ProcessSupervisor

__all__ = [
    "ClaudeWorker",
    "ProcessSupervisor",
    "Worker",
    "WorkerExecutionError",
    "WorkerHandle",
    "WorkerInvocation",
    "WorkerOutcome",
    "WorkerProcess",
    "WorkerProcessError",
]
