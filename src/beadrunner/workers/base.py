from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Protocol


class WorkerExecutionError(RuntimeError):
    """Raised when a worker process cannot be run."""

    def __init__(
        self,
        message: str,
        *,
        task_id: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.exit_code = exit_code
        self.retriable = retriable


class WorkerProcessError(WorkerExecutionError):
    """Raised when the worker process cannot be started."""


class WorkerProcess(Protocol):
    """The subset of ``asyncio.subprocess.Process`` the supervisor relies on."""

    pid: int

    @property
    def stdout(self) -> AsyncIterator[bytes] | None: ...

    @property
    def returncode(self) -> int | None: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    async def wait(self) -> int: ...


@dataclass(slots=True, frozen=True)
class WorkerInvocation:
    task_id: str
    prompt: str
    model: str
    permission_flags: tuple[str, ...] = ()
    extra_flags: tuple[str, ...] = ()


@dataclass(slots=True)
class WorkerOutcome:
    task_id: str
    exit_code: int | None
    stalled: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.stalled and self.error is None


class Worker(ABC):
    @abstractmethod
    async def start(self, invocation: WorkerInvocation) -> WorkerProcess:
        """Launch the worker as a directly owned child process."""

    def render_line(self, line: str) -> str | None:
        """Human-readable form of one output line, or None to stay quiet."""
        return line


@dataclass(slots=True)
class WorkerHandle:
    """Owns one running worker until it has been reaped."""

    process: WorkerProcess
    kill_grace_seconds: float = 10.0
    stalled: bool = False
    kill_count: int = 0
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def alive(self) -> bool:
        return self.process.returncode is None

    async def terminate(self, *, stalled: bool = False) -> int:
        """SIGTERM, escalate to SIGKILL after the grace period, then reap.

        Only the first call sends SIGTERM; a later call on a process that is
        still alive goes straight to SIGKILL.
        """
        async with self._lock:
            if stalled:
                self.stalled = True
            if not self.alive:
                return await self.process.wait()
            if self.kill_count == 0:
                self.kill_count += 1
                self._signal(self.process.terminate)
                try:
                    return await asyncio.wait_for(
                        self.process.wait(), timeout=self.kill_grace_seconds
                    )
                except TimeoutError:
                    pass
            self._signal(self.process.kill)
            return await self.process.wait()

    @staticmethod
    def _signal(send: Callable[[], None]) -> None:
        try:
            send()
        except ProcessLookupError:
            pass
