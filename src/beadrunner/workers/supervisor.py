from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import datetime

from beadrunner.config import WatchdogConfig
from beadrunner.watchdog import ActivityMonitor, Reporter, Watchdog
from beadrunner.workers.base import (
    Worker,
    WorkerHandle,
    WorkerInvocation,
    WorkerOutcome,
)


def _timestamp() -> str:
    return datetime.now().strftime("%H:%M:%S")


class ProcessSupervisor:
    """Runs one worker with its stream reader and watchdog.

    The three activities share an ``asyncio.TaskGroup``; none of them
    outlives :meth:`run`, and the worker is always reaped before it returns
    or propagates cancellation.
    """

    def __init__(
        self,
        worker: Worker,
        watchdog_config: WatchdogConfig,
        *,
        report: Reporter,
        reader_grace_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.worker = worker
        self.watchdog_config = watchdog_config
        self.report = report
        self.reader_grace_seconds = reader_grace_seconds
        self.clock = clock
        self.active: WorkerHandle | None = None
        self.last_exit_code: int | None = None

    async def _read_stream(self, handle: WorkerHandle, monitor: ActivityMonitor) -> None:
        stdout = handle.process.stdout
        if stdout is None:
            return
        async for raw_line in stdout:
            monitor.touch()
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            rendered = self.worker.render_line(line)
            if rendered:
                self.report(f"  [{_timestamp()}] {rendered}")

    async def run(self, invocation: WorkerInvocation) -> WorkerOutcome:
        self.last_exit_code = None
        process = await self.worker.start(invocation)
        handle = WorkerHandle(
            process=process,
            kill_grace_seconds=self.watchdog_config.kill_grace_seconds,
        )
        monitor = ActivityMonitor(clock=self.clock)
        watchdog = Watchdog(self.watchdog_config, monitor, handle, report=self.report)
        finished = asyncio.Event()
        self.active = handle
        try:
            async with asyncio.TaskGroup() as group:
                reader = group.create_task(self._read_stream(handle, monitor))
                group.create_task(watchdog.watch(finished))
                exit_code = await process.wait()
                self.last_exit_code = exit_code
                finished.set()
                done, _ = await asyncio.wait({reader}, timeout=self.reader_grace_seconds)
                if reader not in done:
                    reader.cancel()
        finally:
            finished.set()
            await handle.terminate()
            self.active = None
        return WorkerOutcome(
            task_id=invocation.task_id,
            exit_code=exit_code,
            stalled=handle.stalled,
        )
