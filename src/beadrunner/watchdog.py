from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Literal

from beadrunner.config import WatchdogConfig

if TYPE_CHECKING:
    from beadrunner.workers.base import WorkerHandle

WatchdogAction = Literal["none", "warn", "kill"]
Reporter = Callable[[str], None]


class ActivityMonitor:
    """Last-output timestamp shared by the stream reader and the watchdog."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.last_activity = clock()
        self.lines_seen = 0

    def touch(self) -> None:
        self.last_activity = self._clock()
        self.lines_seen += 1

    def idle_seconds(self) -> float:
        return max(0.0, self._clock() - self.last_activity)


def classify_idle(idle: float, warn_after: float, kill_after: float) -> WatchdogAction:
    if idle >= kill_after:
        return "kill"
    if idle >= warn_after:
        return "warn"
    return "none"


class Watchdog:
    """Kills a worker that has produced no output for too long.

    Warns once per idle stretch and terminates at most once; a worker that
    keeps writing output can run for any length of time.
    """

    def __init__(
        self,
        config: WatchdogConfig,
        monitor: ActivityMonitor,
        handle: WorkerHandle,
        *,
        report: Reporter,
    ) -> None:
        self.config = config
        self.monitor = monitor
        self.handle = handle
        self.report = report
        self.warnings = 0
        self.kills = 0
        self._warned_for: float | None = None

    async def check(self) -> WatchdogAction:
        if self.kills or not self.handle.alive:
            return "none"
        idle = self.monitor.idle_seconds()
        action = classify_idle(idle, self.config.warn_seconds, self.config.kill_seconds)
        if action == "kill":
            self.kills += 1
            self.report(f"  Killing after {idle:.0f}s idle, likely stuck")
            await self.handle.terminate(stalled=True)
            return "kill"
        if action == "warn":
            if self._warned_for == self.monitor.last_activity:
                return "none"
            self._warned_for = self.monitor.last_activity
            self.warnings += 1
            self.report(f"  No activity for {idle:.0f}s, possibly stuck")
            return "warn"
        return "none"

    async def watch(self, finished: asyncio.Event) -> None:
        while not finished.is_set() and self.handle.alive:
            try:
                await asyncio.wait_for(finished.wait(), timeout=self.config.poll_seconds)
                return
            except TimeoutError:
                pass
            if await self.check() == "kill":
                return
