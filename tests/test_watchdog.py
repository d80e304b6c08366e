import asyncio

from beadrunner.config import WatchdogConfig
from beadrunner.watchdog import ActivityMonitor, Watchdog, classify_idle
from beadrunner.workers import WorkerHandle
from fakes import FakeProcess


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_classify_idle_thresholds() -> None:
    assert classify_idle(0, 180, 600) == "none"
    assert classify_idle(179.9, 180, 600) == "none"
    assert classify_idle(180, 180, 600) == "warn"
    assert classify_idle(599, 180, 600) == "warn"
    assert classify_idle(600, 180, 600) == "kill"
    assert classify_idle(5000, 180, 600) == "kill"


def test_watchdog_warns_once_per_idle_stretch_then_kills_once() -> None:
    async def _run() -> None:
        clock = FakeClock()
        monitor = ActivityMonitor(clock=clock)
        process = FakeProcess()
        handle = WorkerHandle(process=process, kill_grace_seconds=0.1)
        reports: list[str] = []
        watchdog = Watchdog(
            WatchdogConfig(poll_seconds=15, warn_seconds=180, kill_seconds=600),
            monitor,
            handle,
            report=reports.append,
        )

        clock.now += 100
        assert await watchdog.check() == "none"
        assert reports == []

        clock.now += 100
        assert await watchdog.check() == "warn"
        clock.now += 50
        assert await watchdog.check() == "none"
        assert watchdog.warnings == 1
        assert handle.alive

        monitor.touch()
        clock.now += 200
        assert await watchdog.check() == "warn"
        assert watchdog.warnings == 2

        clock.now += 400
        assert await watchdog.check() == "kill"
        assert await watchdog.check() == "none"
        assert process.terminate_calls == 1
        assert process.kill_calls == 0
        assert handle.stalled
        assert not handle.alive
        assert sum("Killing after 600s idle" in line for line in reports) == 1

    asyncio.run(_run())


def test_active_output_keeps_worker_alive() -> None:
    async def _run() -> None:
        clock = FakeClock()
        monitor = ActivityMonitor(clock=clock)
        process = FakeProcess()
        handle = WorkerHandle(process=process)
        watchdog = Watchdog(WatchdogConfig(), monitor, handle, report=lambda line: None)

        for _ in range(100):
            clock.now += 120
            monitor.touch()
            assert await watchdog.check() == "none"

        assert process.terminate_calls == 0
        assert monitor.lines_seen == 100

    asyncio.run(_run())


def test_watch_returns_promptly_when_worker_finishes() -> None:
    async def _run() -> None:
        process = FakeProcess()
        handle = WorkerHandle(process=process)
        watchdog = Watchdog(
            WatchdogConfig(poll_seconds=60),
            ActivityMonitor(),
            handle,
            report=lambda line: None,
        )
        finished = asyncio.Event()
        watcher = asyncio.create_task(watchdog.watch(finished))
        await asyncio.sleep(0)
        process.finish(0)
        finished.set()
        await asyncio.wait_for(watcher, timeout=1)

    asyncio.run(_run())
