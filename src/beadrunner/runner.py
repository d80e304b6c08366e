from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import click

from beadrunner.breaker import CircuitBreaker, RunState
from beadrunner.config import RunnerConfig
from beadrunner.hooks import RunnerHooks
from beadrunner.prompts import TaskPrompt
from beadrunner.tracker import Selection, Task, TaskSource, model_from_labels, next_task
from beadrunner.usage import AdmissionController, QuotaSnapshot
from beadrunner.watchdog import Reporter
from beadrunner.workers import (
    ProcessSupervisor,
    Worker,
    WorkerInvocation,
    WorkerOutcome,
    WorkerProcessError,
)

EXIT_OK = 0
EXIT_INTERRUPTED = 1
EXIT_ABORTED = 2

StopReason = Literal["queue_exhausted", "stopped", "aborted", "interrupted"]
BANNER_RULE = "━" * 44

logger = logging.getLogger(__name__)


def _describe_error(exc: BaseException) -> str:
    if isinstance(exc, BaseExceptionGroup):
        return "; ".join(_describe_error(item) for item in exc.exceptions)
    return str(exc) or type(exc).__name__


@dataclass(slots=True)
class RunSummary:
    completed: int
    failed: int
    skipped: int
    exit_code: int
    reason: StopReason


class StopSentinel:
    """Graceful-stop request signalled by the presence of a file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)

    def request(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch()

    def requested(self) -> bool:
        """True once per request; the file is consumed when seen."""
        if not self.path.exists():
            return False
        self.clear()
        return True


class Runner:
    """Runs tracker tasks one at a time until the queue is empty."""

    def __init__(
        self,
        config: RunnerConfig,
        source: TaskSource,
        worker: Worker,
        admission: AdmissionController,
        *,
        working_directory: Path,
        yolo: bool = False,
        hooks: RunnerHooks | None = None,
        report: Reporter = click.echo,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.source = source
        self.admission = admission
        self.working_directory = working_directory
        self.yolo = yolo
        self.hooks = hooks or RunnerHooks()
        self.report = report
        self._sleep = sleep
        self.breaker = CircuitBreaker(config.retry)
        self.supervisor = ProcessSupervisor(
            worker,
            config.watchdog,
            report=report,
            reader_grace_seconds=config.worker.reader_grace_seconds,
            clock=clock,
        )
        self.sentinel = StopSentinel(working_directory / config.runner.stop_file)
        self.current_task_id: str | None = None
        self.interrupted_by: int | None = None
        self._main_task: asyncio.Task[RunSummary] | None = None
        self._reported_snapshot: QuotaSnapshot | None = None

    @property
    def state(self) -> RunState:
        return self.breaker.state

    @property
    def mode_label(self) -> str:
        return "all permissions bypassed" if self.yolo else "scoped permissions"

    def _permission_flags(self) -> tuple[str, ...]:
        worker = self.config.worker
        return tuple(worker.yolo_flags if self.yolo else worker.permission_flags)

    def _summary(self, reason: StopReason, exit_code: int = EXIT_OK) -> RunSummary:
        return RunSummary(
            completed=self.state.completed_count,
            failed=self.state.failed_count,
            skipped=self.state.skipped_count,
            exit_code=exit_code,
            reason=reason,
        )

    def interrupt(self, signum: int = signal.SIGINT) -> None:
        """Abort the run as if a termination signal had arrived."""
        if self.interrupted_by is not None:
            return
        self.interrupted_by = signum
        if self._main_task is not None and not self._main_task.done():
            self._main_task.cancel()

    def _install_signal_handlers(self) -> list[int]:
        loop = asyncio.get_running_loop()
        installed: list[int] = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.interrupt, signum)
            except (NotImplementedError, RuntimeError):
                continue
            installed.append(signum)
        return installed

    @staticmethod
    def _remove_signal_handlers(installed: list[int]) -> None:
        loop = asyncio.get_running_loop()
        for signum in installed:
            loop.remove_signal_handler(signum)

    def _print_banner(self) -> None:
        usage = self.config.usage
        self.report(f"Running: {self.mode_label}")
        if usage.threshold > 0:
            self.report(
                f"Usage limit: pause at {usage.threshold}%, "
                f"retry every {usage.sleep_seconds / 60:g}min"
            )
        self.report(f"Graceful stop: touch {self.config.runner.stop_file}")
        self.report("")

    async def run(self) -> RunSummary:
        self._main_task = asyncio.current_task()  # type: ignore[assignment]
        installed = self._install_signal_handlers()
        self.sentinel.clear()
        self._print_banner()
        try:
            try:
                self.hooks.setup()
                summary = await self._loop()
            except asyncio.CancelledError:
                if self.interrupted_by is None:
                    self._release_current_task()
                    raise
                if self._main_task is not None:
                    self._main_task.uncancel()
                summary = self._handle_interrupt()
            except Exception:
                self._release_current_task()
                raise
            finally:
                self.hooks.teardown()
        finally:
            self._remove_signal_handlers(installed)
        self.report(self.state.summary_line())
        if summary.reason != "interrupted":
            self.report("Run 'bd stats' or 'git log --oneline' to review.")
        return summary

    def _release_current_task(self) -> str | None:
        """Reopen the claimed task unless its worker already finished it."""
        task_id = self.current_task_id
        self.current_task_id = None
        if task_id is None or self.supervisor.last_exit_code == 0:
            return None
        self.source.update_status(task_id, "open")
        return task_id

    def _handle_interrupt(self) -> RunSummary:
        self.report("")
        task_id = self.current_task_id
        if self._release_current_task() is not None:
            self.report(f"Interrupted, resetting {task_id} to open")
        elif task_id is not None:
            self.report(f"Interrupted after {task_id} finished, leaving its status")
        return self._summary("interrupted", EXIT_INTERRUPTED)

    async def _loop(self) -> RunSummary:
        while True:
            if self.sentinel.requested():
                self.report("")
                self.report(
                    f"Stop file detected ({self.config.runner.stop_file}), stopping gracefully."
                )
                return self._summary("stopped")

            if not await self._wait_for_capacity():
                return self._summary("stopped")

            selection = next_task(self.source)
            if selection is None:
                self.report("")
                self.report("No more ready tasks.")
                return self._summary("queue_exhausted")

            if not await self._run_selection(selection):
                return self._summary("aborted", EXIT_ABORTED)

    def _report_snapshot(self) -> None:
        snapshot = self.admission.snapshot
        if snapshot is None or snapshot is self._reported_snapshot:
            return
        self._reported_snapshot = snapshot
        line = f"  Usage: {snapshot.describe()}"
        if snapshot.over:
            line += f" (threshold: {self.config.usage.threshold}%)"
        self.report(line)

    async def _wait_for_capacity(self) -> bool:
        """Block while usage is over the threshold; False if stopped meanwhile."""
        usage = self.config.usage
        while True:
            result = await asyncio.to_thread(self.admission.check_usage)
            self._report_snapshot()
            if result == "ok":
                return True
            self.report(
                f"  Above {usage.threshold}% usage, sleeping "
                f"{usage.sleep_seconds / 60:g}min before rechecking..."
            )
            self.admission.invalidate()
            slept = 0.0
            while slept < usage.sleep_seconds:
                if self.sentinel.requested():
                    self.report(
                        f"Stop file detected ({self.config.runner.stop_file}), stopping."
                    )
                    return False
                step = min(usage.poll_seconds, usage.sleep_seconds - slept)
                await self._sleep(step)
                slept += step

    def _task_model(self, task: Task) -> str:
        labels = self.source.labels(task.id) or set(task.labels)
        return model_from_labels(labels, self.config.worker.default_model)

    def _build_invocation(self, task: Task, model: str) -> WorkerInvocation:
        prompt = TaskPrompt(
            task_id=task.id,
            title=task.title,
            description=task.description,
            extra_instructions=self.config.worker.prompt_extra,
            tracker_binary=self.config.tracker.binary,
        )
        return WorkerInvocation(
            task_id=task.id,
            prompt=prompt.render(),
            model=model,
            permission_flags=self._permission_flags(),
            extra_flags=tuple(self.config.worker.extra_flags),
        )

    async def _execute(self, invocation: WorkerInvocation) -> WorkerOutcome:
        try:
            return await self.supervisor.run(invocation)
        except WorkerProcessError as exc:
            self.report(f"  Could not start worker: {exc}")
            return WorkerOutcome(task_id=invocation.task_id, exit_code=None, error=str(exc))
        except Exception as exc:
            if self.interrupted_by is not None:
                raise asyncio.CancelledError from exc
            logger.warning("Supervising %s failed", invocation.task_id, exc_info=True)
            detail = _describe_error(exc)
            self.report(f"  Worker supervision failed: {detail}")
            exit_code = self.supervisor.last_exit_code
            if exit_code == 0:
                return WorkerOutcome(task_id=invocation.task_id, exit_code=0)
            return WorkerOutcome(task_id=invocation.task_id, exit_code=exit_code, error=detail)

    async def _run_selection(self, selection: Selection) -> bool:
        """Run one task to completion; False when the run must abort."""
        task = selection.task
        if selection.resumed:
            self.report("(Resuming interrupted task)")
        model = self._task_model(task)
        self.breaker.record_selection(task.id)

        self.report(BANNER_RULE)
        self.report(f"  {task.title} ({task.id}) [{model}]")
        previous_failures = self.breaker.attempts_for(task.id)
        if previous_failures:
            self.report(f"  Retry {previous_failures}/{self.config.retry.max_retries}")
        self.report(BANNER_RULE)

        self.supervisor.last_exit_code = None
        self.current_task_id = task.id
        self.source.update_status(task.id, "in_progress")
        outcome = await self._execute(self._build_invocation(task, model))
        self.report("")

        if outcome.succeeded:
            self.report(f"  Done: {task.title}")
            self.breaker.record_success()
            self.current_task_id = None
            self.report("")
            return True

        if outcome.stalled:
            self.report(f"  FAILED: {task.title} (stalled, exit code {outcome.exit_code})")
        elif outcome.error:
            self.report(f"  FAILED: {task.title} ({outcome.error})")
        else:
            self.report(f"  FAILED: {task.title} (exit code {outcome.exit_code})")

        decision = self.breaker.record_failure(task.id)
        self.source.update_status(task.id, "open")
        self.current_task_id = None

        if decision == "abort":
            limit = self.config.retry.max_consecutive_failures
            self.report("")
            self.report(
                f"  {limit} consecutive failures, likely usage quota exhausted "
                "or systemic error."
            )
            self.report("  Stopping to avoid closing healthy tasks as skipped.")
            return False

        if decision == "skip":
            attempts = self.config.retry.max_retries + 1
            self.report(f"  Skipping after {attempts} failed attempts")
            self.source.append_notes(
                task.id, f"Skipped by runner after {attempts} failed attempts"
            )
            self.source.close(task.id, f"Skipped: failed {attempts} times")

        self.report("")
        return True
