from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from beadrunner.config import RetryConfig

FailureDecision = Literal["retry", "skip", "abort"]


@dataclass(slots=True)
class RunState:
    completed_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    consecutive_failures: int = 0
    last_failed_task_id: str | None = None
    fail_count_for_last_failed_id: int = 0

    def summary_line(self) -> str:
        line = f"Results: {self.completed_count} completed, {self.failed_count} failed"
        if self.skipped_count:
            line += f", {self.skipped_count} skipped"
        return line


class CircuitBreaker:
    """Per-task retry budget plus a global consecutive-failure limit.

    ``max_retries`` counts retries after the first failed attempt. The global
    limit wins over skipping so a systemic outage never closes healthy tasks.
    """

    def __init__(self, config: RetryConfig, state: RunState | None = None) -> None:
        self.config = config
        self.state = state or RunState()

    def record_selection(self, task_id: str) -> None:
        if task_id != self.state.last_failed_task_id:
            self._clear_streak()

    def record_success(self) -> None:
        self.state.completed_count += 1
        self.state.consecutive_failures = 0
        self._clear_streak()

    def record_failure(self, task_id: str) -> FailureDecision:
        state = self.state
        state.failed_count += 1
        state.consecutive_failures += 1
        if task_id == state.last_failed_task_id:
            state.fail_count_for_last_failed_id += 1
        else:
            state.last_failed_task_id = task_id
            state.fail_count_for_last_failed_id = 1

        if state.consecutive_failures >= self.config.max_consecutive_failures:
            return "abort"
        if state.fail_count_for_last_failed_id > self.config.max_retries:
            state.skipped_count += 1
            self._clear_streak()
            return "skip"
        return "retry"

    def attempts_for(self, task_id: str) -> int:
        if task_id == self.state.last_failed_task_id:
            return self.state.fail_count_for_last_failed_id
        return 0

    def _clear_streak(self) -> None:
        self.state.last_failed_task_id = None
        self.state.fail_count_for_last_failed_id = 0
