from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import Any

from beadrunner.tracker.base import Task, TaskSource, TaskSourceError, TaskStatus

logger = logging.getLogger(__name__)


class BeadsTaskSource(TaskSource):
    """Task source backed by the ``bd`` issue tracker CLI."""

    def __init__(self, working_directory: Path, *, binary: str = "bd") -> None:
        self.working_directory = working_directory.resolve()
        self.binary = binary

    def _run_bd(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(
                [self.binary, *args],
                cwd=self.working_directory,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise TaskSourceError(f"Task tracker binary not found: {self.binary}") from exc

    def _read_json(self, args: list[str]) -> Any:
        proc = self._run_bd(args)
        if proc.returncode != 0:
            logger.warning(
                "%s %s failed (exit %s): %s",
                self.binary,
                " ".join(args),
                proc.returncode,
                proc.stderr.strip(),
            )
            return None
        content = proc.stdout.strip()
        if not content:
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError:
            logger.warning("%s %s returned invalid JSON", self.binary, " ".join(args))
            return None

    def _mutate(self, args: list[str]) -> None:
        proc = self._run_bd(args)
        if proc.returncode != 0:
            logger.warning(
                "%s %s failed (exit %s): %s",
                self.binary,
                " ".join(args),
                proc.returncode,
                proc.stderr.strip(),
            )

    def _list_tasks(self, args: list[str]) -> list[Task]:
        payload = self._read_json(args)
        if not isinstance(payload, list):
            return []
        tasks: list[Task] = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            task = Task.from_dict(item)
            if task is not None:
                tasks.append(task)
        return tasks

    def list_in_progress(self) -> list[Task]:
        return self._list_tasks(["list", "--status=in_progress", "--json"])

    def list_ready(self) -> list[Task]:
        return self._list_tasks(["ready", "--json"])

    def update_status(self, task_id: str, status: TaskStatus) -> None:
        self._mutate(["update", task_id, f"--status={status}"])

    def labels(self, task_id: str) -> set[str]:
        payload = self._read_json(["label", "list", task_id, "--json"])
        if not isinstance(payload, list):
            return set()
        return {item for item in payload if isinstance(item, str)}

    def append_notes(self, task_id: str, notes: str) -> None:
        self._mutate(["update", task_id, f"--notes={notes}"])

    def close(self, task_id: str, reason: str) -> None:
        self._mutate(["close", task_id, f"--reason={reason}"])
