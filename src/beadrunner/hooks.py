from __future__ import annotations

import logging
import re
import shlex
import subprocess
from pathlib import Path

from beadrunner.config import HooksConfig

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`&]|[$]\()")


class RunnerHooks:
    """Setup/teardown callbacks around a run. The default does nothing."""

    def setup(self) -> None:
        return None

    def teardown(self) -> None:
        return None


def _command_payload(command: str) -> tuple[str | list[str], bool]:
    if SHELL_REQUIRED_PATTERN.search(command):
        return command, True
    try:
        return shlex.split(command), False
    except ValueError:
        return command, True


class CommandHooks(RunnerHooks):
    """Hooks driven by shell commands from the ``[hooks]`` config section.

    ``background_command`` is started at setup and terminated at teardown,
    for helpers that must keep running for the whole session.
    """

    def __init__(self, config: HooksConfig, working_directory: Path) -> None:
        self.config = config
        self.working_directory = working_directory
        self._background: subprocess.Popen[bytes] | None = None

    def _run(self, label: str, command: str) -> None:
        command_text = command.strip()
        if not command_text:
            return
        payload, used_shell = _command_payload(command_text)
        try:
            proc = subprocess.run(
                payload,
                cwd=self.working_directory,
                shell=used_shell,
                text=True,
                capture_output=True,
            )
        except OSError as exc:
            logger.warning("%s hook could not start: %s", label, exc)
            return
        if proc.returncode != 0:
            logger.warning(
                "%s hook exited with %s: %s",
                label,
                proc.returncode,
                proc.stderr.strip()[-400:],
            )

    def setup(self) -> None:
        self._run("setup", self.config.setup_command)
        command_text = self.config.background_command.strip()
        if command_text and self._background is None:
            payload, used_shell = _command_payload(command_text)
            try:
                self._background = subprocess.Popen(
                    payload,
                    cwd=self.working_directory,
                    shell=used_shell,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                )
            except OSError as exc:
                logger.warning("background hook could not start: %s", exc)

    def teardown(self) -> None:
        background = self._background
        self._background = None
        if background is not None and background.poll() is None:
            background.terminate()
            try:
                background.wait(timeout=5)
            except subprocess.TimeoutExpired:
                background.kill()
                background.wait()
        self._run("cleanup", self.config.cleanup_command)
