from __future__ import annotations

import json
import logging
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = ".beads/runner.toml"

logger = logging.getLogger(__name__)


class ConfigError(RuntimeError):
    """Raised when the runner configuration cannot be used."""


@dataclass(slots=True)
class WorkerConfig:
    binary: str = "claude"
    default_model: str = "opus"
    permission_flags: list[str] = field(
        default_factory=lambda: [
            "--permission-mode",
            "acceptEdits",
            "--allowedTools",
            "Bash(git:*)",
            "Bash(bd:*)",
        ]
    )
    yolo_flags: list[str] = field(default_factory=lambda: ["--dangerously-skip-permissions"])
    extra_flags: list[str] = field(default_factory=lambda: ["--no-chrome"])
    prompt_extra: str = ""
    reader_grace_seconds: float = 5.0


@dataclass(slots=True)
class RetryConfig:
    max_retries: int = 1
    max_consecutive_failures: int = 3


@dataclass(slots=True)
class UsageConfig:
    threshold: int = 70
    sleep_seconds: float = 1800.0
    poll_seconds: float = 60.0
    cache_seconds: float = 300.0
    endpoint: str = "https://api.anthropic.com/api/oauth/usage"
    beta_header: str = "oauth-2025-04-20"
    credential_service: str = "Claude Code-credentials"
    credentials_file: str = "~/.claude/.credentials.json"
    timeout_seconds: float = 10.0


@dataclass(slots=True)
class WatchdogConfig:
    poll_seconds: float = 15.0
    warn_seconds: float = 180.0
    kill_seconds: float = 600.0
    kill_grace_seconds: float = 10.0


@dataclass(slots=True)
class TrackerConfig:
    binary: str = "bd"


@dataclass(slots=True)
class RunnerSection:
    stop_file: str = ".stop-beads"


@dataclass(slots=True)
class HooksConfig:
    setup_command: str = ""
    cleanup_command: str = ""
    background_command: str = ""


SECTION_TYPES: dict[str, type] = {
    "worker": WorkerConfig,
    "retry": RetryConfig,
    "usage": UsageConfig,
    "watchdog": WatchdogConfig,
    "tracker": TrackerConfig,
    "runner": RunnerSection,
    "hooks": HooksConfig,
}


@dataclass(slots=True)
class RunnerConfig:
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    usage: UsageConfig = field(default_factory=UsageConfig)
    watchdog: WatchdogConfig = field(default_factory=WatchdogConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    runner: RunnerSection = field(default_factory=RunnerSection)
    hooks: HooksConfig = field(default_factory=HooksConfig)

    @classmethod
    def default(cls) -> RunnerConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunnerConfig:
        unknown_sections = sorted(set(data) - set(SECTION_TYPES))
        if unknown_sections:
            raise ConfigError(f"Unknown config sections: {', '.join(unknown_sections)}")
        sections: dict[str, Any] = {}
        for name, section_type in SECTION_TYPES.items():
            values = data.get(name, {})
            if not isinstance(values, dict):
                raise ConfigError(f"Config section [{name}] must be a table.")
            try:
                sections[name] = section_type(**values)
            except TypeError as exc:
                raise ConfigError(f"Invalid keys in [{name}]: {exc}") from exc
        config = cls(**sections)
        config.validate()
        return config

    def validate(self) -> None:
        if self.retry.max_retries < 0:
            raise ConfigError("retry.max_retries must be >= 0")
        if self.retry.max_consecutive_failures < 1:
            raise ConfigError("retry.max_consecutive_failures must be >= 1")
        if not 0 <= self.usage.threshold <= 100:
            raise ConfigError("usage.threshold must be between 0 and 100")
        if self.usage.poll_seconds <= 0 or self.watchdog.poll_seconds <= 0:
            raise ConfigError("poll intervals must be positive")
        if self.usage.sleep_seconds <= 0:
            raise ConfigError("usage.sleep_seconds must be positive")
        if self.watchdog.warn_seconds > self.watchdog.kill_seconds:
            raise ConfigError("watchdog.warn_seconds must not exceed watchdog.kill_seconds")
        if self.retry.max_retries + 1 >= self.retry.max_consecutive_failures:
            logger.warning(
                "retry.max_retries=%s allows %s attempts per task, which reaches "
                "retry.max_consecutive_failures=%s: a task that keeps failing aborts "
                "the run instead of being skipped",
                self.retry.max_retries,
                self.retry.max_retries + 1,
                self.retry.max_consecutive_failures,
            )

    def to_dict(self) -> dict[str, dict[str, Any]]:
        payload: dict[str, dict[str, Any]] = {}
        for name in SECTION_TYPES:
            section = getattr(self, name)
            values: dict[str, Any] = {}
            for item in fields(section):
                value = getattr(section, item.name)
                values[item.name] = list(value) if isinstance(value, list) else value
            payload[name] = values
        return payload


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: RunnerConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTION_TYPES:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> RunnerConfig:
    if not path.exists():
        return RunnerConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Cannot parse {path}: {exc}") from exc
    return RunnerConfig.from_dict(data)


def save_config(path: Path, config: RunnerConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
