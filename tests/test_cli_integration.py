from pathlib import Path

import click
import pytest
from click.testing import CliRunner

from beadrunner.cli import cli
from beadrunner.config import RunnerConfig, load_config
from beadrunner.runner import Runner
from beadrunner.tracker import Task
from beadrunner.usage import QuotaSnapshot
from fakes import FakeAdmission, FakeTaskSource, FakeWorker, fail, fast_config


def _install_fake_runner(
    monkeypatch: pytest.MonkeyPatch,
    source: FakeTaskSource,
    worker: FakeWorker,
    admission: FakeAdmission,
    config: RunnerConfig | None = None,
) -> list[bool]:
    modes: list[bool] = []

    def _build(repo_root: Path, loaded: RunnerConfig, *, yolo: bool) -> Runner:
        _ = loaded
        modes.append(yolo)
        return Runner(
            config or fast_config(),
            source,
            worker,
            admission,
            working_directory=repo_root,
            yolo=yolo,
            report=click.echo,
        )

    monkeypatch.setattr("beadrunner.cli.build_runner", _build)
    return modes


def test_init_writes_default_config_and_refuses_overwrite(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    first = runner.invoke(cli, ["init"])
    assert first.exit_code == 0
    assert "Wrote default config" in first.output
    config_path = tmp_path / ".beads" / "runner.toml"
    assert load_config(config_path).retry.max_consecutive_failures == 3

    second = runner.invoke(cli, ["init"])
    assert second.exit_code != 0
    assert "already exists" in second.output

    forced = runner.invoke(cli, ["init", "--force"])
    assert forced.exit_code == 0


def test_stop_creates_sentinel(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["stop"])

    assert result.exit_code == 0
    assert (tmp_path / ".stop-beads").exists()


def test_run_drains_queue_and_exits_zero(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    source = FakeTaskSource(
        [Task(id="bd-1", title="First"), Task(id="bd-2", title="Second")]
    )
    worker = FakeWorker(source)
    admission = FakeAdmission()
    modes = _install_fake_runner(monkeypatch, source, worker, admission)

    result = CliRunner().invoke(cli, ["run"])

    assert result.exit_code == 0
    assert modes == [False]
    assert worker.started == ["bd-1", "bd-2"]
    assert "Running: scoped permissions" in result.output
    assert "Graceful stop: touch .stop-beads" in result.output
    assert "No more ready tasks." in result.output
    assert "Results: 2 completed, 0 failed" in result.output
    assert admission.closed


def test_run_exits_two_when_failures_trip_the_breaker(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    source = FakeTaskSource([Task(id=f"bd-{index}", title=f"T{index}") for index in range(5)])
    worker = FakeWorker(source, {f"bd-{index}": [fail()] for index in range(5)})
    _install_fake_runner(
        monkeypatch,
        source,
        worker,
        FakeAdmission(),
        config=fast_config(max_retries=0, max_consecutive_failures=3),
    )

    result = CliRunner().invoke(cli, ["run", "--yolo"])

    assert result.exit_code == 2
    assert "Running: all permissions bypassed" in result.output
    assert "3 consecutive failures" in result.output
    assert worker.started == ["bd-0", "bd-1", "bd-2"]


def test_run_reports_config_errors(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "broken.toml").write_text("[usage]\nthreshold = -1\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["run", "--config", "broken.toml"])

    assert result.exit_code != 0
    assert "usage.threshold" in result.output


def test_help_lists_commands() -> None:
    result = CliRunner().invoke(cli, ["--help"])

    assert result.exit_code == 0
    for command in ["run", "init", "stop", "usage"]:
        assert command in result.output


class _StubAdmission:
    def __init__(self, config: object) -> None:
        _ = config

    def __enter__(self) -> "_StubAdmission":
        return self

    def __exit__(self, *_: object) -> None:
        return None

    def fetch_snapshot(self) -> QuotaSnapshot:
        return QuotaSnapshot(
            five_hour_utilization=81.0,
            seven_day_utilization=12.5,
            captured_at=0.0,
            ttl=300.0,
            threshold=70.0,
        )


def test_usage_prints_snapshot(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("beadrunner.cli.AdmissionController", _StubAdmission)

    result = CliRunner().invoke(cli, ["usage"])

    assert result.exit_code == 0
    assert "5h=81% 7d=12.5%" in result.output
    assert "threshold: 70%, over" in result.output
