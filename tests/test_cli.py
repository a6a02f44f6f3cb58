from __future__ import annotations

from pathlib import Path

import pytest

from emergent_builder import __main__ as cli
from emergent_builder.controller import RunSummary
from emergent_builder.models import IterationResult


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("EMERGENT_MAX_WORKERS", raising=False)


def test_parse_args_run_with_dashboard() -> None:
    args = cli.parse_args(["run", "--dashboard", "--log-level", "DEBUG"])

    assert args.command == "run"
    assert args.dashboard is True
    assert args.log_level == "DEBUG"


def test_parse_args_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        cli.parse_args([])


def test_main_prints_run_summary(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    calls: list[bool] = []

    async def fake_run_builder(settings, *, with_dashboard: bool, log_level: str) -> RunSummary:
        calls.append(with_dashboard)
        return RunSummary(
            iterations=2,
            stop_reason="empty",
            history=[IterationResult(iteration=1, jobs_completed=3, jobs_failed=1, branches=[])],
        )

    monkeypatch.setattr(cli, "run_builder", fake_run_builder)

    assert cli.main(["run"]) == 0
    assert calls == [False]
    output = capsys.readouterr().out
    assert "iterations=2" in output
    assert "stop_reason=empty" in output
    assert "jobs_completed=3" in output
    assert "jobs_failed=1" in output


def test_main_reports_failed_run(monkeypatch: pytest.MonkeyPatch) -> None:
    async def failing_run_builder(settings, *, with_dashboard: bool, log_level: str) -> RunSummary:
        raise RuntimeError("EMERGENT_REPO_URL is required to run the builder")

    monkeypatch.setattr(cli, "run_builder", failing_run_builder)

    assert cli.main(["run"]) == 1


def test_main_rejects_invalid_configuration(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EMERGENT_MAX_WORKERS", "0")

    assert cli.main(["run"]) == 1
