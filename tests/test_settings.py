from __future__ import annotations

import os
from pathlib import Path

import pytest

from emergent_builder.settings import RuntimeSettings

_ENV_NAMES = (
    "EMERGENT_MAX_WORKERS",
    "EMERGENT_MAX_ITERATIONS",
    "EMERGENT_REPO_URL",
    "REPO_URL",
    "EMERGENT_REPO_BRANCH",
    "REPO_BRANCH",
    "EMERGENT_ORACLE_BACKEND",
    "EMERGENT_WORKER_MODE",
    "EMERGENT_SNAPSHOT_MODE",
    "EMERGENT_PROJECT_PATH",
    "EMERGENT_ORACLE_TIMEOUT_SECONDS",
    "EMERGENT_CHECKPOINTS",
    "EMERGENT_DASHBOARD_PORT",
)


@pytest.fixture(autouse=True)
def clean_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    settings = RuntimeSettings.from_env()

    assert settings.max_workers == 4
    assert settings.max_iterations == 10
    assert settings.jobs_root == Path("orchestration/jobs")
    assert settings.repo_branch == "main"
    assert settings.oracle_backend == "deepagent"
    assert settings.worker_mode == "autonomous"
    assert settings.snapshot_mode == "listing"
    assert settings.oracle_timeout_seconds is None
    assert settings.checkpoints is False
    assert settings.dashboard_port == 3000


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EMERGENT_MAX_WORKERS", "8")
    monkeypatch.setenv("EMERGENT_MAX_ITERATIONS", "25")
    monkeypatch.setenv("EMERGENT_REPO_URL", "  https://example.com/acme/app.git ")
    monkeypatch.setenv("EMERGENT_ORACLE_BACKEND", "CHAT")
    monkeypatch.setenv("EMERGENT_WORKER_MODE", "file_ops")
    monkeypatch.setenv("EMERGENT_ORACLE_TIMEOUT_SECONDS", "90")
    monkeypatch.setenv("EMERGENT_CHECKPOINTS", "yes")

    settings = RuntimeSettings.from_env()

    assert settings.max_workers == 8
    assert settings.max_iterations == 25
    assert settings.repo_url == "https://example.com/acme/app.git"
    assert settings.oracle_backend == "chat"
    assert settings.worker_mode == "file_ops"
    assert settings.oracle_timeout_seconds == 90.0
    assert settings.checkpoints is True


def test_legacy_repository_variables_are_honoured(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REPO_URL", "https://example.com/legacy.git")
    monkeypatch.setenv("REPO_BRANCH", "develop")

    settings = RuntimeSettings.from_env()

    assert settings.require_repo_url() == "https://example.com/legacy.git"
    assert settings.repo_branch == "develop"


def test_dotenv_file_is_loaded(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(os, "environ", dict(os.environ))
    (tmp_path / ".env").write_text("EMERGENT_MAX_ITERATIONS=7\n", encoding="utf-8")

    settings = RuntimeSettings.from_env()

    assert settings.max_iterations == 7


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("EMERGENT_MAX_WORKERS", "0", ">= 1"),
        ("EMERGENT_MAX_WORKERS", "many", "must be an integer"),
        ("EMERGENT_DASHBOARD_PORT", "70000", "<= 65535"),
        ("EMERGENT_ORACLE_BACKEND", "llama", "EMERGENT_ORACLE_BACKEND"),
        ("EMERGENT_SNAPSHOT_MODE", "everything", "EMERGENT_SNAPSHOT_MODE"),
        ("EMERGENT_PROJECT_PATH", "../outside", "relative"),
        ("EMERGENT_CHECKPOINTS", "maybe", "must be a boolean"),
    ],
)
def test_invalid_values_fail_fast(monkeypatch: pytest.MonkeyPatch, name: str, value: str, message: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        RuntimeSettings.from_env()


def test_autonomous_workers_require_agent_backend() -> None:
    with pytest.raises(ValueError, match="requires EMERGENT_ORACLE_BACKEND=deepagent"):
        RuntimeSettings(oracle_backend="chat", worker_mode="autonomous").normalized()


def test_non_positive_timeout_means_no_timeout() -> None:
    assert RuntimeSettings(oracle_timeout_seconds=0).normalized().oracle_timeout_seconds is None
    assert RuntimeSettings(oracle_timeout_seconds=-5).normalized().oracle_timeout_seconds is None


def test_repository_url_is_required_to_run() -> None:
    with pytest.raises(RuntimeError, match="EMERGENT_REPO_URL"):
        RuntimeSettings().require_repo_url()
