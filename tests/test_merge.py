from __future__ import annotations

import asyncio
import shutil
import subprocess
from pathlib import Path

import pytest

from emergent_builder.environments import LocalEnvironment
from emergent_builder.events import MERGE_COMPLETE, MERGE_START
from emergent_builder.git import GitClient
from emergent_builder.merge import MergeReport, MergeStage
from helpers import FakeGitEnvironment

BRANCH_A = "emergent/1/job-a"
BRANCH_B = "emergent/1/job-b"
BRANCH_C = "emergent/1/job-c"

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git executable not available")


@pytest.fixture
def isolated_git(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    global_config = tmp_path / "gitconfig"
    global_config.write_text("", encoding="utf-8")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(global_config))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for prefix in ("GIT_AUTHOR", "GIT_COMMITTER"):
        monkeypatch.setenv(f"{prefix}_NAME", "Test Author")
        monkeypatch.setenv(f"{prefix}_EMAIL", "test@example.com")


def _git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return completed.stdout


def _commit_file(repo: Path, relative: str, content: str, message: str) -> None:
    (repo / relative).write_text(content, encoding="utf-8")
    _git(repo, "add", "-A")
    _git(repo, "commit", "-m", message)


def _seed_remote(tmp_path: Path) -> Path:
    """Bare remote whose main has moved on after three job branches were pushed.

    Job B edits ``shared.txt`` the same way main later does, so it conflicts.
    """
    remote = tmp_path / "remote.git"
    _git(tmp_path, "init", "--bare", "--initial-branch=main", str(remote))
    seed = tmp_path / "seed"
    _git(tmp_path, "init", "--initial-branch=main", str(seed))
    _git(seed, "remote", "add", "origin", str(remote))
    _commit_file(seed, "shared.txt", "base\n", "initial")
    _git(seed, "push", "origin", "main")

    for branch, relative, content in (
        (BRANCH_A, "a.txt", "from job a\n"),
        (BRANCH_B, "shared.txt", "from job b\n"),
        (BRANCH_C, "c.txt", "from job c\n"),
    ):
        _git(seed, "checkout", "-b", branch, "main")
        _commit_file(seed, relative, content, f"work on {branch}")
        _git(seed, "push", "origin", branch)

    _git(seed, "checkout", "main")
    _commit_file(seed, "shared.txt", "from main\n", "main moves on")
    _git(seed, "push", "origin", "main")
    return remote


async def _clone_coordinator(tmp_path: Path, remote: Path) -> GitClient:
    environment = LocalEnvironment("coordinator", tmp_path / "coordinator")
    environment.root.mkdir()
    git = GitClient(environment, environment.root / "project")
    await git.clone(str(remote), "main")
    return git


@requires_git
def test_conflicting_branch_is_skipped_and_the_rest_merge(tmp_path, isolated_git, events, recorded) -> None:
    remote = _seed_remote(tmp_path)

    async def scenario() -> tuple[MergeReport, str]:
        git = await _clone_coordinator(tmp_path, remote)
        report = await MergeStage(git=git, events=events).run([BRANCH_A, BRANCH_B, BRANCH_C])
        return report, _git(tmp_path / "coordinator" / "project", "status", "--porcelain")

    report, status = asyncio.run(scenario())

    assert report.merged == [BRANCH_A, BRANCH_C]
    assert report.skipped == [BRANCH_B]
    assert report.success is True
    assert status == ""

    checkout = tmp_path / "coordinator" / "project"
    shared = (checkout / "shared.txt").read_text(encoding="utf-8")
    assert shared == "from main\n"
    assert "<<<<<<<" not in shared
    assert (checkout / "a.txt").is_file()
    assert (checkout / "c.txt").is_file()

    pushed = _git(tmp_path, "--git-dir", str(remote), "ls-tree", "--name-only", "main")
    assert sorted(pushed.split()) == ["a.txt", "c.txt", "shared.txt"]

    assert [event.type for event in recorded] == [MERGE_START, MERGE_COMPLETE]
    assert recorded[0].data == {"branches": [BRANCH_A, BRANCH_B, BRANCH_C]}
    assert recorded[1].data == {"success": True, "successCount": 2, "failCount": 1}


def _fake_stage(tmp_path: Path, events, *, fail_on: set[str]) -> tuple[MergeStage, FakeGitEnvironment]:
    environment = FakeGitEnvironment("coordinator", tmp_path / "coordinator", fail_on=fail_on)
    return MergeStage(git=GitClient(environment, environment.root / "project"), events=events), environment


def test_empty_branch_list_is_a_no_op(tmp_path, events, recorded) -> None:
    stage, environment = _fake_stage(tmp_path, events, fail_on=set())

    report = asyncio.run(stage.run([]))

    assert report == MergeReport()
    assert environment.commands == []
    assert recorded == []


def test_fetch_failure_skips_everything_without_raising(tmp_path, events, recorded) -> None:
    stage, environment = _fake_stage(tmp_path, events, fail_on={"fetch"})

    report = asyncio.run(stage.run([BRANCH_A, BRANCH_C]))

    assert report.success is False
    assert report.merged == []
    assert report.skipped == [BRANCH_A, BRANCH_C]
    assert environment.commands == [["fetch", "--all"]]
    assert recorded[-1].data == {"success": False, "successCount": 0, "failCount": 2}


def test_push_failure_is_reported_not_raised(tmp_path, events, recorded) -> None:
    stage, environment = _fake_stage(tmp_path, events, fail_on={"push"})

    report = asyncio.run(stage.run([BRANCH_A]))

    assert report.merged == [BRANCH_A]
    assert report.success is False
    assert environment.commands[-1] == ["push"]
    assert recorded[-1].type == MERGE_COMPLETE
    assert recorded[-1].data["success"] is False


def test_failed_abort_falls_back_to_hard_reset(tmp_path, events) -> None:
    stage, environment = _fake_stage(tmp_path, events, fail_on={"merge"})

    report = asyncio.run(stage.run([BRANCH_B]))

    assert report.skipped == [BRANCH_B]
    assert environment.commands == [
        ["fetch", "--all"],
        ["merge", f"origin/{BRANCH_B}", "--no-edit"],
        ["merge", "--abort"],
        ["reset", "--hard", "HEAD"],
        ["push"],
    ]


def test_unrecoverable_conflict_stops_merging_without_push(tmp_path, events, recorded) -> None:
    stage, environment = _fake_stage(tmp_path, events, fail_on={"merge", "reset"})

    report = asyncio.run(stage.run([BRANCH_A, BRANCH_B, BRANCH_C]))

    assert report.success is False
    assert report.merged == []
    assert report.skipped == [BRANCH_A, BRANCH_B, BRANCH_C]
    assert environment.commands == [
        ["fetch", "--all"],
        ["merge", f"origin/{BRANCH_A}", "--no-edit"],
        ["merge", "--abort"],
        ["reset", "--hard", "HEAD"],
    ]
    assert recorded[-1].type == MERGE_COMPLETE
    assert recorded[-1].data == {"success": False, "successCount": 0, "failCount": 3}
