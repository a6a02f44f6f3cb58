"""Fakes shared by the test modules: simulated git environments and a scripted oracle."""

from __future__ import annotations

import asyncio
import json
import re
from pathlib import Path
from typing import Callable

from emergent_builder.environments import CommandResult, LocalEnvironment
from emergent_builder.errors import CommandError
from emergent_builder.utils import slugify_name

JOB_ID_RE = re.compile(r"^- ID: (\S+)$", re.MULTILINE)
ITERATION_RE = re.compile(r"This is iteration (\d+)\.")

SEED_FILES = {
    "README.md": "# Demo app\n",
    "src/app.py": "print('hello')\n",
    "src/util.py": "VALUE = 1\n",
}


def git_subcommand(argv: list[str]) -> list[str]:
    """Strip ``git`` and leading ``-c key=value`` pairs from *argv*."""
    args = list(argv[1:])
    while len(args) >= 2 and args[0] == "-c":
        args = args[2:]
    return args


class FakeGitEnvironment(LocalEnvironment):
    """Real local directory whose git commands are simulated."""

    def __init__(self, name: str, root: Path, *, fail_on: set[str] | None = None, on_delete=None) -> None:
        super().__init__(name, root)
        self.fail_on = set(fail_on or ())
        self.commands: list[list[str]] = []
        self._on_delete = on_delete

    async def run(self, argv: list[str], *, cwd: Path | None = None) -> CommandResult:
        args = git_subcommand(argv)
        self.commands.append(args)
        await asyncio.sleep(0)
        if args and args[0] in self.fail_on:
            raise CommandError(argv, 1, "", f"simulated {args[0]} failure")
        if args and args[0] == "clone":
            checkout = Path(args[-1])
            for relative, content in SEED_FILES.items():
                target = checkout / relative
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(content, encoding="utf-8")
        return CommandResult(argv=list(argv), returncode=0, stdout="", stderr="")

    async def delete(self) -> None:
        await super().delete()
        if self._on_delete is not None:
            self._on_delete(self.name)


class FakeCheckpointEnvironment(FakeGitEnvironment):
    def __init__(self, *args, checkpoints: list[str], fail_checkpoint: bool = False, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.checkpoints = checkpoints
        self.fail_checkpoint = fail_checkpoint

    async def checkpoint(self, name: str) -> None:
        if self.fail_checkpoint:
            raise RuntimeError("snapshot service unavailable")
        self.checkpoints.append(name)

    async def restore(self, name: str) -> None:
        self.checkpoints.append(f"restore:{name}")


class FakeProvider:
    def __init__(
        self,
        base: Path,
        *,
        fail_on: dict[str, set[str]] | None = None,
        fail_create: set[str] | None = None,
        checkpoints: bool = False,
        fail_checkpoint: bool = False,
    ) -> None:
        self.base = base
        self.fail_on = fail_on or {}
        self.fail_create = fail_create or set()
        self.with_checkpoints = checkpoints
        self.fail_checkpoint = fail_checkpoint
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.checkpoints: list[str] = []
        self.environments: dict[str, FakeGitEnvironment] = {}

    async def create(self, name: str) -> FakeGitEnvironment:
        if name in self.fail_create:
            raise RuntimeError(f"cannot provision {name}")
        root = self.base / slugify_name(name)
        root.mkdir(parents=True, exist_ok=True)
        kwargs = {"fail_on": self.fail_on.get(name), "on_delete": self.deleted.append}
        if self.with_checkpoints:
            environment: FakeGitEnvironment = FakeCheckpointEnvironment(
                name,
                root,
                checkpoints=self.checkpoints,
                fail_checkpoint=self.fail_checkpoint,
                **kwargs,
            )
        else:
            environment = FakeGitEnvironment(name, root, **kwargs)
        self.created.append(name)
        self.environments[name] = environment
        return environment


Responder = Callable[[str, "Path | None"], "str | Exception"]


class StubOracle:
    """Deterministic oracle. Records prompts, activity order and peak concurrency."""

    def __init__(self, responder: Responder, *, delay: float = 0.0) -> None:
        self.responder = responder
        self.delay = delay
        self.prompts: list[str] = []
        self.log: list[tuple[str, str]] = []
        self.active = 0
        self.max_active = 0

    async def propose(self, prompt: str, *, workdir: Path | None = None) -> str:
        self.prompts.append(prompt)
        match = JOB_ID_RE.search(prompt)
        label = match.group(1) if match else "analysis"
        self.log.append(("start", label))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            result = self.responder(prompt, workdir)
        finally:
            self.active -= 1
            self.log.append(("end", label))
        if isinstance(result, Exception):
            raise result
        return result


def file_ops_response(job_id: str) -> str:
    return json.dumps([{"path": f"changes/{job_id}.txt", "content": f"work for {job_id}\n"}])


def job_id_in(prompt: str) -> str | None:
    match = JOB_ID_RE.search(prompt)
    return match.group(1) if match else None


def iteration_in(prompt: str) -> int:
    match = ITERATION_RE.search(prompt)
    return int(match.group(1)) if match else 0


