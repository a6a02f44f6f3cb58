"""Execution environment providers.

An execution environment is a disposable working area in which a checkout is
materialized and commands are executed. The coordinator owns one long-lived
environment; every job gets its own short-lived one. Providers that can
snapshot an environment expose ``checkpoint``/``restore``; callers detect the
capability with ``isinstance(env, SupportsCheckpoint)``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Protocol, runtime_checkable

from .errors import CommandError
from .utils import resolve_within, slugify_name

logger = logging.getLogger(__name__)

IGNORED_DIRS = frozenset({".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build", ".next"})


@dataclass(frozen=True)
class CommandResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str


class ExecutionEnvironment(Protocol):
    """Isolated working area with command execution and file access."""

    name: str
    root: Path

    async def run(self, argv: list[str], *, cwd: Path | None = None) -> CommandResult:
        """Run *argv*; raise ``CommandError`` on a non-zero exit code."""
        ...

    def list_files(self, directory: Path) -> list[str]:
        ...

    def read_text(self, path: Path) -> str:
        ...

    def write_text(self, path: Path, content: str) -> None:
        ...

    async def delete(self) -> None:
        ...


@runtime_checkable
class SupportsCheckpoint(Protocol):
    async def checkpoint(self, name: str) -> None:
        ...

    async def restore(self, name: str) -> None:
        ...


class EnvironmentProvider(Protocol):
    async def create(self, name: str) -> ExecutionEnvironment:
        ...


class LocalEnvironment:
    """Environment backed by a private temporary directory on this machine."""

    def __init__(self, name: str, root: Path) -> None:
        self.name = name
        self.root = root

    async def run(self, argv: list[str], *, cwd: Path | None = None) -> CommandResult:
        workdir = cwd if cwd is not None else self.root
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(workdir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        stdout_raw, stderr_raw = await process.communicate()
        stdout = stdout_raw.decode("utf-8", errors="replace")
        stderr = stderr_raw.decode("utf-8", errors="replace")
        returncode = process.returncode if process.returncode is not None else -1
        if returncode != 0:
            raise CommandError(argv, returncode, stdout, stderr)
        return CommandResult(argv=list(argv), returncode=returncode, stdout=stdout, stderr=stderr)

    def list_files(self, directory: Path) -> list[str]:
        """Return repository-relative POSIX paths under *directory*, skipping VCS and build output."""
        base = self._resolve(directory)
        if not base.is_dir():
            return []
        found: list[str] = []
        for current, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(name for name in dirnames if name not in IGNORED_DIRS)
            for filename in sorted(filenames):
                found.append((Path(current) / filename).relative_to(base).as_posix())
        return found

    def read_text(self, path: Path) -> str:
        target = self._resolve(path)
        return target.read_text(encoding="utf-8", errors="replace")

    def write_text(self, path: Path, content: str) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    async def delete(self) -> None:
        if self.root.exists():
            await asyncio.to_thread(shutil.rmtree, self.root)
        logger.debug("Deleted environment %s at %s", self.name, self.root)

    def _resolve(self, path: Path) -> Path:
        relative = path.relative_to(self.root) if path.is_absolute() else path
        return resolve_within(self.root, relative)


class SnapshottingLocalEnvironment(LocalEnvironment):
    """Local environment that can checkpoint and restore its whole directory tree."""

    @property
    def snapshots_dir(self) -> Path:
        return self.root.parent / f"{self.root.name}.snapshots"

    async def checkpoint(self, name: str) -> None:
        target = self.snapshots_dir / slugify_name(name)
        await asyncio.to_thread(self._copy_tree, self.root, target)

    async def restore(self, name: str) -> None:
        source = self.snapshots_dir / slugify_name(name)
        if not source.is_dir():
            raise FileNotFoundError(f"Checkpoint {name!r} does not exist for environment {self.name}")
        await asyncio.to_thread(self._copy_tree, source, self.root)

    async def delete(self) -> None:
        await super().delete()
        if self.snapshots_dir.exists():
            await asyncio.to_thread(shutil.rmtree, self.snapshots_dir)

    @staticmethod
    def _copy_tree(source: Path, target: Path) -> None:
        if target.exists():
            shutil.rmtree(target)
        shutil.copytree(source, target, symlinks=True)


class LocalEnvironmentProvider:
    """Creates local environments under *base_dir* (the system temp dir by default)."""

    def __init__(self, base_dir: Path | None = None, *, checkpoints: bool = False) -> None:
        self.base_dir = base_dir
        self.checkpoints = checkpoints

    async def create(self, name: str) -> ExecutionEnvironment:
        if self.base_dir is not None:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        root = Path(
            tempfile.mkdtemp(
                prefix=f"emergent-{slugify_name(name) or 'env'}-",
                dir=str(self.base_dir) if self.base_dir is not None else None,
            )
        )
        env_cls = SnapshottingLocalEnvironment if self.checkpoints else LocalEnvironment
        logger.info("Created environment %s at %s", name, root)
        return env_cls(name, root)


@asynccontextmanager
async def acquire_environment(provider: EnvironmentProvider, name: str) -> AsyncIterator[ExecutionEnvironment]:
    """Create an environment and delete it on exit, whichever way the block exits."""
    environment = await provider.create(name)
    try:
        yield environment
    finally:
        try:
            await environment.delete()
        except Exception:  # noqa: BLE001
            logger.exception("Failed to delete environment %s", name)
