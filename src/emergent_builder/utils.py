from __future__ import annotations

import asyncio
import os
import re
import tempfile
from pathlib import Path
from typing import Awaitable, TypeVar

from .errors import WorkspaceEscapeError

T = TypeVar("T")


def atomic_write_text(path: Path, content: str) -> None:
    """Replace *path* with *content* in one rename.

    Readers polling the directory (the dashboard watcher, another process
    listing a bucket) see either the old record or the new one. The hidden
    ``.tmp`` sibling never matches ``*.json``.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    )
    staged = Path(handle.name)
    try:
        with handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(staged, path)
    except BaseException:
        staged.unlink(missing_ok=True)
        raise


def read_record_text(path: Path, label: str) -> str:
    """Return the UTF-8 text of a persisted record.

    Raises:
        FileNotFoundError: The record does not exist.
        ValueError: The record is blank or not valid UTF-8.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} missing: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} {path} is not UTF-8") from exc
    if not text.strip():
        raise ValueError(f"{label} {path} is blank")
    return text


def resolve_within(root: Path, relative: str | Path) -> Path:
    """Resolve *relative* against *root*, refusing paths that escape it.

    Raises:
        WorkspaceEscapeError: If the resolved path is not inside ``root``.
    """
    base = root.resolve()
    candidate = (base / str(relative).lstrip("/")).resolve()
    if candidate != base and base not in candidate.parents:
        raise WorkspaceEscapeError(f"Path {relative!r} resolves outside of {base}")
    return candidate


async def suspend(awaitable: Awaitable[T], *, timeout: float | None = None) -> T:
    """Await an external call as a cancellable task with an optional timeout.

    ``timeout=None`` waits indefinitely. Cancelling the caller cancels the
    underlying task.
    """
    task = asyncio.ensure_future(awaitable)
    if timeout is None:
        return await task
    return await asyncio.wait_for(task, timeout=timeout)


def slugify_name(name: str, *, max_length: int = 48) -> str:
    """Lower-case *name* to dash-separated alphanumeric runs, e.g. for directory prefixes."""
    return "-".join(re.findall(r"[a-z0-9]+", name.lower()))[:max_length].rstrip("-")
