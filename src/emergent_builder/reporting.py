from __future__ import annotations

import logging
import re
from pathlib import Path

from .models import IterationResult
from .utils import atomic_write_text

logger = logging.getLogger(__name__)

TOTAL_ITERATIONS_RE = re.compile(r"Total iterations:\s*(\d+)")


def render_product_state(history: list[IterationResult], *, total_iterations: int) -> str:
    """Render the human-readable product state report for the latest iteration."""
    if not history:
        raise ValueError("history must contain at least one iteration result")
    latest = history[-1]
    lines = [
        "# Product State",
        "",
        f"Last updated: {latest.timestamp}",
        f"Total iterations: {total_iterations}",
        "",
        f"## Latest Iteration (#{latest.iteration})",
        f"- Jobs completed: {latest.jobs_completed}",
        f"- Jobs failed: {latest.jobs_failed}",
        f"- Branches merged: {', '.join(latest.branches) or 'none'}",
        "",
        "## History",
    ]
    for result in history:
        lines.append(f"- Iteration {result.iteration}: {result.jobs_completed} completed, {result.jobs_failed} failed")
    return "\n".join(lines) + "\n"


def write_product_state(path: Path, history: list[IterationResult], *, total_iterations: int) -> Path:
    atomic_write_text(path, render_product_state(history, total_iterations=total_iterations))
    return path


def parse_total_iterations(text: str) -> int | None:
    match = TOTAL_ITERATIONS_RE.search(text)
    return int(match.group(1)) if match else None


def read_total_iterations(path: Path) -> int | None:
    """Return the iteration count recorded in a state report, or None if unavailable."""
    if not path.is_file():
        return None
    try:
        return parse_total_iterations(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Unable to read product state report %s: %s", path, exc)
        return None


def read_context_document(path: Path, default: str) -> str:
    if not path.is_file():
        return default
    text = path.read_text(encoding="utf-8")
    return text if text.strip() else default
