from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .environments import ExecutionEnvironment
from .models import Job
from .oracle import Oracle, extract_json_array
from .reporting import read_context_document
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

DEFAULT_COORDINATOR_PROMPT = "Analyze the codebase and suggest improvements."
DEFAULT_PRODUCT_VISION = "No product vision defined yet."
DEFAULT_PRODUCT_STATE = "No previous state. This is the first iteration."

JOB_FORMAT_EXAMPLE = """[
  {
    "id": "job-001",
    "title": "Short title",
    "description": "What needs to be done",
    "priority": "high",
    "estimatedComplexity": "small",
    "files": ["src/file1.tsx", "src/file2.tsx"],
    "acceptanceCriteria": ["Criterion 1", "Criterion 2"]
  }
]"""


class AnalysisStatus(str, Enum):
    JOBS = "jobs"
    EMPTY = "empty"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class AnalysisOutcome:
    status: AnalysisStatus
    jobs: list[Job] = field(default_factory=list)
    skipped: int = 0

    @property
    def should_stop(self) -> bool:
        return not self.jobs


class AnalysisStage:
    """Turns the context documents and a codebase snapshot into this iteration's jobs.

    Missing context documents fall back to fixed default texts. Output that
    does not contain a JSON array of jobs yields an empty job list, which the
    controller treats as the signal to stop. Oracle failures are not parse
    failures and propagate to the caller.
    """

    def __init__(
        self,
        *,
        oracle: Oracle,
        environment: ExecutionEnvironment,
        checkout: Path,
        settings: RuntimeSettings,
    ) -> None:
        self.oracle = oracle
        self.environment = environment
        self.checkout = checkout
        self.settings = settings

    async def run(self, iteration: int) -> list[Job]:
        outcome = await self.analyze(iteration)
        return outcome.jobs

    async def analyze(self, iteration: int) -> AnalysisOutcome:
        logger.info("Running analysis (iteration %s)", iteration)
        prompt = self.build_prompt(iteration)
        output = await self.oracle.propose(prompt, workdir=self.checkout)
        outcome = parse_jobs(output)
        if outcome.status is AnalysisStatus.JOBS:
            logger.info("Generated %s jobs (%s skipped)", len(outcome.jobs), outcome.skipped)
        elif outcome.status is AnalysisStatus.EMPTY:
            logger.info("Analysis returned no jobs")
        else:
            logger.warning("Failed to parse jobs from analysis output: %s", _preview(output))
        return outcome

    def build_prompt(self, iteration: int) -> str:
        coordinator_prompt = read_context_document(
            self.settings.coordinator_prompt_file, DEFAULT_COORDINATOR_PROMPT
        )
        product_vision = read_context_document(self.settings.product_vision_file, DEFAULT_PRODUCT_VISION)
        product_state = read_context_document(self.settings.product_state_file, DEFAULT_PRODUCT_STATE)
        return "\n".join(
            [
                coordinator_prompt.strip(),
                "",
                "## Product Vision",
                product_vision.strip(),
                "",
                "## Current Product State",
                product_state.strip(),
                "",
                "## Iteration",
                f"This is iteration {iteration}.",
                "",
                "## Codebase Snapshot",
                self.codebase_snapshot(),
                "",
                "## Your Task",
                f"Analyze the current state of the project at {self.settings.project_path} "
                "and generate job definitions for improvements.",
                "",
                "1. Analyze the codebase directly",
                "2. Generate 4-8 jobs, one per improvement",
                "3. Focus on the most impactful improvements for this iteration",
                "4. Output ONLY a valid JSON array of jobs, no other text",
                "5. Output an empty array [] if the product needs no further work",
                "",
                "Output format:",
                JOB_FORMAT_EXAMPLE,
                "",
            ]
        )

    def codebase_snapshot(self) -> str:
        """Render the checkout as a path listing or a size-bounded file dump."""
        paths = self.environment.list_files(self.checkout)
        if not paths:
            return "(empty repository)"
        if self.settings.snapshot_mode == "listing":
            return "\n".join(paths)

        budget = self.settings.snapshot_max_bytes
        sections: list[str] = []
        used = 0
        for index, relative in enumerate(paths):
            try:
                content = self.environment.read_text(self.checkout / relative)
            except OSError as exc:
                logger.warning("Skipping %s in snapshot: %s", relative, exc)
                continue
            section = f"### {relative}\n```\n{content}\n```"
            size = len(section.encode("utf-8"))
            if used + size > budget:
                sections.append(f"... ({len(paths) - index} more files not shown)")
                break
            sections.append(section)
            used += size
        return "\n\n".join(sections)


def parse_jobs(output: str) -> AnalysisOutcome:
    """Parse the first JSON array in *output* into jobs. Never raises."""
    items = extract_json_array(output)
    if items is None:
        return AnalysisOutcome(status=AnalysisStatus.MALFORMED)
    if not items:
        return AnalysisOutcome(status=AnalysisStatus.EMPTY)

    jobs: list[Job] = []
    seen: set[str] = set()
    skipped = 0
    for position, item in enumerate(items):
        job = _validate_job(position, item)
        if job is None:
            skipped += 1
            continue
        if job.id in seen:
            logger.warning("Skipping duplicate job id %s at position %s", job.id, position)
            skipped += 1
            continue
        seen.add(job.id)
        jobs.append(job)

    if not jobs:
        return AnalysisOutcome(status=AnalysisStatus.MALFORMED, skipped=skipped)
    return AnalysisOutcome(status=AnalysisStatus.JOBS, jobs=jobs, skipped=skipped)


def _validate_job(position: int, item: Any) -> Job | None:
    if not isinstance(item, dict):
        logger.warning("Skipping job at position %s: expected an object, got %s", position, type(item).__name__)
        return None
    try:
        return Job.model_validate(item)
    except ValidationError as exc:
        logger.warning("Skipping invalid job at position %s: %s", position, exc.errors()[0].get("msg", exc))
        return None


def _preview(text: str, limit: int = 220) -> str:
    return text.strip()[:limit].replace("\n", " ")
