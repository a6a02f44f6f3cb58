from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from pydantic import ValidationError

from .environments import EnvironmentProvider, ExecutionEnvironment, acquire_environment
from .errors import OracleError, WorkspaceEscapeError
from .events import CoordinatorEvents
from .git import GitClient
from .job_store import JobStore
from .models import FileWrite, Job, JobBucket, WorkerResult, branch_name_for
from .oracle import Oracle, extract_json_array
from .settings import RuntimeSettings
from .utils import resolve_within
from .workspace_backend import is_protected_path

logger = logging.getLogger(__name__)

FILE_OPS_FORMAT = """[
  {"path": "relative/path/to/file", "content": "complete new file content"}
]"""


def commit_message(job: Job) -> str:
    return f"[emergent] {job.title}\n\nJob ID: {job.id}"


def build_worker_prompt(job: Job, context_files: list[tuple[str, str]], *, mode: str) -> str:
    """Job-scoped prompt for one worker. ``mode`` selects how the change is returned."""
    criteria = "\n".join(f"{index}. {criterion}" for index, criterion in enumerate(job.acceptance_criteria, 1))
    lines = [
        "You are a worker agent executing a specific improvement job.",
        "",
        "## Job Details",
        f"- ID: {job.id}",
        f"- Title: {job.title}",
        f"- Description: {job.description}",
        f"- Priority: {job.priority.value}",
        f"- Files to modify: {', '.join(job.files) or 'not specified'}",
        "",
        "## Acceptance Criteria",
        criteria or "None specified.",
    ]
    if job.context:
        lines += ["", "## Additional Context", job.context]
    if context_files:
        lines += ["", "## Relevant Files"]
        for path, content in context_files:
            lines += [f"### {path}", "```", content, "```"]
    lines += [
        "",
        "## Instructions",
        "1. Implement the changes described above",
        "2. Ensure all acceptance criteria are met",
        "3. Keep changes focused and minimal",
    ]
    if mode == "file_ops":
        lines += [
            "4. Respond ONLY with a JSON array of whole-file writes, paths relative to the repository root:",
            FILE_OPS_FORMAT,
        ]
    else:
        lines += [
            "4. Edit the files in the working directory directly",
            "5. Do not run git; your changes are committed for you",
        ]
    lines += ["", "Do not make changes outside the scope of this job.", ""]
    return "\n".join(lines)


def parse_file_writes(output: str) -> list[FileWrite]:
    items = extract_json_array(output)
    if items is None:
        raise OracleError("worker output did not contain a JSON array of file writes")
    writes: list[FileWrite] = []
    for position, item in enumerate(items):
        try:
            writes.append(FileWrite.model_validate(item))
        except ValidationError as exc:
            raise OracleError(f"invalid file write at position {position}: {exc}") from exc
    if not writes:
        raise OracleError("worker returned no file writes")
    return writes


def apply_file_writes(environment: ExecutionEnvironment, checkout: Path, writes: list[FileWrite]) -> list[str]:
    """Apply each write inside *checkout*. Returns the written relative paths.

    Raises:
        WorkspaceEscapeError: If a path resolves outside the checkout or into ``.git``.
    """
    written: list[str] = []
    for write in writes:
        relative = write.path.lstrip("/")
        resolve_within(checkout, relative)
        if is_protected_path(relative):
            raise WorkspaceEscapeError(f"Refusing to write repository metadata: {write.path}")
        environment.write_text(checkout / relative, write.content)
        written.append(relative)
    return written


class DispatchStage:
    """Runs every job of an iteration in its own disposable environment.

    Jobs are processed in batches of ``max_workers``. All jobs of a batch run
    concurrently; the next batch starts only after every job of the current
    one has finished. A failing job moves to ``failed`` without affecting its
    siblings.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        provider: EnvironmentProvider,
        oracle: Oracle,
        events: CoordinatorEvents,
        settings: RuntimeSettings,
    ) -> None:
        self.store = store
        self.provider = provider
        self.oracle = oracle
        self.events = events
        self.settings = settings

    async def run(self, jobs: list[Job], iteration: int) -> list[WorkerResult]:
        """Execute *jobs* and return one result per job, in dispatch order."""
        results: list[WorkerResult] = []
        size = self.settings.max_workers
        for start in range(0, len(jobs), size):
            batch = jobs[start : start + size]
            logger.info("Processing batch %s (%s jobs)", start // size + 1, len(batch))
            outcomes = await asyncio.gather(
                *(self.execute(job, iteration) for job in batch),
                return_exceptions=True,
            )
            for job, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    logger.error("Worker %s crashed: %s", job.id, outcome)
                    outcome = WorkerResult(
                        job_id=job.id,
                        branch=branch_name_for(iteration, job.id),
                        success=False,
                        error=str(outcome),
                    )
                results.append(outcome)
        return results

    async def execute(self, job: Job, iteration: int) -> WorkerResult:
        branch = branch_name_for(iteration, job.id)
        worker_name = f"worker-{job.id}"
        logger.info("Spawning worker for %s: %s", job.id, job.title)
        self.store.transition(job.id, JobBucket.PENDING, JobBucket.IN_PROGRESS)
        try:
            async with acquire_environment(self.provider, worker_name) as environment:
                self.events.emit_worker_spawned(job.id, worker_name)
                await self._work(environment, job, branch)
        except Exception as exc:  # noqa: BLE001
            logger.error("Worker %s failed: %s", job.id, exc)
            self.store.transition(job.id, JobBucket.IN_PROGRESS, JobBucket.FAILED)
            return WorkerResult(job_id=job.id, branch=branch, success=False, error=str(exc))
        self.store.transition(job.id, JobBucket.IN_PROGRESS, JobBucket.COMPLETED)
        logger.info("Worker %s completed successfully", job.id)
        return WorkerResult(job_id=job.id, branch=branch, success=True)

    async def _work(self, environment: ExecutionEnvironment, job: Job, branch: str) -> None:
        checkout = environment.root / self.settings.project_path
        git = GitClient(
            environment,
            checkout,
            author_name=self.settings.git_author_name,
            author_email=self.settings.git_author_email,
        )
        await git.clone(self.settings.require_repo_url(), self.settings.repo_branch, token=self.settings.git_token)
        await git.create_branch(branch)

        context_files = self.gather_context(environment, checkout, job)
        prompt = build_worker_prompt(job, context_files, mode=self.settings.worker_mode)
        output = await self.oracle.propose(prompt, workdir=checkout)
        if self.settings.worker_mode == "file_ops":
            written = apply_file_writes(environment, checkout, parse_file_writes(output))
            logger.info("Worker %s wrote %s files", job.id, len(written))

        await git.stage_all()
        await git.commit(commit_message(job))
        await git.push_branch(branch)

    def gather_context(self, environment: ExecutionEnvironment, checkout: Path, job: Job) -> list[tuple[str, str]]:
        """Read up to ``context_file_limit`` files, preferring the job's declared files."""
        limit = self.settings.context_file_limit
        declared = [self._read(environment, checkout, path) for path in job.files]
        found = [item for item in declared if item is not None]
        if found:
            return found[:limit]
        gathered: list[tuple[str, str]] = []
        for path in environment.list_files(checkout):
            item = self._read(environment, checkout, path)
            if item is not None:
                gathered.append(item)
            if len(gathered) >= limit:
                break
        return gathered

    @staticmethod
    def _read(environment: ExecutionEnvironment, checkout: Path, relative: str) -> tuple[str, str] | None:
        try:
            return relative, environment.read_text(checkout / relative.lstrip("/"))
        except (OSError, WorkspaceEscapeError):
            return None
