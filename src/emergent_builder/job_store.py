from __future__ import annotations

import logging
import os
from pathlib import Path

from pydantic import ValidationError

from .events import CoordinatorEvents
from .models import BucketCounts, BucketJobs, Job, JobBucket, sort_jobs
from .utils import atomic_write_text, read_record_text

logger = logging.getLogger(__name__)

_JOB_SUFFIX = ".json"


class JobStore:
    """Filesystem job store where a record's directory is its lifecycle state.

    Layout::

        <root>/pending/<job id>.json
        <root>/in-progress/<job id>.json
        <root>/completed/<job id>.json
        <root>/failed/<job id>.json

    A transition is a single ``os.replace`` between two bucket directories,
    so every job id lives in exactly one bucket at a time. External tools may
    move files concurrently; a transition whose source record has vanished is
    logged and skipped rather than raised.

    ``create`` overwrites by id: a record with the same id in any bucket,
    terminal ones included, is replaced. The iteration controller renames
    colliding ids before they get here, so completed and failed history is
    kept across iterations.
    """

    def __init__(self, root: Path, *, events: CoordinatorEvents) -> None:
        self.root = Path(root)
        self.events = events
        self.ensure_structure()

    def ensure_structure(self) -> None:
        for bucket in JobBucket:
            self.bucket_dir(bucket).mkdir(parents=True, exist_ok=True)

    def bucket_dir(self, bucket: JobBucket) -> Path:
        return self.root / bucket.value

    def job_path(self, bucket: JobBucket, job_id: str) -> Path:
        return self.bucket_dir(bucket) / f"{job_id}{_JOB_SUFFIX}"

    def create(self, job: Job) -> Path:
        """Persist *job* into ``pending``, overwriting any record with the same id."""
        if not job.id.strip():
            raise ValueError("job id must be non-empty")
        for bucket in JobBucket:
            if bucket is JobBucket.PENDING:
                continue
            stale = self.job_path(bucket, job.id)
            if stale.is_file():
                logger.warning("Job id %s already present in %s; overwriting", job.id, bucket.value)
                stale.unlink(missing_ok=True)
        path = self.job_path(JobBucket.PENDING, job.id)
        atomic_write_text(path, job.model_dump_json(by_alias=True, exclude_none=True, indent=2))
        logger.info("Created job: %s - %s", job.id, job.title)
        self.events.emit_job_created(job)
        return path

    def transition(self, job_id: str, from_bucket: JobBucket, to_bucket: JobBucket) -> bool:
        """Move a job record between buckets. Returns False if the source record is missing."""
        source = self.job_path(from_bucket, job_id)
        target = self.job_path(to_bucket, job_id)
        try:
            os.replace(source, target)
        except FileNotFoundError:
            logger.warning(
                "Cannot move job %s from %s to %s: record not found in %s",
                job_id,
                from_bucket.value,
                to_bucket.value,
                from_bucket.value,
            )
            return False
        logger.debug("Job %s: %s -> %s", job_id, from_bucket.value, to_bucket.value)
        self.events.emit_job_status(job_id, to_bucket)
        return True

    def read(self, bucket: JobBucket, job_id: str) -> Job:
        path = self.job_path(bucket, job_id)
        text = read_record_text(path, "job record")
        try:
            return Job.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"job record at {path} failed validation: {exc}") from exc

    def list(self, bucket: JobBucket) -> list[Job]:
        """Return every readable record in *bucket*. Order is unspecified."""
        jobs: list[Job] = []
        for path in self._record_paths(bucket):
            try:
                jobs.append(self.read(bucket, path.stem))
            except (OSError, ValueError) as exc:
                logger.error("Failed to read %s: %s", path, exc)
        return jobs

    def count(self, bucket: JobBucket) -> int:
        return len(self._record_paths(bucket))

    def locate(self, job_id: str) -> JobBucket | None:
        for bucket in JobBucket:
            if self.job_path(bucket, job_id).is_file():
                return bucket
        return None

    def counts(self) -> BucketCounts:
        return BucketCounts(
            pending=self.count(JobBucket.PENDING),
            in_progress=self.count(JobBucket.IN_PROGRESS),
            completed=self.count(JobBucket.COMPLETED),
            failed=self.count(JobBucket.FAILED),
        )

    def snapshot(self) -> BucketJobs:
        """Per-bucket job lists, each ordered by priority then id."""
        return BucketJobs(
            pending=sort_jobs(self.list(JobBucket.PENDING)),
            in_progress=sort_jobs(self.list(JobBucket.IN_PROGRESS)),
            completed=sort_jobs(self.list(JobBucket.COMPLETED)),
            failed=sort_jobs(self.list(JobBucket.FAILED)),
        )

    def _record_paths(self, bucket: JobBucket) -> list[Path]:
        directory = self.bucket_dir(bucket)
        if not directory.is_dir():
            return []
        return sorted(
            path
            for path in directory.iterdir()
            if path.suffix == _JOB_SUFFIX and not path.name.startswith(".") and path.is_file()
        )
