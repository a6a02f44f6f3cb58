from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_TITLE_LENGTH = 200


class JobBucket(str, Enum):
    """Lifecycle buckets. Membership in a bucket is the job's state."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class JobPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


class JobComplexity(str, Enum):
    TRIVIAL = "trivial"
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


_PRIORITY_RANK = {
    JobPriority.CRITICAL: 0,
    JobPriority.HIGH: 1,
    JobPriority.MEDIUM: 2,
    JobPriority.LOW: 3,
}


class WireModel(BaseModel):
    """Base for records persisted or sent over the wire with camelCase keys."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Job(WireModel):
    id: str = Field(min_length=1)
    title: str
    description: str = ""
    priority: JobPriority = JobPriority.MEDIUM
    estimated_complexity: JobComplexity = Field(default=JobComplexity.MEDIUM, alias="estimatedComplexity")
    files: list[str] = Field(default_factory=list)
    acceptance_criteria: list[str] = Field(default_factory=list, alias="acceptanceCriteria")
    context: str | None = None

    @field_validator("id")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("job id must be non-empty")
        if "/" in stripped or "\\" in stripped or stripped.startswith("."):
            raise ValueError(f"job id cannot be used as a file name: {value!r}")
        return stripped

    @field_validator("title")
    @classmethod
    def _bound_title(cls, value: str) -> str:
        return value.strip()[:MAX_TITLE_LENGTH]


class IterationResult(WireModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    iteration: int = Field(ge=1)
    jobs_completed: int = Field(alias="jobsCompleted")
    jobs_failed: int = Field(alias="jobsFailed")
    branches: list[str] = Field(default_factory=list)
    timestamp: str = Field(default_factory=lambda: utc_now_iso())


class WorkerResult(WireModel):
    job_id: str = Field(alias="jobId")
    branch: str
    success: bool
    error: str | None = None


class BucketCounts(WireModel):
    pending: int = 0
    in_progress: int = Field(default=0, alias="inProgress")
    completed: int = 0
    failed: int = 0


class BucketJobs(WireModel):
    pending: list[Job] = Field(default_factory=list)
    in_progress: list[Job] = Field(default_factory=list, alias="inProgress")
    completed: list[Job] = Field(default_factory=list)
    failed: list[Job] = Field(default_factory=list)

    def for_bucket(self, bucket: JobBucket) -> list[Job]:
        return getattr(self, _BUCKET_FIELDS[bucket])


_BUCKET_FIELDS = {
    JobBucket.PENDING: "pending",
    JobBucket.IN_PROGRESS: "in_progress",
    JobBucket.COMPLETED: "completed",
    JobBucket.FAILED: "failed",
}


class DashboardState(WireModel):
    """Read model rebuilt from the job buckets. Never the source of truth."""

    iteration: int = 0
    jobs: BucketCounts = Field(default_factory=BucketCounts)
    jobs_list: BucketJobs = Field(default_factory=BucketJobs, alias="jobsList")
    last_update: str = Field(default_factory=lambda: utc_now_iso(), alias="lastUpdate")
    coordinator_connected: bool = Field(default=False, alias="coordinatorConnected")


class DashboardEvent(WireModel):
    type: str
    timestamp: str = Field(default_factory=lambda: utc_now_iso())
    data: dict[str, Any] = Field(default_factory=dict)


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def sort_jobs(jobs: list[Job]) -> list[Job]:
    """Order jobs by priority (critical first), then id."""
    return sorted(jobs, key=lambda job: (job.priority.rank, job.id))


def branch_name_for(iteration: int, job_id: str, *, prefix: str = "emergent") -> str:
    return f"{prefix}/{iteration}/{job_id}"


class FileWrite(BaseModel):
    """One whole-file write requested by a worker running in ``file_ops`` mode."""

    model_config = ConfigDict(extra="ignore")

    path: str = Field(min_length=1)
    content: str
