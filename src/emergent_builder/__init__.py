from importlib.metadata import PackageNotFoundError, version

from .analysis import AnalysisOutcome, AnalysisStage, AnalysisStatus, parse_jobs
from .controller import ControllerPhase, IterationController, RunSummary
from .dashboard import DashboardHub, JobDirectoryWatcher, create_dashboard_app
from .dispatch import DispatchStage, build_worker_prompt, commit_message
from .environments import (
    CommandResult,
    EnvironmentProvider,
    ExecutionEnvironment,
    LocalEnvironment,
    LocalEnvironmentProvider,
    SnapshottingLocalEnvironment,
    SupportsCheckpoint,
    acquire_environment,
)
from .errors import CommandError, EmergentBuilderError, OracleError, WorkspaceEscapeError
from .events import CoordinatorEvents
from .git import GitClient
from .job_store import JobStore
from .merge import MergeReport, MergeStage
from .models import (
    BucketCounts,
    BucketJobs,
    DashboardEvent,
    DashboardState,
    FileWrite,
    IterationResult,
    Job,
    JobBucket,
    JobComplexity,
    JobPriority,
    WorkerResult,
    branch_name_for,
    sort_jobs,
)
from .oracle import ChatModelOracle, DeepAgentOracle, Oracle, build_oracle, extract_json_array
from .settings import RuntimeSettings


def get_version() -> str:
    try:
        return version("emergent-builder")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "AnalysisOutcome",
    "AnalysisStage",
    "AnalysisStatus",
    "BucketCounts",
    "BucketJobs",
    "ChatModelOracle",
    "CommandError",
    "CommandResult",
    "ControllerPhase",
    "CoordinatorEvents",
    "DashboardEvent",
    "DashboardHub",
    "DashboardState",
    "DeepAgentOracle",
    "DispatchStage",
    "EmergentBuilderError",
    "EnvironmentProvider",
    "ExecutionEnvironment",
    "FileWrite",
    "GitClient",
    "IterationController",
    "IterationResult",
    "Job",
    "JobBucket",
    "JobComplexity",
    "JobDirectoryWatcher",
    "JobPriority",
    "JobStore",
    "LocalEnvironment",
    "LocalEnvironmentProvider",
    "MergeReport",
    "MergeStage",
    "Oracle",
    "OracleError",
    "RunSummary",
    "RuntimeSettings",
    "SnapshottingLocalEnvironment",
    "SupportsCheckpoint",
    "WorkerResult",
    "WorkspaceEscapeError",
    "acquire_environment",
    "branch_name_for",
    "build_oracle",
    "build_worker_prompt",
    "commit_message",
    "create_dashboard_app",
    "extract_json_array",
    "get_version",
    "parse_jobs",
    "sort_jobs",
]
