from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

from dotenv import load_dotenv

ORACLE_BACKENDS = frozenset({"deepagent", "chat"})
WORKER_MODES = frozenset({"autonomous", "file_ops"})
SNAPSHOT_MODES = frozenset({"full", "listing"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Builder configuration. Build with ``from_env()``; every field is validated by ``normalized()``."""

    max_workers: int = 4
    max_iterations: int = 10
    jobs_dir: str = "orchestration/jobs"
    repo_url: str = ""
    repo_branch: str = "main"
    project_path: str = "project"
    coordinator_prompt_path: str = "orchestration/COORDINATOR_PROMPT.md"
    product_vision_path: str = "orchestration/PRODUCT_VISION.md"
    product_state_path: str = "orchestration/PRODUCT_STATE.md"
    git_token: str = ""
    git_author_name: str = "Emergent Builder"
    git_author_email: str = "emergent-builder@localhost"
    model: str = "gpt-4o"
    oracle_backend: str = "deepagent"
    worker_mode: str = "autonomous"
    snapshot_mode: str = "listing"
    snapshot_max_bytes: int = 200_000
    context_file_limit: int = 10
    iteration_pause_seconds: float = 2.0
    oracle_timeout_seconds: float | None = None
    environments_root: str = ""
    checkpoints: bool = False
    dashboard_host: str = "127.0.0.1"
    dashboard_port: int = 3000
    dashboard_public_dir: str = ""
    watch_interval_seconds: float = 1.0

    @classmethod
    def from_env(cls, *, dotenv_path: Path | None = None) -> "RuntimeSettings":
        env_path = dotenv_path if dotenv_path is not None else Path.cwd() / ".env"
        if env_path.is_file():
            load_dotenv(env_path)
        return cls(
            max_workers=_get_env_int("EMERGENT_MAX_WORKERS", default=4, minimum=1, maximum=64),
            max_iterations=_get_env_int("EMERGENT_MAX_ITERATIONS", default=10, minimum=1, maximum=10_000),
            jobs_dir=os.getenv("EMERGENT_JOBS_DIR", "orchestration/jobs"),
            repo_url=os.getenv("EMERGENT_REPO_URL", os.getenv("REPO_URL", "")),
            repo_branch=os.getenv("EMERGENT_REPO_BRANCH", os.getenv("REPO_BRANCH", "main")),
            project_path=os.getenv("EMERGENT_PROJECT_PATH", "project"),
            coordinator_prompt_path=os.getenv("EMERGENT_COORDINATOR_PROMPT_PATH", "orchestration/COORDINATOR_PROMPT.md"),
            product_vision_path=os.getenv("EMERGENT_PRODUCT_VISION_PATH", "orchestration/PRODUCT_VISION.md"),
            product_state_path=os.getenv("EMERGENT_PRODUCT_STATE_PATH", "orchestration/PRODUCT_STATE.md"),
            git_token=os.getenv("EMERGENT_GIT_TOKEN", ""),
            git_author_name=os.getenv("EMERGENT_GIT_AUTHOR_NAME", "Emergent Builder"),
            git_author_email=os.getenv("EMERGENT_GIT_AUTHOR_EMAIL", "emergent-builder@localhost"),
            model=os.getenv("EMERGENT_MODEL", "gpt-4o"),
            oracle_backend=os.getenv("EMERGENT_ORACLE_BACKEND", "deepagent"),
            worker_mode=os.getenv("EMERGENT_WORKER_MODE", "autonomous"),
            snapshot_mode=os.getenv("EMERGENT_SNAPSHOT_MODE", "listing"),
            snapshot_max_bytes=_get_env_int("EMERGENT_SNAPSHOT_MAX_BYTES", default=200_000, minimum=1_000),
            context_file_limit=_get_env_int("EMERGENT_CONTEXT_FILE_LIMIT", default=10, minimum=1, maximum=100),
            iteration_pause_seconds=_get_env_float("EMERGENT_ITERATION_PAUSE_SECONDS", default=2.0),
            oracle_timeout_seconds=_get_env_float("EMERGENT_ORACLE_TIMEOUT_SECONDS", default=0.0) or None,
            environments_root=os.getenv("EMERGENT_ENVIRONMENTS_ROOT", ""),
            checkpoints=_get_env_bool("EMERGENT_CHECKPOINTS", default=False),
            dashboard_host=os.getenv("EMERGENT_DASHBOARD_HOST", "127.0.0.1"),
            dashboard_port=_get_env_int("EMERGENT_DASHBOARD_PORT", default=3000, minimum=1, maximum=65_535),
            dashboard_public_dir=os.getenv("EMERGENT_DASHBOARD_PUBLIC_DIR", ""),
            watch_interval_seconds=_get_env_float("EMERGENT_WATCH_INTERVAL_SECONDS", default=1.0),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Return a copy with choices lower-cased and strings trimmed. Raises ValueError when invalid."""
        oracle_backend = self.oracle_backend.strip().lower()
        if oracle_backend not in ORACLE_BACKENDS:
            raise ValueError("EMERGENT_ORACLE_BACKEND must be one of: chat, deepagent")
        worker_mode = self.worker_mode.strip().lower()
        if worker_mode not in WORKER_MODES:
            raise ValueError("EMERGENT_WORKER_MODE must be one of: autonomous, file_ops")
        if worker_mode == "autonomous" and oracle_backend != "deepagent":
            raise ValueError("EMERGENT_WORKER_MODE=autonomous requires EMERGENT_ORACLE_BACKEND=deepagent")
        snapshot_mode = self.snapshot_mode.strip().lower()
        if snapshot_mode not in SNAPSHOT_MODES:
            raise ValueError("EMERGENT_SNAPSHOT_MODE must be one of: full, listing")

        if not self.model.strip():
            raise ValueError("EMERGENT_MODEL must be non-empty")
        if not self.jobs_dir.strip():
            raise ValueError("EMERGENT_JOBS_DIR must be non-empty")
        if not self.repo_branch.strip():
            raise ValueError("EMERGENT_REPO_BRANCH must be non-empty")
        if not self.project_path.strip():
            raise ValueError("EMERGENT_PROJECT_PATH must be non-empty")
        if Path(self.project_path).is_absolute() or ".." in Path(self.project_path).parts:
            raise ValueError("EMERGENT_PROJECT_PATH must be relative to the environment root")

        if self.iteration_pause_seconds < 0:
            raise ValueError("EMERGENT_ITERATION_PAUSE_SECONDS must be >= 0")
        if self.watch_interval_seconds <= 0:
            raise ValueError("EMERGENT_WATCH_INTERVAL_SECONDS must be > 0")
        timeout = self.oracle_timeout_seconds
        if timeout is not None and timeout <= 0:
            timeout = None

        return replace(
            self,
            oracle_backend=oracle_backend,
            worker_mode=worker_mode,
            snapshot_mode=snapshot_mode,
            model=self.model.strip(),
            repo_url=self.repo_url.strip(),
            repo_branch=self.repo_branch.strip(),
            project_path=self.project_path.strip(),
            oracle_timeout_seconds=timeout,
        )

    def require_repo_url(self) -> str:
        if not self.repo_url:
            raise RuntimeError("EMERGENT_REPO_URL is required to run the builder")
        return self.repo_url

    @property
    def jobs_root(self) -> Path:
        return Path(self.jobs_dir)

    @property
    def coordinator_prompt_file(self) -> Path:
        return Path(self.coordinator_prompt_path)

    @property
    def product_vision_file(self) -> Path:
        return Path(self.product_vision_path)

    @property
    def product_state_file(self) -> Path:
        return Path(self.product_state_path)

    @property
    def public_dir(self) -> Path:
        """Dashboard static asset directory, defaulting to the packaged assets."""
        if self.dashboard_public_dir:
            return Path(self.dashboard_public_dir)
        return Path(__file__).resolve().parent / "dashboard_public"


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Integer variable *name* within ``[minimum, maximum]``, or *default* when unset."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from None
    if value < minimum or value > maximum:
        bound = f">= {minimum}" if value < minimum else f"<= {maximum}"
        raise ValueError(f"{name} must be {bound}, got: {value}")
    return value


def _get_env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from None


_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})
_FALSE_WORDS = frozenset({"0", "false", "no", "off", ""})


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    word = raw.strip().lower()
    if word not in _TRUE_WORDS | _FALSE_WORDS:
        raise ValueError(f"{name} must be a boolean, got: {raw!r}")
    return word in _TRUE_WORDS
