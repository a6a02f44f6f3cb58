from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from emergent_builder.events import CoordinatorEvents
from emergent_builder.job_store import JobStore
from emergent_builder.models import DashboardEvent, Job
from emergent_builder.settings import RuntimeSettings
from helpers import FakeProvider


@pytest.fixture
def events() -> CoordinatorEvents:
    return CoordinatorEvents()


@pytest.fixture
def recorded(events: CoordinatorEvents) -> list[DashboardEvent]:
    captured: list[DashboardEvent] = []
    events.subscribe(captured.append)
    return captured


@pytest.fixture
def store(tmp_path: Path, events: CoordinatorEvents) -> JobStore:
    return JobStore(tmp_path / "jobs", events=events)


@pytest.fixture
def settings(tmp_path: Path) -> RuntimeSettings:
    orchestration = tmp_path / "orchestration"
    return RuntimeSettings(
        max_workers=2,
        max_iterations=3,
        jobs_dir=str(tmp_path / "jobs"),
        repo_url="https://example.com/acme/demo.git",
        coordinator_prompt_path=str(orchestration / "COORDINATOR_PROMPT.md"),
        product_vision_path=str(orchestration / "PRODUCT_VISION.md"),
        product_state_path=str(orchestration / "PRODUCT_STATE.md"),
        oracle_backend="chat",
        worker_mode="file_ops",
        iteration_pause_seconds=0.0,
    ).normalized()


@pytest.fixture
def provider(tmp_path: Path) -> FakeProvider:
    return FakeProvider(tmp_path / "envs")


@pytest.fixture
def make_job() -> Callable[..., Job]:
    def _make(job_id: str, **overrides) -> Job:
        payload = {
            "id": job_id,
            "title": f"Improve {job_id}",
            "description": f"Make {job_id} better",
            "priority": "medium",
            "estimatedComplexity": "small",
            "files": [],
            "acceptanceCriteria": ["It works"],
        }
        payload.update(overrides)
        return Job.model_validate(payload)

    return _make
