"""Iteration controller: the outer analyze, dispatch, merge, record loop.

The loop is a LangGraph ``StateGraph``::

    checkpoint_pre -> analyze -> persist_jobs -> dispatch -> merge -> record -> checkpoint_post -> advance
          ^              |                                                                        |
          |              +--> stop (no jobs)                                                      |
          +-------------------------------------------------------------------- next iteration <--+
                                                                                 stop (limit) <---+

An analysis that yields no jobs is the only "product is done" signal.
Otherwise the loop stops after ``max_iterations``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph

from .analysis import AnalysisStage
from .dispatch import DispatchStage
from .environments import EnvironmentProvider, ExecutionEnvironment, SupportsCheckpoint, acquire_environment
from .events import CoordinatorEvents
from .git import GitClient
from .job_store import JobStore
from .merge import MergeStage
from .models import IterationResult, Job, WorkerResult
from .oracle import Oracle
from .reporting import write_product_state
from .settings import RuntimeSettings
from .utils import suspend

logger = logging.getLogger(__name__)

COORDINATOR_ENVIRONMENT = "coordinator"
STOP_MAX_ITERATIONS = "max_iterations"

# checkpoint_pre, analyze, persist_jobs, dispatch, merge, record, checkpoint_post, advance
_NODES_PER_ITERATION = 8


class ControllerPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class ControllerState(TypedDict, total=False):
    iteration: int
    jobs: list[dict[str, Any]]
    results: list[dict[str, Any]]
    stop_reason: str | None


@dataclass(frozen=True)
class RunSummary:
    iterations: int
    stop_reason: str
    history: list[IterationResult] = field(default_factory=list)

    @property
    def jobs_completed(self) -> int:
        return sum(result.jobs_completed for result in self.history)

    @property
    def jobs_failed(self) -> int:
        return sum(result.jobs_failed for result in self.history)


class IterationController:
    """Drives iterations until analysis yields no jobs or the iteration limit is hit.

    The coordinating environment is created by ``run()`` and deleted when it
    returns, whether the loop stopped normally or raised.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings,
        store: JobStore,
        provider: EnvironmentProvider,
        oracle: Oracle,
        events: CoordinatorEvents,
    ) -> None:
        self.settings = settings
        self.store = store
        self.provider = provider
        self.oracle = oracle
        self.events = events
        self.dispatch = DispatchStage(
            store=store,
            provider=provider,
            oracle=oracle,
            events=events,
            settings=settings,
        )
        self.phase = ControllerPhase.IDLE
        self.iteration = 0
        self.history: list[IterationResult] = []
        self.environment: ExecutionEnvironment | None = None
        self.analysis: AnalysisStage | None = None
        self.merge: MergeStage | None = None
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(ControllerState)
        graph.add_node("checkpoint_pre", self._checkpoint_pre_node)
        graph.add_node("analyze", self._analyze_node)
        graph.add_node("persist_jobs", self._persist_jobs_node)
        graph.add_node("dispatch", self._dispatch_node)
        graph.add_node("merge", self._merge_node)
        graph.add_node("record", self._record_node)
        graph.add_node("checkpoint_post", self._checkpoint_post_node)
        graph.add_node("advance", self._advance_node)
        graph.add_node("stop", self._stop_node)

        graph.add_edge(START, "checkpoint_pre")
        graph.add_edge("checkpoint_pre", "analyze")
        graph.add_conditional_edges(
            "analyze",
            self._analyze_route,
            {
                "persist_jobs": "persist_jobs",
                "stop": "stop",
            },
        )
        graph.add_edge("persist_jobs", "dispatch")
        graph.add_edge("dispatch", "merge")
        graph.add_edge("merge", "record")
        graph.add_edge("record", "checkpoint_post")
        graph.add_edge("checkpoint_post", "advance")
        graph.add_conditional_edges(
            "advance",
            self._advance_route,
            {
                "checkpoint_pre": "checkpoint_pre",
                "stop": "stop",
            },
        )
        graph.add_edge("stop", END)
        return graph

    @property
    def recursion_limit(self) -> int:
        return self.settings.max_iterations * _NODES_PER_ITERATION + 4

    async def run(self) -> RunSummary:
        repo_url = self.settings.require_repo_url()
        if self.phase is not ControllerPhase.IDLE:
            raise RuntimeError(f"controller cannot run from phase {self.phase.value}")
        self.phase = ControllerPhase.RUNNING
        logger.info(
            "Starting builder: repo=%s branch=%s max_workers=%s max_iterations=%s",
            self.settings.repo_url,
            self.settings.repo_branch,
            self.settings.max_workers,
            self.settings.max_iterations,
        )
        try:
            async with acquire_environment(self.provider, COORDINATOR_ENVIRONMENT) as environment:
                self.environment = environment
                checkout = environment.root / self.settings.project_path
                git = GitClient(
                    environment,
                    checkout,
                    author_name=self.settings.git_author_name,
                    author_email=self.settings.git_author_email,
                )
                logger.info("Cloning %s into coordinating environment", self.settings.repo_url)
                await git.clone(repo_url, self.settings.repo_branch, token=self.settings.git_token)
                self.analysis = AnalysisStage(
                    oracle=self.oracle,
                    environment=environment,
                    checkout=checkout,
                    settings=self.settings,
                )
                self.merge = MergeStage(git=git, events=self.events)
                final_state = await self.graph.ainvoke(
                    {"iteration": 1, "jobs": [], "results": [], "stop_reason": None},
                    config={"recursion_limit": self.recursion_limit},
                )
        finally:
            self.phase = ControllerPhase.STOPPED
            self.environment = None

        summary = RunSummary(
            iterations=self.iteration,
            stop_reason=final_state.get("stop_reason") or STOP_MAX_ITERATIONS,
            history=list(self.history),
        )
        logger.info(
            "Builder finished after %s iterations (%s): %s completed, %s failed",
            summary.iterations,
            summary.stop_reason,
            summary.jobs_completed,
            summary.jobs_failed,
        )
        return summary

    async def _checkpoint(self, name: str) -> None:
        environment = self.environment
        if not isinstance(environment, SupportsCheckpoint):
            return
        try:
            await suspend(environment.checkpoint(name))
            logger.info("Checkpoint %s created", name)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Checkpoint %s failed: %s", name, exc)

    async def _checkpoint_pre_node(self, state: ControllerState) -> dict[str, Any]:
        iteration = state["iteration"]
        self.iteration = iteration
        logger.info("=== ITERATION %s ===", iteration)
        self.events.emit_iteration_start(iteration)
        await self._checkpoint(f"pre-iteration-{iteration}")
        return {"jobs": [], "results": []}

    async def _analyze_node(self, state: ControllerState) -> dict[str, Any]:
        if self.analysis is None:
            raise RuntimeError("analysis stage is not initialized")
        outcome = await self.analysis.analyze(state["iteration"])
        if outcome.should_stop:
            return {"jobs": [], "stop_reason": outcome.status.value}
        return {"jobs": [job.to_wire() for job in outcome.jobs]}

    def _analyze_route(self, state: ControllerState) -> str:
        if state.get("jobs"):
            return "persist_jobs"
        return "stop"

    async def _persist_jobs_node(self, state: ControllerState) -> dict[str, Any]:
        persisted: list[dict[str, Any]] = []
        for payload in state["jobs"]:
            job = Job.model_validate(payload)
            job_id = self._unused_job_id(job.id, state["iteration"])
            if job_id != job.id:
                logger.info("Job id %s is already recorded; persisting as %s", job.id, job_id)
                job = job.model_copy(update={"id": job_id})
            self.store.create(job)
            persisted.append(job.to_wire())
        return {"jobs": persisted}

    def _unused_job_id(self, job_id: str, iteration: int) -> str:
        """Suffix ids that collide with an earlier record so its history survives."""
        if self.store.locate(job_id) is None:
            return job_id
        candidate = f"{job_id}-i{iteration}"
        attempt = 2
        while self.store.locate(candidate) is not None:
            candidate = f"{job_id}-i{iteration}-{attempt}"
            attempt += 1
        return candidate

    async def _dispatch_node(self, state: ControllerState) -> dict[str, Any]:
        jobs = [Job.model_validate(payload) for payload in state["jobs"]]
        results = await self.dispatch.run(jobs, state["iteration"])
        return {"results": [result.to_wire() for result in results]}

    async def _merge_node(self, state: ControllerState) -> dict[str, Any]:
        if self.merge is None:
            raise RuntimeError("merge stage is not initialized")
        await self.merge.run(_successful_branches(state["results"]))
        return {}

    async def _record_node(self, state: ControllerState) -> dict[str, Any]:
        results = [WorkerResult.model_validate(payload) for payload in state["results"]]
        branches = [result.branch for result in results if result.success]
        result = IterationResult(
            iteration=state["iteration"],
            jobs_completed=len(branches),
            jobs_failed=len(results) - len(branches),
            branches=branches,
        )
        self.history.append(result)
        write_product_state(
            self.settings.product_state_file,
            self.history,
            total_iterations=state["iteration"],
        )
        logger.info(
            "Iteration %s complete: %s completed, %s failed",
            result.iteration,
            result.jobs_completed,
            result.jobs_failed,
        )
        self.events.emit_iteration_complete(result)
        return {}

    async def _checkpoint_post_node(self, state: ControllerState) -> dict[str, Any]:
        await self._checkpoint(f"post-iteration-{state['iteration']}")
        return {}

    async def _advance_node(self, state: ControllerState) -> dict[str, Any]:
        iteration = state["iteration"]
        if iteration >= self.settings.max_iterations:
            logger.info("Reached max iterations (%s)", self.settings.max_iterations)
            return {"stop_reason": STOP_MAX_ITERATIONS}
        if self.settings.iteration_pause_seconds > 0:
            await asyncio.sleep(self.settings.iteration_pause_seconds)
        return {"iteration": iteration + 1}

    def _advance_route(self, state: ControllerState) -> str:
        if state.get("stop_reason"):
            return "stop"
        return "checkpoint_pre"

    async def _stop_node(self, state: ControllerState) -> dict[str, Any]:
        reason = state.get("stop_reason") or STOP_MAX_ITERATIONS
        if reason != STOP_MAX_ITERATIONS:
            logger.info("No jobs generated (%s). Product may be complete.", reason)
        return {"stop_reason": reason}


def _successful_branches(results: list[dict[str, Any]]) -> list[str]:
    return [payload["branch"] for payload in results if payload.get("success")]
