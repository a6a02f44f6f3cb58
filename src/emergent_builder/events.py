"""Coordinator event bus.

``CoordinatorEvents`` is constructed once at process start and handed to every
component that emits events (job store, stages, controller) and to every
observer (the dashboard hub). Listeners are plain callables invoked
synchronously, in emission order, on the emitting thread.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from .models import DashboardEvent, IterationResult, Job, JobBucket

logger = logging.getLogger(__name__)

EventListener = Callable[[DashboardEvent], None]

ITERATION_START = "iteration:start"
ITERATION_COMPLETE = "iteration:complete"
JOB_CREATED = "job:created"
JOB_STATUS = "job:status"
WORKER_SPAWNED = "worker:spawned"
MERGE_START = "merge:start"
MERGE_COMPLETE = "merge:complete"


class CoordinatorEvents:
    """Typed publish/subscribe channel from the coordinator to its observers."""

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []
        self._lock = threading.Lock()
        self._enabled = True
        self._closed = False

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register *listener* and return a callable that unsubscribes it."""
        with self._lock:
            if self._closed:
                raise RuntimeError("CoordinatorEvents has been closed")
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            self.unsubscribe(listener)

        return _unsubscribe

    def unsubscribe(self, listener: EventListener) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled

    def close(self) -> None:
        """Drop every listener. Further subscriptions are rejected."""
        with self._lock:
            self._listeners.clear()
            self._closed = True

    def emit(self, event_type: str, data: dict[str, Any]) -> DashboardEvent | None:
        with self._lock:
            listeners = list(self._listeners)
        if not self._enabled or not listeners:
            return None
        event = DashboardEvent(type=event_type, data=data)
        for listener in listeners:
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Event listener failed while handling %s", event_type)
        return event

    def emit_iteration_start(self, iteration: int) -> None:
        self.emit(ITERATION_START, {"iteration": iteration})

    def emit_iteration_complete(self, result: IterationResult) -> None:
        self.emit(ITERATION_COMPLETE, result.to_wire())

    def emit_job_created(self, job: Job) -> None:
        self.emit(JOB_CREATED, {"job": job.to_wire()})

    def emit_job_status(self, job_id: str, status: JobBucket) -> None:
        self.emit(JOB_STATUS, {"jobId": job_id, "status": status.value})

    def emit_worker_spawned(self, job_id: str, worker_name: str) -> None:
        self.emit(WORKER_SPAWNED, {"jobId": job_id, "workerName": worker_name})

    def emit_merge_start(self, branches: list[str]) -> None:
        self.emit(MERGE_START, {"branches": list(branches)})

    def emit_merge_complete(self, success: bool, success_count: int, fail_count: int) -> None:
        self.emit(MERGE_COMPLETE, {"success": success, "successCount": success_count, "failCount": fail_count})
