"""Live dashboard: HTTP snapshot API, WebSocket event push and static assets.

The dashboard never owns state. ``DashboardHub`` rebuilds its read model from
the job buckets whenever a job event arrives, so a fresh ``GET /api/state``
and the event-driven view agree once events settle.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse

from .events import ITERATION_START, JOB_CREATED, CoordinatorEvents
from .job_store import JobStore
from .models import DashboardEvent, DashboardState, JobBucket, sort_jobs, utc_now_iso
from .reporting import read_total_iterations

logger = logging.getLogger(__name__)

INITIAL = "initial"
JOB_UPDATED = "job:updated"
JOB_MOVED = "job:moved"


class DashboardHub:
    """Fans coordinator and watcher events out to connected WebSocket clients.

    Events may be emitted from any thread. Delivery hops onto the server's
    event loop with ``call_soon_threadsafe`` and lands in one queue per
    client, so each client sees events in emission order.
    """

    def __init__(self, store: JobStore, events: CoordinatorEvents, *, state_report_path: Path | None = None) -> None:
        self.store = store
        self.events = events
        self.state_report_path = state_report_path
        self._state = DashboardState()
        self._state_lock = threading.Lock()
        self._clients: dict[str, asyncio.Queue[DashboardEvent]] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribe: Callable[[], None] | None = None

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.events.subscribe(self.handle_event)
        self.refresh()

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def refresh(self) -> DashboardState:
        """Rebuild counts and job lists from the store and return a copy of the state."""
        counts = self.store.counts()
        jobs_list = self.store.snapshot()
        recorded = read_total_iterations(self.state_report_path) if self.state_report_path is not None else None
        with self._state_lock:
            iteration = self._state.iteration
            if recorded is not None:
                iteration = max(iteration, recorded)
            self._state = self._state.model_copy(
                update={
                    "iteration": iteration,
                    "jobs": counts,
                    "jobs_list": jobs_list,
                    "last_update": utc_now_iso(),
                }
            )
            return self._state.model_copy()

    def current_state(self) -> DashboardState:
        with self._state_lock:
            return self._state.model_copy()

    def initial_event(self) -> DashboardEvent:
        return DashboardEvent(type=INITIAL, data=self.refresh().to_wire())

    def handle_event(self, event: DashboardEvent) -> None:
        """Coordinator listener: update the read model, then broadcast."""
        with self._state_lock:
            update: dict[str, Any] = {"coordinator_connected": True, "last_update": event.timestamp}
            if event.type == ITERATION_START:
                update["iteration"] = int(event.data.get("iteration", self._state.iteration))
            self._state = self._state.model_copy(update=update)
        if event.type.startswith("job:"):
            self.refresh()
        self.broadcast(event)

    def handle_external(self, event: DashboardEvent) -> None:
        """Watcher listener: job files changed outside this process."""
        self.refresh()
        self.broadcast(event)

    def broadcast(self, event: DashboardEvent) -> None:
        loop = self._loop
        if loop is None or loop.is_closed() or not self._clients:
            return
        loop.call_soon_threadsafe(self._deliver, event)

    def _deliver(self, event: DashboardEvent) -> None:
        for queue in list(self._clients.values()):
            queue.put_nowait(event)
        logger.debug("Broadcast %s to %s client(s)", event.type, len(self._clients))

    def connect(self) -> tuple[str, asyncio.Queue[DashboardEvent]]:
        """Register a client on the running loop. Must be called from the server loop."""
        self._loop = asyncio.get_running_loop()
        client_id = uuid.uuid4().hex
        queue: asyncio.Queue[DashboardEvent] = asyncio.Queue()
        self._clients[client_id] = queue
        logger.info("Dashboard client connected (%s total)", len(self._clients))
        return client_id, queue

    def disconnect(self, client_id: str) -> None:
        self._clients.pop(client_id, None)
        logger.info("Dashboard client disconnected (%s remaining)", len(self._clients))


class JobDirectoryWatcher:
    """Polls the bucket directories and reports job files that appear, change or vanish.

    Files present when the watcher starts are not reported.
    """

    def __init__(
        self,
        store: JobStore,
        callback: Callable[[DashboardEvent], None],
        *,
        interval: float = 1.0,
    ) -> None:
        self.store = store
        self.callback = callback
        self.interval = interval
        self._known: dict[Path, int] = {}
        self._task: asyncio.Task[None] | None = None

    def prime(self) -> None:
        self._known = self._scan()

    def poll_once(self) -> list[DashboardEvent]:
        current = self._scan()
        emitted: list[DashboardEvent] = []
        for path, mtime in current.items():
            previous = self._known.get(path)
            if previous is None:
                event = self._job_event(JOB_CREATED, path)
            elif previous != mtime:
                event = self._job_event(JOB_UPDATED, path)
            else:
                continue
            if event is not None:
                emitted.append(event)
        for path in self._known.keys() - current.keys():
            emitted.append(
                DashboardEvent(type=JOB_MOVED, data={"jobId": path.stem, "oldStatus": path.parent.name})
            )
        self._known = current
        for event in emitted:
            self.callback(event)
        return emitted

    async def run(self) -> None:
        logger.info("Watching job files under %s", self.store.root)
        self.prime()
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.poll_once()
            except OSError as exc:
                logger.error("Job directory poll failed: %s", exc)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.debug("Job directory watcher stopped")

    def _scan(self) -> dict[Path, int]:
        found: dict[Path, int] = {}
        for bucket in JobBucket:
            directory = self.store.bucket_dir(bucket)
            if not directory.is_dir():
                continue
            for path in directory.glob("*.json"):
                if path.name.startswith("."):
                    continue
                try:
                    found[path] = path.stat().st_mtime_ns
                except FileNotFoundError:
                    continue
        return found

    def _job_event(self, event_type: str, path: Path) -> DashboardEvent | None:
        try:
            job = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Failed to read job file %s: %s", path, exc)
            return None
        return DashboardEvent(type=event_type, data={"job": job, "status": path.parent.name})


def resolve_public_file(public_root: Path, url_path: str) -> Path:
    """Map a request path onto a file under *public_root*.

    Raises:
        HTTPException: 403 if the path escapes the root, 404 if no such file exists.
    """
    root = public_root.resolve()
    relative = url_path.lstrip("/") or "index.html"
    target = (root / relative).resolve()
    if target != root and root not in target.parents:
        raise HTTPException(status_code=403, detail="Forbidden")
    if target.is_dir():
        target = target / "index.html"
    if not target.is_file():
        raise HTTPException(status_code=404, detail="Not Found")
    return target


def create_dashboard_app(
    store: JobStore,
    events: CoordinatorEvents,
    *,
    public_dir: Path,
    state_report_path: Path | None = None,
    watch_interval: float | None = None,
) -> FastAPI:
    """Build the dashboard application.

    ``watch_interval`` enables polling of the jobs directory, for when the
    dashboard runs in a different process from the coordinator.
    """
    hub = DashboardHub(store, events, state_report_path=state_report_path)
    watcher = (
        JobDirectoryWatcher(store, hub.handle_external, interval=watch_interval)
        if watch_interval is not None
        else None
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        hub.start()
        if watcher is not None:
            watcher.start()
        logger.info("Dashboard ready, serving %s", public_dir)
        try:
            yield
        finally:
            if watcher is not None:
                await watcher.stop()
            hub.stop()

    app = FastAPI(title="Emergent Builder Dashboard", lifespan=lifespan)
    app.state.hub = hub
    app.state.watcher = watcher

    @app.get("/api/state")
    async def get_state() -> dict[str, Any]:
        return hub.refresh().to_wire()

    @app.get("/api/jobs/{bucket}")
    async def get_jobs(bucket: str) -> list[dict[str, Any]]:
        try:
            selected = JobBucket(bucket)
        except ValueError:
            raise HTTPException(status_code=404, detail=f"Unknown bucket: {bucket}") from None
        return [job.to_wire() for job in sort_jobs(store.list(selected))]

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        client_id, queue = hub.connect()
        sender = asyncio.create_task(_pump_events(websocket, hub.initial_event(), queue))
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug("WebSocket client %s closed the connection", client_id)
        finally:
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                logger.debug("Sender for WebSocket client %s stopped", client_id)
            hub.disconnect(client_id)

    @app.get("/{path:path}")
    async def serve_static(path: str) -> FileResponse:
        return FileResponse(resolve_public_file(public_dir, path))

    return app


async def _pump_events(websocket: WebSocket, initial: DashboardEvent, queue: asyncio.Queue[DashboardEvent]) -> None:
    try:
        await websocket.send_json(initial.to_wire())
        while True:
            event = await queue.get()
            await websocket.send_json(event.to_wire())
    except Exception as exc:
        logger.debug("Stopped sending to WebSocket client: %s", exc)
