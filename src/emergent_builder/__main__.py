"""Entry point for `python -m emergent_builder` and the `emergent-builder` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

import uvicorn
from fastapi import FastAPI

from emergent_builder.controller import IterationController, RunSummary
from emergent_builder.dashboard import create_dashboard_app
from emergent_builder.environments import LocalEnvironmentProvider
from emergent_builder.events import CoordinatorEvents
from emergent_builder.job_store import JobStore
from emergent_builder.oracle import build_oracle
from emergent_builder.settings import RuntimeSettings

LOG_LEVEL_CHOICES = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--log-level", default="INFO", choices=LOG_LEVEL_CHOICES, help="Logging verbosity")

    parser = argparse.ArgumentParser(description="Autonomous job-based improvement loop for a git repository")
    subparsers = parser.add_subparsers(dest="command", required=True)
    run_parser = subparsers.add_parser("run", parents=[common], help="Run the iteration loop")
    run_parser.add_argument(
        "--dashboard",
        action="store_true",
        help="Serve the live dashboard from the same process while the loop runs",
    )
    subparsers.add_parser("dashboard", parents=[common], help="Serve the dashboard only, watching the jobs directory")
    return parser.parse_args(argv)


def _server(app: FastAPI, settings: RuntimeSettings, log_level: str) -> uvicorn.Server:
    config = uvicorn.Config(app, host=settings.dashboard_host, port=settings.dashboard_port, log_level=log_level.lower())
    return uvicorn.Server(config)


async def run_builder(settings: RuntimeSettings, *, with_dashboard: bool, log_level: str = "INFO") -> RunSummary:
    events = CoordinatorEvents()
    store = JobStore(settings.jobs_root, events=events)
    provider = LocalEnvironmentProvider(
        Path(settings.environments_root) if settings.environments_root else None,
        checkpoints=settings.checkpoints,
    )
    controller = IterationController(
        settings=settings,
        store=store,
        provider=provider,
        oracle=build_oracle(settings),
        events=events,
    )
    if not with_dashboard:
        return await controller.run()

    app = create_dashboard_app(
        store,
        events,
        public_dir=settings.public_dir,
        state_report_path=settings.product_state_file,
    )
    server = _server(app, settings, log_level)
    server_task = asyncio.create_task(server.serve())
    logging.info("Dashboard: http://%s:%s", settings.dashboard_host, settings.dashboard_port)
    try:
        return await controller.run()
    finally:
        server.should_exit = True
        await server_task
        events.close()


async def serve_dashboard(settings: RuntimeSettings, *, log_level: str = "INFO") -> None:
    events = CoordinatorEvents()
    store = JobStore(settings.jobs_root, events=events)
    app = create_dashboard_app(
        store,
        events,
        public_dir=settings.public_dir,
        state_report_path=settings.product_state_file,
        watch_interval=settings.watch_interval_seconds,
    )
    logging.info("Dashboard: http://%s:%s", settings.dashboard_host, settings.dashboard_port)
    await _server(app, settings, log_level).serve()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    if args.command == "dashboard":
        asyncio.run(serve_dashboard(settings, log_level=args.log_level))
        return 0

    try:
        summary = asyncio.run(run_builder(settings, with_dashboard=args.dashboard, log_level=args.log_level))
    except Exception as exc:  # noqa: BLE001
        logging.exception("Builder execution failed: %s", exc)
        return 1

    print(f"iterations={summary.iterations}")
    print(f"stop_reason={summary.stop_reason}")
    print(f"jobs_completed={summary.jobs_completed}")
    print(f"jobs_failed={summary.jobs_failed}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
