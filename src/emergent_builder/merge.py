from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .errors import CommandError
from .events import CoordinatorEvents
from .git import GitClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeReport:
    merged: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    success: bool = True

    @property
    def fail_count(self) -> int:
        return len(self.skipped)


class MergeStage:
    """Folds successful job branches into the mainline of the coordinating checkout.

    Branches merge in the order given. A conflicting branch is aborted,
    the working tree restored, and the branch skipped. Fetch and push
    failures are logged and reported through ``MergeReport.success``. If the
    tree cannot be restored after a conflict, merging stops there, the rest
    are skipped and nothing is pushed.
    """

    def __init__(self, *, git: GitClient, events: CoordinatorEvents) -> None:
        self.git = git
        self.events = events

    async def run(self, branches: list[str]) -> MergeReport:
        if not branches:
            return MergeReport()

        logger.info("Merging %s branches", len(branches))
        self.events.emit_merge_start(branches)
        try:
            await self.git.fetch_all()
        except CommandError as exc:
            logger.error("git fetch failed, nothing merged: %s", exc)
            report = MergeReport(skipped=list(branches), success=False)
            self._emit_complete(report)
            return report

        merged: list[str] = []
        skipped: list[str] = []
        for position, branch in enumerate(branches):
            logger.info("Merging %s", branch)
            try:
                await self.git.merge(f"origin/{branch}")
            except CommandError as exc:
                logger.warning("Conflict merging %s, skipping: %s", branch, exc.stderr.strip() or exc)
                skipped.append(branch)
                try:
                    await self.git.abort_merge()
                except CommandError as cleanup_exc:
                    logger.error("Could not restore the working tree after %s, merge stopped: %s", branch, cleanup_exc)
                    report = MergeReport(merged=merged, skipped=skipped + branches[position + 1 :], success=False)
                    self._emit_complete(report)
                    return report
                continue
            merged.append(branch)

        success = True
        try:
            await self.git.push()
        except CommandError as exc:
            logger.error("Failed to push merged mainline: %s", exc)
            success = False

        report = MergeReport(merged=merged, skipped=skipped, success=success)
        logger.info("Merge complete: %s merged, %s skipped", len(merged), len(skipped))
        self._emit_complete(report)
        return report

    def _emit_complete(self, report: MergeReport) -> None:
        self.events.emit_merge_complete(
            success=report.success,
            success_count=len(report.merged),
            fail_count=report.fail_count,
        )
