from __future__ import annotations

import logging
from pathlib import Path
from urllib.parse import quote, urlsplit, urlunsplit

from .environments import CommandResult, ExecutionEnvironment
from .errors import CommandError
from .utils import suspend

logger = logging.getLogger(__name__)


def inject_credentials(repo_url: str, token: str) -> str:
    """Embed *token* into an https remote URL. Other URL schemes are returned unchanged."""
    if not token:
        return repo_url
    parts = urlsplit(repo_url)
    if parts.scheme not in {"http", "https"} or not parts.hostname:
        return repo_url
    host = parts.hostname
    if parts.port is not None:
        host = f"{host}:{parts.port}"
    netloc = f"x-access-token:{quote(token, safe='')}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def redact_credentials(text: str, token: str) -> str:
    if not token:
        return text
    return text.replace(token, "***").replace(quote(token, safe=""), "***")


class GitClient:
    """Git command contract executed inside one execution environment.

    Every method awaits a single ``git`` invocation (or a short fixed
    sequence) and raises ``CommandError`` if git exits non-zero.
    """

    def __init__(
        self,
        environment: ExecutionEnvironment,
        checkout: Path,
        *,
        author_name: str = "Emergent Builder",
        author_email: str = "emergent-builder@localhost",
        timeout: float | None = None,
    ) -> None:
        self.environment = environment
        self.checkout = checkout
        self.author_name = author_name
        self.author_email = author_email
        self.timeout = timeout

    async def _git(self, *args: str, cwd: Path | None = None) -> CommandResult:
        argv = [
            "git",
            "-c",
            f"user.name={self.author_name}",
            "-c",
            f"user.email={self.author_email}",
            *args,
        ]
        return await suspend(
            self.environment.run(argv, cwd=cwd if cwd is not None else self.checkout),
            timeout=self.timeout,
        )

    async def clone(self, repo_url: str, branch: str, *, token: str = "") -> None:
        url = inject_credentials(repo_url, token)
        try:
            await self._git("clone", "--branch", branch, url, str(self.checkout), cwd=self.environment.root)
        except CommandError as exc:
            # The clone URL may carry a token; never surface it in logs or errors.
            argv = [redact_credentials(arg, token) for arg in exc.argv]
            raise CommandError(argv, exc.returncode, "", redact_credentials(exc.stderr, token)) from None

    async def create_branch(self, branch: str) -> None:
        await self._git("checkout", "-b", branch)

    async def stage_all(self) -> None:
        await self._git("add", "-A")

    async def commit(self, message: str) -> None:
        await self._git("commit", "-m", message)

    async def push_branch(self, branch: str) -> None:
        await self._git("push", "-u", "origin", branch)

    async def fetch_all(self) -> None:
        await self._git("fetch", "--all")

    async def merge(self, ref: str) -> None:
        await self._git("merge", ref, "--no-edit")

    async def abort_merge(self) -> None:
        """Abort an in-progress merge and restore a clean working tree."""
        try:
            await self._git("merge", "--abort")
        except CommandError as exc:
            logger.warning("git merge --abort failed (%s); resetting working tree", exc.stderr.strip())
            await self._git("reset", "--hard", "HEAD")

    async def push(self) -> None:
        await self._git("push")
