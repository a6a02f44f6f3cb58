from __future__ import annotations


class EmergentBuilderError(RuntimeError):
    """Base class for errors raised by the builder."""


class CommandError(EmergentBuilderError):
    """Raised when a command inside an execution environment exits non-zero."""

    def __init__(self, argv: list[str], returncode: int, stdout: str = "", stderr: str = "") -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr or stdout).strip()[:500]
        super().__init__(f"Command {' '.join(self.argv)!r} exited with code {returncode}: {detail}")


class OracleError(EmergentBuilderError):
    """Raised when the oracle cannot produce a usable response."""


class WorkspaceEscapeError(EmergentBuilderError):
    """Raised when a path resolves outside of the workspace it belongs to."""
