"""Filesystem backend handed to deep agents working inside a checkout.

The agent sees the checkout as a virtual filesystem rooted at ``/``. Reads
are unrestricted; writes, edits and uploads that target git metadata are
refused so the agent cannot corrupt the repository it is editing. Commits
and pushes stay with the dispatch stage.
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath

from deepagents.backends import FilesystemBackend
from deepagents.backends.protocol import (
    BackendProtocol,
    EditResult,
    FileDownloadResponse,
    FileInfo,
    FileUploadResponse,
    GrepMatch,
    WriteResult,
)

logger = logging.getLogger(__name__)

PROTECTED_DIRS = frozenset({".git"})


def is_protected_path(file_path: str) -> bool:
    return any(part in PROTECTED_DIRS for part in PurePosixPath(file_path).parts)


class GitMetadataGuardBackend(BackendProtocol):
    """Delegates to an inner backend, denying modifications under ``.git/``."""

    _DENIED_ERROR = "Cannot modify repository metadata: {path}"

    def __init__(self, backend: BackendProtocol) -> None:
        self._backend = backend

    def _denied(self, file_path: str) -> str:
        message = self._DENIED_ERROR.format(path=file_path)
        logger.warning(message)
        return message

    def ls_info(self, path: str) -> list[FileInfo]:
        return self._backend.ls_info(path)

    def read(self, file_path: str, offset: int = 0, limit: int = 2000) -> str:
        return self._backend.read(file_path, offset=offset, limit=limit)

    def grep_raw(self, pattern: str, path: str | None = None, glob: str | None = None) -> list[GrepMatch] | str:
        return self._backend.grep_raw(pattern, path=path, glob=glob)

    def glob_info(self, pattern: str, path: str = "/") -> list[FileInfo]:
        return self._backend.glob_info(pattern, path=path)

    def write(self, file_path: str, content: str) -> WriteResult:
        if is_protected_path(file_path):
            return WriteResult(error=self._denied(file_path))
        return self._backend.write(file_path, content)

    def edit(self, file_path: str, old_string: str, new_string: str, replace_all: bool = False) -> EditResult:
        if is_protected_path(file_path):
            return EditResult(error=self._denied(file_path))
        return self._backend.edit(file_path, old_string, new_string, replace_all=replace_all)

    def upload_files(self, files: list[tuple[str, bytes]]) -> list[FileUploadResponse]:
        """Upload files; the whole batch is rejected if any target is protected."""
        blocked = [path for path, _ in files if is_protected_path(path)]
        if blocked:
            for path in blocked:
                self._denied(path)
            return [FileUploadResponse(path=path, error="permission_denied") for path in blocked]
        return self._backend.upload_files(files)

    def download_files(self, paths: list[str]) -> list[FileDownloadResponse]:
        return self._backend.download_files(paths)


def build_workspace_backend(checkout: Path) -> BackendProtocol:
    """Backend for an agent whose whole world is *checkout*."""
    return GitMetadataGuardBackend(FilesystemBackend(root_dir=checkout, virtual_mode=True))
