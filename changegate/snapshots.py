"""Snapshot sources: turn an exported low-code application into files."""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import Protocol

from changegate.core.errors import NotFoundError, ValidationError
from changegate.models.domain import SnapshotFile

_logger = logging.getLogger(__name__)

BINARY_EXTENSIONS = frozenset(
    {
        ".mxunit",
        ".mpr",
        ".mpk",
        ".png",
        ".jpg",
        ".jpeg",
        ".gif",
        ".ico",
        ".svg",
        ".woff",
        ".woff2",
        ".ttf",
        ".eot",
        ".pdf",
        ".zip",
        ".jar",
        ".class",
        ".exe",
        ".dll",
        ".so",
        ".dylib",
    }
)


def looks_binary(path: str, content: bytes) -> bool:
    if PurePosixPath(path).suffix.lower() in BINARY_EXTENSIONS:
        return True
    try:
        content.decode("utf-8")
    except UnicodeDecodeError:
        return True
    return False


def normalize_snapshot_path(path: str) -> str:
    """Return a repository-relative POSIX path, rejecting escapes."""

    normalized = PurePosixPath(path.replace("\\", "/").lstrip("/"))
    if not normalized.parts or any(part in ("..", "") for part in normalized.parts):
        raise ValidationError(f"Invalid snapshot path: {path!r}")
    return str(normalized)


class SnapshotSource(Protocol):
    def extract(self, app_id: str) -> list[SnapshotFile]:  # pragma: no cover - interface
        ...


class DirectorySnapshotSource:
    """Reads exported applications from ``<root>/<app_id>``.

    Hidden files and directories are skipped.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def extract(self, app_id: str) -> list[SnapshotFile]:
        app_dir = self._root / app_id
        if not app_dir.is_dir():
            raise NotFoundError(f"No exported snapshot for app {app_id}", code="SNAPSHOT_NOT_FOUND")

        files: list[SnapshotFile] = []
        for path in sorted(app_dir.rglob("*")):
            relative = path.relative_to(app_dir)
            if any(part.startswith(".") for part in relative.parts) or not path.is_file():
                continue
            content = path.read_bytes()
            posix = relative.as_posix()
            files.append(SnapshotFile(path=posix, content=content, is_binary=looks_binary(posix, content)))
        _logger.debug("Extracted %d files for app %s", len(files), app_id)
        return files
