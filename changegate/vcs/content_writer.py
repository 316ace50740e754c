"""Low-level writer for blobs, trees, commits and refs on a GitHub repository."""

from __future__ import annotations

import base64
import logging
import time
from typing import Callable, Optional, Sequence, TypeVar

from github import InputGitTreeElement

from changegate.core.errors import ConflictError, NotFoundError, RemoteUnavailableError, ValidationError
from changegate.models.domain import SnapshotFile
from changegate.vcs.github_client import REMOTE_ERRORS, translate_github_error

_logger = logging.getLogger(__name__)

FILE_MODE = "100644"

T = TypeVar("T")


def is_binary_file(file: SnapshotFile) -> bool:
    if file.is_binary:
        return True
    try:
        file.content.decode("utf-8")
    except UnicodeDecodeError:
        return True
    return False


class ContentObjectWriter:
    """Writes content-addressed objects to one repository.

    Every write is retried on ``RemoteUnavailableError`` a bounded number of
    times. Refs are never force-updated.
    """

    def __init__(
        self,
        repository,
        *,
        blob_batch_size: int = 10,
        blob_batch_delay_seconds: float = 0.1,
        write_retries: int = 3,
        write_backoff_seconds: float = 1.0,
        ref_read_attempts: int = 3,
        ref_read_backoff_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._repo = repository
        self._blob_batch_size = max(blob_batch_size, 1)
        self._blob_batch_delay = blob_batch_delay_seconds
        self._write_retries = max(write_retries, 0)
        self._write_backoff = write_backoff_seconds
        self._ref_read_attempts = max(ref_read_attempts, 1)
        self._ref_read_backoff = ref_read_backoff_seconds
        self._sleep = sleep
        self._trees: dict[str, object] = {}

    @property
    def repository_name(self) -> str:
        return getattr(self._repo, "full_name", "<repository>")

    def default_branch(self) -> str:
        return self._call(lambda: self._repo.default_branch, "read default branch")

    def write_tree(self, files: Sequence[SnapshotFile], base_tree_id: Optional[str] = None) -> str:
        """Create a tree holding ``files``, layered over ``base_tree_id`` when given.

        Binary files are uploaded as base64 blobs first; a failure on any blob
        aborts before the tree is created.
        """

        if not files:
            raise ValidationError("Snapshot contains no files")

        binaries = [file for file in files if is_binary_file(file)]
        blob_shas = self._write_blobs(binaries)

        elements = []
        for file in files:
            if file.path in blob_shas:
                elements.append(InputGitTreeElement(file.path, FILE_MODE, "blob", sha=blob_shas[file.path]))
            else:
                elements.append(
                    InputGitTreeElement(file.path, FILE_MODE, "blob", content=file.content.decode("utf-8"))
                )

        if base_tree_id:
            base_tree = self._call(lambda: self._repo.get_git_tree(base_tree_id), f"read tree {base_tree_id}")
            tree = self._write(lambda: self._repo.create_git_tree(elements, base_tree), "create tree")
        else:
            tree = self._write(lambda: self._repo.create_git_tree(elements), "create tree")
        self._trees[tree.sha] = tree
        _logger.debug(
            "Wrote tree %s with %d entries (%d binary) to %s",
            tree.sha,
            len(elements),
            len(blob_shas),
            self.repository_name,
        )
        return tree.sha

    def commit(self, tree_id: str, parent_id: Optional[str], message: str) -> str:
        """Create a commit; ``parent_id=None`` produces a root commit."""

        tree = self._trees.get(tree_id)
        if tree is None:
            tree = self._call(lambda: self._repo.get_git_tree(tree_id), f"read tree {tree_id}")
        parents = []
        if parent_id:
            parents.append(self._call(lambda: self._repo.get_git_commit(parent_id), f"read commit {parent_id}"))
        commit = self._write(lambda: self._repo.create_git_commit(message, tree, parents), "create commit")
        return commit.sha

    def tree_of(self, commit_id: str) -> str:
        commit = self._call(lambda: self._repo.get_git_commit(commit_id), f"read commit {commit_id}")
        return commit.tree.sha

    def read_ref(self, branch: str, attempts: Optional[int] = None, backoff_seconds: Optional[float] = None) -> str:
        """Return the commit sha ``branch`` points at.

        A 404 is retried ``attempts`` times in total, since a ref created a
        moment ago may not be visible yet. Raises ``NotFoundError`` after that.
        """

        attempts = self._ref_read_attempts if attempts is None else max(attempts, 1)
        backoff = self._ref_read_backoff if backoff_seconds is None else backoff_seconds
        for attempt in range(1, attempts + 1):
            try:
                ref = self._call(lambda: self._repo.get_git_ref(f"heads/{branch}"), f"read ref {branch}")
                return ref.object.sha
            except NotFoundError:
                if attempt < attempts:
                    _logger.debug("Ref %s not visible yet (attempt %d/%d)", branch, attempt, attempts)
                    self._sleep(backoff)
        raise NotFoundError(f"Branch {branch} not found in {self.repository_name}", code="REF_NOT_FOUND")

    def ref_exists(self, branch: str) -> bool:
        try:
            self.read_ref(branch, attempts=1)
        except NotFoundError:
            return False
        return True

    def advance_ref(self, branch: str, commit_sha: str, allow_create: bool = False) -> None:
        """Point ``branch`` at ``commit_sha`` with a fast-forward update, or create it."""

        try:
            ref = self._call(lambda: self._repo.get_git_ref(f"heads/{branch}"), f"read ref {branch}")
        except NotFoundError:
            ref = None

        if ref is not None:
            try:
                self._write(lambda: ref.edit(commit_sha, force=False), f"update ref {branch}")
            except ValidationError as exc:
                raise ConflictError(f"Branch {branch} cannot fast-forward to {commit_sha}") from exc
            return

        if not allow_create:
            raise NotFoundError(f"Branch {branch} not found in {self.repository_name}", code="REF_NOT_FOUND")
        try:
            self._write(
                lambda: self._repo.create_git_ref(f"refs/heads/{branch}", commit_sha),
                f"create ref {branch}",
            )
        except ValidationError as exc:
            # A retried create whose first attempt landed reports "already exists".
            try:
                current = self.read_ref(branch, attempts=1)
            except NotFoundError:
                current = None
            if current != commit_sha:
                raise ConflictError(f"Branch {branch} already exists in {self.repository_name}") from exc

    def delete_ref(self, branch: str) -> bool:
        """Delete ``branch``; returns False when it was already gone."""

        try:
            ref = self._call(lambda: self._repo.get_git_ref(f"heads/{branch}"), f"read ref {branch}")
            self._write(ref.delete, f"delete ref {branch}")
        except NotFoundError:
            return False
        return True

    def merge(self, base: str, head: str, message: str) -> Optional[str]:
        """Merge ``head`` into ``base``; returns None when there was nothing to merge."""

        commit = self._write(lambda: self._repo.merge(base, head, message), f"merge {head} into {base}")
        if commit is None:
            return None
        return commit.sha

    def contains(self, base: str, commit_sha: str) -> bool:
        """True when ``commit_sha`` is already reachable from ``base``."""

        comparison = self._call(lambda: self._repo.compare(base, commit_sha), f"compare {commit_sha} with {base}")
        return comparison.status in {"behind", "identical"}

    def _write_blobs(self, files: Sequence[SnapshotFile]) -> dict[str, str]:
        shas: dict[str, str] = {}
        for start in range(0, len(files), self._blob_batch_size):
            if start:
                self._sleep(self._blob_batch_delay)
            for file in files[start : start + self._blob_batch_size]:
                encoded = base64.b64encode(file.content).decode("ascii")
                blob = self._write(lambda: self._repo.create_git_blob(encoded, "base64"), f"create blob {file.path}")
                shas[file.path] = blob.sha
        return shas

    def _write(self, operation: Callable[[], T], context: str) -> T:
        attempt = 0
        while True:
            try:
                return self._call(operation, context)
            except RemoteUnavailableError:
                if attempt >= self._write_retries:
                    raise
                attempt += 1
                _logger.warning(
                    "%s on %s failed; retrying (%d/%d)",
                    context,
                    self.repository_name,
                    attempt,
                    self._write_retries,
                )
                self._sleep(self._write_backoff)

    @staticmethod
    def _call(operation: Callable[[], T], context: str) -> T:
        try:
            return operation()
        except REMOTE_ERRORS as exc:
            raise translate_github_error(exc, context) from exc
