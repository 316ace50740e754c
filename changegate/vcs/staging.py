"""Staging branch lifecycle: derive names, stage snapshots, merge and tear down."""

from __future__ import annotations

import logging
import re
import threading
import time
from typing import Callable, Optional, Sequence

from changegate.core.errors import ChangeGateError, ConflictError, NotFoundError
from changegate.models.domain import MergeResult, OrganizationRecord, SnapshotFile, StagingResult
from changegate.vcs.content_writer import ContentObjectWriter

_logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "staging/"
DEFAULT_MAX_LENGTH = 75

_WHITESPACE = re.compile(r"\s+")
_DISALLOWED = re.compile(r"[^a-z0-9-]")
_HYPHEN_RUNS = re.compile(r"-+")


class BranchStamps:
    """Millisecond stamps that never repeat for the owner of this instance."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last = 0

    def next(self, now_ms: int) -> int:
        with self._lock:
            self._last = max(now_ms, self._last + 1)
            return self._last


def slugify_title(title: str, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    slug = title.lower().strip()
    slug = _WHITESPACE.sub("-", slug)
    slug = _DISALLOWED.sub("", slug)
    slug = _HYPHEN_RUNS.sub("-", slug).strip("-")
    return slug[:max_length].rstrip("-")


def derive_branch_name(
    title: str,
    prefix: str = DEFAULT_PREFIX,
    max_length: int = DEFAULT_MAX_LENGTH,
    clock: Callable[[], float] = time.time,
    stamps: BranchStamps | None = None,
) -> str:
    """Map a change title onto a staging branch name.

    Titles that slug down to nothing fall back to ``<prefix>change-<ms>``.
    """

    slug = slugify_title(title, max_length)
    if not slug:
        stamps = stamps or BranchStamps()
        slug = f"change-{stamps.next(int(clock() * 1000))}"
    return f"{prefix}{slug}"


class StagingBranchManager:
    """Creates, merges and removes staging branches in one repository."""

    def __init__(
        self,
        writer: ContentObjectWriter,
        *,
        prefix: str = DEFAULT_PREFIX,
        max_length: int = DEFAULT_MAX_LENGTH,
        mainline: str | None = None,
        stamps: BranchStamps | None = None,
    ) -> None:
        self._writer = writer
        self._prefix = prefix
        self._max_length = max_length
        self._mainline = mainline
        self._stamps = stamps or BranchStamps()

    @property
    def mainline(self) -> str:
        if self._mainline is None:
            self._mainline = self._writer.default_branch()
        return self._mainline

    def branch_name_for(self, title: str) -> str:
        return derive_branch_name(title, self._prefix, self._max_length, stamps=self._stamps)

    def create_staging_branch(
        self,
        title: str,
        files: Sequence[SnapshotFile],
        message: str,
    ) -> StagingResult:
        branch = self.branch_name_for(title)
        if self._writer.ref_exists(branch):
            raise ConflictError(
                f"Staging branch {branch} already exists in {self._writer.repository_name}",
                code="BRANCH_EXISTS",
            )

        base_commit = self._mainline_tip()
        base_tree = self._writer.tree_of(base_commit) if base_commit else None
        tree_sha = self._writer.write_tree(files, base_tree)
        commit_sha = self._writer.commit(tree_sha, base_commit, message)
        self._writer.advance_ref(branch, commit_sha, allow_create=True)
        _logger.info(
            "Staged %d files on %s@%s (base %s)",
            len(files),
            branch,
            commit_sha,
            base_commit or "orphan",
        )
        return StagingResult(branch=branch, commit_sha=commit_sha, tree_sha=tree_sha, base_commit_sha=base_commit)

    def update_staging_branch(self, branch: str, files: Sequence[SnapshotFile], message: str) -> StagingResult:
        """Commit a fresh snapshot on top of an existing staging branch."""

        tip = self._writer.read_ref(branch)
        tree_sha = self._writer.write_tree(files, self._writer.tree_of(tip))
        commit_sha = self._writer.commit(tree_sha, tip, message)
        self._writer.advance_ref(branch, commit_sha, allow_create=False)
        _logger.info("Updated %s to %s", branch, commit_sha)
        return StagingResult(branch=branch, commit_sha=commit_sha, tree_sha=tree_sha, base_commit_sha=tip)

    def merge_staging_to_main(self, branch: str, commit_message: str, head_sha: str | None = None) -> MergeResult:
        """Merge ``branch`` into the mainline, then delete it.

        A conflicting merge raises ``ConflictError`` and leaves the branch in
        place. Deletion failures are logged and reported, not raised. When the
        branch is gone but ``head_sha`` already sits on the mainline, the
        earlier merge is reported as a success.
        """

        try:
            merge_sha = self._writer.merge(self.mainline, branch, commit_message)
        except NotFoundError:
            if head_sha is None or not self._merged_earlier(head_sha):
                raise
            _logger.info("%s was already merged into %s and removed", branch, self.mainline)
            return MergeResult(branch=branch, merged=True, merge_commit_sha=None, branch_deleted=True)
        if merge_sha is None:
            _logger.info("Mainline already contains %s; nothing to merge", branch)
        deleted = self.delete_staging_branch(branch)
        return MergeResult(branch=branch, merged=True, merge_commit_sha=merge_sha, branch_deleted=deleted)

    def delete_staging_branch(self, branch: str) -> bool:
        try:
            if not self._writer.delete_ref(branch):
                _logger.info("Staging branch %s was already deleted", branch)
            return True
        except ChangeGateError as exc:
            _logger.warning("Failed to delete staging branch %s: %s", branch, exc.message)
            return False

    def _merged_earlier(self, head_sha: str) -> bool:
        try:
            return self._writer.contains(self.mainline, head_sha)
        except NotFoundError:
            return False

    def _mainline_tip(self) -> Optional[str]:
        try:
            return self._writer.read_ref(self.mainline, attempts=1)
        except (NotFoundError, ConflictError):
            # Empty repositories have no mainline ref yet.
            return None


class StagingManagerFactory:
    """Builds a manager (and its writer) for an organization's repository."""

    def __init__(
        self,
        repositories: Callable[[OrganizationRecord, str], object],
        *,
        prefix: str = DEFAULT_PREFIX,
        max_length: int = DEFAULT_MAX_LENGTH,
        **writer_options,
    ) -> None:
        self._repositories = repositories
        self._prefix = prefix
        self._max_length = max_length
        self._writer_options = writer_options
        self._stamps = BranchStamps()

    def __call__(self, organization: OrganizationRecord, full_name: str) -> StagingBranchManager:
        writer = ContentObjectWriter(self._repositories(organization, full_name), **self._writer_options)
        return StagingBranchManager(writer, prefix=self._prefix, max_length=self._max_length, stamps=self._stamps)
