from __future__ import annotations

import base64
import hashlib
import itertools
from types import SimpleNamespace

import fakeredis
import pytest
from github import GithubException
from github.GithubException import UnknownObjectException

from changegate.models.domain import MemberRecord, OrganizationRecord, UserRole
from changegate.notifications import NotificationDispatcher
from changegate.repositories.redis_store import ChangeStore
from changegate.services.lifecycle import LifecycleOrchestrator
from changegate.services.pipelines import PipelineGate
from changegate.services.reviews import ReviewService
from changegate.vcs.staging import StagingManagerFactory

ORG_ID = "org-acme"


def _not_found() -> UnknownObjectException:
    return UnknownObjectException(404, {"message": "Not Found"}, None)


class FakeRef:
    def __init__(self, repo: "FakeRepository", name: str) -> None:
        self._repo = repo
        self._name = name
        self.ref = f"refs/heads/{name}"
        self.object = SimpleNamespace(sha=repo.refs[name])

    def edit(self, sha: str, force: bool = False) -> None:
        self._repo._record("edit_ref")
        current = self._repo.refs[self._name]
        if not force and not self._repo.is_ancestor(current, sha):
            raise GithubException(422, {"message": "Update is not a fast forward"}, None)
        self._repo.refs[self._name] = sha
        self.object = SimpleNamespace(sha=sha)

    def delete(self) -> None:
        self._repo._record("delete_ref")
        self._repo.refs.pop(self._name, None)


class FakeWorkflow:
    def __init__(self, repo: "FakeRepository", name: str) -> None:
        self._repo = repo
        self.name = name

    def create_dispatch(self, ref: str, inputs: dict | None = None) -> bool:
        self._repo._record("dispatch")
        self._repo.dispatches.append({"workflow": self.name, "ref": ref, "inputs": inputs or {}})
        return self._repo.dispatch_result


class FakeRepository:
    """In-memory stand-in for a PyGithub ``Repository`` git-data surface."""

    def __init__(self, full_name: str = "acme/shop-app", default_branch: str = "main") -> None:
        self.full_name = full_name
        self.default_branch = default_branch
        self.refs: dict[str, str] = {}
        self.blobs: dict[str, tuple[str, str]] = {}
        self.trees: dict[str, dict[str, dict]] = {}
        self.commits: dict[str, SimpleNamespace] = {}
        self.calls: list[str] = []
        self.failures: dict[str, list[Exception]] = {}
        self.hidden_refs: dict[str, int] = {}
        self.merge_conflict = False
        self.dispatches: list[dict] = []
        self.dispatch_result = True
        self.workflow_runs: dict[int, SimpleNamespace] = {}
        self._counter = itertools.count(1)

    # test helpers ----------------------------------------------------------

    def fail(self, operation: str, *errors: Exception) -> None:
        self.failures.setdefault(operation, []).extend(errors)

    def count(self, operation: str) -> int:
        return self.calls.count(operation)

    def seed_mainline(self, files: dict[str, str]) -> str:
        tree_sha = self._sha("tree")
        self.trees[tree_sha] = {
            path: {"path": path, "mode": "100644", "type": "blob", "content": content}
            for path, content in files.items()
        }
        commit_sha = self._sha("commit")
        self.commits[commit_sha] = SimpleNamespace(sha=commit_sha, tree=SimpleNamespace(sha=tree_sha), parents=[], message="init")
        self.refs[self.default_branch] = commit_sha
        return commit_sha

    def files_at(self, branch: str) -> dict[str, bytes]:
        commit = self.commits[self.refs[branch]]
        files: dict[str, bytes] = {}
        for path, entry in self.trees[commit.tree.sha].items():
            if "content" in entry:
                files[path] = entry["content"].encode("utf-8")
            else:
                content, _ = self.blobs[entry["sha"]]
                files[path] = base64.b64decode(content)
        return files

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        pending = [descendant]
        seen: set[str] = set()
        while pending:
            sha = pending.pop()
            if sha == ancestor:
                return True
            if sha in seen or sha not in self.commits:
                continue
            seen.add(sha)
            pending.extend(parent.sha for parent in self.commits[sha].parents)
        return False

    def _sha(self, kind: str) -> str:
        return hashlib.sha1(f"{kind}-{next(self._counter)}".encode()).hexdigest()

    def _record(self, operation: str) -> None:
        self.calls.append(operation)
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)

    # PyGithub surface ------------------------------------------------------

    def create_git_blob(self, content: str, encoding: str):
        self._record("create_blob")
        sha = self._sha("blob")
        self.blobs[sha] = (content, encoding)
        return SimpleNamespace(sha=sha)

    def get_git_tree(self, sha: str):
        self._record("get_tree")
        if sha not in self.trees:
            raise _not_found()
        return SimpleNamespace(sha=sha)

    def create_git_tree(self, tree, base_tree=None):
        self._record("create_tree")
        entries = dict(self.trees[base_tree.sha]) if base_tree is not None else {}
        for element in tree:
            identity = element._identity
            entries[identity["path"]] = identity
        sha = self._sha("tree")
        self.trees[sha] = entries
        return SimpleNamespace(sha=sha)

    def get_git_commit(self, sha: str):
        self._record("get_commit")
        if sha not in self.commits:
            raise _not_found()
        return self.commits[sha]

    def create_git_commit(self, message: str, tree, parents):
        self._record("create_commit")
        sha = self._sha("commit")
        self.commits[sha] = SimpleNamespace(
            sha=sha,
            tree=SimpleNamespace(sha=tree.sha),
            parents=list(parents),
            message=message,
        )
        return self.commits[sha]

    def get_git_ref(self, ref: str):
        self._record("get_ref")
        name = ref[len("heads/") :] if ref.startswith("heads/") else ref
        if self.hidden_refs.get(name):
            self.hidden_refs[name] -= 1
            raise _not_found()
        if name not in self.refs:
            raise _not_found()
        return FakeRef(self, name)

    def create_git_ref(self, ref: str, sha: str):
        self._record("create_ref")
        name = ref[len("refs/heads/") :]
        if name in self.refs:
            raise GithubException(422, {"message": "Reference already exists"}, None)
        self.refs[name] = sha
        return FakeRef(self, name)

    def merge(self, base: str, head: str, commit_message: str):
        self._record("merge")
        if self.merge_conflict:
            raise GithubException(409, {"message": "Merge conflict"}, None)
        if head not in self.refs:
            raise GithubException(404, {"message": "Head does not exist"}, None)
        head_sha = self.refs[head]
        base_sha = self.refs.get(base)
        if base_sha and self.is_ancestor(head_sha, base_sha):
            return None
        parents = [self.commits[sha] for sha in (base_sha, head_sha) if sha]
        sha = self._sha("merge")
        self.commits[sha] = SimpleNamespace(
            sha=sha,
            tree=self.commits[head_sha].tree,
            parents=parents,
            message=commit_message,
        )
        self.refs[base] = sha
        return self.commits[sha]

    def compare(self, base: str, head: str):
        self._record("compare")
        base_sha = self.refs.get(base, base)
        head_sha = self.refs.get(head, head)
        if base_sha not in self.commits or head_sha not in self.commits:
            raise _not_found()
        if base_sha == head_sha:
            status = "identical"
        elif self.is_ancestor(head_sha, base_sha):
            status = "behind"
        elif self.is_ancestor(base_sha, head_sha):
            status = "ahead"
        else:
            status = "diverged"
        return SimpleNamespace(status=status)

    def get_workflow(self, name: str):
        self._record("get_workflow")
        return FakeWorkflow(self, name)

    def get_workflow_run(self, run_id: int):
        self._record("get_workflow_run")
        if run_id not in self.workflow_runs:
            raise _not_found()
        return self.workflow_runs[run_id]


class RecordingNotifier:
    def __init__(self) -> None:
        self.delivered = []

    def deliver(self, notification) -> None:
        self.delivered.append(notification)

    def of_type(self, notification_type) -> list:
        return [item for item in self.delivered if item.type == notification_type]


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[dict] = []

    def publish(self, event: dict) -> None:
        self.events.append(event)

    def close(self) -> None:
        return None

    def types(self) -> list[str]:
        return [event["event_type"] for event in self.events]


def seed_organization(store: ChangeStore, *, pipeline_enabled: bool = False) -> OrganizationRecord:
    organization = OrganizationRecord(
        organization_id=ORG_ID,
        name="Acme",
        github_installation_id="1001",
        pipeline_enabled=pipeline_enabled,
    )
    store.upsert_organization(organization)
    members = [
        ("u-author", "Casey Citizen", UserRole.CITIZEN_DEVELOPER),
        ("u-pro-1", "Pat Pro", UserRole.PRO_DEVELOPER),
        ("u-pro-2", "Quinn Pro", UserRole.PRO_DEVELOPER),
        ("u-admin-1", "Ada Admin", UserRole.ADMIN),
        ("u-admin-2", "Blake Admin", UserRole.ADMIN),
        ("u-admin-3", "Cory Admin", UserRole.ADMIN),
    ]
    for user_id, name, role in members:
        store.upsert_member(MemberRecord(user_id=user_id, organization_id=ORG_ID, name=name, role=role))
    return organization


@pytest.fixture
def fake_repo() -> FakeRepository:
    repo = FakeRepository()
    repo.seed_mainline({"README.md": "# Shop app\n"})
    return repo


@pytest.fixture
def empty_repo() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def store() -> ChangeStore:
    return ChangeStore(fakeredis.FakeRedis(decode_responses=True))


@pytest.fixture
def make_lifecycle(store, fake_repo):
    """Build the full service graph over fakeredis and the fake repository."""

    def _build(*, pipeline_enabled: bool = False, webhook_secret: str | None = None):
        seed_organization(store, pipeline_enabled=pipeline_enabled)
        recorder = RecordingNotifier()
        sink = RecordingSink()
        notifier = NotificationDispatcher([recorder], workers=0)
        gate = PipelineGate(
            store,
            notifier,
            webhook_secret=webhook_secret,
            repositories=lambda organization, name: fake_repo,
            sink=sink,
        )
        reviews = ReviewService(store, gate, notifier, sink=sink)
        managers = StagingManagerFactory(lambda organization, name: fake_repo, sleep=lambda seconds: None)
        lifecycle = LifecycleOrchestrator(store, reviews, gate, notifier, managers=managers, sink=sink)
        return SimpleNamespace(
            lifecycle=lifecycle,
            reviews=reviews,
            gate=gate,
            store=store,
            repo=fake_repo,
            recorder=recorder,
            sink=sink,
        )

    return _build
