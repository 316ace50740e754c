from __future__ import annotations

import pytest
from github import GithubException

from changegate.core.errors import ConflictError, NotFoundError
from changegate.models.domain import SnapshotFile
from changegate.vcs.content_writer import ContentObjectWriter
from changegate.vcs.staging import BranchStamps, StagingBranchManager, derive_branch_name, slugify_title


def _manager(repo) -> StagingBranchManager:
    return StagingBranchManager(ContentObjectWriter(repo, sleep=lambda seconds: None))


SNAPSHOT = [
    SnapshotFile(path="pages/Checkout.json", content=b'{"widgets": []}'),
    SnapshotFile(path="assets/icon.png", content=b"\x89PNG", is_binary=True),
]


@pytest.mark.parametrize(
    ("title", "expected"),
    [
        ("Add Checkout Page", "staging/add-checkout-page"),
        ("  Fix   the   bug  ", "staging/fix-the-bug"),
        ("Update: pricing (v2)!", "staging/update-pricing-v2"),
        ("--leading and trailing--", "staging/leading-and-trailing"),
        ("a -- b", "staging/a-b"),
        ("Café menu", "staging/caf-menu"),
    ],
)
def test_derive_branch_name(title, expected):
    assert derive_branch_name(title) == expected


def test_branch_name_is_truncated_without_trailing_hyphen():
    title = "word " * 40
    name = derive_branch_name(title)
    slug = name[len("staging/") :]
    assert len(slug) <= 75
    assert not slug.endswith("-")


def test_empty_slug_falls_back_to_timestamp():
    stamps = BranchStamps()
    first = derive_branch_name("!!!", clock=lambda: 4102444800.0, stamps=stamps)
    second = derive_branch_name("???", clock=lambda: 4102444800.0, stamps=stamps)
    assert first == "staging/change-4102444800000"
    assert second == "staging/change-4102444800001"


def test_manager_fallback_names_never_repeat(fake_repo):
    manager = _manager(fake_repo)
    assert manager.branch_name_for("!!!") != manager.branch_name_for("!!!")


def test_slugify_is_deterministic():
    assert slugify_title("Release Notes Q3") == slugify_title("Release Notes Q3")


def test_create_staging_branch_on_existing_mainline(fake_repo):
    manager = _manager(fake_repo)
    base = fake_repo.refs["main"]

    result = manager.create_staging_branch("Add Checkout Page", SNAPSHOT, "Sync: shop - now")

    assert result.branch == "staging/add-checkout-page"
    assert result.base_commit_sha == base
    assert fake_repo.refs[result.branch] == result.commit_sha
    assert fake_repo.commits[result.commit_sha].parents[0].sha == base
    files = fake_repo.files_at(result.branch)
    assert files["pages/Checkout.json"] == b'{"widgets": []}'
    assert files["assets/icon.png"] == b"\x89PNG"
    assert files["README.md"] == b"# Shop app\n"
    assert fake_repo.refs["main"] == base


def test_create_staging_branch_on_empty_repository_is_orphan(empty_repo):
    repo = empty_repo
    manager = _manager(repo)

    result = manager.create_staging_branch("First import", SNAPSHOT, "Sync: shop - now")

    assert result.base_commit_sha is None
    assert repo.commits[result.commit_sha].parents == []
    assert "main" not in repo.refs


def test_branch_collision_is_a_conflict(fake_repo):
    manager = _manager(fake_repo)
    manager.create_staging_branch("Add Checkout Page", SNAPSHOT, "first")
    existing = fake_repo.refs["staging/add-checkout-page"]

    with pytest.raises(ConflictError):
        manager.create_staging_branch("add checkout page", SNAPSHOT, "second")

    assert fake_repo.refs["staging/add-checkout-page"] == existing


def test_update_staging_branch_fast_forwards(fake_repo):
    manager = _manager(fake_repo)
    staged = manager.create_staging_branch("Add Checkout Page", SNAPSHOT, "first")

    updated = manager.update_staging_branch(
        staged.branch,
        [SnapshotFile(path="pages/Checkout.json", content=b'{"widgets": ["pay"]}')],
        "second",
    )

    assert fake_repo.refs[staged.branch] == updated.commit_sha
    assert fake_repo.is_ancestor(staged.commit_sha, updated.commit_sha)
    assert fake_repo.files_at(staged.branch)["pages/Checkout.json"] == b'{"widgets": ["pay"]}'


def test_merge_then_delete_branch(fake_repo):
    manager = _manager(fake_repo)
    staged = manager.create_staging_branch("Add Checkout Page", SNAPSHOT, "sync")

    result = manager.merge_staging_to_main(staged.branch, "Approved: Add Checkout Page - Reviewed by Pat")

    assert result.merged is True
    assert result.branch_deleted is True
    assert result.merge_commit_sha == fake_repo.refs["main"]
    assert staged.branch not in fake_repo.refs
    assert fake_repo.files_at("main")["pages/Checkout.json"] == b'{"widgets": []}'


def test_merge_with_nothing_to_merge_succeeds(fake_repo):
    manager = _manager(fake_repo)
    fake_repo.refs["staging/noop"] = fake_repo.refs["main"]

    result = manager.merge_staging_to_main("staging/noop", "noop")

    assert result.merged is True
    assert result.merge_commit_sha is None
    assert "staging/noop" not in fake_repo.refs


def test_merging_an_already_merged_branch_succeeds(fake_repo):
    manager = _manager(fake_repo)
    staged = manager.create_staging_branch("Add Checkout Page", SNAPSHOT, "sync")
    first = manager.merge_staging_to_main(staged.branch, "merge", staged.commit_sha)
    mainline = fake_repo.refs["main"]

    again = manager.merge_staging_to_main(staged.branch, "merge", staged.commit_sha)

    assert first.merge_commit_sha == mainline
    assert again.merged is True
    assert again.merge_commit_sha is None
    assert again.branch_deleted is True
    assert fake_repo.refs["main"] == mainline


def test_missing_branch_that_never_merged_is_not_found(fake_repo):
    manager = _manager(fake_repo)
    staged = manager.create_staging_branch("Add Checkout Page", SNAPSHOT, "sync")
    del fake_repo.refs[staged.branch]

    with pytest.raises(NotFoundError):
        manager.merge_staging_to_main(staged.branch, "merge", staged.commit_sha)
    with pytest.raises(NotFoundError):
        manager.merge_staging_to_main(staged.branch, "merge")


def test_merge_conflict_keeps_branch(fake_repo):
    manager = _manager(fake_repo)
    staged = manager.create_staging_branch("Add Checkout Page", SNAPSHOT, "sync")
    fake_repo.merge_conflict = True

    with pytest.raises(ConflictError):
        manager.merge_staging_to_main(staged.branch, "merge")

    assert staged.branch in fake_repo.refs


def test_branch_deletion_failure_is_reported_not_raised(fake_repo):
    manager = _manager(fake_repo)
    staged = manager.create_staging_branch("Add Checkout Page", SNAPSHOT, "sync")
    fake_repo.fail("delete_ref", GithubException(403, {"message": "Resource not accessible"}, None))

    result = manager.merge_staging_to_main(staged.branch, "merge")

    assert result.merged is True
    assert result.branch_deleted is False
