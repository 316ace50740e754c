from __future__ import annotations

import pytest
from github import GithubException

from changegate.core.errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from changegate.models.domain import (
    ChangeStatus,
    NotificationType,
    PipelineStatus,
    ReviewDecision,
    SnapshotFile,
)
from changegate.notifications import NotificationDispatcher
from changegate.schemas.pipelines import PipelineReport
from changegate.services.lifecycle import LifecycleOrchestrator, SyncEvent
from changegate.vcs.staging import StagingManagerFactory

ORG = "org-acme"
FILES = [SnapshotFile(path="pages/Checkout.json", content=b'{"widgets": []}')]


def _event(risk_score: int, title: str = "Add Checkout Page", files=FILES, organization_id: str = ORG) -> SyncEvent:
    return SyncEvent(
        organization_id=organization_id,
        app_id="shop",
        repository="acme/shop-app",
        author_id="u-author",
        title=title,
        risk_score=risk_score,
        files=files,
    )


def test_stage_change_creates_draft_on_staging_branch(make_lifecycle):
    env = make_lifecycle()

    change = env.lifecycle.stage_change(_event(45))

    assert change.status == ChangeStatus.DRAFT
    assert change.staging_branch == "staging/add-checkout-page"
    assert change.base_commit_sha == env.repo.commits[change.staging_commit_sha].parents[0].sha
    message = env.repo.commits[change.staging_commit_sha].message
    assert message.startswith("Sync: shop - ")
    assert message.endswith(f"[change:{change.change_id}]")
    assert env.store.get_change(change.change_id) == change
    assert env.sink.types() == ["change.created", "change.staged"]


def test_stage_change_requires_files(make_lifecycle):
    env = make_lifecycle()

    with pytest.raises(ValidationError) as excinfo:
        env.lifecycle.stage_change(_event(45, files=[]))
    assert excinfo.value.code == "EMPTY_SNAPSHOT"
    with pytest.raises(ValidationError):
        env.lifecycle.stage_change(_event(45, files=None))


def test_stage_change_reads_snapshot_source(make_lifecycle):
    env = make_lifecycle()

    class _Source:
        def extract(self, app_id):
            return [SnapshotFile(path=f"{app_id}/app.json", content=b"{}")]

    lifecycle = LifecycleOrchestrator(
        env.store,
        env.reviews,
        env.gate,
        NotificationDispatcher([], workers=0),
        managers=StagingManagerFactory(lambda organization, name: env.repo, sleep=lambda seconds: None),
        snapshot_source=_Source(),
    )

    change = lifecycle.stage_change(_event(45, files=None))

    assert env.repo.files_at(change.staging_branch)["shop/app.json"] == b"{}"


def test_stage_change_for_unknown_organization(make_lifecycle):
    env = make_lifecycle()
    with pytest.raises(NotFoundError):
        env.lifecycle.stage_change(_event(45, organization_id="org-missing"))


def test_staging_failure_leaves_draft_with_error(make_lifecycle):
    env = make_lifecycle()
    env.repo.fail("create_tree", GithubException(403, {"message": "Resource not accessible by integration"}, None))

    with pytest.raises(UnauthorizedError) as excinfo:
        env.lifecycle.stage_change(_event(45))

    change_id = excinfo.value.context["change_id"]
    failed = env.store.get_change(change_id)
    assert failed.status == ChangeStatus.DRAFT
    assert failed.is_staged is False
    assert "Resource not accessible" in failed.staging_error
    assert "change.staging_failed" in env.sink.types()

    restaged = env.lifecycle.restage(change_id, files=FILES)
    assert restaged.is_staged
    assert restaged.staging_error is None


def test_branch_collision_can_be_restaged_under_new_title(make_lifecycle):
    env = make_lifecycle()
    env.lifecycle.stage_change(_event(45))

    with pytest.raises(ConflictError) as excinfo:
        env.lifecycle.stage_change(_event(45))
    assert excinfo.value.code == "BRANCH_EXISTS"

    change_id = excinfo.value.context["change_id"]
    restaged = env.lifecycle.restage(change_id, title="Add Checkout Page v2", files=FILES)
    assert restaged.staging_branch == "staging/add-checkout-page-v2"
    assert restaged.title == "Add Checkout Page v2"


def test_colliding_restage_keeps_previous_title(make_lifecycle):
    env = make_lifecycle()
    env.lifecycle.stage_change(_event(45))
    env.lifecycle.stage_change(_event(45, title="Taken Name"))
    with pytest.raises(ConflictError) as excinfo:
        env.lifecycle.stage_change(_event(45))
    change_id = excinfo.value.context["change_id"]

    with pytest.raises(ConflictError):
        env.lifecycle.restage(change_id, title="Taken Name", files=FILES)

    change = env.store.get_change(change_id)
    assert change.title == "Add Checkout Page"
    assert change.is_staged is False
    assert "already exists" in change.staging_error


def test_restage_updates_existing_branch(make_lifecycle):
    env = make_lifecycle()
    change = env.lifecycle.stage_change(_event(45))

    updated = env.lifecycle.restage(
        change.change_id, files=[SnapshotFile(path="pages/Checkout.json", content=b'{"widgets": ["pay"]}')]
    )

    assert updated.staging_branch == change.staging_branch
    assert updated.staging_commit_sha != change.staging_commit_sha
    assert env.repo.is_ancestor(change.staging_commit_sha, updated.staging_commit_sha)
    assert env.repo.files_at(change.staging_branch)["pages/Checkout.json"] == b'{"widgets": ["pay"]}'
    assert "change.restaged" in env.sink.types()


def test_restage_requires_draft(make_lifecycle):
    env = make_lifecycle()
    change = env.lifecycle.stage_change(_event(45))
    env.lifecycle.submit(change.change_id, "u-author")

    with pytest.raises(ConflictError):
        env.lifecycle.restage(change.change_id, files=FILES)


@pytest.mark.parametrize(("score", "alerted"), [(20, 0), (59, 0), (60, 5), (95, 5)])
def test_high_risk_changes_alert_reviewers(make_lifecycle, score, alerted):
    env = make_lifecycle()

    env.lifecycle.stage_change(_event(score))

    alerts = env.recorder.of_type(NotificationType.HIGH_RISK_CHANGE_DETECTED)
    assert len(alerts) == alerted
    assert all(alert.user_id != "u-author" for alert in alerts)


def test_failed_pipeline_blocks_merge_until_passed(make_lifecycle):
    env = make_lifecycle(pipeline_enabled=True)
    change = env.lifecycle.stage_change(_event(45))
    review = env.lifecycle.submit(change.change_id, "u-author").reviews[0]

    decided = env.lifecycle.decide(review.review_id, "u-admin-1", ReviewDecision.APPROVE)
    assert decided.awaiting_pipeline is True
    assert decided.change.status == ChangeStatus.PENDING

    failed = env.lifecycle.ingest_pipeline_report(PipelineReport(change_id=change.change_id, status="failure"))
    assert failed.run.status == PipelineStatus.FAILED
    assert env.store.get_change(change.change_id).status == ChangeStatus.PENDING

    passed = env.lifecycle.ingest_pipeline_report(
        PipelineReport(change_id=change.change_id, status="success", run_id="12")
    )
    assert passed.change.status == ChangeStatus.APPROVED
    assert passed.change.is_merged
    assert env.repo.refs["main"] == passed.change.merge_commit_sha
    assert len(env.recorder.of_type(NotificationType.CHANGE_MERGED)) == 1


def test_pipeline_pass_before_approval_does_not_merge(make_lifecycle):
    env = make_lifecycle(pipeline_enabled=True)
    change = env.lifecycle.stage_change(_event(45))
    review = env.lifecycle.submit(change.change_id, "u-author").reviews[0]

    env.lifecycle.ingest_pipeline_report(PipelineReport(change_id=change.change_id, status="passed"))
    assert env.store.get_change(change.change_id).status == ChangeStatus.PENDING

    decided = env.lifecycle.decide(review.review_id, "u-admin-1", ReviewDecision.APPROVE)
    assert decided.approved_now is True
    assert decided.change.is_merged


def test_merge_is_idempotent(make_lifecycle):
    env = make_lifecycle()
    change = env.lifecycle.stage_change(_event(10))
    merged = env.lifecycle.submit(change.change_id, "u-author").change

    again = env.lifecycle.merge(change.change_id)

    assert again.merge_commit_sha == merged.merge_commit_sha
    assert env.repo.count("merge") == 1


def test_merge_recovers_when_merge_was_not_recorded(make_lifecycle):
    env = make_lifecycle()
    change = env.lifecycle.stage_change(_event(10))
    merged = env.lifecycle.submit(change.change_id, "u-author").change
    env.store.update_change(change.change_id, merged_at=None, merge_commit_sha=None)

    recovered = env.lifecycle.merge(change.change_id)

    assert recovered.is_merged
    assert recovered.merge_error is None
    assert env.repo.refs["main"] == merged.merge_commit_sha
    assert env.repo.count("merge") == 2


def test_merge_failure_keeps_approval_and_can_be_retried(make_lifecycle):
    env = make_lifecycle()
    change = env.lifecycle.stage_change(_event(10))
    env.repo.merge_conflict = True

    outcome = env.lifecycle.submit(change.change_id, "u-author")

    assert outcome.change.status == ChangeStatus.APPROVED
    assert outcome.change.is_merged is False
    assert "Merge conflict" in outcome.change.merge_error
    assert change.staging_branch in env.repo.refs
    assert env.recorder.of_type(NotificationType.MERGE_FAILED)[0].data["branch"] == change.staging_branch

    env.repo.merge_conflict = False
    merged = env.lifecycle.merge(change.change_id)

    assert merged.is_merged
    assert merged.merge_error is None
    assert change.staging_branch not in env.repo.refs


def test_merge_requires_approval(make_lifecycle):
    env = make_lifecycle()
    change = env.lifecycle.stage_change(_event(45))

    with pytest.raises(ConflictError) as excinfo:
        env.lifecycle.merge(change.change_id)
    assert excinfo.value.code == "INVALID_STATE"


def test_concurrent_merge_is_refused(make_lifecycle):
    env = make_lifecycle()
    change = env.lifecycle.stage_change(_event(10))
    env.store.acquire_merge_lock(change.change_id)

    outcome = env.lifecycle.submit(change.change_id, "u-author")
    assert outcome.change.is_merged is False

    with pytest.raises(ConflictError) as excinfo:
        env.lifecycle.merge(change.change_id)
    assert excinfo.value.code == "MERGE_IN_PROGRESS"

    env.store.release_merge_lock(change.change_id)
    assert env.lifecycle.merge(change.change_id).is_merged


def test_rejected_change_keeps_branch(make_lifecycle):
    env = make_lifecycle()
    change = env.lifecycle.stage_change(_event(45))
    review = env.lifecycle.submit(change.change_id, "u-author").reviews[0]

    outcome = env.lifecycle.decide(review.review_id, "u-admin-1", ReviewDecision.REJECT)

    assert outcome.change.status == ChangeStatus.REJECTED
    assert change.staging_branch in env.repo.refs
    assert env.repo.count("merge") == 0


def test_audit_trail_for_auto_approved_change(make_lifecycle):
    env = make_lifecycle()
    change = env.lifecycle.stage_change(_event(5))
    env.lifecycle.submit(change.change_id, "u-author")

    assert env.sink.types() == ["change.created", "change.staged", "change.auto_approved", "change.merged"]
    assert all(event["change_id"] == change.change_id for event in env.sink.events)


def test_describe_includes_reviews_and_pipeline(make_lifecycle):
    env = make_lifecycle(pipeline_enabled=True)
    change = env.lifecycle.stage_change(_event(70))
    env.lifecycle.submit(change.change_id, "u-author")

    view = env.lifecycle.describe(change.change_id)

    assert view.change.status == ChangeStatus.PENDING
    assert [review.reviewer_id for review in view.reviews] == ["u-admin-1", "u-admin-2"]
    assert view.pipeline.status == PipelineStatus.RUNNING
    assert view.gate_passed is False
