"""Service orchestration for the change lifecycle: stage, review, gate, merge."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from changegate.core.errors import ChangeGateError, ConflictError, NotFoundError, ValidationError
from changegate.core.identifiers import new_change_id
from changegate.models.domain import (
    ChangeRecord,
    ChangeStatus,
    Notification,
    NotificationType,
    OrganizationRecord,
    PipelineRun,
    PipelineStatus,
    ReviewDecision,
    ReviewRecord,
    ReviewStatus,
    RiskTier,
    SnapshotFile,
)
from changegate.notifications import NotificationDispatcher
from changegate.repositories.redis_store import ChangeStore
from changegate.schemas.pipelines import PipelineReport
from changegate.services.pipelines import IngestResult, PipelineGate
from changegate.services.reviews import REVIEWER_ROLES, DecisionOutcome, ReviewService, SubmissionOutcome
from changegate.snapshots import SnapshotSource
from changegate.telemetry import (
    EventSink,
    NullEventSink,
    build_audit_event,
    increment_changes_merged,
    increment_changes_staged,
    record_staging_duration,
)
from changegate.vcs.staging import StagingBranchManager

_logger = logging.getLogger(__name__)

ManagerFactory = Callable[[OrganizationRecord, str], StagingBranchManager]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncEvent:
    """A detected change to a low-code application."""

    organization_id: str
    app_id: str
    repository: str
    author_id: str
    title: str
    risk_score: int
    description: Optional[str] = None
    files: Optional[list[SnapshotFile]] = None


@dataclass
class ChangeView:
    change: ChangeRecord
    pipeline: Optional[PipelineRun]
    gate_passed: bool
    reviews: list[ReviewRecord] = field(default_factory=list)


class LifecycleOrchestrator:
    """Coordinates staging, review consensus, the pipeline gate and merging."""

    def __init__(
        self,
        store: ChangeStore,
        reviews: ReviewService,
        gate: PipelineGate,
        notifier: NotificationDispatcher,
        *,
        managers: ManagerFactory | None = None,
        snapshot_source: SnapshotSource | None = None,
        sink: EventSink | None = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._store = store
        self._reviews = reviews
        self._gate = gate
        self._notifier = notifier
        self._managers = managers
        self._snapshots = snapshot_source
        self._sink = sink or NullEventSink()
        self._clock = clock

    # staging ---------------------------------------------------------------

    def stage_change(self, event: SyncEvent) -> ChangeRecord:
        """Record a DRAFT change and stage its snapshot on a new branch.

        If staging fails the change stays DRAFT with ``staging_error`` set and
        the error propagates; ``restage`` can retry it.
        """

        organization = self._require_organization(event.organization_id)
        files = event.files if event.files is not None else self._extract(event.app_id)
        if not files:
            raise ValidationError("Snapshot contains no files", code="EMPTY_SNAPSHOT")

        now = self._clock()
        change = ChangeRecord(
            change_id=new_change_id(),
            organization_id=event.organization_id,
            app_id=event.app_id,
            repository=event.repository,
            author_id=event.author_id,
            title=event.title,
            description=event.description,
            risk_score=event.risk_score,
            created_at=now,
            updated_at=now,
        )
        self._store.create_change(change)
        self._publish("change.created", change.change_id, app_id=change.app_id, risk_score=change.risk_score)
        self._alert_high_risk(change)
        return self._stage(change, organization, event.title, files)

    def restage(
        self,
        change_id: str,
        *,
        title: str | None = None,
        files: Optional[list[SnapshotFile]] = None,
    ) -> ChangeRecord:
        """Retry staging for a draft, or push a new snapshot onto its existing branch."""

        change = self._require_change(change_id)
        if change.status != ChangeStatus.DRAFT:
            raise ConflictError(f"Change {change_id} is {change.status.value}, not DRAFT", code="INVALID_STATE")
        organization = self._require_organization(change.organization_id)
        if files is None:
            files = self._extract(change.app_id)

        if change.is_staged:
            manager = self._manager_for(organization, change.repository)
            try:
                result = manager.update_staging_branch(change.staging_branch, files, self._sync_message(change))
            except ChangeGateError as exc:
                self._store.update_change(change_id, staging_error=exc.message)
                raise
            updated = self._store.update_change(change_id, staging_commit_sha=result.commit_sha, staging_error=None)
            self._publish("change.restaged", change_id, branch=result.branch, commit_sha=result.commit_sha)
            self._dispatch_validation(updated, organization)
            return updated

        return self._stage(change, organization, title or change.title, files)

    def _stage(
        self,
        change: ChangeRecord,
        organization: OrganizationRecord,
        title: str,
        files: list[SnapshotFile],
    ) -> ChangeRecord:
        started = time.perf_counter()
        try:
            manager = self._manager_for(organization, change.repository)
            result = manager.create_staging_branch(title, files, self._sync_message(change))
        except ChangeGateError as exc:
            _logger.warning("Staging change %s failed: %s", change.change_id, exc.message)
            self._store.update_change(change.change_id, staging_error=exc.message)
            self._publish("change.staging_failed", change.change_id, code=exc.code, error=exc.message)
            exc.context.setdefault("change_id", change.change_id)
            raise

        updated = self._store.update_change(
            change.change_id,
            title=title,
            staging_branch=result.branch,
            staging_commit_sha=result.commit_sha,
            base_commit_sha=result.base_commit_sha,
            staging_error=None,
        )
        increment_changes_staged()
        record_staging_duration(time.perf_counter() - started)
        self._publish("change.staged", change.change_id, branch=result.branch, commit_sha=result.commit_sha)
        self._dispatch_validation(updated, organization)
        return updated

    # review ----------------------------------------------------------------

    def submit(
        self,
        change_id: str,
        actor_id: str,
        reviewer_ids: Optional[Iterable[str]] = None,
    ) -> SubmissionOutcome:
        outcome = self._reviews.submit(change_id, actor_id, reviewer_ids)
        if outcome.approved_now:
            outcome.change = self._merge_after_approval(outcome.change)
        return outcome

    def start_review(self, review_id: str, reviewer_id: str) -> ReviewRecord:
        return self._reviews.start_review(review_id, reviewer_id)

    def decide(
        self,
        review_id: str,
        reviewer_id: str,
        decision: ReviewDecision,
        feedback: Optional[str] = None,
    ) -> DecisionOutcome:
        outcome = self._reviews.decide(review_id, reviewer_id, decision, feedback)
        if outcome.approved_now:
            outcome.change = self._merge_after_approval(outcome.change)
        elif outcome.change.status == ChangeStatus.REJECTED:
            _logger.info(
                "Change %s rejected; staging branch %s kept for reference",
                outcome.change.change_id,
                outcome.change.staging_branch,
            )
        return outcome

    # pipeline --------------------------------------------------------------

    def ingest_pipeline_report(self, report: PipelineReport) -> IngestResult:
        return self._after_pipeline(self._gate.ingest(report))

    def handle_workflow_run(self, event: dict) -> Optional[IngestResult]:
        result = self._gate.handle_workflow_run(event)
        if result is None:
            return None
        return self._after_pipeline(result)

    def poll_pipeline(self, change_id: str) -> IngestResult:
        return self._after_pipeline(self._gate.poll(change_id))

    def _after_pipeline(self, result: IngestResult) -> IngestResult:
        if result.changed and result.run.status == PipelineStatus.PASSED:
            consensus = self._reviews.evaluate(result.change.change_id)
            if consensus.approved_now:
                result.change = self._merge_after_approval(consensus.change)
        return result

    # merge -----------------------------------------------------------------

    def merge(self, change_id: str) -> ChangeRecord:
        """Merge an approved change's staging branch; already-merged changes are returned as is."""

        change = self._require_change(change_id)
        if change.is_merged:
            return change
        if change.status != ChangeStatus.APPROVED:
            raise ConflictError(f"Change {change_id} is {change.status.value}, not APPROVED", code="INVALID_STATE")
        if not change.staging_branch:
            raise ValidationError(f"Change {change_id} has no staging branch", code="NOT_STAGED")
        if not self._store.acquire_merge_lock(change_id):
            raise ConflictError(f"A merge of change {change_id} is already running", code="MERGE_IN_PROGRESS")
        try:
            change = self._require_change(change_id)
            if change.is_merged:
                return change
            return self._merge_locked(change)
        finally:
            self._store.release_merge_lock(change_id)

    def _merge_locked(self, change: ChangeRecord) -> ChangeRecord:
        organization = self._require_organization(change.organization_id)
        message = f"Approved: {change.title} - Reviewed by {self._reviewer_label(change)}"
        try:
            manager = self._manager_for(organization, change.repository)
            result = manager.merge_staging_to_main(change.staging_branch, message, change.staging_commit_sha)
        except ChangeGateError as exc:
            _logger.error("Merging change %s failed: %s", change.change_id, exc.message)
            self._store.update_change(change.change_id, merge_error=exc.message)
            self._publish("change.merge_failed", change.change_id, code=exc.code, error=exc.message)
            self._notifier.notify(
                Notification(
                    user_id=change.author_id,
                    type=NotificationType.MERGE_FAILED,
                    title="Merge Failed",
                    message=f'"{change.title}" was approved but could not be merged: {exc.message}',
                    data={"change_id": change.change_id, "branch": change.staging_branch},
                )
            )
            raise

        merged = self._store.update_change(
            change.change_id,
            merge_commit_sha=result.merge_commit_sha,
            merged_at=self._clock(),
            merge_error=None,
        )
        increment_changes_merged()
        self._publish(
            "change.merged",
            change.change_id,
            branch=result.branch,
            merge_commit_sha=result.merge_commit_sha,
            branch_deleted=result.branch_deleted,
        )
        self._notifier.notify(
            Notification(
                user_id=change.author_id,
                type=NotificationType.CHANGE_MERGED,
                title="Change Merged",
                message=f'"{change.title}" was merged into the main branch',
                data={"change_id": change.change_id, "merge_commit_sha": result.merge_commit_sha},
            )
        )
        return merged

    def _merge_after_approval(self, change: ChangeRecord) -> ChangeRecord:
        try:
            return self.merge(change.change_id)
        except ChangeGateError as exc:
            _logger.warning("Change %s approved but not merged: %s", change.change_id, exc.message)
            return self._require_change(change.change_id)

    # read side -------------------------------------------------------------

    def describe(self, change_id: str) -> ChangeView:
        change = self._require_change(change_id)
        return ChangeView(
            change=change,
            pipeline=self._gate.get_run(change_id),
            gate_passed=self._gate.is_passed(change),
            reviews=self._reviews.list_reviews(change_id),
        )

    # helpers ---------------------------------------------------------------

    def _dispatch_validation(self, change: ChangeRecord, organization: OrganizationRecord) -> None:
        if organization.pipeline_enabled:
            self._gate.trigger_validation(change, organization)

    def _sync_message(self, change: ChangeRecord) -> str:
        return f"Sync: {change.app_id} - {self._clock().isoformat()}\n\n[change:{change.change_id}]"

    def _reviewer_label(self, change: ChangeRecord) -> str:
        approvers = [
            review.reviewer_id
            for review in self._store.list_reviews(change.change_id, change.review_round)
            if review.status == ReviewStatus.APPROVED
        ]
        if not approvers:
            return "auto-approval"
        names = []
        for reviewer_id in approvers:
            member = self._store.get_member(change.organization_id, reviewer_id)
            names.append(member.name if member else reviewer_id)
        return ", ".join(names)

    def _alert_high_risk(self, change: ChangeRecord) -> None:
        if change.risk_tier not in (RiskTier.HIGH, RiskTier.CRITICAL):
            return
        self._notifier.notify_many(
            Notification(
                user_id=member.user_id,
                type=NotificationType.HIGH_RISK_CHANGE_DETECTED,
                title="High-Risk Change Detected",
                message=f'"{change.title}" has risk score {change.risk_score}',
                data={"change_id": change.change_id, "risk_score": change.risk_score},
            )
            for member in self._store.list_members(change.organization_id)
            if member.role in REVIEWER_ROLES and member.user_id != change.author_id
        )

    def _extract(self, app_id: str) -> list[SnapshotFile]:
        if self._snapshots is None:
            raise ValidationError("No files supplied and no snapshot source configured", code="EMPTY_SNAPSHOT")
        return self._snapshots.extract(app_id)

    def _manager_for(self, organization: OrganizationRecord, repository: str) -> StagingBranchManager:
        if self._managers is None:
            raise NotFoundError("GitHub access is not configured", code="GITHUB_NOT_CONFIGURED")
        return self._managers(organization, repository)

    def _require_change(self, change_id: str) -> ChangeRecord:
        change = self._store.get_change(change_id)
        if change is None:
            raise NotFoundError(f"Change {change_id} not found", code="CHANGE_NOT_FOUND")
        return change

    def _require_organization(self, organization_id: str) -> OrganizationRecord:
        organization = self._store.get_organization(organization_id)
        if organization is None:
            raise NotFoundError(f"Organization {organization_id} not found", code="ORGANIZATION_NOT_FOUND")
        return organization

    def _publish(self, event_type: str, change_id: str, **attributes: Any) -> None:
        try:
            self._sink.publish(build_audit_event(event_type, change_id, **attributes))
        except Exception:
            _logger.exception("Failed to publish audit event %s", event_type)
