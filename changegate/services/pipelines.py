"""CI pipeline ingestion and the approval gate it feeds."""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from changegate.core.errors import ChangeGateError, NotFoundError, UnauthorizedError
from changegate.models.domain import (
    ChangeRecord,
    Notification,
    NotificationType,
    OrganizationRecord,
    PipelineRun,
    PipelineStatus,
)
from changegate.notifications import NotificationDispatcher
from changegate.repositories.redis_store import ChangeStore
from changegate.schemas.pipelines import PipelineReport
from changegate.telemetry import EventSink, NullEventSink, build_audit_event, record_pipeline_report
from changegate.vcs.github_client import REMOTE_ERRORS, translate_github_error

_logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="

_STATUS_MAP: dict[str, PipelineStatus] = {
    "success": PipelineStatus.PASSED,
    "passed": PipelineStatus.PASSED,
    "failure": PipelineStatus.FAILED,
    "failed": PipelineStatus.FAILED,
    "cancelled": PipelineStatus.FAILED,
    "timed_out": PipelineStatus.FAILED,
    "timeout": PipelineStatus.FAILED,
    "in_progress": PipelineStatus.RUNNING,
    "queued": PipelineStatus.RUNNING,
    "running": PipelineStatus.RUNNING,
}

_RUN_NAME_PATTERN = re.compile(r"change-([a-f0-9-]+)", re.IGNORECASE)
_COMMIT_MARKER_PATTERN = re.compile(r"\[change:([a-f0-9-]+)\]", re.IGNORECASE)

RepositoryResolver = Callable[[OrganizationRecord, str], Any]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def compute_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def map_status(external: str | None) -> PipelineStatus:
    """Translate CI vocabulary into a pipeline status; unknown values are PENDING."""

    if not external:
        return PipelineStatus.PENDING
    return _STATUS_MAP.get(external.strip().lower(), PipelineStatus.PENDING)


def extract_change_id(workflow_run: dict) -> Optional[str]:
    """Find the change a GitHub workflow run belongs to."""

    inputs = workflow_run.get("inputs") or {}
    if isinstance(inputs, dict) and inputs.get("changeId"):
        return str(inputs["changeId"])
    for field_name in ("name", "display_title"):
        match = _RUN_NAME_PATTERN.search(workflow_run.get(field_name) or "")
        if match:
            return match.group(1)
    head_commit = workflow_run.get("head_commit") or {}
    match = _COMMIT_MARKER_PATTERN.search(head_commit.get("message") or "")
    if match:
        return match.group(1)
    return None


@dataclass
class IngestResult:
    run: PipelineRun
    change: ChangeRecord
    changed: bool


class PipelineGate:
    """Keeps the latest CI run per change and answers whether it allows a merge."""

    def __init__(
        self,
        store: ChangeStore,
        notifier: NotificationDispatcher,
        *,
        webhook_secret: str | None = None,
        repositories: RepositoryResolver | None = None,
        default_workflow: str = "lcnc-validation.yml",
        sink: EventSink | None = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._secret = webhook_secret
        self._repositories = repositories
        self._default_workflow = default_workflow
        self._sink = sink or NullEventSink()
        self._clock = clock

    # authentication --------------------------------------------------------

    def verify_signature(
        self,
        raw_body: bytes,
        signature: str | None,
        shared_secret: str | None = None,
    ) -> None:
        """Authenticate a webhook by HMAC signature or shared-secret header."""

        if not self._secret:
            _logger.warning("CI webhook secret not configured; accepting unsigned webhook")
            return
        if signature:
            expected = compute_signature(self._secret, raw_body)
            if hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8")):
                return
            raise UnauthorizedError("Invalid webhook signature", code="INVALID_SIGNATURE")
        if shared_secret and hmac.compare_digest(shared_secret.encode("utf-8"), self._secret.encode("utf-8")):
            return
        raise UnauthorizedError("Missing webhook signature", code="INVALID_SIGNATURE")

    # ingestion -------------------------------------------------------------

    def ingest(self, report: PipelineReport) -> IngestResult:
        change = self._store.get_change(report.change_id)
        if change is None:
            raise NotFoundError(f"Change {report.change_id} not found", code="CHANGE_NOT_FOUND")

        status = map_status(report.status)
        previous = self._store.get_pipeline_run(change.change_id)
        now = self._clock()
        candidate = PipelineRun(
            change_id=change.change_id,
            status=status,
            run_id=report.run_id or (previous.run_id if previous else None),
            run_url=report.run_url or (previous.run_url if previous else None),
            checks=(
                [check.to_domain() for check in report.checks]
                if report.checks is not None
                else (list(previous.checks) if previous else [])
            ),
            logs=report.logs if report.logs is not None else (previous.logs if previous else None),
            started_at=(previous.started_at if previous and previous.started_at else now),
            completed_at=now if status.is_complete else None,
            updated_at=now,
        )
        if previous is not None and previous.fingerprint() == candidate.fingerprint():
            _logger.debug("Duplicate %s report for change %s ignored", status.value, change.change_id)
            return IngestResult(run=previous, change=change, changed=False)

        self._store.save_pipeline_run(candidate)
        record_pipeline_report(status.value)
        self._publish("pipeline.updated", change.change_id, status=status.value, run_id=candidate.run_id)
        _logger.info("Pipeline for change %s is now %s", change.change_id, status.value)
        if status.is_complete:
            self._notify_author(change, candidate)
        return IngestResult(run=candidate, change=change, changed=True)

    def handle_workflow_run(self, event: dict) -> Optional[IngestResult]:
        """Ingest a GitHub ``workflow_run`` webhook; unrelated runs return None."""

        workflow_run = event.get("workflow_run") or {}
        change_id = extract_change_id(workflow_run)
        if not change_id:
            _logger.debug("workflow_run %s has no change reference", workflow_run.get("id"))
            return None
        run_id = workflow_run.get("id")
        report = PipelineReport(
            change_id=change_id,
            status=workflow_run.get("conclusion") or workflow_run.get("status") or "pending",
            run_id=str(run_id) if run_id is not None else None,
            run_url=workflow_run.get("html_url"),
        )
        return self.ingest(report)

    def poll(self, change_id: str) -> IngestResult:
        """Refresh a change's run from GitHub's workflow run API."""

        change = self._require_change(change_id)
        run = self._store.get_pipeline_run(change_id)
        if run is None or not run.run_id:
            raise NotFoundError(f"No workflow run recorded for change {change_id}", code="RUN_NOT_FOUND")
        repository = self._repository_for(change)
        try:
            workflow_run = repository.get_workflow_run(int(run.run_id))
        except REMOTE_ERRORS as exc:
            raise translate_github_error(exc, f"workflow run {run.run_id}") from exc
        report = PipelineReport(
            change_id=change_id,
            status=workflow_run.conclusion or workflow_run.status or "pending",
            run_id=str(workflow_run.id),
            run_url=workflow_run.html_url,
        )
        return self.ingest(report)

    def trigger_validation(self, change: ChangeRecord, organization: OrganizationRecord) -> PipelineRun:
        """Dispatch the validation workflow on the change's staging branch."""

        workflow_file = organization.validation_workflow or self._default_workflow
        now = self._clock()
        self._store.save_pipeline_run(PipelineRun(change_id=change.change_id, updated_at=now))
        dispatched = False
        failure: str | None = None
        try:
            repository = self._repository_for(change)
            workflow = repository.get_workflow(workflow_file)
            dispatched = bool(workflow.create_dispatch(change.staging_branch, {"changeId": change.change_id}))
        except REMOTE_ERRORS as exc:
            failure = translate_github_error(exc, f"dispatch {workflow_file}").message
        except ChangeGateError as exc:
            failure = exc.message
        if not dispatched:
            _logger.warning("Validation dispatch for change %s failed: %s", change.change_id, failure)

        now = self._clock()
        run = PipelineRun(
            change_id=change.change_id,
            status=PipelineStatus.RUNNING if dispatched else PipelineStatus.FAILED,
            logs=None if dispatched else f"Failed to dispatch {workflow_file}: {failure or 'rejected'}",
            started_at=now,
            completed_at=None if dispatched else now,
            updated_at=now,
        )
        self._store.save_pipeline_run(run)
        self._publish("pipeline.dispatched", change.change_id, workflow=workflow_file, dispatched=dispatched)
        return run

    # gate ------------------------------------------------------------------

    def get_run(self, change_id: str) -> Optional[PipelineRun]:
        return self._store.get_pipeline_run(change_id)

    def is_passed(self, change: ChangeRecord) -> bool:
        organization = self._store.get_organization(change.organization_id)
        if organization is None or not organization.pipeline_enabled:
            return True
        run = self._store.get_pipeline_run(change.change_id)
        return run is not None and run.status == PipelineStatus.PASSED

    # helpers ---------------------------------------------------------------

    def _require_change(self, change_id: str) -> ChangeRecord:
        change = self._store.get_change(change_id)
        if change is None:
            raise NotFoundError(f"Change {change_id} not found", code="CHANGE_NOT_FOUND")
        return change

    def _repository_for(self, change: ChangeRecord):
        if self._repositories is None:
            raise NotFoundError("GitHub access is not configured", code="GITHUB_NOT_CONFIGURED")
        organization = self._store.get_organization(change.organization_id)
        if organization is None:
            raise NotFoundError(f"Organization {change.organization_id} not found", code="ORGANIZATION_NOT_FOUND")
        return self._repositories(organization, change.repository)

    def _notify_author(self, change: ChangeRecord, run: PipelineRun) -> None:
        passed = run.status == PipelineStatus.PASSED
        self._notifier.notify(
            Notification(
                user_id=change.author_id,
                type=NotificationType.PIPELINE_PASSED if passed else NotificationType.PIPELINE_FAILED,
                title="Validation passed" if passed else "Validation failed",
                message=(
                    f'Validation for "{change.title}" passed.'
                    if passed
                    else f'Validation for "{change.title}" failed. Check the pipeline logs.'
                ),
                data={"change_id": change.change_id, "run_id": run.run_id, "run_url": run.run_url},
            )
        )

    def _publish(self, event_type: str, change_id: str, **attributes: Any) -> None:
        try:
            self._sink.publish(build_audit_event(event_type, change_id, **attributes))
        except Exception:
            _logger.exception("Failed to publish audit event %s", event_type)
