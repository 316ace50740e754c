"""Risk-gated review assignment and consensus tracking."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

from changegate.core.errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from changegate.core.identifiers import new_review_id
from changegate.models.domain import (
    ChangeRecord,
    ChangeStatus,
    Notification,
    NotificationType,
    ReviewDecision,
    ReviewMetrics,
    ReviewRecord,
    ReviewSLA,
    ReviewStatus,
    RiskTier,
    UserRole,
)
from changegate.notifications import NotificationDispatcher
from changegate.repositories.redis_store import ChangeStore
from changegate.services.pipelines import PipelineGate
from changegate.telemetry import EventSink, NullEventSink, build_audit_event, record_review_decision

_logger = logging.getLogger(__name__)

REVIEWER_ROLES = (UserRole.PRO_DEVELOPER, UserRole.ADMIN)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _hours(delta: timedelta) -> float:
    return round(delta.total_seconds() / 3600, 2)


def compute_sla(review: ReviewRecord, tier: RiskTier, now: datetime) -> ReviewSLA:
    """Response/review durations and overdue flag for one review."""

    response = _hours(review.started_at - review.created_at) if review.started_at else None
    duration = (
        _hours(review.completed_at - review.started_at) if review.completed_at and review.started_at else None
    )
    expected = review.created_at + timedelta(hours=tier.review_hours)
    overdue = review.completed_at is None and now > expected
    return ReviewSLA(
        review_id=review.review_id,
        risk_tier=tier,
        response_time_hours=response,
        review_time_hours=duration,
        response_threshold_hours=tier.response_hours,
        review_threshold_hours=tier.review_hours,
        expected_completion_at=expected,
        is_overdue=overdue,
    )


@dataclass
class SubmissionOutcome:
    change: ChangeRecord
    reviews: list[ReviewRecord] = field(default_factory=list)
    auto_approved: bool = False
    approved_now: bool = False


@dataclass
class ConsensusResult:
    change: ChangeRecord
    approved_now: bool = False
    awaiting_pipeline: bool = False


@dataclass
class DecisionOutcome:
    review: ReviewRecord
    change: ChangeRecord
    approved_now: bool = False
    awaiting_pipeline: bool = False


class ReviewService:
    """Assigns reviewers and resolves a change once reviewers agree."""

    def __init__(
        self,
        store: ChangeStore,
        gate: PipelineGate,
        notifier: NotificationDispatcher,
        *,
        sink: EventSink | None = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._store = store
        self._gate = gate
        self._notifier = notifier
        self._sink = sink or NullEventSink()
        self._clock = clock

    def auto_assign(self, change: ChangeRecord) -> list[str]:
        tier = change.risk_tier
        if tier.required_reviewers == 0:
            return []
        pool = [
            member.user_id
            for member in self._store.list_members(change.organization_id)
            if member.role in tier.eligible_roles and member.user_id != change.author_id
        ]
        if len(pool) < tier.required_reviewers:
            _logger.warning(
                "Change %s needs %d reviewers but only %d are eligible",
                change.change_id,
                tier.required_reviewers,
                len(pool),
            )
        return pool[: tier.required_reviewers]

    def submit(
        self,
        change_id: str,
        actor_id: str,
        reviewer_ids: Optional[Iterable[str]] = None,
    ) -> SubmissionOutcome:
        change = self._require_change(change_id)
        if change.author_id != actor_id:
            raise UnauthorizedError("Only the author can submit a change for review")
        if change.status != ChangeStatus.DRAFT:
            raise ConflictError(f"Change {change_id} is {change.status.value}, not DRAFT", code="INVALID_STATE")
        if not change.is_staged:
            raise ValidationError(f"Change {change_id} must be staged before submission", code="NOT_STAGED")

        reviewer_ids = list(reviewer_ids or [])
        if reviewer_ids:
            reviewers = self._validate_reviewers(change, reviewer_ids)
        else:
            reviewers = self.auto_assign(change)

        now = self._clock()
        if not reviewers:
            approved = self._store.transition_change(
                change_id, {ChangeStatus.DRAFT}, ChangeStatus.APPROVED, submitted_at=now
            )
            if approved is None:
                raise ConflictError(f"Change {change_id} is no longer a draft", code="INVALID_STATE")
            _logger.info("Change %s auto-approved (risk %d)", change_id, change.risk_score)
            self._publish("change.auto_approved", change_id, risk_score=change.risk_score)
            return SubmissionOutcome(change=approved, auto_approved=True, approved_now=True)

        review_round = change.review_round + 1
        pending = self._store.transition_change(
            change_id,
            {ChangeStatus.DRAFT},
            ChangeStatus.PENDING,
            submitted_at=now,
            review_round=review_round,
        )
        if pending is None:
            raise ConflictError(f"Change {change_id} is no longer a draft", code="INVALID_STATE")

        reviews: list[ReviewRecord] = []
        for reviewer_id in reviewers:
            review = ReviewRecord(
                review_id=new_review_id(),
                change_id=change_id,
                reviewer_id=reviewer_id,
                review_round=review_round,
                created_at=now,
                updated_at=now,
            )
            if self._store.create_review(review):
                reviews.append(review)
        for review in reviews:
            self._notifier.notify(
                Notification(
                    user_id=review.reviewer_id,
                    type=NotificationType.REVIEW_ASSIGNED,
                    title="New Review Assigned",
                    message=f'You have been assigned to review "{change.title}"',
                    data={
                        "change_id": change_id,
                        "review_id": review.review_id,
                        "risk_tier": change.risk_tier.value,
                    },
                )
            )
        self._publish(
            "change.submitted",
            change_id,
            review_round=review_round,
            reviewers=[review.reviewer_id for review in reviews],
        )
        return SubmissionOutcome(change=pending, reviews=reviews)

    def start_review(self, review_id: str, reviewer_id: str) -> ReviewRecord:
        review = self._require_review(review_id)
        if review.reviewer_id != reviewer_id:
            raise UnauthorizedError("Only the assigned reviewer can start this review")
        started = self._store.transition_review(
            review_id, {ReviewStatus.PENDING}, ReviewStatus.IN_PROGRESS, started_at=self._clock()
        )
        if started is None:
            raise ConflictError(f"Review {review_id} has already been started", code="INVALID_STATE")
        self._publish("review.started", review.change_id, review_id=review_id)
        change = self._store.get_change(review.change_id)
        if change is not None:
            self._notifier.notify(
                Notification(
                    user_id=change.author_id,
                    type=NotificationType.REVIEW_STARTED,
                    title="Review Started",
                    message=f'A reviewer started reviewing "{change.title}"',
                    data={"change_id": change.change_id, "review_id": review_id},
                )
            )
        return started

    def decide(
        self,
        review_id: str,
        reviewer_id: str,
        decision: ReviewDecision,
        feedback: Optional[str] = None,
    ) -> DecisionOutcome:
        review = self._require_review(review_id)
        if review.reviewer_id != reviewer_id:
            raise UnauthorizedError("Only the assigned reviewer can decide this review")
        if review.status.is_terminal:
            raise ConflictError(f"Review {review_id} is already completed", code="REVIEW_COMPLETED")
        change = self._require_change(review.change_id)
        if change.status != ChangeStatus.PENDING or change.review_round != review.review_round:
            raise ConflictError(
                f"Change {change.change_id} is {change.status.value} and no longer awaits this review",
                code="INVALID_STATE",
            )

        now = self._clock()
        decided = self._store.transition_review(
            review_id,
            {ReviewStatus.PENDING, ReviewStatus.IN_PROGRESS},
            decision.review_status(),
            decision=decision,
            feedback=feedback,
            started_at=review.started_at or now,
            completed_at=now,
        )
        if decided is None:
            raise ConflictError(f"Review {review_id} is already completed", code="REVIEW_COMPLETED")
        record_review_decision(decision.value)
        self._publish("review.decided", change.change_id, review_id=review_id, decision=decision.value)

        if decision == ReviewDecision.REJECT:
            resolved = self._resolve(change, ChangeStatus.REJECTED)
            self._notify_author(
                change,
                NotificationType.REVIEW_REJECTED,
                "Change Rejected",
                f'Your change "{change.title}" was rejected',
                review_id=review_id,
                feedback=feedback,
            )
            return DecisionOutcome(review=decided, change=resolved)

        if decision == ReviewDecision.REQUEST_CHANGES:
            resolved = self._resolve(change, ChangeStatus.DRAFT)
            self._notify_author(
                change,
                NotificationType.CHANGES_REQUESTED,
                "Changes Requested",
                f'Changes were requested on "{change.title}"',
                review_id=review_id,
                feedback=feedback,
            )
            return DecisionOutcome(review=decided, change=resolved)

        result = self.evaluate(change.change_id)
        if not result.approved_now:
            self._notify_author(
                change,
                NotificationType.REVIEW_APPROVED,
                "Review Approved",
                f'A reviewer approved "{change.title}"',
                review_id=review_id,
                feedback=feedback,
            )
        return DecisionOutcome(
            review=decided,
            change=result.change,
            approved_now=result.approved_now,
            awaiting_pipeline=result.awaiting_pipeline,
        )

    def evaluate(self, change_id: str) -> ConsensusResult:
        """Approve a pending change once every current reviewer approved and CI allows it.

        ``approved_now`` is true only for the caller whose update moved the
        change to APPROVED.
        """

        change = self._require_change(change_id)
        if change.status != ChangeStatus.PENDING:
            return ConsensusResult(change=change)
        reviews = self._store.list_reviews(change_id, change.review_round)
        if not reviews or any(review.status != ReviewStatus.APPROVED for review in reviews):
            return ConsensusResult(change=change)
        if not self._gate.is_passed(change):
            _logger.info("Change %s has all approvals but is waiting on its pipeline", change_id)
            return ConsensusResult(change=change, awaiting_pipeline=True)

        approved = self._store.transition_change(change_id, {ChangeStatus.PENDING}, ChangeStatus.APPROVED)
        if approved is None:
            return ConsensusResult(change=self._require_change(change_id))
        self._publish("change.approved", change_id, review_round=change.review_round)
        self._notify_author(
            approved,
            NotificationType.CHANGE_APPROVED,
            "Change Approved",
            f'Your change "{change.title}" was approved by all reviewers',
        )
        return ConsensusResult(change=approved, approved_now=True)

    # read side -------------------------------------------------------------

    def get_review(self, review_id: str) -> ReviewRecord:
        return self._require_review(review_id)

    def list_reviews(self, change_id: str, current_round_only: bool = True) -> list[ReviewRecord]:
        change = self._require_change(change_id)
        return self._store.list_reviews(change_id, change.review_round if current_round_only else None)

    def get_sla(self, review_id: str, now: datetime | None = None) -> ReviewSLA:
        review = self._require_review(review_id)
        change = self._require_change(review.change_id)
        return compute_sla(review, change.risk_tier, now or self._clock())

    def review_metrics(
        self,
        organization_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ReviewMetrics:
        now = self._clock()
        entries: list[tuple[ReviewRecord, RiskTier]] = []
        for change in self._store.list_changes(organization_id):
            for review in self._store.list_reviews(change.change_id):
                if start and review.created_at < start:
                    continue
                if end and review.created_at > end:
                    continue
                entries.append((review, change.risk_tier))

        total = len(entries)
        if not total:
            return ReviewMetrics()
        completed = [review for review, _ in entries if review.status.is_terminal]
        slas = [compute_sla(review, tier, now) for review, tier in entries]
        responses = [sla.response_time_hours for sla in slas if sla.response_time_hours is not None]
        durations = [sla.review_time_hours for sla in slas if sla.review_time_hours is not None]

        def rate(status: ReviewStatus) -> float:
            if not completed:
                return 0.0
            return round(sum(1 for review in completed if review.status == status) / len(completed) * 100, 2)

        return ReviewMetrics(
            total_reviews=total,
            pending_reviews=sum(1 for review, _ in entries if review.status == ReviewStatus.PENDING),
            in_progress_reviews=sum(1 for review, _ in entries if review.status == ReviewStatus.IN_PROGRESS),
            completed_reviews=len(completed),
            average_response_time_hours=round(sum(responses) / len(responses), 2) if responses else 0.0,
            average_review_time_hours=round(sum(durations) / len(durations), 2) if durations else 0.0,
            approval_rate=rate(ReviewStatus.APPROVED),
            rejection_rate=rate(ReviewStatus.REJECTED),
            changes_requested_rate=rate(ReviewStatus.CHANGES_REQUESTED),
            overdue_reviews=sum(1 for sla in slas if sla.is_overdue),
        )

    # helpers ---------------------------------------------------------------

    def _validate_reviewers(self, change: ChangeRecord, reviewer_ids: Iterable[str]) -> list[str]:
        tier = change.risk_tier
        roles = tier.eligible_roles or REVIEWER_ROLES
        unique = list(dict.fromkeys(reviewer_ids))
        for reviewer_id in unique:
            if reviewer_id == change.author_id:
                raise ValidationError("Authors cannot review their own change", code="INVALID_REVIEWER")
            member = self._store.get_member(change.organization_id, reviewer_id)
            if member is None or member.role not in roles:
                raise ValidationError(
                    f"{reviewer_id} cannot review {tier.value}-risk changes", code="INVALID_REVIEWER"
                )
        return unique

    def _resolve(self, change: ChangeRecord, target: ChangeStatus) -> ChangeRecord:
        resolved = self._store.transition_change(change.change_id, {ChangeStatus.PENDING}, target)
        if resolved is None:
            _logger.info("Change %s was resolved concurrently; keeping current status", change.change_id)
            return self._require_change(change.change_id)
        _logger.info("Change %s moved to %s", change.change_id, target.value)
        self._publish("change.resolved", change.change_id, status=target.value)
        return resolved

    def _require_change(self, change_id: str) -> ChangeRecord:
        change = self._store.get_change(change_id)
        if change is None:
            raise NotFoundError(f"Change {change_id} not found", code="CHANGE_NOT_FOUND")
        return change

    def _require_review(self, review_id: str) -> ReviewRecord:
        review = self._store.get_review(review_id)
        if review is None:
            raise NotFoundError(f"Review {review_id} not found", code="REVIEW_NOT_FOUND")
        return review

    def _notify_author(
        self,
        change: ChangeRecord,
        notification_type: NotificationType,
        title: str,
        message: str,
        **data: Any,
    ) -> None:
        self._notifier.notify(
            Notification(
                user_id=change.author_id,
                type=notification_type,
                title=title,
                message=message,
                data={"change_id": change.change_id, **{k: v for k, v in data.items() if v is not None}},
            )
        )

    def _publish(self, event_type: str, change_id: str, **attributes: Any) -> None:
        try:
            self._sink.publish(build_audit_event(event_type, change_id, **attributes))
        except Exception:
            _logger.exception("Failed to publish audit event %s", event_type)
