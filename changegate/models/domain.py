"""Domain data models for the change governance service."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class ChangeStatus(str, Enum):
    """Lifecycle states for a change."""

    DRAFT = "DRAFT"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ReviewStatus(str, Enum):
    """Lifecycle states for a single reviewer's review."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CHANGES_REQUESTED = "CHANGES_REQUESTED"

    @property
    def is_terminal(self) -> bool:
        return self in (ReviewStatus.APPROVED, ReviewStatus.REJECTED, ReviewStatus.CHANGES_REQUESTED)


class ReviewDecision(str, Enum):
    """Decisions a reviewer can submit."""

    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_CHANGES = "request_changes"

    def review_status(self) -> ReviewStatus:
        return {
            ReviewDecision.APPROVE: ReviewStatus.APPROVED,
            ReviewDecision.REJECT: ReviewStatus.REJECTED,
            ReviewDecision.REQUEST_CHANGES: ReviewStatus.CHANGES_REQUESTED,
        }[self]


class PipelineStatus(str, Enum):
    """CI run states."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PASSED = "PASSED"
    FAILED = "FAILED"

    @property
    def is_complete(self) -> bool:
        return self in (PipelineStatus.PASSED, PipelineStatus.FAILED)


class UserRole(str, Enum):
    CITIZEN_DEVELOPER = "CITIZEN_DEVELOPER"
    PRO_DEVELOPER = "PRO_DEVELOPER"
    ADMIN = "ADMIN"


class RiskTier(str, Enum):
    """Risk buckets derived from a change's 0-100 risk score."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def from_score(cls, score: int) -> "RiskTier":
        if score < 30:
            return cls.LOW
        if score < 60:
            return cls.MEDIUM
        if score < 80:
            return cls.HIGH
        return cls.CRITICAL

    @property
    def required_reviewers(self) -> int:
        return _TIER_POLICY[self].required_reviewers

    @property
    def eligible_roles(self) -> tuple[UserRole, ...]:
        return _TIER_POLICY[self].eligible_roles

    @property
    def response_hours(self) -> float:
        return _TIER_POLICY[self].response_hours

    @property
    def review_hours(self) -> float:
        return _TIER_POLICY[self].review_hours


@dataclass(frozen=True)
class TierPolicy:
    required_reviewers: int
    eligible_roles: tuple[UserRole, ...]
    response_hours: float
    review_hours: float


_TIER_POLICY: dict[RiskTier, TierPolicy] = {
    RiskTier.LOW: TierPolicy(0, (), 24, 48),
    RiskTier.MEDIUM: TierPolicy(1, (UserRole.PRO_DEVELOPER, UserRole.ADMIN), 12, 24),
    RiskTier.HIGH: TierPolicy(2, (UserRole.PRO_DEVELOPER, UserRole.ADMIN), 4, 12),
    RiskTier.CRITICAL: TierPolicy(3, (UserRole.ADMIN,), 2, 6),
}


class NotificationType(str, Enum):
    REVIEW_ASSIGNED = "REVIEW_ASSIGNED"
    REVIEW_STARTED = "REVIEW_STARTED"
    REVIEW_APPROVED = "REVIEW_APPROVED"
    REVIEW_REJECTED = "REVIEW_REJECTED"
    CHANGES_REQUESTED = "CHANGES_REQUESTED"
    CHANGE_APPROVED = "CHANGE_APPROVED"
    CHANGE_MERGED = "CHANGE_MERGED"
    MERGE_FAILED = "MERGE_FAILED"
    HIGH_RISK_CHANGE_DETECTED = "HIGH_RISK_CHANGE_DETECTED"
    PIPELINE_PASSED = "PIPELINE_PASSED"
    PIPELINE_FAILED = "PIPELINE_FAILED"


class OrganizationRecord(BaseModel):
    """Tenant configuration needed by the lifecycle."""

    organization_id: str
    name: str
    github_installation_id: Optional[str] = Field(
        None, description="GitHub App installation used to mint repository tokens."
    )
    pipeline_enabled: bool = Field(
        False, description="When false the pipeline gate never blocks approval."
    )
    validation_workflow: Optional[str] = Field(
        None, description="Workflow file dispatched against each staging branch."
    )


class MemberRecord(BaseModel):
    """An organization member; reviewers are drawn from this pool."""

    user_id: str
    organization_id: str
    name: str
    email: Optional[str] = None
    role: UserRole = UserRole.CITIZEN_DEVELOPER


class ChangeRecord(BaseModel):
    """A proposed modification to a low-code application."""

    change_id: str
    organization_id: str
    app_id: str
    repository: str = Field(..., description="owner/name of the backing GitHub repository.")
    author_id: str
    title: str
    description: Optional[str] = None
    status: ChangeStatus = ChangeStatus.DRAFT
    risk_score: int = Field(..., ge=0, le=100)
    staging_branch: Optional[str] = None
    staging_commit_sha: Optional[str] = None
    base_commit_sha: Optional[str] = Field(
        None, description="Mainline tip the staging branch was cut from; null for an orphan root."
    )
    staging_error: Optional[str] = None
    review_round: int = 0
    merge_commit_sha: Optional[str] = None
    merged_at: Optional[datetime] = None
    merge_error: Optional[str] = None
    submitted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def risk_tier(self) -> RiskTier:
        return RiskTier.from_score(self.risk_score)

    @property
    def is_staged(self) -> bool:
        return bool(self.staging_branch and self.staging_commit_sha)

    @property
    def is_merged(self) -> bool:
        return self.merged_at is not None


class ReviewRecord(BaseModel):
    """One reviewer's assignment on one submission round of a change."""

    review_id: str
    change_id: str
    reviewer_id: str
    review_round: int = 1
    status: ReviewStatus = ReviewStatus.PENDING
    decision: Optional[ReviewDecision] = None
    feedback: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime


class PipelineCheck(BaseModel):
    name: str
    status: str
    message: Optional[str] = None
    duration: Optional[float] = None


class PipelineRun(BaseModel):
    """Latest CI outcome for a change."""

    change_id: str
    status: PipelineStatus = PipelineStatus.PENDING
    run_id: Optional[str] = None
    run_url: Optional[str] = None
    checks: list[PipelineCheck] = Field(default_factory=list)
    logs: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime

    def fingerprint(self) -> tuple:
        return (
            self.status,
            self.run_id,
            self.run_url,
            tuple(check.model_dump_json() for check in self.checks),
            self.logs,
        )


class SnapshotFile(BaseModel):
    """A single file of an application snapshot."""

    path: str
    content: bytes
    is_binary: bool = False


class StagingResult(BaseModel):
    branch: str
    commit_sha: str
    tree_sha: str
    base_commit_sha: Optional[str] = None


class MergeResult(BaseModel):
    branch: str
    merged: bool
    merge_commit_sha: Optional[str] = Field(
        None, description="Null when the mainline already contained the staging commit."
    )
    branch_deleted: bool = False


class ReviewSLA(BaseModel):
    """Read-side SLA view of a review."""

    review_id: str
    risk_tier: RiskTier
    response_time_hours: Optional[float] = None
    review_time_hours: Optional[float] = None
    response_threshold_hours: float
    review_threshold_hours: float
    expected_completion_at: datetime
    is_overdue: bool


class ReviewMetrics(BaseModel):
    total_reviews: int = 0
    pending_reviews: int = 0
    in_progress_reviews: int = 0
    completed_reviews: int = 0
    average_response_time_hours: float = 0.0
    average_review_time_hours: float = 0.0
    approval_rate: float = 0.0
    rejection_rate: float = 0.0
    changes_requested_rate: float = 0.0
    overdue_reviews: int = 0


class Notification(BaseModel):
    user_id: str
    type: NotificationType
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
