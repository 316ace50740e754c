"""API schemas for review actions, SLA and metrics."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from changegate.models.domain import ChangeStatus, ReviewDecision, ReviewRecord, ReviewSLA, ReviewStatus


class ReviewResponse(BaseModel):
    review_id: str
    change_id: str
    reviewer_id: str
    review_round: int
    status: ReviewStatus
    decision: Optional[ReviewDecision] = None
    feedback: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    sla: Optional[ReviewSLA] = None


class StartReviewRequest(BaseModel):
    reviewer_id: str


class DecisionRequest(BaseModel):
    reviewer_id: str
    decision: ReviewDecision
    feedback: Optional[str] = Field(None, max_length=10_000)


class DecisionResponse(BaseModel):
    review: ReviewResponse
    change_id: str
    change_status: ChangeStatus
    merge_commit_sha: Optional[str] = None
    awaiting_pipeline: bool = False


def review_response(review: ReviewRecord, sla: ReviewSLA | None = None) -> ReviewResponse:
    return ReviewResponse(
        review_id=review.review_id,
        change_id=review.change_id,
        reviewer_id=review.reviewer_id,
        review_round=review.review_round,
        status=review.status,
        decision=review.decision,
        feedback=review.feedback,
        created_at=review.created_at,
        started_at=review.started_at,
        completed_at=review.completed_at,
        sla=sla,
    )
