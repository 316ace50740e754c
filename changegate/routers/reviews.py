"""API routes for reviewer actions, SLA and review metrics."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from changegate.core.config import settings
from changegate.dependencies import get_lifecycle, get_review_service
from changegate.models.domain import ReviewMetrics
from changegate.schemas.reviews import (
    DecisionRequest,
    DecisionResponse,
    ReviewResponse,
    StartReviewRequest,
    review_response,
)
from changegate.services.lifecycle import LifecycleOrchestrator
from changegate.services.reviews import ReviewService


router = APIRouter(prefix=f"{settings.api_v1_prefix}/reviews", tags=["reviews"])


@router.get("/metrics", response_model=ReviewMetrics)
def get_review_metrics(
    organization_id: str = Query(..., description="Organization to aggregate."),
    start: Optional[datetime] = Query(None, description="Only reviews created at or after this time."),
    end: Optional[datetime] = Query(None, description="Only reviews created at or before this time."),
    reviews: ReviewService = Depends(get_review_service),
) -> ReviewMetrics:
    return reviews.review_metrics(organization_id, start, end)


@router.get("/{review_id}", response_model=ReviewResponse)
def get_review(
    review_id: str,
    reviews: ReviewService = Depends(get_review_service),
) -> ReviewResponse:
    review = reviews.get_review(review_id)
    return review_response(review, reviews.get_sla(review_id))


@router.post("/{review_id}/start", response_model=ReviewResponse)
def start_review(
    review_id: str,
    payload: StartReviewRequest,
    lifecycle: LifecycleOrchestrator = Depends(get_lifecycle),
    reviews: ReviewService = Depends(get_review_service),
) -> ReviewResponse:
    review = lifecycle.start_review(review_id, payload.reviewer_id)
    return review_response(review, reviews.get_sla(review_id))


@router.post("/{review_id}/decision", response_model=DecisionResponse)
def decide_review(
    review_id: str,
    payload: DecisionRequest,
    lifecycle: LifecycleOrchestrator = Depends(get_lifecycle),
) -> DecisionResponse:
    outcome = lifecycle.decide(review_id, payload.reviewer_id, payload.decision, payload.feedback)
    return DecisionResponse(
        review=review_response(outcome.review),
        change_id=outcome.change.change_id,
        change_status=outcome.change.status,
        merge_commit_sha=outcome.change.merge_commit_sha,
        awaiting_pipeline=outcome.awaiting_pipeline,
    )
