"""API routes for syncing, staging, submitting and merging changes."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, status

from changegate.core.config import settings
from changegate.dependencies import get_lifecycle
from changegate.schemas.changes import (
    ChangeResponse,
    RestageRequest,
    SubmissionResponse,
    SubmitRequest,
    SyncEventRequest,
)
from changegate.schemas.pipelines import pipeline_run_response
from changegate.schemas.reviews import review_response
from changegate.services.lifecycle import ChangeView, LifecycleOrchestrator, SyncEvent
from changegate.services.reviews import compute_sla


router = APIRouter(prefix=f"{settings.api_v1_prefix}/changes", tags=["changes"])


def _change_response(view: ChangeView) -> ChangeResponse:
    change = view.change
    now = datetime.now(timezone.utc)
    return ChangeResponse(
        **change.model_dump(),
        risk_tier=change.risk_tier,
        pipeline=pipeline_run_response(view.pipeline, view.gate_passed) if view.pipeline else None,
        reviews=[review_response(review, compute_sla(review, change.risk_tier, now)) for review in view.reviews],
        status_url=f"{settings.service_base_url}{settings.api_v1_prefix}/changes/{change.change_id}",
    )


@router.post("/sync", response_model=ChangeResponse, status_code=status.HTTP_201_CREATED)
def sync_change(
    payload: SyncEventRequest,
    lifecycle: LifecycleOrchestrator = Depends(get_lifecycle),
) -> ChangeResponse:
    files = [file.to_domain() for file in payload.files] if payload.files is not None else None
    record = lifecycle.stage_change(
        SyncEvent(
            organization_id=payload.organization_id,
            app_id=payload.app_id,
            repository=payload.repository,
            author_id=payload.author_id,
            title=payload.title,
            description=payload.description,
            risk_score=payload.risk_score,
            files=files,
        )
    )
    return _change_response(lifecycle.describe(record.change_id))


@router.get("/{change_id}", response_model=ChangeResponse)
def get_change(
    change_id: str,
    lifecycle: LifecycleOrchestrator = Depends(get_lifecycle),
) -> ChangeResponse:
    return _change_response(lifecycle.describe(change_id))


@router.post("/{change_id}/restage", response_model=ChangeResponse)
def restage_change(
    change_id: str,
    payload: RestageRequest,
    lifecycle: LifecycleOrchestrator = Depends(get_lifecycle),
) -> ChangeResponse:
    files = [file.to_domain() for file in payload.files] if payload.files is not None else None
    lifecycle.restage(change_id, title=payload.title, files=files)
    return _change_response(lifecycle.describe(change_id))


@router.post("/{change_id}/submit", response_model=SubmissionResponse)
def submit_change(
    change_id: str,
    payload: SubmitRequest,
    lifecycle: LifecycleOrchestrator = Depends(get_lifecycle),
) -> SubmissionResponse:
    outcome = lifecycle.submit(change_id, payload.actor_id, payload.reviewer_ids)
    change = outcome.change
    return SubmissionResponse(
        change_id=change.change_id,
        status=change.status,
        risk_tier=change.risk_tier,
        auto_approved=outcome.auto_approved,
        reviews=[review_response(review) for review in outcome.reviews],
        merge_commit_sha=change.merge_commit_sha,
    )


@router.post("/{change_id}/merge", response_model=ChangeResponse)
def merge_change(
    change_id: str,
    lifecycle: LifecycleOrchestrator = Depends(get_lifecycle),
) -> ChangeResponse:
    lifecycle.merge(change_id)
    return _change_response(lifecycle.describe(change_id))
