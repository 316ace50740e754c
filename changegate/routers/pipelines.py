"""API routes for CI webhooks and pipeline status."""

from __future__ import annotations

import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import ValidationError as PayloadValidationError
from starlette.concurrency import run_in_threadpool

from changegate.core.config import settings
from changegate.core.errors import NotFoundError, ValidationError
from changegate.dependencies import get_lifecycle, get_pipeline_gate, get_store
from changegate.repositories.redis_store import ChangeStore
from changegate.schemas.pipelines import PipelineReport, PipelineRunResponse, WebhookAck, pipeline_run_response
from changegate.services.lifecycle import LifecycleOrchestrator
from changegate.services.pipelines import PipelineGate


router = APIRouter(prefix=f"{settings.api_v1_prefix}/cicd", tags=["cicd"])


@router.post("/webhook", response_model=WebhookAck)
async def pipeline_webhook(
    request: Request,
    x_hub_signature_256: Optional[str] = Header(None),
    x_webhook_secret: Optional[str] = Header(None),
    gate: PipelineGate = Depends(get_pipeline_gate),
    lifecycle: LifecycleOrchestrator = Depends(get_lifecycle),
) -> WebhookAck:
    body = await request.body()
    gate.verify_signature(body, x_hub_signature_256, x_webhook_secret)
    try:
        report = PipelineReport.model_validate_json(body)
    except PayloadValidationError as exc:
        raise ValidationError(f"Malformed pipeline payload: {exc.error_count()} error(s)") from exc
    result = await run_in_threadpool(lifecycle.ingest_pipeline_report, report)
    return WebhookAck(change_id=result.change.change_id, status=result.run.status, duplicate=not result.changed)


@router.post("/github-webhook", response_model=WebhookAck)
async def github_webhook(
    request: Request,
    x_github_event: Optional[str] = Header(None),
    x_hub_signature_256: Optional[str] = Header(None),
    gate: PipelineGate = Depends(get_pipeline_gate),
    lifecycle: LifecycleOrchestrator = Depends(get_lifecycle),
) -> WebhookAck:
    body = await request.body()
    gate.verify_signature(body, x_hub_signature_256)
    if x_github_event != "workflow_run":
        return WebhookAck()
    try:
        event = json.loads(body or b"{}")
    except json.JSONDecodeError as exc:
        raise ValidationError("Malformed GitHub webhook payload") from exc
    if not isinstance(event, dict):
        raise ValidationError("Malformed GitHub webhook payload")
    result = await run_in_threadpool(lifecycle.handle_workflow_run, event)
    if result is None:
        return WebhookAck()
    return WebhookAck(change_id=result.change.change_id, status=result.run.status, duplicate=not result.changed)


@router.get("/changes/{change_id}", response_model=PipelineRunResponse)
def get_pipeline_status(
    change_id: str,
    gate: PipelineGate = Depends(get_pipeline_gate),
    store: ChangeStore = Depends(get_store),
) -> PipelineRunResponse:
    change = store.get_change(change_id)
    if change is None:
        raise NotFoundError(f"Change {change_id} not found", code="CHANGE_NOT_FOUND")
    run = gate.get_run(change_id)
    if run is None:
        raise NotFoundError(f"No pipeline run for change {change_id}", code="RUN_NOT_FOUND")
    return pipeline_run_response(run, gate.is_passed(change))


@router.post("/changes/{change_id}/poll", response_model=PipelineRunResponse)
def poll_pipeline(
    change_id: str,
    gate: PipelineGate = Depends(get_pipeline_gate),
    lifecycle: LifecycleOrchestrator = Depends(get_lifecycle),
) -> PipelineRunResponse:
    result = lifecycle.poll_pipeline(change_id)
    return pipeline_run_response(result.run, gate.is_passed(result.change))
