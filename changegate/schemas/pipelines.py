"""API schemas for CI pipeline reports and status."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from changegate.models.domain import PipelineCheck, PipelineRun, PipelineStatus


class PipelineCheckPayload(BaseModel):
    name: str
    status: str = Field(..., description="passed, failed or skipped.")
    message: Optional[str] = None
    duration: Optional[float] = Field(None, description="Check duration in seconds.")

    def to_domain(self) -> PipelineCheck:
        return PipelineCheck(**self.model_dump())


class PipelineReport(BaseModel):
    """Body of POST /v1/cicd/webhook sent by CI systems."""

    model_config = ConfigDict(populate_by_name=True)

    change_id: str = Field(..., alias="changeId", min_length=1)
    status: str = Field(..., description="External run status, e.g. passed, failed, running, success.")
    run_id: Optional[str] = Field(None, alias="runId")
    run_url: Optional[str] = Field(None, alias="runUrl")
    checks: Optional[list[PipelineCheckPayload]] = None
    logs: Optional[str] = None


class PipelineRunResponse(BaseModel):
    change_id: str
    status: PipelineStatus
    run_id: Optional[str] = None
    run_url: Optional[str] = None
    checks: list[PipelineCheck] = Field(default_factory=list)
    logs: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime
    gate_passed: bool


class WebhookAck(BaseModel):
    received: bool = True
    change_id: Optional[str] = None
    status: Optional[PipelineStatus] = None
    duplicate: bool = False


def pipeline_run_response(run: PipelineRun, gate_passed: bool) -> PipelineRunResponse:
    return PipelineRunResponse(**run.model_dump(), gate_passed=gate_passed)
