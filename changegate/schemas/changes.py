"""API schemas for change sync, staging and submission."""

from __future__ import annotations

import base64
import binascii
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from changegate.core.errors import ValidationError
from changegate.models.domain import ChangeStatus, RiskTier, SnapshotFile
from changegate.schemas.pipelines import PipelineRunResponse
from changegate.schemas.reviews import ReviewResponse
from changegate.snapshots import looks_binary, normalize_snapshot_path


class SnapshotFilePayload(BaseModel):
    """One file of an application snapshot supplied inline."""

    path: str
    content: str
    encoding: Literal["utf-8", "base64"] = "utf-8"

    def to_domain(self) -> SnapshotFile:
        path = normalize_snapshot_path(self.path)
        if self.encoding == "base64":
            try:
                raw = base64.b64decode(self.content, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise ValidationError(f"File {self.path} is not valid base64") from exc
        else:
            raw = self.content.encode("utf-8")
        return SnapshotFile(path=path, content=raw, is_binary=looks_binary(path, raw))


class SyncEventRequest(BaseModel):
    """Request body for POST /v1/changes/sync."""

    organization_id: str
    app_id: str
    repository: str = Field(..., pattern=r"^[\w.-]+/[\w.-]+$", description="owner/name on GitHub.")
    author_id: str
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    risk_score: int = Field(..., ge=0, le=100)
    files: Optional[list[SnapshotFilePayload]] = Field(
        None, description="Inline snapshot; when omitted the configured snapshot source is read."
    )


class RestageRequest(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    files: Optional[list[SnapshotFilePayload]] = None


class SubmitRequest(BaseModel):
    actor_id: str
    reviewer_ids: Optional[list[str]] = Field(
        None, description="Explicit reviewers; auto-assigned from the organization when omitted."
    )


class ChangeResponse(BaseModel):
    change_id: str
    organization_id: str
    app_id: str
    repository: str
    author_id: str
    title: str
    description: Optional[str] = None
    status: ChangeStatus
    risk_score: int
    risk_tier: RiskTier
    staging_branch: Optional[str] = None
    staging_commit_sha: Optional[str] = None
    base_commit_sha: Optional[str] = None
    staging_error: Optional[str] = None
    review_round: int
    merge_commit_sha: Optional[str] = None
    merged_at: Optional[datetime] = None
    merge_error: Optional[str] = None
    submitted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    pipeline: Optional[PipelineRunResponse] = None
    reviews: list[ReviewResponse] = Field(default_factory=list)
    status_url: str


class SubmissionResponse(BaseModel):
    change_id: str
    status: ChangeStatus
    risk_tier: RiskTier
    auto_approved: bool
    reviews: list[ReviewResponse] = Field(default_factory=list)
    merge_commit_sha: Optional[str] = None
