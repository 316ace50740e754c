from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

import httpx


@dataclass
class SyncRequest:
    """Convenience wrapper for POST /changes/sync payloads."""

    organization_id: str
    app_id: str
    repository: str
    author_id: str
    title: str
    risk_score: int
    description: str | None = None
    files: List[Dict[str, Any]] | None = None


@dataclass
class PipelineReportRequest:
    """CI report body for POST /cicd/webhook."""

    changeId: str
    status: str
    runId: str | None = None
    runUrl: str | None = None
    checks: List[Dict[str, Any]] = field(default_factory=list)
    logs: str | None = None


def sign_body(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def encode_report(report: PipelineReportRequest) -> bytes:
    payload = {key: value for key, value in asdict(report).items() if value is not None}
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


class ChangegateClient:
    """Lightweight synchronous client for the change governance API."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        headers: Dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        normalized_base = base_url.rstrip("/") + "/"
        self._client = httpx.Client(
            base_url=normalized_base,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    def __enter__(self) -> "ChangegateClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def sync_change(self, request: SyncRequest) -> dict:
        payload = {key: value for key, value in asdict(request).items() if value is not None}
        response = self._client.post("changes/sync", json=payload)
        response.raise_for_status()
        return response.json()

    def get_change(self, change_id: str) -> dict:
        response = self._client.get(f"changes/{change_id}")
        response.raise_for_status()
        return response.json()

    def submit_change(self, change_id: str, actor_id: str, reviewer_ids: List[str] | None = None) -> dict:
        payload: Dict[str, Any] = {"actor_id": actor_id}
        if reviewer_ids is not None:
            payload["reviewer_ids"] = reviewer_ids
        response = self._client.post(f"changes/{change_id}/submit", json=payload)
        response.raise_for_status()
        return response.json()

    def merge_change(self, change_id: str) -> dict:
        response = self._client.post(f"changes/{change_id}/merge")
        response.raise_for_status()
        return response.json()

    def decide_review(
        self,
        review_id: str,
        reviewer_id: str,
        decision: str,
        feedback: str | None = None,
    ) -> dict:
        payload: Dict[str, Any] = {"reviewer_id": reviewer_id, "decision": decision}
        if feedback:
            payload["feedback"] = feedback
        response = self._client.post(f"reviews/{review_id}/decision", json=payload)
        response.raise_for_status()
        return response.json()

    def get_review_metrics(self, organization_id: str, *, start: str | None = None, end: str | None = None) -> dict:
        params = {"organization_id": organization_id}
        if start:
            params["start"] = start
        if end:
            params["end"] = end
        response = self._client.get("reviews/metrics", params=params)
        response.raise_for_status()
        return response.json()

    def report_pipeline(self, report: PipelineReportRequest, *, secret: str | None = None) -> dict:
        body = encode_report(report)
        headers = {"Content-Type": "application/json"}
        if secret:
            headers["X-Hub-Signature-256"] = sign_body(secret, body)
        response = self._client.post("cicd/webhook", content=body, headers=headers)
        response.raise_for_status()
        return response.json()

    def get_pipeline_status(self, change_id: str) -> dict:
        response = self._client.get(f"cicd/changes/{change_id}")
        response.raise_for_status()
        return response.json()

    def healthcheck(self) -> dict:
        response = self._client.get("healthz")
        response.raise_for_status()
        return response.json()
