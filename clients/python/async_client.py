from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, List

import httpx

from .client import PipelineReportRequest, SyncRequest, encode_report, sign_body


class AsyncChangegateClient:
    """Async variant of the change governance API client."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        headers: Dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        normalized_base = base_url.rstrip("/") + "/"
        self._client = httpx.AsyncClient(
            base_url=normalized_base,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def __aenter__(self) -> "AsyncChangegateClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def sync_change(self, request: SyncRequest) -> dict:
        payload = {key: value for key, value in asdict(request).items() if value is not None}
        response = await self._client.post("changes/sync", json=payload)
        response.raise_for_status()
        return response.json()

    async def get_change(self, change_id: str) -> dict:
        response = await self._client.get(f"changes/{change_id}")
        response.raise_for_status()
        return response.json()

    async def submit_change(self, change_id: str, actor_id: str, reviewer_ids: List[str] | None = None) -> dict:
        payload: Dict[str, Any] = {"actor_id": actor_id}
        if reviewer_ids is not None:
            payload["reviewer_ids"] = reviewer_ids
        response = await self._client.post(f"changes/{change_id}/submit", json=payload)
        response.raise_for_status()
        return response.json()

    async def decide_review(
        self,
        review_id: str,
        reviewer_id: str,
        decision: str,
        feedback: str | None = None,
    ) -> dict:
        payload: Dict[str, Any] = {"reviewer_id": reviewer_id, "decision": decision}
        if feedback:
            payload["feedback"] = feedback
        response = await self._client.post(f"reviews/{review_id}/decision", json=payload)
        response.raise_for_status()
        return response.json()

    async def report_pipeline(self, report: PipelineReportRequest, *, secret: str | None = None) -> dict:
        body = encode_report(report)
        headers = {"Content-Type": "application/json"}
        if secret:
            headers["X-Hub-Signature-256"] = sign_body(secret, body)
        response = await self._client.post("cicd/webhook", content=body, headers=headers)
        response.raise_for_status()
        return response.json()

    async def healthcheck(self) -> dict:
        response = await self._client.get("healthz")
        response.raise_for_status()
        return response.json()
