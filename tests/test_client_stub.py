from __future__ import annotations

import asyncio
import json

import httpx

from changegate.services.pipelines import compute_signature
from clients.python import AsyncChangegateClient, ChangegateClient, PipelineReportRequest, SyncRequest


def test_client_sync_payload():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["url"] = str(request.url)
        captured["json"] = json.loads(request.content.decode())
        return httpx.Response(201, json={"change_id": "c-1", "status": "DRAFT"})

    transport = httpx.MockTransport(handler)
    with ChangegateClient("http://example.com/v1", transport=transport) as client:
        request = SyncRequest(
            organization_id="org-acme",
            app_id="shop",
            repository="acme/shop-app",
            author_id="u-author",
            title="Add Checkout Page",
            risk_score=45,
        )
        response = client.sync_change(request)

    assert response["change_id"] == "c-1"
    assert captured["method"] == "POST"
    assert captured["url"].endswith("/v1/changes/sync")
    assert captured["json"]["risk_score"] == 45
    assert "files" not in captured["json"]


def test_client_signs_pipeline_reports():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = request.content
        captured["signature"] = request.headers.get("X-Hub-Signature-256")
        return httpx.Response(200, json={"received": True, "duplicate": False})

    transport = httpx.MockTransport(handler)
    with ChangegateClient("http://example.com/v1", transport=transport) as client:
        client.report_pipeline(PipelineReportRequest(changeId="c-1", status="passed", runId="9"), secret="s3cret")

    assert captured["signature"] == compute_signature("s3cret", captured["body"])
    body = json.loads(captured["body"])
    assert body == {"changeId": "c-1", "status": "passed", "runId": "9", "checks": []}


def test_client_metrics_query():
    params_captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        params_captured.update(request.url.params)
        return httpx.Response(200, json={"total_reviews": 0})

    transport = httpx.MockTransport(handler)
    with ChangegateClient("http://example.com/v1", transport=transport) as client:
        client.get_review_metrics("org-acme", start="2024-01-01T00:00:00Z")

    assert params_captured == {"organization_id": "org-acme", "start": "2024-01-01T00:00:00Z"}


def test_async_client_decision():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["json"] = json.loads(request.content.decode())
        return httpx.Response(200, json={"change_status": "APPROVED"})

    async def run() -> dict:
        async with AsyncChangegateClient("http://example.com/v1", transport=httpx.MockTransport(handler)) as client:
            return await client.decide_review("rv_1", "u-admin-1", "approve")

    response = asyncio.run(run())

    assert response["change_status"] == "APPROVED"
    assert captured["url"].endswith("/v1/reviews/rv_1/decision")
    assert captured["json"] == {"reviewer_id": "u-admin-1", "decision": "approve"}
