"""Application entrypoint for the change governance service."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from changegate.core.config import settings
from changegate.core.errors import ChangeGateError
from changegate.core.logging import configure_logging
from changegate.dependencies import get_event_sink, get_notifier
from changegate.routers import changes, pipelines, reviews
from changegate.telemetry import collect_prometheus_metrics, configure_metrics, shutdown_metrics


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_metrics()
    yield
    get_notifier().stop()
    sink = get_event_sink()
    if hasattr(sink, "close"):
        sink.close()
    shutdown_metrics()


def create_app() -> FastAPI:
    configure_logging(settings.log_level)
    app = FastAPI(
        title="Change Governance & Staging",
        description="Stages low-code changes on review branches, gates them on reviewers and CI, and merges them.",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.exception_handler(ChangeGateError)
    async def change_gate_error_handler(request: Request, exc: ChangeGateError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    app.include_router(changes.router)
    app.include_router(reviews.router)
    app.include_router(pipelines.router)

    @app.get("/healthz", tags=["health"])
    def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    if settings.otel_exporter.lower().strip() == "prometheus":

        @app.get("/metrics", tags=["metrics"])
        def metrics_endpoint() -> PlainTextResponse:
            payload, content_type = collect_prometheus_metrics()
            return PlainTextResponse(payload, media_type=content_type)

    return app


app = create_app()
