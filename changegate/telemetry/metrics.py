"""OpenTelemetry metrics instrumentation helpers."""

from __future__ import annotations

import logging

from opentelemetry import metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import ConsoleMetricExporter, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource

from changegate.core.config import settings

_logger = logging.getLogger(__name__)

_metrics_enabled = False
_provider: MeterProvider | None = None
_instruments: dict[str, object] = {}


def _build_readers(exporter_name: str) -> list:
    if exporter_name == "console":
        return [PeriodicExportingMetricReader(ConsoleMetricExporter())]
    if exporter_name == "prometheus":
        try:
            from opentelemetry.exporter.prometheus import PrometheusMetricReader  # type: ignore
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError(
                "Prometheus exporter selected but opentelemetry-exporter-prometheus is not installed."
            ) from exc
        return [PrometheusMetricReader()]
    if exporter_name == "otlp":
        try:
            from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter  # type: ignore
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("OTLP exporter selected but opentelemetry-exporter-otlp is not installed.") from exc
        endpoint = settings.otel_otlp_endpoint
        exporter = OTLPMetricExporter(endpoint=endpoint) if endpoint else OTLPMetricExporter()
        return [PeriodicExportingMetricReader(exporter)]
    _logger.warning("Unsupported OTEL exporter '%s'; defaulting to console", exporter_name)
    return [PeriodicExportingMetricReader(ConsoleMetricExporter())]


def configure_metrics() -> None:
    """Initialise the metrics provider if enabled via settings."""

    global _metrics_enabled, _provider

    if not settings.otel_enabled or _metrics_enabled:
        return

    readers = _build_readers(settings.otel_exporter.lower().strip())
    _provider = MeterProvider(metric_readers=readers, resource=Resource.create({"service.name": "changegate"}))
    metrics.set_meter_provider(_provider)
    meter = metrics.get_meter("changegate")
    _instruments["staged"] = meter.create_counter(
        name="changegate.changes.staged", unit="1", description="Changes staged onto a branch"
    )
    _instruments["merged"] = meter.create_counter(
        name="changegate.changes.merged", unit="1", description="Approved changes merged to mainline"
    )
    _instruments["decisions"] = meter.create_counter(
        name="changegate.reviews.decisions", unit="1", description="Review decisions by outcome"
    )
    _instruments["pipeline_reports"] = meter.create_counter(
        name="changegate.pipeline.reports", unit="1", description="CI reports ingested by status"
    )
    _instruments["staging_duration"] = meter.create_histogram(
        name="changegate.staging.duration", unit="s", description="Time spent writing a staging branch"
    )
    _metrics_enabled = True


def _add(name: str, amount: int = 1, attributes: dict | None = None) -> None:
    instrument = _instruments.get(name)
    if _metrics_enabled and instrument is not None:
        instrument.add(amount, attributes=attributes or {})


def increment_changes_staged() -> None:
    _add("staged")


def increment_changes_merged() -> None:
    _add("merged")


def record_review_decision(decision: str) -> None:
    _add("decisions", attributes={"decision": decision})


def record_pipeline_report(status: str) -> None:
    _add("pipeline_reports", attributes={"status": status})


def record_staging_duration(seconds: float) -> None:
    histogram = _instruments.get("staging_duration")
    if _metrics_enabled and histogram is not None:
        histogram.record(max(seconds, 0.0))


def collect_prometheus_metrics() -> tuple[bytes, str]:
    """Render the default Prometheus registry for the /metrics endpoint."""

    try:
        from prometheus_client import CONTENT_TYPE_LATEST, generate_latest  # type: ignore
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("Prometheus exporter selected but prometheus-client is not installed.") from exc
    return generate_latest(), CONTENT_TYPE_LATEST


def shutdown_metrics() -> None:
    global _metrics_enabled, _provider
    if _metrics_enabled and _provider is not None:
        try:
            _provider.shutdown()
        except Exception:  # pragma: no cover - defensive
            _logger.exception("Failed to shutdown metrics provider")
        finally:
            _metrics_enabled = False
            _provider = None
            _instruments.clear()
