"""Telemetry utilities for lifecycle audit events and metrics."""

from .event_sink import EventSink, FileEventSink, NullEventSink, build_audit_event, sink_from_settings
from .metrics import (
    collect_prometheus_metrics,
    configure_metrics,
    increment_changes_merged,
    increment_changes_staged,
    record_pipeline_report,
    record_review_decision,
    record_staging_duration,
    shutdown_metrics,
)

__all__ = [
    "EventSink",
    "FileEventSink",
    "NullEventSink",
    "build_audit_event",
    "sink_from_settings",
    "collect_prometheus_metrics",
    "configure_metrics",
    "increment_changes_merged",
    "increment_changes_staged",
    "record_pipeline_report",
    "record_review_decision",
    "record_staging_duration",
    "shutdown_metrics",
]
