"""Audit sinks recording every change lifecycle transition."""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from changegate.core.config import settings
from changegate.core.identifiers import new_event_id


def build_audit_event(event_type: str, change_id: str, **attributes: Any) -> dict:
    """Envelope shared by all lifecycle audit records."""

    return {
        "event_id": new_event_id(),
        "event_type": event_type,
        "change_id": change_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "attributes": attributes,
    }


class EventSink(Protocol):
    """Abstract sink contract."""

    def publish(self, event: dict) -> None:  # pragma: no cover - interface
        ...

    def close(self) -> None:  # pragma: no cover - interface
        ...


class NullEventSink:
    """No-op sink used when auditing is disabled."""

    def publish(self, event: dict) -> None:
        return None

    def close(self) -> None:
        return None


class FileEventSink:
    """Appends audit events to a newline-delimited JSON file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def publish(self, event: dict) -> None:
        line = json.dumps(event, separators=(",", ":"), sort_keys=True, default=str)
        with self._lock, self.path.open("a", encoding="utf-8") as handle:
            handle.write(line)
            handle.write("\n")

    def read_events(self) -> list[dict]:
        if not self.path.exists():
            return []
        with self._lock, self.path.open("r", encoding="utf-8") as handle:
            return [json.loads(line) for line in handle if line.strip()]

    def close(self) -> None:
        return None


def sink_from_settings() -> EventSink:
    """Factory to construct the audit sink based on app settings."""

    backend = settings.audit_backend.lower().strip()
    if backend == "file":
        return FileEventSink(settings.audit_path)
    if backend in {"off", "none", "disabled"}:
        return NullEventSink()
    raise ValueError(f"Unsupported audit backend: {settings.audit_backend}")
