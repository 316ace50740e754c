"""Utilities for generating identifiers used across the service."""

from __future__ import annotations

import uuid


def new_change_id() -> str:
    return str(uuid.uuid4())


def new_review_id() -> str:
    return f"rv_{uuid.uuid4().hex}"


def new_event_id() -> str:
    return f"ev_{uuid.uuid4().hex}"
