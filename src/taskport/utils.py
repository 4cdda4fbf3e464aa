"""Provide utility helpers for timestamps and identifiers."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from .constants import TASK_ID_PREFIX


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        if not isinstance(value, str):
            value = str(value)
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
        # If a naive timestamp slips in, assume UTC to avoid crashes.
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except ValueError:
        return None


def _seconds_since(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    stamp = _parse_iso(value)
    if stamp is None:
        return None
    current = now or datetime.now(timezone.utc)
    return (current - stamp).total_seconds()


def _generate_task_id() -> str:
    """Short human-friendly task ID: ``task-<8hex>``."""
    return f"{TASK_ID_PREFIX}{uuid.uuid4().hex[:8]}"


def _generate_run_id(task_id: str, attempt: int) -> str:
    return f"{task_id}-run-{attempt}-{uuid.uuid4().hex[:6]}"
