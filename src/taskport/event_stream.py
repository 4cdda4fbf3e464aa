"""Append-only task event logs and per-consumer cursors.

Each event lands twice: once in ``events/<task>.jsonl`` and once in the global
``events/all.jsonl`` stream. Named consumers read the global stream through a
line cursor persisted under ``subscribers/``.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Callable, Optional

from .constants import EVENT_READ_LIMIT
from .context import RepoContext
from .errors import TaskValidationError
from .io_utils import _iter_jsonl
from .models import TaskEvent

_CONSUMER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass
class GlobalEventBatch:
    events: list[TaskEvent]
    next_line: int


def append_task_event(ctx: RepoContext, task_id: str, event_type: str, message: Optional[str] = None) -> TaskEvent:
    event = TaskEvent(task_id=task_id, type=event_type, message=message)
    line = json.dumps(event.to_dict())
    ctx.backend.append_line(ctx.paths.task_events(task_id), line)
    ctx.backend.append_line(ctx.paths.global_events, line)
    return event


def read_task_events(ctx: RepoContext, task_id: str, limit: Optional[int] = None) -> list[TaskEvent]:
    events = [TaskEvent.from_dict(item) for item in _iter_jsonl(ctx.backend.read_lines(ctx.paths.task_events(task_id)))]
    if limit is not None and limit >= 0:
        return events[-limit:] if limit else []
    return events


def read_global_events(ctx: RepoContext, from_line: int = 0, limit: int = EVENT_READ_LIMIT) -> GlobalEventBatch:
    lines = ctx.backend.read_lines(ctx.paths.global_events)
    start = max(0, min(from_line, len(lines)))
    window = lines[start:start + max(limit, 0)]
    events = [TaskEvent.from_dict(item) for item in _iter_jsonl(window)]
    return GlobalEventBatch(events=events, next_line=start + len(window))


def _validate_consumer(consumer: str) -> str:
    name = (consumer or "").strip()
    if not _CONSUMER_RE.match(name):
        raise TaskValidationError(f"Invalid consumer name: {consumer!r}")
    return name


def read_cursor(ctx: RepoContext, consumer: str) -> int:
    name = _validate_consumer(consumer)
    data = ctx.backend.read_json(ctx.paths.subscribers_dir / f"{name}.cursor.json") or {}
    try:
        return max(0, int(data.get("line", 0)))
    except (TypeError, ValueError):
        return 0


def consume_global_events(
    ctx: RepoContext,
    consumer: str,
    handler: Callable[[TaskEvent], None],
    limit: int = EVENT_READ_LIMIT,
) -> int:
    """Deliver unseen global events to *handler* and advance the consumer cursor.

    The cursor only moves past events whose handler call returned; an exception
    propagates and the failed event is delivered again on the next call.

    Returns:
        The number of events delivered.
    """
    name = _validate_consumer(consumer)
    cursor_path = ctx.paths.subscribers_dir / f"{name}.cursor.json"
    lock_path = ctx.paths.subscribers_dir / f"{name}.cursor.lock"
    with ctx.backend.lock(lock_path):
        start = read_cursor(ctx, name)
        lines = ctx.backend.read_lines(ctx.paths.global_events)
        window = lines[start:start + max(limit, 0)]
        delivered = 0
        line_no = start
        try:
            for raw in window:
                for item in _iter_jsonl([raw]):
                    handler(TaskEvent.from_dict(item))
                    delivered += 1
                line_no += 1
        finally:
            if line_no != start:
                ctx.backend.write_json(cursor_path, {"line": line_no})
    return delivered
