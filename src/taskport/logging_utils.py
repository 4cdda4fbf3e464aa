"""Configure loguru sinks and format task records for logs."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
    "{message}"
)

FILE_LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {process} | {module}:{line} | {message}"


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None, *, console: bool = True) -> None:
    """Replace loguru's sinks with a stderr sink and, optionally, a rotating file.

    Args:
        level: Minimum level for every sink.
        log_file: When given, also log to this file (rotated at 5 MB, three kept).
        console: Whether to keep the stderr sink.
    """
    logger.remove()
    if console:
        logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=level.upper(),
            format=FILE_LOG_FORMAT,
            rotation="5 MB",
            retention=3,
            enqueue=False,
        )


def summarize_task(task: Any) -> dict[str, Any]:
    """Render a compact, JSON-friendly view of a task for logs and ``--json`` output."""
    if task is None:
        return {"task": None}
    runtime = task.runtime
    d: dict[str, Any] = {
        "id": task.id,
        "display_id": task.display_id,
        "status": task.status.value,
        "mode": task.mode.value,
        "title": task.title,
    }
    if task.branch:
        d["branch"] = task.branch
    if task.queue.blocked_by_task_id:
        d["blocked_by"] = task.queue.blocked_by_task_id
    if runtime.worker_pid:
        d["worker_pid"] = runtime.worker_pid
    if runtime.runs:
        d["runs_n"] = len(runtime.runs)
        d["active_run_id"] = runtime.active_run_id
    if runtime.last_error:
        error = runtime.last_error
        d["last_error"] = (error[:240] + "…") if len(error) > 240 else error
    if runtime.retained_for_debug:
        d["retained_worktree"] = runtime.worktree_path
    return d


def pretty(obj: Any, *, indent: int = 2) -> str:
    """Serialize an object as JSON for readable logs.

    Returns:
        A JSON string when possible; otherwise `str(obj)`.
    """
    try:
        return json.dumps(obj, indent=indent, default=str)
    except (TypeError, ValueError):
        return str(obj)
