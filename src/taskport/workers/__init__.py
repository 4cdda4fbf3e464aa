"""Concrete task workers and the contract they satisfy."""

from __future__ import annotations

from .base import TaskWorker, TaskWorkerContext, TaskWorkerResult
from .mock import MockTaskWorker
from .opencode import OpenCodeTaskWorker
from .registry import resolve_task_worker

__all__ = [
    "MockTaskWorker",
    "OpenCodeTaskWorker",
    "TaskWorker",
    "TaskWorkerContext",
    "TaskWorkerResult",
    "resolve_task_worker",
]
