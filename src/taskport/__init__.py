"""Provide the public `taskport` package exports."""

from __future__ import annotations

from .context import RepoContext
from .errors import TaskportError
from .models import Task, TaskStatus
from .task_store import TaskStore

__version__ = "0.1.0"

__all__ = ["RepoContext", "Task", "TaskStatus", "TaskStore", "TaskportError", "__version__"]
