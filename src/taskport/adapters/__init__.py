"""Execution adapters: how a task's worker actually runs."""

from __future__ import annotations

from .base import (
    AttachContext,
    AttachHandoff,
    ExecutionAdapter,
    PreparedExecution,
    TaskRunHandle,
    require_capability,
)
from .registry import (
    AdapterDescriptor,
    AdapterResolution,
    create_task_adapter,
    list_task_adapters,
    resolve_task_adapter,
)

__all__ = [
    "AdapterDescriptor",
    "AdapterResolution",
    "AttachContext",
    "AttachHandoff",
    "ExecutionAdapter",
    "PreparedExecution",
    "TaskRunHandle",
    "create_task_adapter",
    "list_task_adapters",
    "require_capability",
    "resolve_task_adapter",
]
