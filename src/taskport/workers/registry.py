"""Pick the worker implementation for a task from configuration."""

from __future__ import annotations

from typing import Union

from ..context import RepoContext
from ..errors import ConfigError
from ..models import Task
from .mock import MockTaskWorker
from .opencode import OpenCodeTaskWorker

AnyWorker = Union[MockTaskWorker, OpenCodeTaskWorker]

_WORKER_TYPES = {
    "mock": MockTaskWorker,
    "opencode": OpenCodeTaskWorker,
}


def resolve_task_worker(ctx: RepoContext, task: Task) -> AnyWorker:
    """``task.worker``, then ``task.default_worker``, then the built-in simulation worker."""
    task_cfg = ctx.config.task
    name = task.worker or task_cfg.default_worker
    if not name:
        return MockTaskWorker()
    definition = task_cfg.workers.get(name)
    if definition is None:
        if name in _WORKER_TYPES and not task_cfg.workers:
            return _WORKER_TYPES[name](name)
        raise ConfigError(f"Unknown worker: {name}")
    return _WORKER_TYPES[definition.type](name, definition.config)
