"""Drive an adapter through prepare/start/checkpoint/restore for one task.

These helpers are shared by the daemon loop and the attach/resume commands.
They record every step on the task (runtime fields plus an event) and let
adapter errors propagate; callers decide which status a failure maps to.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from loguru import logger

from .adapters.base import ExecutionAdapter, PreparedExecution, TaskRunHandle, require_capability
from .adapters.registry import create_task_adapter, resolve_task_adapter
from .artifacts import write_checkpoint
from .context import RepoContext
from .errors import ConfigError, TaskportError
from .models import CheckpointRef, RunStatus, Task
from .task_store import TaskStore
from .utils import _now_iso

AdapterFactory = Callable[[RepoContext, Task], ExecutionAdapter]


def adapter_for_task(ctx: RepoContext, task: Task) -> ExecutionAdapter:
    """The adapter a task was created with, or the configured fallback."""
    try:
        return create_task_adapter(task.adapter)
    except ConfigError:
        return resolve_task_adapter(ctx, task.worker).adapter


def _timeout_at(ctx: RepoContext) -> str:
    minutes = ctx.config.task.timeout_minutes
    return (datetime.now(timezone.utc) + timedelta(minutes=minutes)).isoformat()


def record_handle(store: TaskStore, ctx: RepoContext, handle: TaskRunHandle) -> Task:
    def _apply(task: Task) -> None:
        task.runtime.worker_pid = handle.worker_pid
        if handle.worktree_path is not None:
            task.runtime.worktree_path = str(handle.worktree_path)
        if handle.branch:
            task.runtime.worktree_branch = handle.branch
        task.runtime.started_at = _now_iso()
        task.runtime.timeout_at = _timeout_at(ctx)
        task.runtime.retained_for_debug = False

    return store.patch(handle.task_id, _apply, ("task.worker.started", f"pid={handle.worker_pid}"))


def launch_task(ctx: RepoContext, store: TaskStore, adapter: ExecutionAdapter, task: Task) -> TaskRunHandle:
    """Start a fresh run attempt: prepare the workspace, then start the worker."""
    task = store.patch(task.id, lambda t: t.begin_run(RunStatus.STARTED))
    prepared: PreparedExecution = adapter.prepare(ctx, task)

    def _prepared(t: Task) -> None:
        t.runtime.worktree_path = str(prepared.worktree_path) if prepared.worktree_path else None
        t.runtime.worktree_branch = prepared.branch
        if prepared.base_ref:
            t.runtime.base_ref = prepared.base_ref
        t.runtime.prepared_at = _now_iso()

    task = store.patch(task.id, _prepared, ("task.worker.prepared", f"worktree={prepared.worktree_path}"))
    handle = adapter.start(ctx, task, prepared)
    task = record_handle(store, ctx, handle)
    logger.info("Started worker pid {} for {}", handle.worker_pid, task.id)
    if adapter.capabilities.checkpoint:
        try:
            checkpoint_task(ctx, store, adapter, task, handle)
        except TaskportError as exc:
            logger.warning("Checkpoint for {} failed: {}", task.id, exc)
    return handle


def checkpoint_task(
    ctx: RepoContext,
    store: TaskStore,
    adapter: ExecutionAdapter,
    task: Task,
    handle: Optional[TaskRunHandle] = None,
) -> CheckpointRef:
    require_capability(adapter, "checkpoint")
    handle = handle or TaskRunHandle.from_task(task)
    ref = adapter.checkpoint(ctx, task, handle)
    write_checkpoint(ctx, ref)

    def _apply(t: Task) -> None:
        t.runtime.checkpoint = ref
        t.runtime.checkpoint_history.append(ref)

    store.patch(task.id, _apply, ("task.checkpoint.created", f"run={ref.run_id}"))
    return ref


def restore_task(ctx: RepoContext, store: TaskStore, adapter: ExecutionAdapter, task: Task) -> TaskRunHandle:
    """Continue *task* from its latest checkpoint in a new run attempt."""
    require_capability(adapter, "restore")
    checkpoint = task.runtime.checkpoint
    if checkpoint is None:
        raise TaskportError(f"Task {task.id} has no checkpoint to restore from")
    task = store.patch(
        task.id,
        lambda t: t.begin_run(RunStatus.RESTORED),
        ("task.run.continuation_started", f"Continuing from run {checkpoint.run_id}"),
    )
    handle = adapter.restore(ctx, task, checkpoint)
    record_handle(store, ctx, handle)
    return handle
