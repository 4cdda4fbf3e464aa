"""Interactive attach and operator resume.

``attach_task`` hands a task's session to an interactive client, reviving a
finished task in a new run attempt when no worker is alive. ``resume_task``
only records the request; the daemon performs the restore on its next tick.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from .adapters.base import AttachContext, ExecutionAdapter, TaskRunHandle, require_capability
from .artifacts import write_attach_context
from .context import RepoContext
from .daemon import ensure_task_daemon
from .errors import TaskportError, TaskValidationError
from .execution import AdapterFactory, adapter_for_task, launch_task, restore_task
from .models import AttachState, Task, TaskStatus, is_finished
from .state_machine import can_transition
from .task_ref import resolve_task_ref
from .task_store import TaskStore
from .utils import _now_iso


@dataclass
class AttachResult:
    task: Task
    context: AttachContext
    context_path: Path
    revived: bool


@dataclass
class ResumeOutcome:
    task: Task
    requested: bool
    guidance: Optional[str] = None


def _revival_source_exists(task: Task) -> bool:
    checkpoint = task.runtime.checkpoint
    if checkpoint is None:
        return False
    raw = checkpoint.payload.get("worktree_path")
    return bool(raw) and Path(raw).exists()


def _revive(ctx: RepoContext, store: TaskStore, adapter: ExecutionAdapter, task: Task) -> TaskRunHandle:
    with store.transaction() as tx:
        current = tx.require(task.id)
        previous = current.status
        # the daemon skips a reviving task until the new worker is recorded
        current.runtime.worker_pid = None
        tx.set_status(current, TaskStatus.REVIVING_FOR_ATTACH, "Reviving task for attach")
        tx.emit(current.id, "task.attach.revive_started", f"Reviving {previous.value} task for attach")
        task = current
    if adapter.capabilities.restore and _revival_source_exists(task):
        handle = restore_task(ctx, store, adapter, task)
    else:
        handle = launch_task(ctx, store, adapter, task)
    store.patch(task.id, lambda t: None, ("task.attach.revive_succeeded", f"run={handle.run_id}"))
    return handle


def attach_task(
    ctx: RepoContext,
    ref: str,
    client: Optional[str] = None,
    *,
    adapter_factory: AdapterFactory = adapter_for_task,
) -> AttachResult:
    """Prepare *ref* for an interactive client and return the handoff context.

    Raises:
        TaskValidationError: If attach is disabled or the task is still queued.
        AdapterUnsupportedError: If the task's adapter cannot hand off.
    """
    attach_cfg = ctx.config.task.attach
    if not attach_cfg.enabled:
        raise TaskValidationError("Attach is disabled (task.attach.enabled=false)")
    store = TaskStore(ctx)
    task = resolve_task_ref(store, ref)
    if task.status == TaskStatus.QUEUED:
        raise TaskValidationError(f"Task {task.id} has not started yet; wait for it to run before attaching")
    adapter = adapter_factory(ctx, task)
    require_capability(adapter, "attach_handoff")
    client = client or attach_cfg.client

    handle = TaskRunHandle.from_task(task)
    live = (
        not is_finished(task.status)
        and handle.worker_pid is not None
        and adapter.status(handle) == "running"
    )

    def _requested(t: Task) -> None:
        t.attach.state = AttachState.PENDING_HANDOFF
        t.attach.client = client
        t.attach.requested_at = _now_iso()

    store.patch(task.id, _requested, ("task.attach.requested", f"client={client}"))

    revived = False
    if not live:
        try:
            handle = _revive(ctx, store, adapter, task)
        except Exception as exc:
            logger.warning("Attach revival of {} failed: {}", task.id, exc)
            with store.transaction() as tx:
                current = tx.require(task.id)
                current.attach.state = None
                if current.status == TaskStatus.REVIVING_FOR_ATTACH:
                    current.runtime.retained_for_debug = True
                    tx.set_status(current, TaskStatus.RESUME_FAILED, f"Attach revival failed: {exc}")
                tx.emit(current.id, "task.attach.revive_failed", str(exc))
            if isinstance(exc, TaskportError):
                raise
            raise TaskportError(f"Attach revival failed for {task.id}: {exc}") from exc
        revived = True
        ensure_task_daemon(ctx)

    task = store.require(task.id)
    handoff = adapter.request_handoff(handle)
    context = adapter.attach_context(ctx, task, handle)
    context_path = write_attach_context(ctx, task.id, context.to_dict())

    with store.transaction() as tx:
        current = tx.require(task.id)
        current.attach.state = AttachState.HANDOFF_READY
        current.attach.session_handle = handoff.session_handle
        current.attach.ready_at = handoff.ready_at
        current.attach.checkpoint_id = context.checkpoint_run_id
        if can_transition(current.status, TaskStatus.PAUSED_FOR_ATTACH) and not is_finished(current.status):
            tx.set_status(current, TaskStatus.PAUSED_FOR_ATTACH, f"Handed off to {client}")
        tx.touch(current)
        tx.emit(current.id, "task.attach.handoff_ready", f"boundary={handoff.boundary} strategy={context.restore_strategy}")
        task = current
    logger.info("Task {} ready for {} ({})", task.id, client, context.restore_strategy)
    return AttachResult(task=task, context=context, context_path=context_path, revived=revived)


def resume_task(ctx: RepoContext, ref: str, *, start_daemon: bool = True) -> ResumeOutcome:
    """Ask the daemon to continue a parked task from its latest checkpoint."""
    store = TaskStore(ctx)
    task = resolve_task_ref(store, ref)
    if is_finished(task.status):
        return ResumeOutcome(
            task=task,
            requested=False,
            guidance=f"Task {task.id} is terminal ({task.status.value}); use attach to revive it.",
        )
    if task.status == TaskStatus.QUEUED:
        return ResumeOutcome(task=task, requested=False, guidance=f"Task {task.id} is queued; nothing to resume.")
    if task.status == TaskStatus.RESUMING:
        return ResumeOutcome(task=task, requested=False, guidance=f"Task {task.id} is already resuming.")
    task = store.update_status(task.id, TaskStatus.RESUMING, "Resume requested by user")
    if start_daemon:
        ensure_task_daemon(ctx)
    return ResumeOutcome(task=task, requested=True)
