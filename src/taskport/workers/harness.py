"""Worker process entry: run one task inside its worktree and report back.

The worker owns its own status reporting. It moves the task to ``running``,
executes the configured worker, persists artifacts, and finally records the
terminal status unless the daemon or an operator already finished the task
(cancel or timeout) in the meantime.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from loguru import logger

from ..adapters.local import build_continue_plan
from ..artifacts import (
    append_stderr,
    append_stdout,
    capture_worktree_artifacts,
    write_commit_refs,
    write_metadata,
    write_summary,
)
from ..context import RepoContext
from ..models import RunStatus, Task, TaskStatus, is_finished
from ..task_store import TaskStore
from .base import Continuation, TaskWorkerContext, TaskWorkerResult
from .registry import resolve_task_worker

_STARTABLE = {TaskStatus.PREPARING, TaskStatus.RESUMING, TaskStatus.REVIVING_FOR_ATTACH}
_REPORTABLE = {
    TaskStatus.PREPARING,
    TaskStatus.RUNNING,
    TaskStatus.RESUMING,
    TaskStatus.REVIVING_FOR_ATTACH,
    TaskStatus.PAUSED_FOR_ATTACH,
}


def _line_sink(ctx: RepoContext, task_id: str, stream: str):
    writer = append_stdout if stream == "stdout" else append_stderr

    def _sink(text: str) -> None:
        writer(ctx, task_id, text if text.endswith("\n") else text + "\n")

    return _sink


def _continuation_for(ctx: RepoContext, task: Task) -> Optional[Continuation]:
    run = task.active_run()
    checkpoint = task.runtime.checkpoint
    if run is None or run.status != RunStatus.RESTORED or checkpoint is None:
        return None
    plan = build_continue_plan(ctx, task, checkpoint)
    return Continuation(
        strategy=plan.strategy,
        checkpoint_run_id=checkpoint.run_id,
        session=checkpoint.payload.get("session") or task.runtime.session,
        summary=plan.summary,
    )


def _mark_running(store: TaskStore, task_id: str) -> Task:
    with store.transaction() as tx:
        task = tx.require(task_id)
        if task.status in _STARTABLE:
            tx.set_status(task, TaskStatus.RUNNING, f"Worker running (pid={os.getpid()})")
        task.runtime.worker_pid = os.getpid()
        tx.touch(task)
    return task


def _record_outcome(
    store: TaskStore,
    task_id: str,
    result: Optional[TaskWorkerResult],
    error: Optional[str],
) -> Optional[TaskStatus]:
    with store.transaction() as tx:
        task = tx.require(task_id)
        if is_finished(task.status) or task.status not in _REPORTABLE:
            logger.info("Task {} already {}; not recording worker outcome", task.id, task.status.value)
            return None
        task.runtime.last_exit_code = 0 if error is None else 1
        if result is not None and result.session:
            task.runtime.session = result.session
        if error is not None:
            tx.set_status(task, TaskStatus.FAILED, error)
            return TaskStatus.FAILED
        pending_children = [
            child for child in (tx.get(cid) for cid in task.children_ids)
            if child is not None and not is_finished(child.status)
        ]
        if pending_children:
            tx.set_status(
                task,
                TaskStatus.WAITING_ON_CHILDREN,
                f"Waiting on {len(pending_children)} child task(s)",
            )
            return TaskStatus.WAITING_ON_CHILDREN
        tx.set_status(task, TaskStatus.COMPLETED, result.summary if result else None)
        return TaskStatus.COMPLETED


def run_task_worker(ctx: RepoContext, task_id: str, worktree: Path) -> int:
    """Run *task_id* to completion; return the process exit code."""
    store = TaskStore(ctx)
    task = store.require(task_id)
    if is_finished(task.status):
        logger.info("Task {} is already {}; worker exiting", task.id, task.status.value)
        return 0

    task = _mark_running(store, task_id)
    stdout = _line_sink(ctx, task.id, "stdout")
    stderr = _line_sink(ctx, task.id, "stderr")

    def _report_session(session: str) -> None:
        store.patch(task.id, lambda t: setattr(t.runtime, "session", session))

    result: Optional[TaskWorkerResult] = None
    error: Optional[str] = None
    try:
        worker = resolve_task_worker(ctx, task)
        context = TaskWorkerContext(
            task=task,
            repo_root=ctx.repo_root,
            worktree_path=worktree,
            append_stdout=stdout,
            append_stderr=stderr,
            continuation=_continuation_for(ctx, task),
            report_session=_report_session,
        )
        result = worker.execute(context)
    except Exception as exc:
        error = str(exc) or exc.__class__.__name__
        logger.warning("Worker for {} failed: {}", task.id, error)
        stderr(error)
    finally:
        try:
            if task.is_write:
                commits = capture_worktree_artifacts(ctx, task, worktree)
            else:
                commits = result.commit_refs if result else []
                write_commit_refs(ctx, task.id, commits)
            if result is not None and result.summary:
                write_summary(ctx, task.id, result.summary)
            write_metadata(
                ctx,
                task,
                commit_count=len(commits),
                worker_metadata=result.metadata if result else {},
                error=error,
            )
        except Exception as exc:
            logger.exception("Artifact capture failed for {}", task.id)
            if error is None:
                error = f"Artifact capture failed: {exc}"

    outcome = _record_outcome(store, task.id, result, error)
    logger.info("Worker for {} finished: {}", task.id, outcome.value if outcome else "not recorded")
    return 0 if error is None else 1
