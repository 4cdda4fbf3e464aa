"""One background scheduler process per repository.

The daemon is a synchronous polling loop. Each tick it reconciles branch
queues, supervises in-flight workers (timeouts, crashes, teardown), services
resume requests, settles lineage waits, starts every runnable task, feeds
event subscribers and does idle accounting. Workers run as detached
subprocesses and are only ever liveness-probed, never awaited.
"""

from __future__ import annotations

import os
import signal
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Optional

from loguru import logger

from .adapters.base import ExecutionAdapter, TaskRunHandle
from .artifacts import collect_garbage
from .constants import DEFAULT_POLL_INTERVAL_SECONDS
from .context import RepoContext
from .errors import DaemonUnavailableError, TaskportError
from .execution import AdapterFactory, adapter_for_task, launch_task, restore_task
from .models import (
    WORKER_STATUSES,
    AttachState,
    DaemonState,
    DaemonStatus,
    RunStatus,
    Task,
    TaskStatus,
    is_finished,
    is_terminal,
)
from .process import is_process_alive, signal_process, spawn_detached, taskport_command
from .subscribers import dispatch_task_subscribers
from .task_store import TaskStore
from .utils import _now_iso, _parse_iso, _seconds_since

StopReason = Literal["not_running", "active_tasks", "stopped"]


# ---------------------------------------------------------------------------
# Daemon state file
# ---------------------------------------------------------------------------

def read_daemon_state(ctx: RepoContext) -> Optional[DaemonState]:
    return DaemonState.from_dict(ctx.backend.read_json(ctx.paths.daemon_state))


def write_daemon_state(ctx: RepoContext, state: DaemonState) -> None:
    ctx.backend.write_json(ctx.paths.daemon_state, state.to_dict())


def daemon_is_running(ctx: RepoContext) -> bool:
    state = read_daemon_state(ctx)
    return state is not None and is_process_alive(state.pid)


@dataclass
class EnsureResult:
    started: bool
    pid: int


def ensure_task_daemon(ctx: RepoContext) -> EnsureResult:
    """Start the daemon unless a live one is already recorded.

    Safe to call from every command that needs background processing; the
    start lock makes racing callers converge on a single daemon. Returns
    without waiting for the daemon to become ready.

    Raises:
        DaemonUnavailableError: If the daemon process cannot be spawned.
    """
    with ctx.backend.lock(ctx.paths.daemon_start_lock):
        state = read_daemon_state(ctx)
        if state is not None and is_process_alive(state.pid):
            return EnsureResult(started=False, pid=state.pid)
        args = taskport_command("task", "daemon", "--serve", "--repo", str(ctx.repo_root))
        try:
            pid = spawn_detached(
                args,
                cwd=ctx.repo_root,
                stderr_path=ctx.paths.runtime_dir / "daemon.stderr.log",
            )
        except OSError as exc:
            raise DaemonUnavailableError(f"Unable to start task daemon: {exc}") from exc
        write_daemon_state(ctx, DaemonState(pid=pid, id=uuid.uuid4().hex, status=DaemonStatus.STARTING))
    logger.info("Started task daemon (pid {})", pid)
    return EnsureResult(started=True, pid=pid)


@dataclass
class StopResult:
    stopped: bool
    reason: StopReason


def stop_task_daemon(ctx: RepoContext, force: bool = False, wait_seconds: float = 5.0) -> StopResult:
    state = read_daemon_state(ctx)
    if state is None or not is_process_alive(state.pid):
        return StopResult(stopped=False, reason="not_running")
    if not force and TaskStore(ctx).count_active() > 0:
        return StopResult(stopped=False, reason="active_tasks")
    signal_process(state.pid, signal.SIGTERM)
    deadline = time.monotonic() + wait_seconds
    while time.monotonic() < deadline and is_process_alive(state.pid):
        time.sleep(0.1)
    if is_process_alive(state.pid):
        logger.warning("Daemon pid {} ignored SIGTERM; killing", state.pid)
        signal_process(state.pid, signal.SIGKILL)
    return StopResult(stopped=True, reason="stopped")


def cleanup_task_runtime(ctx: RepoContext) -> None:
    """Remove daemon state, locks and logs wholesale."""
    ctx.backend.remove_tree(ctx.paths.runtime_dir)


def cleanup_finished_tasks(ctx: RepoContext, adapter_factory: AdapterFactory = adapter_for_task) -> list[str]:
    """Tear down retained worktrees of terminal tasks and mark them cleaned.

    Artifacts stay until their retention window elapses.
    """
    store = TaskStore(ctx)
    cleaned: list[str] = []
    for task in store.read_snapshot():
        if not is_terminal(task.status):
            continue
        if is_process_alive(task.runtime.worker_pid):
            continue
        adapter = adapter_factory(ctx, task)
        try:
            adapter.cleanup(ctx, TaskRunHandle.from_task(task))
        except TaskportError as exc:
            logger.warning("Cleanup of {} failed: {}", task.id, exc)
            continue

        def _apply(t: Task) -> None:
            t.runtime.worker_pid = None
            t.runtime.worktree_path = None
            t.runtime.retained_for_debug = False

        store.patch(task.id, _apply)
        store.update_status(task.id, TaskStatus.CLEANED, "Runtime state removed by cleanup")
        cleaned.append(task.id)
    collect_garbage(ctx, store.read_snapshot())
    return cleaned


# ---------------------------------------------------------------------------
# Daemon loop
# ---------------------------------------------------------------------------

class TaskDaemon:
    def __init__(
        self,
        ctx: RepoContext,
        *,
        idle_stop_seconds: Optional[float] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        adapter_factory: AdapterFactory = adapter_for_task,
    ) -> None:
        self.ctx = ctx
        self.store = TaskStore(ctx)
        self.poll_interval = poll_interval
        self.idle_stop_seconds = (
            idle_stop_seconds
            if idle_stop_seconds is not None
            else ctx.config.task.daemon_idle_stop_minutes * 60
        )
        self.adapter_factory = adapter_factory
        self.state = DaemonState(pid=os.getpid(), id=uuid.uuid4().hex, status=DaemonStatus.RUNNING)
        self._stop_requested = False

    # -- control ------------------------------------------------------------

    def request_stop(self, *_args: object) -> None:
        """Signal-safe: only sets a flag checked at the next tick boundary."""
        self._stop_requested = True

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        signal.signal(signal.SIGTERM, self.request_stop)
        signal.signal(signal.SIGINT, self.request_stop)

    def _claim(self) -> None:
        with self.ctx.backend.lock(self.ctx.paths.daemon_start_lock):
            existing = read_daemon_state(self.ctx)
            if existing is not None and existing.pid != self.state.pid and is_process_alive(existing.pid):
                raise DaemonUnavailableError(f"Task daemon already running (pid {existing.pid})")
            if existing is not None and existing.pid == self.state.pid:
                self.state.id = existing.id or self.state.id
            write_daemon_state(self.ctx, self.state)

    def _release(self) -> None:
        self.state.status = DaemonStatus.STOPPING
        self.state.heartbeat_at = _now_iso()
        with self.ctx.backend.lock(self.ctx.paths.daemon_start_lock):
            current = read_daemon_state(self.ctx)
            if current is None or current.pid == self.state.pid:
                write_daemon_state(self.ctx, self.state)

    def serve(self, max_ticks: Optional[int] = None) -> str:
        """Run until idle, stopped by signal, or *max_ticks* elapse; return why."""
        self._claim()
        self._install_signal_handlers()
        logger.info("Task daemon {} serving {}", self.state.pid, self.ctx.repo_root)
        ticks = 0
        reason = "stopped"
        try:
            while True:
                if self._stop_requested:
                    reason = "signal"
                    break
                if not self.tick():
                    reason = "idle"
                    break
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    reason = "max_ticks"
                    break
                time.sleep(self.poll_interval)
        finally:
            self._release()
        logger.info("Task daemon {} exiting ({})", self.state.pid, reason)
        return reason

    # -- one tick -----------------------------------------------------------

    def tick(self) -> bool:
        """Advance every task once; return False when the idle threshold is reached."""
        self.store.reconcile_queue()
        self._for_each(self.store.read_snapshot(), self._supervise)
        self._for_each(self.store.list_by_status(TaskStatus.RESUMING), self._service_resume)
        self._for_each(self.store.list_by_status(TaskStatus.WAITING_ON_CHILDREN), self._settle_children)
        self._for_each(self.store.list_runnable(), self._start)
        try:
            dispatch_task_subscribers(self.ctx)
        except Exception:
            logger.exception("Task subscriber dispatch failed")
        return self._account_idle()

    def _for_each(self, tasks: list[Task], step) -> None:
        for task in tasks:
            try:
                step(task)
            except Exception as exc:
                logger.exception("Daemon step {} failed for {}", step.__name__, task.id)
                self._fail(task.id, str(exc) or exc.__class__.__name__)

    def _fail(self, task_id: str, message: str) -> None:
        try:
            with self.store.transaction() as tx:
                task = tx.require(task_id)
                if is_finished(task.status):
                    return
                task.runtime.retained_for_debug = True
                tx.set_status(task, TaskStatus.FAILED, message)
        except TaskportError:
            logger.exception("Unable to mark {} failed", task_id)

    def _pending_work(self) -> int:
        pending = self.store.count_active(include_parked=False)
        pending += sum(
            1 for t in self.store.read_snapshot()
            if is_terminal(t.status) and t.runtime.worker_pid is not None
        )
        return pending

    def _account_idle(self) -> bool:
        now = _now_iso()
        self.state.heartbeat_at = now
        self.state.status = DaemonStatus.RUNNING
        if self._pending_work() > 0:
            self.state.idle_since = None
            write_daemon_state(self.ctx, self.state)
            return True
        if self.state.idle_since is None:
            self.state.idle_since = now
        write_daemon_state(self.ctx, self.state)
        idle_for = _seconds_since(self.state.idle_since) or 0.0
        return idle_for < self.idle_stop_seconds

    # -- steps --------------------------------------------------------------

    def _start(self, task: Task) -> None:
        self.store.update_status(task.id, TaskStatus.PREPARING, "Preparing local worker")
        adapter = self.adapter_factory(self.ctx, task)
        try:
            launch_task(self.ctx, self.store, adapter, self.store.require(task.id))
        except Exception as exc:
            logger.warning("Worker preparation/start failed for {}: {}", task.id, exc)
            self._fail(task.id, f"Worker preparation/start failed: {exc}")

    def _supervise(self, task: Task) -> None:
        if task.status == TaskStatus.RESUMING:
            return
        if task.status == TaskStatus.REVIVING_FOR_ATTACH and task.runtime.worker_pid is None:
            # attach is still preparing the revived run
            return
        if task.status in WORKER_STATUSES:
            adapter = self.adapter_factory(self.ctx, task)
            handle = TaskRunHandle.from_task(task)
            alive = handle.worker_pid is not None and adapter.status(handle) == "running"
            if alive:
                self._check_timeout(task, adapter, handle)
                self._check_handoff_expiry(task, adapter, handle)
            else:
                self._handle_crash(task)
        elif is_terminal(task.status) and task.runtime.worker_pid is not None:
            adapter = self.adapter_factory(self.ctx, task)
            handle = TaskRunHandle.from_task(task)
            if adapter.status(handle) == "exited":
                self._teardown(task, adapter, handle)

    def _check_timeout(self, task: Task, adapter: ExecutionAdapter, handle: TaskRunHandle) -> None:
        if task.status == TaskStatus.PAUSED_FOR_ATTACH:
            return
        deadline = _parse_iso(task.runtime.timeout_at)
        if deadline is None or datetime.now(timezone.utc) < deadline:
            return
        minutes = self.ctx.config.task.timeout_minutes
        adapter.cancel(handle, force=True)
        with self.store.transaction() as tx:
            current = tx.require(task.id)
            if is_finished(current.status):
                return
            current.runtime.retained_for_debug = True
            tx.emit(current.id, "task.worker.timeout", f"Exceeded {minutes:g} minute budget")
            tx.set_status(current, TaskStatus.TIMEOUT, f"Timed out after {minutes:g} minutes")
        logger.warning("Task {} timed out", task.id)

    def _check_handoff_expiry(self, task: Task, adapter: ExecutionAdapter, handle: TaskRunHandle) -> None:
        if task.status != TaskStatus.PAUSED_FOR_ATTACH or task.attach.state != AttachState.HANDOFF_READY:
            return
        attach_cfg = self.ctx.config.task.attach
        waited = _seconds_since(task.attach.ready_at)
        limit = attach_cfg.idle_timeout_minutes * 60 + attach_cfg.reconnect_grace_seconds
        if waited is None or waited < limit:
            return
        if adapter.capabilities.attach_handoff:
            adapter.resume_from_attach(handle)
        with self.store.transaction() as tx:
            current = tx.require(task.id)
            if current.status != TaskStatus.PAUSED_FOR_ATTACH:
                return
            current.attach.state = AttachState.EXPIRED
            tx.emit(current.id, "task.attach.handoff_expired", "No client attached; continuing autonomously")
            tx.set_status(current, TaskStatus.RUNNING, "Attach handoff expired")

    def _handle_crash(self, task: Task) -> None:
        with self.store.transaction() as tx:
            current = tx.require(task.id)
            if current.status not in WORKER_STATUSES or current.status == TaskStatus.RESUMING:
                return
            current.runtime.retained_for_debug = True
            current.runtime.worker_pid = None
            if current.status == TaskStatus.REVIVING_FOR_ATTACH:
                current.finish_run(RunStatus.FAILED, "Revived worker exited unexpectedly")
                tx.emit(current.id, "task.worker.crashed", "Revived worker exited unexpectedly")
                tx.set_status(current, TaskStatus.RESUME_FAILED, "Revived worker exited unexpectedly")
            elif current.runtime.checkpoint is not None:
                current.finish_run(RunStatus.FAILED, "Worker exited unexpectedly")
                tx.emit(current.id, "task.worker.crashed", "Worker exited unexpectedly; checkpoint available")
                tx.set_status(current, TaskStatus.RESUMABLE, "Worker exited unexpectedly")
            else:
                tx.emit(current.id, "task.worker.crashed", "Worker exited unexpectedly")
                tx.set_status(current, TaskStatus.FAILED, "Worker exited unexpectedly")
        logger.warning("Worker for {} exited unexpectedly", task.id)

    def _teardown(self, task: Task, adapter: ExecutionAdapter, handle: TaskRunHandle) -> None:
        if task.status == TaskStatus.COMPLETED:
            try:
                adapter.cleanup(self.ctx, handle)
            except Exception as exc:
                logger.warning("Cleanup of {} failed: {}", task.id, exc)

                def _retain(t: Task) -> None:
                    t.runtime.worker_pid = None
                    t.runtime.retained_for_debug = True

                self.store.patch(task.id, _retain, ("task.worker.cleanup_failed", str(exc)))
                return

            def _cleaned(t: Task) -> None:
                t.runtime.worker_pid = None
                t.runtime.worktree_path = None
                t.runtime.retained_for_debug = False

            self.store.patch(task.id, _cleaned, ("task.worker.cleaned", "Worktree removed"))
            return

        def _retained(t: Task) -> None:
            t.runtime.worker_pid = None
            t.runtime.retained_for_debug = True

        self.store.patch(
            task.id,
            _retained,
            ("task.worker.retained", f"Worktree retained for debugging ({task.status.value})"),
        )

    def _service_resume(self, task: Task) -> None:
        adapter = self.adapter_factory(self.ctx, task)
        handle = TaskRunHandle.from_task(task)
        if handle.worker_pid is not None and adapter.status(handle) == "running":
            run = task.active_run()
            if run is None or run.status != RunStatus.RESTORED:
                self.store.update_status(task.id, TaskStatus.RUNNING, "Worker still running; resume not needed")
            return
        run = task.active_run()
        if run is not None and run.status == RunStatus.RESTORED and handle.worker_pid is not None:
            self._resume_failed(task.id, "Restored worker exited unexpectedly")
            return
        if task.runtime.checkpoint is None:
            self._fail(task.id, "No checkpoint available to resume from")
            return
        try:
            restore_task(self.ctx, self.store, adapter, task)
        except Exception as exc:
            logger.warning("Resume of {} failed: {}", task.id, exc)
            self._resume_failed(task.id, f"Resume failed: {exc}")

    def _resume_failed(self, task_id: str, message: str) -> None:
        with self.store.transaction() as tx:
            task = tx.require(task_id)
            task.runtime.worker_pid = None
            task.finish_run(RunStatus.FAILED, message)
            tx.emit(task.id, "task.run.continuation_failed", message)
            tx.set_status(task, TaskStatus.RESUME_FAILED, message)

    def _settle_children(self, task: Task) -> None:
        with self.store.transaction() as tx:
            parent = tx.require(task.id)
            if parent.status != TaskStatus.WAITING_ON_CHILDREN:
                return
            children = [c for c in (tx.get(cid) for cid in parent.children_ids) if c is not None]
            if any(not is_finished(c.status) for c in children):
                return
            failed = [c.id for c in children if c.status in (TaskStatus.FAILED, TaskStatus.TIMEOUT, TaskStatus.CANCELLED)]
            if failed:
                tx.set_status(parent, TaskStatus.FAILED, f"Child task(s) failed: {', '.join(failed)}")
            else:
                tx.set_status(parent, TaskStatus.COMPLETED, "All child tasks finished")


def run_task_daemon(
    ctx: RepoContext,
    idle_stop_ms: Optional[int] = None,
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    max_ticks: Optional[int] = None,
) -> str:
    """Serve the daemon loop in this process until it goes idle or is signalled."""
    idle_stop_seconds = idle_stop_ms / 1000 if idle_stop_ms is not None else None
    daemon = TaskDaemon(ctx, idle_stop_seconds=idle_stop_seconds, poll_interval=poll_interval)
    return daemon.serve(max_ticks)
