"""File-backed task index with lock-guarded read-modify-write transactions.

The index lives at ``.taskport/jobs/index.json``. Every mutation goes through
:meth:`TaskStore.transaction`, which holds the index lock, loads the full
document, lets the caller mutate tasks, recomputes branch queues, and stages
the whole document back with an atomic replace. Events collected during the
transaction are appended while the lock is still held so per-task and global
logs stay in commit order.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from loguru import logger

from .branch_lock import lock_key_for, reconcile_branch_queue
from .constants import BUILTIN_WORKER_TYPES, INDEX_VERSION
from .context import RepoContext
from .errors import NotFoundError, TaskValidationError
from .event_stream import append_task_event, read_task_events
from .models import (
    PARKED_STATUSES,
    WORKER_STATUSES,
    Capabilities,
    RunStatus,
    Task,
    TaskEvent,
    TaskMode,
    TaskStatus,
    is_finished,
    is_terminal,
)
from .state_machine import ensure_transition, run_status_for
from .utils import _now_iso


# ---------------------------------------------------------------------------
# Index normalization
# ---------------------------------------------------------------------------

def _normalize_index(raw: Optional[dict[str, Any]]) -> tuple[list[Task], int, bool]:
    """Return (tasks, next_display_id, repaired) for a raw index document."""
    if not raw:
        return [], 1, False
    repaired = raw.get("version") != INDEX_VERSION
    tasks: list[Task] = []
    seen_ids: set[str] = set()
    for item in raw.get("tasks") or []:
        if not isinstance(item, dict):
            repaired = True
            continue
        task = Task.from_dict(item)
        if task.id in seen_ids:
            repaired = True
            continue
        seen_ids.add(task.id)
        tasks.append(task)

    used: set[int] = set()
    missing: list[Task] = []
    for task in sorted(tasks, key=lambda t: t.created_at):
        if task.display_id <= 0 or task.display_id in used:
            missing.append(task)
        else:
            used.add(task.display_id)
    next_id = max(used, default=0) + 1
    for task in missing:
        task.display_id = next_id
        next_id += 1
        repaired = True

    try:
        stored_next = int(raw.get("next_display_id", 0))
    except (TypeError, ValueError):
        stored_next = 0
    if stored_next < next_id:
        repaired = repaired or stored_next != 0
        stored_next = next_id
    return tasks, stored_next, repaired


def _enforce_run_invariant(task: Task) -> None:
    if is_finished(task.status) and task.runtime.active_run_id:
        status = run_status_for(task.status) if is_terminal(task.status) else RunStatus.COMPLETED
        task.finish_run(status, task.runtime.last_error)


# ---------------------------------------------------------------------------
# TaskStore
# ---------------------------------------------------------------------------

class TaskStore:
    """Lock-guarded store for :class:`Task` records of one repository."""

    def __init__(self, ctx: RepoContext) -> None:
        self.ctx = ctx

    # -- internal helpers ---------------------------------------------------

    def _load(self) -> tuple[list[Task], int, bool]:
        return _normalize_index(self.ctx.backend.read_json(self.ctx.paths.index_path))

    def _save(self, tasks: list[Task], next_display_id: int) -> None:
        payload = {
            "version": INDEX_VERSION,
            "next_display_id": next_display_id,
            "tasks": [t.to_dict() for t in tasks],
        }
        self.ctx.backend.write_json(self.ctx.paths.index_path, payload)

    # -- transactions -------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["_TaskTx"]:
        """Acquire the index lock, yield a transaction, and save on exit.

        Usage::

            with store.transaction() as tx:
                task = tx.require(task_id)
                task.title = "renamed"
                tx.touch(task)
        """
        with self.ctx.backend.lock(self.ctx.paths.index_lock):
            tasks, next_display_id, repaired = self._load()
            tx = _TaskTx(tasks, next_display_id)
            yield tx
            for task in tx.tasks:
                _enforce_run_invariant(task)
            if reconcile_branch_queue(tx.tasks, self.ctx.config.task.lock_mode):
                tx.dirty = True
            if tx.dirty or repaired:
                self._save(tx.tasks, tx.next_display_id)
            for task_id, event_type, message in tx.events:
                append_task_event(self.ctx, task_id, event_type, message)

    def read_snapshot(self) -> list[Task]:
        with self.ctx.backend.lock(self.ctx.paths.index_lock):
            tasks, _, _ = self._load()
        return tasks

    # -- public API ---------------------------------------------------------

    def create(
        self,
        title: str,
        *,
        mode: Optional[str] = None,
        branch: Optional[str] = None,
        worker: Optional[str] = None,
        parent_id: Optional[str] = None,
        adapter_id: str = "local",
        capabilities: Optional[Capabilities] = None,
    ) -> Task:
        title = (title or "").strip()
        if not title:
            raise TaskValidationError("Task title must not be empty")
        try:
            task_mode = TaskMode(mode) if mode else TaskMode.WRITE
        except ValueError as exc:
            raise TaskValidationError(f"Invalid task mode: {mode}") from exc
        workers = self.ctx.config.task.workers
        if worker and worker not in workers and (workers or worker not in BUILTIN_WORKER_TYPES):
            raise TaskValidationError(f"Unknown worker: {worker}")

        with self.transaction() as tx:
            parent = None
            if parent_id:
                parent = tx.require(parent_id)
            task = Task(
                title=title,
                mode=task_mode,
                branch=(branch or "").strip() or None,
                worker=worker,
                parent_id=parent.id if parent else None,
                adapter=adapter_id,
                capabilities=capabilities or Capabilities(),
            )
            task.queue.lock_key = lock_key_for(task, self.ctx.config.task.lock_mode)
            tx.add(task)
            if parent is not None:
                parent.children_ids.append(task.id)
                tx.touch(parent)
            tx.emit(task.id, "task.created", f"Queued {task.mode.value} task: {task.title}")
        logger.debug("Created task {} (#{})", task.id, task.display_id)
        return task

    def list(self) -> list[Task]:
        """All tasks, newest first."""
        return sorted(self.read_snapshot(), key=lambda t: t.display_id, reverse=True)

    def get(self, task_id: str) -> Optional[Task]:
        for task in self.read_snapshot():
            if task.id == task_id:
                return task
        return None

    def require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    def patch(
        self,
        task_id: str,
        mutate: Callable[[Task], None],
        event: Optional[tuple[str, Optional[str]]] = None,
    ) -> Task:
        """Atomically apply *mutate* to one task, optionally recording *event*."""
        with self.transaction() as tx:
            task = tx.require(task_id)
            mutate(task)
            tx.touch(task)
            if event is not None:
                tx.emit(task.id, event[0], event[1])
        return task

    def update_status(self, task_id: str, status: TaskStatus, message: Optional[str] = None) -> Task:
        with self.transaction() as tx:
            task = tx.require(task_id)
            tx.set_status(task, status, message)
        return task

    def count_active(self, *, include_parked: bool = True) -> int:
        """Non-terminal, non-cleaned tasks; *include_parked* counts operator-parked ones too."""
        return sum(
            1 for t in self.read_snapshot()
            if not is_finished(t.status) and (include_parked or t.status not in PARKED_STATUSES)
        )

    def list_runnable(self) -> list[Task]:
        """Queued, unblocked tasks, oldest first."""
        tasks = [
            t for t in self.read_snapshot()
            if t.status == TaskStatus.QUEUED and not t.queue.blocked_by_task_id
        ]
        return sorted(tasks, key=lambda t: (t.created_at, t.display_id))

    def list_in_flight(self) -> list[Task]:
        return [t for t in self.read_snapshot() if t.status in WORKER_STATUSES]

    def list_by_status(self, *statuses: TaskStatus) -> list[Task]:
        wanted = set(statuses)
        return [t for t in self.read_snapshot() if t.status in wanted]

    def reconcile_queue(self) -> None:
        with self.transaction():
            pass

    def read_events(self, task_id: str, limit: Optional[int] = None) -> list[TaskEvent]:
        return read_task_events(self.ctx, task_id, limit)


class _TaskTx:
    """In-memory transaction over the task index."""

    def __init__(self, tasks: list[Task], next_display_id: int) -> None:
        self.tasks = tasks
        self.next_display_id = next_display_id
        self.dirty = False
        self.events: list[tuple[str, str, Optional[str]]] = []
        self._index: dict[str, int] = {t.id: i for i, t in enumerate(tasks)}

    def get(self, task_id: str) -> Optional[Task]:
        idx = self._index.get(task_id)
        return self.tasks[idx] if idx is not None else None

    def require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    def add(self, task: Task) -> Task:
        if task.id in self._index:
            raise ValueError(f"Task {task.id} already exists")
        task.display_id = self.next_display_id
        self.next_display_id += 1
        self._index[task.id] = len(self.tasks)
        self.tasks.append(task)
        self.dirty = True
        return task

    def touch(self, task: Task) -> None:
        task.updated_at = _now_iso()
        self.dirty = True

    def emit(self, task_id: str, event_type: str, message: Optional[str] = None) -> None:
        self.events.append((task_id, event_type, message))

    def set_status(self, task: Task, status: TaskStatus, message: Optional[str] = None) -> None:
        """Validate and apply a status change, finalizing the run on terminal states."""
        ensure_transition(task.id, task.status, status)
        task.status = status
        if is_terminal(status):
            if status != TaskStatus.COMPLETED and message:
                task.runtime.last_error = message
            task.finish_run(run_status_for(status), message)
            task.runtime.finished_at = _now_iso()
        elif status == TaskStatus.CLEANED:
            task.runtime.cleaned_at = _now_iso()
        self.touch(task)
        self.emit(task.id, f"task.{status.value}", message)
