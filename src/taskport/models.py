"""Task model for the background task engine.

Every record is a plain dataclass that round-trips through JSON. Loading is
forgiving: unknown enum values and missing fields fall back to defaults so an
index written by an older release still loads.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Optional

from .utils import _generate_run_id, _generate_task_id, _now_iso


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    QUEUED = "queued"
    PREPARING = "preparing"
    RUNNING = "running"
    WAITING_ON_CHILDREN = "waiting_on_children"
    RESUMABLE = "resumable"
    RESUMING = "resuming"
    REVIVING_FOR_ATTACH = "reviving_for_attach"
    PAUSED_FOR_ATTACH = "paused_for_attach"
    RESUME_FAILED = "resume_failed"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    CLEANED = "cleaned"


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMEOUT, TaskStatus.CANCELLED}
)

# Statuses in which a worker process may be servicing the task.
WORKER_STATUSES = frozenset(
    {
        TaskStatus.PREPARING,
        TaskStatus.RUNNING,
        TaskStatus.RESUMING,
        TaskStatus.REVIVING_FOR_ATTACH,
        TaskStatus.PAUSED_FOR_ATTACH,
    }
)

# Statuses that wait on an operator and do not keep the daemon alive.
PARKED_STATUSES = frozenset({TaskStatus.RESUMABLE, TaskStatus.RESUME_FAILED})


def is_terminal(status: TaskStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_finished(status: TaskStatus) -> bool:
    """Terminal or cleaned: no further work will happen without attach."""
    return status in TERMINAL_STATUSES or status == TaskStatus.CLEANED


class TaskMode(str, Enum):
    READ = "read"
    WRITE = "write"


class RunStatus(str, Enum):
    STARTED = "started"
    RESTORED = "restored"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class AttachState(str, Enum):
    PENDING_HANDOFF = "pending_handoff"
    HANDOFF_READY = "handoff_ready"
    EXPIRED = "expired"


class DaemonStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------

def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def _enum(enum_cls: type[Enum], raw: Any, default: Any) -> Any:
    if raw is None:
        return default
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(str(raw))
    except ValueError:
        return default


def _opt_str(raw: Any) -> Optional[str]:
    if raw is None or raw == "":
        return None
    return str(raw)


def _opt_int(raw: Any) -> Optional[int]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


class _Record:
    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for JSON persistence."""
        return {f.name: _plain(getattr(self, f.name)) for f in fields(self)}  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class Capabilities(_Record):
    """What an execution adapter can do beyond the mandatory lifecycle."""

    checkpoint: bool = False
    restore: bool = False
    attach_handoff: bool = False
    resume_token: bool = False
    transcript: bool = False
    failed_snapshot: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> "Capabilities":
        d = data if isinstance(data, dict) else {}
        return cls(**{f.name: bool(d.get(f.name, False)) for f in fields(cls)})


@dataclass
class QueueInfo(_Record):
    lock_key: Optional[str] = None
    blocked_by_task_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "QueueInfo":
        d = data if isinstance(data, dict) else {}
        return cls(lock_key=_opt_str(d.get("lock_key")), blocked_by_task_id=_opt_str(d.get("blocked_by_task_id")))


@dataclass
class AttachInfo(_Record):
    state: Optional[AttachState] = None
    client: Optional[str] = None
    session_handle: Optional[str] = None
    checkpoint_id: Optional[str] = None
    requested_at: Optional[str] = None
    ready_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "AttachInfo":
        d = data if isinstance(data, dict) else {}
        return cls(
            state=_enum(AttachState, d.get("state"), None),
            client=_opt_str(d.get("client")),
            session_handle=_opt_str(d.get("session_handle")),
            checkpoint_id=_opt_str(d.get("checkpoint_id")),
            requested_at=_opt_str(d.get("requested_at")),
            ready_at=_opt_str(d.get("ready_at")),
        )


@dataclass
class RunAttempt(_Record):
    """One execution of a task; immutable once ``finished_at`` is set."""

    attempt: int
    run_id: str
    status: RunStatus = RunStatus.STARTED
    started_at: str = field(default_factory=_now_iso)
    finished_at: Optional[str] = None
    reason: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.finished_at is not None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunAttempt":
        return cls(
            attempt=int(data.get("attempt", 0) or 0),
            run_id=str(data.get("run_id", "")),
            status=_enum(RunStatus, data.get("status"), RunStatus.STARTED),
            started_at=str(data.get("started_at") or _now_iso()),
            finished_at=_opt_str(data.get("finished_at")),
            reason=_opt_str(data.get("reason")),
        )


@dataclass
class CheckpointRef(_Record):
    """Adapter-opaque saved position a later run can continue from."""

    adapter_id: str
    task_id: str
    run_id: str
    created_at: str = field(default_factory=_now_iso)
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> Optional["CheckpointRef"]:
        if not isinstance(data, dict) or not data.get("run_id"):
            return None
        payload = data.get("payload")
        return cls(
            adapter_id=str(data.get("adapter_id", "")),
            task_id=str(data.get("task_id", "")),
            run_id=str(data["run_id"]),
            created_at=str(data.get("created_at") or _now_iso()),
            payload=dict(payload) if isinstance(payload, dict) else {},
        )


@dataclass
class TaskRuntime(_Record):
    worker_pid: Optional[int] = None
    worktree_path: Optional[str] = None
    worktree_branch: Optional[str] = None
    base_ref: Optional[str] = None
    run_attempt: int = 0
    active_run_id: Optional[str] = None
    runs: list[RunAttempt] = field(default_factory=list)
    checkpoint: Optional[CheckpointRef] = None
    checkpoint_history: list[CheckpointRef] = field(default_factory=list)
    session: Optional[str] = None
    timeout_at: Optional[str] = None
    prepared_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    cleaned_at: Optional[str] = None
    retained_for_debug: bool = False
    last_exit_code: Optional[int] = None
    last_error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "TaskRuntime":
        d = data if isinstance(data, dict) else {}
        runs = [RunAttempt.from_dict(r) for r in d.get("runs") or [] if isinstance(r, dict)]
        history = [c for c in (CheckpointRef.from_dict(r) for r in d.get("checkpoint_history") or []) if c]
        return cls(
            worker_pid=_opt_int(d.get("worker_pid")),
            worktree_path=_opt_str(d.get("worktree_path")),
            worktree_branch=_opt_str(d.get("worktree_branch")),
            base_ref=_opt_str(d.get("base_ref")),
            run_attempt=_opt_int(d.get("run_attempt")) or len(runs),
            active_run_id=_opt_str(d.get("active_run_id")),
            runs=runs,
            checkpoint=CheckpointRef.from_dict(d.get("checkpoint")),
            checkpoint_history=history,
            session=_opt_str(d.get("session")),
            timeout_at=_opt_str(d.get("timeout_at")),
            prepared_at=_opt_str(d.get("prepared_at")),
            started_at=_opt_str(d.get("started_at")),
            finished_at=_opt_str(d.get("finished_at")),
            cleaned_at=_opt_str(d.get("cleaned_at")),
            retained_for_debug=bool(d.get("retained_for_debug", False)),
            last_exit_code=_opt_int(d.get("last_exit_code")),
            last_error=_opt_str(d.get("last_error")),
        )


@dataclass
class Task(_Record):
    """A background unit of work and everything the engine knows about it."""

    id: str = field(default_factory=_generate_task_id)
    display_id: int = 0
    title: str = ""
    mode: TaskMode = TaskMode.WRITE
    branch: Optional[str] = None
    worker: Optional[str] = None
    parent_id: Optional[str] = None
    children_ids: list[str] = field(default_factory=list)
    adapter: str = "local"
    capabilities: Capabilities = field(default_factory=Capabilities)
    status: TaskStatus = TaskStatus.QUEUED
    queue: QueueInfo = field(default_factory=QueueInfo)
    attach: AttachInfo = field(default_factory=AttachInfo)
    runtime: TaskRuntime = field(default_factory=TaskRuntime)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    @property
    def is_write(self) -> bool:
        return self.mode == TaskMode.WRITE

    def active_run(self) -> Optional[RunAttempt]:
        if not self.runtime.active_run_id:
            return None
        for run in reversed(self.runtime.runs):
            if run.run_id == self.runtime.active_run_id:
                return run
        return None

    def begin_run(self, status: RunStatus = RunStatus.STARTED) -> RunAttempt:
        """Append a new run attempt and make it the active one."""
        self.finish_run(RunStatus.FAILED, "Superseded by a new run attempt")
        attempt = self.runtime.run_attempt + 1
        run = RunAttempt(attempt=attempt, run_id=_generate_run_id(self.id, attempt), status=status)
        self.runtime.run_attempt = attempt
        self.runtime.runs.append(run)
        self.runtime.active_run_id = run.run_id
        return run

    def finish_run(self, status: RunStatus, reason: Optional[str] = None) -> Optional[RunAttempt]:
        """Close the active run attempt, if any, and clear the active run id."""
        run = self.active_run()
        self.runtime.active_run_id = None
        if run is None or run.finished:
            return run
        run.status = status
        run.finished_at = _now_iso()
        run.reason = reason
        return run

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Deserialize from a plain dict, coercing enums gracefully."""
        d = dict(data)
        return cls(
            id=str(d.get("id") or _generate_task_id()),
            display_id=_opt_int(d.get("display_id")) or 0,
            title=str(d.get("title", "")),
            mode=_enum(TaskMode, d.get("mode"), TaskMode.WRITE),
            branch=_opt_str(d.get("branch")),
            worker=_opt_str(d.get("worker")),
            parent_id=_opt_str(d.get("parent_id")),
            children_ids=[str(c) for c in d.get("children_ids") or []],
            adapter=str(d.get("adapter") or "local"),
            capabilities=Capabilities.from_dict(d.get("capabilities")),
            status=_enum(TaskStatus, d.get("status"), TaskStatus.QUEUED),
            queue=QueueInfo.from_dict(d.get("queue")),
            attach=AttachInfo.from_dict(d.get("attach")),
            runtime=TaskRuntime.from_dict(d.get("runtime")),
            created_at=str(d.get("created_at") or _now_iso()),
            updated_at=str(d.get("updated_at") or d.get("created_at") or _now_iso()),
        )


@dataclass
class TaskEvent(_Record):
    task_id: str
    type: str
    message: Optional[str] = None
    at: str = field(default_factory=_now_iso)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def render(self) -> str:
        suffix = f" - {self.message}" if self.message else ""
        return f"{self.at} {self.task_id} {self.type}{suffix}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskEvent":
        return cls(
            task_id=str(data.get("task_id", "")),
            type=str(data.get("type", "")),
            message=_opt_str(data.get("message")),
            at=str(data.get("at") or ""),
            id=str(data.get("id") or ""),
        )


@dataclass
class DaemonState(_Record):
    pid: int
    id: str
    started_at: str = field(default_factory=_now_iso)
    heartbeat_at: str = field(default_factory=_now_iso)
    idle_since: Optional[str] = None
    status: DaemonStatus = DaemonStatus.STARTING

    @classmethod
    def from_dict(cls, data: Any) -> Optional["DaemonState"]:
        if not isinstance(data, dict):
            return None
        pid = _opt_int(data.get("pid"))
        if not pid:
            return None
        return cls(
            pid=pid,
            id=str(data.get("id", "")),
            started_at=str(data.get("started_at") or _now_iso()),
            heartbeat_at=str(data.get("heartbeat_at") or _now_iso()),
            idle_since=_opt_str(data.get("idle_since")),
            status=_enum(DaemonStatus, data.get("status"), DaemonStatus.STARTING),
        )
