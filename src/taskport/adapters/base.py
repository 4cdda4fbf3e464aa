"""The execution adapter contract.

An adapter owns *how* a task runs. The mandatory lifecycle is prepare, start,
status, cancel and cleanup. Checkpoint, restore and the attach trio are
optional and advertised through :class:`~taskport.models.Capabilities`;
callers check the flag with :func:`require_capability` before invoking them,
and the base implementations raise :class:`AdapterUnsupportedError`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal, Optional

from ..context import RepoContext
from ..errors import AdapterUnsupportedError
from ..models import Capabilities, CheckpointRef, Task
from ..utils import _now_iso

RunState = Literal["running", "exited"]


@dataclass
class PreparedExecution:
    task_id: str
    run_id: str
    worktree_path: Optional[Path]
    branch: Optional[str]
    base_ref: Optional[str] = None


@dataclass
class TaskRunHandle:
    task_id: str
    run_id: str
    worker_pid: Optional[int]
    worktree_path: Optional[Path] = None
    branch: Optional[str] = None
    session: Optional[str] = None

    @classmethod
    def from_task(cls, task: Task) -> "TaskRunHandle":
        """Rebuild a handle from what the task runtime persisted."""
        runtime = task.runtime
        run_id = runtime.active_run_id or (runtime.runs[-1].run_id if runtime.runs else "")
        return cls(
            task_id=task.id,
            run_id=run_id,
            worker_pid=runtime.worker_pid,
            worktree_path=Path(runtime.worktree_path) if runtime.worktree_path else None,
            branch=runtime.worktree_branch,
            session=runtime.session,
        )


@dataclass
class AttachHandoff:
    boundary: str
    session_handle: str
    ready_at: str = field(default_factory=_now_iso)


@dataclass
class AttachContext:
    session_handle: str
    restore_strategy: Literal["native_session", "fallback_summary"]
    workspace_ref: Optional[str] = None
    transcript_path: Optional[str] = None
    summary: Optional[str] = None
    checkpoint_run_id: Optional[str] = None
    checkpoint_created_at: Optional[str] = None
    resume_token: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ExecutionAdapter(ABC):
    id: str = ""
    kind: Literal["local", "remote"] = "local"
    description: str = ""
    capabilities: Capabilities = Capabilities()

    @abstractmethod
    def prepare(self, ctx: RepoContext, task: Task) -> PreparedExecution:
        raise NotImplementedError

    @abstractmethod
    def start(self, ctx: RepoContext, task: Task, prepared: PreparedExecution) -> TaskRunHandle:
        raise NotImplementedError

    @abstractmethod
    def status(self, handle: TaskRunHandle) -> RunState:
        """Liveness only; exit codes are reported by the worker itself."""
        raise NotImplementedError

    @abstractmethod
    def cancel(self, handle: TaskRunHandle, force: bool = False) -> None:
        raise NotImplementedError

    @abstractmethod
    def cleanup(self, ctx: RepoContext, handle: TaskRunHandle) -> None:
        raise NotImplementedError

    # -- optional, capability-gated ------------------------------------------

    def checkpoint(self, ctx: RepoContext, task: Task, handle: TaskRunHandle) -> CheckpointRef:
        raise AdapterUnsupportedError(self.id, "checkpoint")

    def restore(self, ctx: RepoContext, task: Task, checkpoint: CheckpointRef) -> TaskRunHandle:
        raise AdapterUnsupportedError(self.id, "restore")

    def request_handoff(self, handle: TaskRunHandle) -> AttachHandoff:
        raise AdapterUnsupportedError(self.id, "attach handoff")

    def attach_context(self, ctx: RepoContext, task: Task, handle: TaskRunHandle) -> AttachContext:
        raise AdapterUnsupportedError(self.id, "attach context")

    def resume_from_attach(self, handle: TaskRunHandle) -> None:
        raise AdapterUnsupportedError(self.id, "attach resume")


_CAPABILITY_LABELS = {
    "checkpoint": "checkpoint",
    "restore": "restore",
    "attach_handoff": "attach handoff",
    "resume_token": "resume tokens",
    "transcript": "transcripts",
    "failed_snapshot": "failed snapshots",
}


def require_capability(adapter: ExecutionAdapter, capability: str) -> None:
    if capability not in _CAPABILITY_LABELS:
        raise ValueError(f"Unknown capability: {capability}")
    if not getattr(adapter.capabilities, capability):
        raise AdapterUnsupportedError(adapter.id, _CAPABILITY_LABELS[capability])
