from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from ..models import Task


@dataclass(frozen=True)
class Continuation:
    """Where a restored run picks up from."""

    strategy: str
    checkpoint_run_id: str
    session: Optional[str] = None
    summary: Optional[str] = None


@dataclass
class TaskWorkerContext:
    task: Task
    repo_root: Path
    worktree_path: Path
    append_stdout: Callable[[str], None]
    append_stderr: Callable[[str], None]
    continuation: Optional[Continuation] = None
    report_session: Callable[[str], None] = lambda _session: None


@dataclass
class TaskWorkerResult:
    commit_refs: list[str] = field(default_factory=list)
    summary: Optional[str] = None
    session: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


class TaskWorker(Protocol):
    """Executes a task's intent inside its worktree; failure is signaled by raising."""

    name: str
    type: str

    def execute(self, context: TaskWorkerContext) -> TaskWorkerResult:
        ...
