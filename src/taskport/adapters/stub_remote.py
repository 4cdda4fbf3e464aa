"""Remote adapter contract stub.

It advertises the capability shape a remote backend would have, but the
transport is intentionally absent: every execution call fails loudly.
"""

from __future__ import annotations

from ..context import RepoContext
from ..errors import AdapterUnsupportedError, TaskportError
from ..models import Capabilities, CheckpointRef, Task
from .base import ExecutionAdapter, PreparedExecution, RunState, TaskRunHandle


class StubRemoteExecutionAdapter(ExecutionAdapter):
    id = "stub-remote"
    kind = "remote"
    description = "Remote adapter contract stub (transport intentionally deferred)"
    capabilities = Capabilities(checkpoint=True, restore=True)

    def prepare(self, ctx: RepoContext, task: Task) -> PreparedExecution:
        return PreparedExecution(
            task_id=task.id,
            run_id=task.runtime.active_run_id or "",
            worktree_path=None,
            branch=f"stub-{task.id}",
        )

    def start(self, ctx: RepoContext, task: Task, prepared: PreparedExecution) -> TaskRunHandle:
        raise TaskportError(f"Remote stub adapter does not execute task {task.id} yet")

    def status(self, handle: TaskRunHandle) -> RunState:
        return "exited"

    def cancel(self, handle: TaskRunHandle, force: bool = False) -> None:
        return None

    def cleanup(self, ctx: RepoContext, handle: TaskRunHandle) -> None:
        return None

    def checkpoint(self, ctx: RepoContext, task: Task, handle: TaskRunHandle) -> CheckpointRef:
        raise AdapterUnsupportedError(self.id, "checkpoint (not implemented yet)")

    def restore(self, ctx: RepoContext, task: Task, checkpoint: CheckpointRef) -> TaskRunHandle:
        raise TaskportError(f"Remote stub adapter does not restore task {task.id} yet")
