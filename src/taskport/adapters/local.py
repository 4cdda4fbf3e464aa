"""Run workers as detached local subprocesses inside per-task git worktrees."""

from __future__ import annotations

import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional

from loguru import logger

from ..artifacts import artifact_paths
from ..constants import WORKTREE_BRANCH_PREFIX
from ..context import RepoContext
from ..errors import TaskportError
from ..git_utils import (
    _git_branch_exists,
    _git_create_worktree,
    _git_delete_branch,
    _git_head_sha,
    _git_remove_worktree,
    _run_git,
)
from ..models import Capabilities, CheckpointRef, Task
from ..process import is_process_alive, signal_process, spawn_detached, taskport_command
from ..utils import _now_iso
from .base import (
    AttachContext,
    AttachHandoff,
    ExecutionAdapter,
    PreparedExecution,
    RunState,
    TaskRunHandle,
)


def worktree_branch_for(task: Task) -> str:
    return f"{WORKTREE_BRANCH_PREFIX}{task.id}"


@dataclass
class ContinuePlan:
    """How an operator (or a revived worker) picks up from a checkpoint."""

    strategy: Literal["native_session", "fallback_summary"]
    command: list[str] = field(default_factory=list)
    summary: Optional[str] = None


def fallback_summary(ctx: RepoContext, task: Task, checkpoint: Optional[CheckpointRef] = None) -> str:
    run_id = checkpoint.run_id if checkpoint else (task.runtime.active_run_id or "unknown")
    summary_path = artifact_paths(ctx, task.id).summary
    summary = f"Continue task {task.id} from run {run_id}."
    if summary_path.exists():
        summary += "\n" + summary_path.read_text(encoding="utf-8").strip()
    summary += f"\nArtifacts: {artifact_paths(ctx, task.id).root}"
    return summary


def build_continue_plan(ctx: RepoContext, task: Task, checkpoint: Optional[CheckpointRef] = None) -> ContinuePlan:
    checkpoint = checkpoint or task.runtime.checkpoint
    session = (checkpoint.payload.get("session") if checkpoint else None) or task.runtime.session
    if session:
        return ContinuePlan(strategy="native_session", command=["opencode", "--continue", str(session)])
    return ContinuePlan(strategy="fallback_summary", summary=fallback_summary(ctx, task, checkpoint))


class LocalExecutionAdapter(ExecutionAdapter):
    id = "local"
    kind = "local"
    description = "Runs workers locally in ephemeral worktrees"
    capabilities = Capabilities(checkpoint=True, restore=True, attach_handoff=True)

    def prepare(self, ctx: RepoContext, task: Task) -> PreparedExecution:
        branch = worktree_branch_for(task)
        worktree = ctx.paths.trees_dir / branch
        base_ref = task.runtime.base_ref
        if worktree.exists() and (worktree / ".git").exists():
            logger.debug("Reusing worktree {} for {}", worktree, task.id)
        elif _git_branch_exists(ctx.repo_root, branch):
            _git_create_worktree(ctx.repo_root, worktree, branch)
        else:
            start_point = task.branch if task.branch and _git_branch_exists(ctx.repo_root, task.branch) else "HEAD"
            base_ref = _resolve_sha(ctx.repo_root, start_point)
            _git_create_worktree(ctx.repo_root, worktree, branch, base_ref or start_point)
        return PreparedExecution(
            task_id=task.id,
            run_id=task.runtime.active_run_id or "",
            worktree_path=worktree,
            branch=branch,
            base_ref=base_ref,
        )

    def start(self, ctx: RepoContext, task: Task, prepared: PreparedExecution) -> TaskRunHandle:
        if prepared.worktree_path is None:
            raise TaskportError(f"Task {task.id} has no prepared worktree")
        args = taskport_command(
            "task",
            "worker",
            "--task-id",
            task.id,
            "--repo",
            str(ctx.repo_root),
            "--worktree",
            str(prepared.worktree_path),
        )
        pid = spawn_detached(args, cwd=prepared.worktree_path, stderr_path=artifact_paths(ctx, task.id).stderr)
        return TaskRunHandle(
            task_id=task.id,
            run_id=prepared.run_id,
            worker_pid=pid,
            worktree_path=prepared.worktree_path,
            branch=prepared.branch,
            session=task.runtime.session,
        )

    def status(self, handle: TaskRunHandle) -> RunState:
        return "running" if is_process_alive(handle.worker_pid) else "exited"

    def cancel(self, handle: TaskRunHandle, force: bool = False) -> None:
        signal_process(handle.worker_pid, signal.SIGKILL if force else signal.SIGTERM)

    def cleanup(self, ctx: RepoContext, handle: TaskRunHandle) -> None:
        if handle.worktree_path is not None:
            _git_remove_worktree(ctx.repo_root, handle.worktree_path)
        if handle.branch:
            _git_delete_branch(ctx.repo_root, handle.branch)

    def checkpoint(self, ctx: RepoContext, task: Task, handle: TaskRunHandle) -> CheckpointRef:
        head = _git_head_sha(handle.worktree_path) if handle.worktree_path else None
        return CheckpointRef(
            adapter_id=self.id,
            task_id=task.id,
            run_id=handle.run_id,
            payload={
                "worktree_path": str(handle.worktree_path) if handle.worktree_path else None,
                "worktree_branch": handle.branch,
                "base_ref": task.runtime.base_ref,
                "head": head,
                "session": handle.session or task.runtime.session,
            },
        )

    def restore(self, ctx: RepoContext, task: Task, checkpoint: CheckpointRef) -> TaskRunHandle:
        raw_path = checkpoint.payload.get("worktree_path")
        worktree = Path(raw_path) if raw_path else ctx.paths.trees_dir / worktree_branch_for(task)
        if not worktree.exists():
            # The worktree was cleaned up; rebuild it from the task branch.
            prepared = self.prepare(ctx, task)
        else:
            prepared = PreparedExecution(
                task_id=task.id,
                run_id=task.runtime.active_run_id or "",
                worktree_path=worktree,
                branch=checkpoint.payload.get("worktree_branch") or worktree_branch_for(task),
                base_ref=checkpoint.payload.get("base_ref") or task.runtime.base_ref,
            )
        return self.start(ctx, task, prepared)

    def request_handoff(self, handle: TaskRunHandle) -> AttachHandoff:
        return AttachHandoff(boundary="immediate", session_handle=handle.session or handle.run_id, ready_at=_now_iso())

    def attach_context(self, ctx: RepoContext, task: Task, handle: TaskRunHandle) -> AttachContext:
        # local runs persist no client session state; resume tokens stay unset
        checkpoint = task.runtime.checkpoint
        return AttachContext(
            session_handle=handle.session or handle.run_id,
            restore_strategy="fallback_summary",
            workspace_ref=str(handle.worktree_path) if handle.worktree_path else None,
            transcript_path=str(artifact_paths(ctx, task.id).stdout),
            summary=fallback_summary(ctx, task, checkpoint),
            checkpoint_run_id=checkpoint.run_id if checkpoint else None,
            checkpoint_created_at=checkpoint.created_at if checkpoint else None,
        )

    def resume_from_attach(self, handle: TaskRunHandle) -> None:
        # Local workers never pause; releasing the handoff is bookkeeping only.
        logger.debug("Released attach handoff for {} (run {})", handle.task_id, handle.run_id)


def _resolve_sha(repo_root: Path, ref: str) -> Optional[str]:
    result = _run_git(repo_root, ["rev-parse", "--verify", f"{ref}^{{commit}}"], check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None
